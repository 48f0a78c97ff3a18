"""The listening socket and event loop that feed client traffic to the broker."""

from __future__ import annotations

import getopt
import logging
import os
import selectors
import signal
import socket
import sys
from dataclasses import dataclass, field
from typing import Any

from .acl import DEFAULT_ACL_DIR
from .client import Client, Message
from .proto import Broker
from .protocol import HEADER_SIZE, MAX_MSGLEN, UNIX_SOCKET, MsgHeader

log = logging.getLogger(__name__)

_BLOB_HDR_LEN = 4
_PREFIX_LEN = HEADER_SIZE + _BLOB_HDR_LEN
_LEN_MASK = 0x00FFFFFF

_LISTENER = object()
_WAKE = object()


def _pad(length: int) -> int:
    return (length + 3) & ~3


@dataclass(eq=False)
class _Connection:
    """Per-connection receive state."""

    client: Client
    sock: socket.socket
    prefix: bytearray = field(default_factory=bytearray)
    header: MsgHeader | None = None
    body: bytearray | None = None
    body_len: int = 0
    pending_fd: int = -1
    eof: bool = False
    mask: int = selectors.EVENT_READ


def _make_socket_dir(path: str) -> None:
    directory = os.path.dirname(path)
    if not directory:
        return
    try:
        os.mkdir(directory, 0o755)
    except OSError:
        pass


class Server:
    """Accepts connections on a Unix socket and drives the broker from their traffic."""

    def __init__(self, broker: Broker, path: str = UNIX_SOCKET) -> None:
        self.broker = broker
        self.path = path
        self._conns: dict[int, _Connection] = {}
        self._closing = False
        self._closed = False
        self._serving = False

        _make_socket_dir(path)
        try:
            os.unlink(path)
        except OSError:
            pass

        listener = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        try:
            old_mask = os.umask(0o111)
            try:
                listener.bind(path)
            finally:
                os.umask(old_mask)
            listener.listen(socket.SOMAXCONN)
            listener.setblocking(False)
        except OSError:
            listener.close()
            raise
        self._listener = listener

        self._wake_r, self._wake_w = socket.socketpair()
        self._wake_r.setblocking(False)
        self._wake_w.setblocking(False)

        self._selector = selectors.DefaultSelector()
        self._selector.register(self._listener, selectors.EVENT_READ, _LISTENER)
        self._selector.register(self._wake_r, selectors.EVENT_READ, _WAKE)

    def __enter__(self) -> Server:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    # connections

    def accept(self) -> list[Client]:
        """Accept every waiting connection and return the clients created for them."""
        clients: list[Client] = []
        while True:
            try:
                sock, _ = self._listener.accept()
            except (ConnectionAbortedError, InterruptedError):
                continue
            except OSError:
                break
            sock.setblocking(False)
            try:
                client = self.broker.new_client(sock)
            except (OSError, KeyError) as exc:
                log.error("rejecting connection: %s", exc)
                sock.close()
                continue
            conn = _Connection(client=client, sock=sock)
            self._conns[client.id] = conn
            self._selector.register(sock, conn.mask, conn)
            self._update_interest(conn)
            clients.append(client)
        return clients

    def on_client_event(self, client: Client, readable: bool = True, writable: bool = False) -> bool:
        """Handle socket readiness for ``client``; False once it has been disconnected."""
        conn = self._conns.get(client.id)
        if conn is None or conn.client is not client:
            return False

        try:
            client.flush()
        except OSError:
            self._disconnect(conn)
            return False

        if writable and not client.has_pending():
            self.broker.process_cmd_queue(client)

        if readable and not self._read(conn):
            self._disconnect(conn)
            return False

        if client.has_pending():
            try:
                client.flush()
            except OSError:
                self._disconnect(conn)
                return False

        if conn.eof and not client.has_pending():
            self._disconnect(conn)
            return False

        return self._update_interest(conn)

    def _read(self, conn: _Connection) -> bool:
        """Read and dispatch every complete message; False on a protocol violation."""
        sock = conn.sock
        while not conn.eof:
            if conn.body is None:
                need = _PREFIX_LEN - len(conn.prefix)
                fds: list[int] = []
                try:
                    if conn.pending_fd < 0:
                        data, fds, _flags, _addr = socket.recv_fds(sock, need, 1)
                    else:
                        data = sock.recv(need)
                except (BlockingIOError, InterruptedError):
                    break
                except OSError:
                    conn.eof = True
                    break
                for extra in fds[1:]:
                    os.close(extra)
                if fds:
                    conn.pending_fd = fds[0]
                if not data:
                    conn.eof = True
                    break
                conn.prefix += data
                if len(conn.prefix) < _PREFIX_LEN:
                    continue

                raw_len = int.from_bytes(conn.prefix[HEADER_SIZE:_PREFIX_LEN], "big") & _LEN_MASK
                if raw_len < _BLOB_HDR_LEN or _pad(raw_len) > MAX_MSGLEN:
                    return False
                conn.header = MsgHeader.unpack(bytes(conn.prefix[:HEADER_SIZE]))
                conn.body = bytearray(conn.prefix[HEADER_SIZE:])
                conn.body_len = raw_len
                conn.prefix.clear()

            need = conn.body_len - len(conn.body)
            if need > 0:
                try:
                    data = sock.recv(need)
                except (BlockingIOError, InterruptedError):
                    break
                except OSError:
                    conn.eof = True
                    break
                if not data:
                    conn.eof = True
                    break
                conn.body += data
                if len(conn.body) < conn.body_len:
                    continue

            msg = Message(conn.header, bytes(conn.body), fd=conn.pending_fd)
            conn.pending_fd = -1
            conn.header = None
            conn.body = None
            conn.body_len = 0
            self.broker.receive(conn.client, msg)
        return True

    def _update_interest(self, conn: _Connection) -> bool:
        client = conn.client
        mask = 0 if conn.eof else selectors.EVENT_READ
        if client.has_pending() or client.cmd_queue:
            mask |= selectors.EVENT_WRITE
        if not mask:
            self._disconnect(conn)
            return False
        if mask != conn.mask:
            self._selector.modify(conn.sock, mask, conn)
            conn.mask = mask
        return True

    def _disconnect(self, conn: _Connection) -> None:
        client = conn.client
        if self._conns.get(client.id) is conn:
            del self._conns[client.id]
        try:
            self._selector.unregister(conn.sock)
        except (KeyError, ValueError):
            pass
        self.broker.free_client(client)
        if conn.pending_fd >= 0:
            os.close(conn.pending_fd)
            conn.pending_fd = -1
        try:
            client.close()
        except OSError:
            pass
        conn.sock.close()

    # loop

    def serve_forever(self) -> None:
        """Run the event loop until ``close`` is called."""
        self._serving = True
        try:
            while not self._closing:
                for key, events in self._selector.select():
                    if key.data is _LISTENER:
                        self.accept()
                    elif key.data is _WAKE:
                        self._drain_wake()
                    else:
                        conn = key.data
                        if self._conns.get(conn.client.id) is not conn:
                            continue
                        self.on_client_event(
                            conn.client,
                            bool(events & selectors.EVENT_READ),
                            bool(events & selectors.EVENT_WRITE),
                        )
                for conn in list(self._conns.values()):
                    self._update_interest(conn)
        finally:
            self._serving = False
            self._teardown()

    def _drain_wake(self) -> None:
        try:
            while self._wake_r.recv(64):
                pass
        except (BlockingIOError, InterruptedError):
            pass

    def close(self) -> None:
        """Stop serving, drop every client and remove the socket file."""
        self._closing = True
        if self._serving:
            try:
                self._wake_w.send(b"\0")
            except OSError:
                pass
        else:
            self._teardown()

    def _teardown(self) -> None:
        if self._closed:
            return
        self._closed = True
        for conn in list(self._conns.values()):
            self._disconnect(conn)
        for sock in (self._listener, self._wake_r):
            try:
                self._selector.unregister(sock)
            except (KeyError, ValueError):
                pass
        self._listener.close()
        self._wake_r.close()
        self._wake_w.close()
        self._selector.close()
        try:
            os.unlink(self.path)
        except OSError:
            pass


def _usage(prog: str) -> int:
    sys.stderr.write(
        f"Usage: {prog} [<options>]\n"
        "Options: \n"
        "  -A <path>:\t\tSet the path to ACL files\n"
        "  -s <socket>:\t\tSet the unix domain socket to listen on\n"
        "\n"
    )
    return 1


def main(argv: list[str] | None = None) -> int:
    """Run the bus broker."""
    args = sys.argv[1:] if argv is None else list(argv)
    prog = os.path.basename(sys.argv[0]) if sys.argv and sys.argv[0] else "ubusd"

    try:
        opts, _ = getopt.getopt(args, "A:s:")
    except getopt.GetoptError:
        return _usage(prog)

    socket_path = UNIX_SOCKET
    acl_dir = DEFAULT_ACL_DIR
    for opt, value in opts:
        if opt == "-s":
            socket_path = value
        elif opt == "-A":
            acl_dir = value

    logging.basicConfig(level=logging.INFO, format="ubusd[%(process)d]: %(message)s")

    broker = Broker(acl_dir)
    try:
        server = Server(broker, socket_path)
    except OSError as exc:
        sys.stderr.write(f"usock: {exc}\n")
        return 1

    sighup = getattr(signal, "SIGHUP", None)
    previous = None
    if sighup is not None:
        previous = signal.signal(sighup, lambda _sig, _frame: broker.reload_acl())
    try:
        broker.reload_acl()
        server.serve_forever()
    except KeyboardInterrupt:
        pass
    finally:
        server.close()
        if sighup is not None and previous is not None:
            signal.signal(sighup, previous)
    return 0