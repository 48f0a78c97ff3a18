import os
import socket
import stat
import tempfile
import threading

import pytest

from ubusbroker.blob import BlobAttr, put_string
from ubusbroker.proto import Broker, parse_msg
from ubusbroker.protocol import Attr, MsgHeader, MsgType, Status
from ubusbroker.server import Server, main


@pytest.fixture
def sock_path():
    with tempfile.TemporaryDirectory(prefix="ub") as directory:
        yield os.path.join(directory, "run", "ubus.sock")


@pytest.fixture
def server(sock_path):
    with tempfile.TemporaryDirectory(prefix="acl") as acl_dir:
        srv = Server(Broker(acl_dir), sock_path)
        yield srv
        srv.close()


def connect(path):
    sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    sock.settimeout(5)
    sock.connect(path)
    return sock


def recv_exact(sock, size):
    data = b""
    while len(data) < size:
        chunk = sock.recv(size - len(data))
        if not chunk:
            raise EOFError("connection closed")
        data += chunk
    return data


def read_message(sock):
    prefix = recv_exact(sock, 12)
    header = MsgHeader.unpack(prefix[:8])
    raw_len = int.from_bytes(prefix[8:12], "big") & 0xFFFFFF
    return header, prefix[8:] + recv_exact(sock, raw_len - 4)


def encode(header, body=b""):
    return header.pack() + BlobAttr(0, body).pack()


def accept_one(server, path):
    sock = connect(path)
    clients = server.accept()
    assert len(clients) == 1
    header, _ = read_message(sock)
    assert header.type == MsgType.HELLO
    return sock, clients[0]


def test_socket_created_with_mode(server, sock_path):
    st = os.stat(sock_path)
    assert stat.S_ISSOCK(st.st_mode)
    assert st.st_mode & 0o777 == 0o666
    sock = connect(sock_path)
    clients = server.accept()
    assert len(clients) == 1
    assert clients[0].id in server.broker.clients
    sock.close()


def test_close_removes_socket(server, sock_path):
    sock, client = accept_one(server, sock_path)
    assert client.id in server.broker.clients
    server.close()
    assert not os.path.exists(sock_path)
    assert sock.recv(1) == b""
    sock.close()


def test_hello_on_accept(server, sock_path):
    sock = connect(sock_path)
    clients = server.accept()
    header, data = read_message(sock)
    assert header.type == MsgType.HELLO
    assert header.peer == clients[0].id
    assert data == BlobAttr(0, b"").pack()
    sock.close()


def test_ping_echoes_data_and_status(server, sock_path):
    sock, client = accept_one(server, sock_path)
    sent = encode(MsgHeader(MsgType.PING, seq=7), put_string(Attr.METHOD, "x"))
    sock.sendall(sent)
    assert server.on_client_event(client, True, False) is True

    header, data = read_message(sock)
    assert header.type == MsgType.DATA
    assert header.seq == 7
    assert data == sent[8:]

    header, data = read_message(sock)
    assert header.type == MsgType.STATUS
    assert header.seq == 7
    assert parse_msg(data)[Attr.STATUS].as_int() == Status.OK
    sock.close()


def test_unknown_type_reports_invalid_command(server, sock_path):
    sock, client = accept_one(server, sock_path)
    sock.sendall(encode(MsgHeader(200, seq=3)))
    server.on_client_event(client, True, False)
    header, data = read_message(sock)
    assert header.type == MsgType.STATUS
    assert header.seq == 3
    assert parse_msg(data)[Attr.STATUS].as_int() == Status.INVALID_COMMAND
    sock.close()


def test_message_split_across_reads(server, sock_path):
    sock, client = accept_one(server, sock_path)
    sent = encode(MsgHeader(MsgType.PING, seq=9), put_string(Attr.METHOD, "split"))
    sock.sendall(sent[:5])
    assert server.on_client_event(client, True, False) is True
    sock.setblocking(False)
    with pytest.raises(BlockingIOError):
        sock.recv(1)
    sock.settimeout(5)

    sock.sendall(sent[5:14])
    server.on_client_event(client, True, False)
    sock.sendall(sent[14:])
    server.on_client_event(client, True, False)

    header, data = read_message(sock)
    assert header.type == MsgType.DATA
    assert header.seq == 9
    assert data == sent[8:]
    sock.close()


def test_short_blob_disconnects(server, sock_path):
    sock, client = accept_one(server, sock_path)
    sock.sendall(MsgHeader(MsgType.PING).pack() + (0).to_bytes(4, "big"))
    assert server.on_client_event(client, True, False) is False
    assert sock.recv(1) == b""
    assert client.id not in server.broker.clients
    assert server.on_client_event(client, True, False) is False


def test_peer_close_disconnects(server, sock_path):
    sock, client = accept_one(server, sock_path)
    sock.close()
    assert server.on_client_event(client, True, False) is False
    assert len(server.broker.clients) == 0


def test_serve_forever_in_thread(sock_path):
    with tempfile.TemporaryDirectory(prefix="acl") as acl_dir:
        srv = Server(Broker(acl_dir), sock_path)
        thread = threading.Thread(target=srv.serve_forever, daemon=True)
        thread.start()
        sock = connect(sock_path)
        header, _ = read_message(sock)
        assert header.type == MsgType.HELLO

        sent = encode(MsgHeader(MsgType.PING, seq=11))
        sock.sendall(sent)
        header, data = read_message(sock)
        assert header.type == MsgType.DATA
        assert data == sent[8:]
        header, data = read_message(sock)
        assert parse_msg(data)[Attr.STATUS].as_int() == Status.OK

        srv.close()
        thread.join(5)
        assert not thread.is_alive()
        assert not os.path.exists(sock_path)
        assert sock.recv(1) == b""
        sock.close()


def test_main_bad_option(capsys):
    assert main(["-x"]) == 1
    assert "Usage" in capsys.readouterr().err


def test_main_unbindable_path(tmp_path, capsys):
    blocker = tmp_path / "blocker"
    blocker.write_text("x")
    assert main(["-s", str(blocker / "ubus.sock"), "-A", str(tmp_path)]) == 1
    assert "usock" in capsys.readouterr().err