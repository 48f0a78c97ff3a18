# ubusbroker

A small message bus daemon for Unix systems. Clients connect over a Unix
domain socket, publish objects with named methods, call methods on objects
published by other clients, subscribe to notifications from objects and
exchange events. Access is controlled by JSON ACL files.

## Running the daemon

```
ubusbroker [-s <socket>] [-A <acl-dir>]
```

- `-s <socket>`: the Unix domain socket to listen on
  (default `/var/run/ubus/ubus.sock`). Its parent directory is created if
  missing, and an old socket file at that path is removed first.
- `-A <acl-dir>`: the directory holding `*.json` ACL files
  (default `/usr/share/acl.d`).

An unknown option prints a usage message and exits with status 1. Sending
`SIGHUP` reloads the ACL files; each reload raises the ACL sequence number
and sends a `ubus.acl.sequence` event to listeners. The daemon logs through
the standard `logging` module.

## ACL files

Each file names a `user` (or, failing that, a `group`) and lists what it may
do:

```json
{
    "user": "nobody",
    "access": {
        "network.*": { "methods": ["status", "dump"] }
    },
    "subscribe": ["network.interface"],
    "publish": ["myservice"],
    "listen": ["network.*"],
    "send": ["myservice.event"]
}
```

- `access` maps object names to entries with `methods` (a method name or
  `"*"`), `tags` and `acl`; the `acl` table is handed back to clients that
  query the built-in ACL object.
- `subscribe`, `publish`, `listen` and `send` list object or event names.

A trailing `*` on a name matches every name with that prefix. Only regular
files owned by root, not writable by group or others and not executable by
others, are loaded. Clients running as root (uid 0) are never restricted;
the built-in monitor object accepts only clients with uid and gid 0.

## Using it from Python

The broker is a library too. `ubusbroker.proto.Broker` holds the bus state
and handles decoded messages; `ubusbroker.server.Server` listens on a socket
and drives a `Broker`:

```python
from ubusbroker.proto import Broker
from ubusbroker.server import Server

broker = Broker("/usr/share/acl.d")
broker.reload_acl()
with Server(broker, "/tmp/ubus.sock") as server:
    server.serve_forever()
```

`Server.close()` stops `serve_forever()`, disconnects every client and
removes the socket file.

The modules:

- `ubusbroker.protocol`: message header (`MsgHeader`), message types
  (`MsgType`), attribute ids (`Attr`, `MonitorAttr`) and status codes
  (`Status`).
- `ubusbroker.blob`: the type-length-value attribute encoding (`BlobAttr`,
  `iter_attrs`, `parse_attrs`, `put_int32`, ...) and its named field form
  (`blobmsg_encode`, `blobmsg_decode`, `blobmsg_encode_table`,
  `blobmsg_decode_table`, `blobmsg_from_json`).
- `ubusbroker.ids`: `IdRegistry`, which hands out random 32-bit ids above the
  system object range.
- `ubusbroker.client`: `Message` and `Client`, the per-connection transmit
  queue.
- `ubusbroker.acl`: `AclStore`, `AclRule`, `AclType` and
  `client_credentials`.
- `ubusbroker.objects`: `ObjectRegistry` with object types, objects and
  subscriptions.
- `ubusbroker.events`: `EventRegistry`, event patterns and delivery.
- `ubusbroker.monitor`: `Monitor`, which copies bus traffic to monitoring
  clients.
- `ubusbroker.proto`: `Broker` and `parse_msg`.
- `ubusbroker.server`: `Server` and the `main` entry point.

## What it does not do

This package is the broker only. It has no client library for connecting to
a bus, and no command-line tool for listing objects, calling methods,
listening for events or sending them; those have to come from elsewhere.

## Tests

```
pip install .[test]
pytest
```