"""Access control lists loaded from JSON files, and the checks made against them."""

from __future__ import annotations

import glob
import grp
import json
import logging
import os
import pwd
import socket
import stat
import struct
from collections.abc import Callable, Iterable, Iterator, Mapping
from dataclasses import dataclass
from enum import IntEnum
from typing import Any

from .blob import blobmsg_encode, put_int32, put_nested
from .protocol import Attr, Status, strmatch_len

DEFAULT_ACL_DIR = "/usr/share/acl.d"
SEQUENCE_EVENT = "ubus.acl.sequence"

log = logging.getLogger(__name__)

_UCRED = struct.Struct("3i")


class AclType(IntEnum):
    """The kind of operation an access check is made for."""

    PUBLISH = 0
    SUBSCRIBE = 1
    ACCESS = 2
    LISTEN = 3
    SEND = 4


class StatusError(Exception):
    """A request failed with a protocol status code."""

    def __init__(self, status: Status) -> None:
        super().__init__(f"request failed: {status.name}")
        self.status = status


@dataclass
class AclRule:
    """One grant for an object path or path prefix to a user or a group."""

    key: str
    partial: bool = False
    user: str | None = None
    group: str | None = None
    methods: tuple[str, ...] | None = None
    tags: list[Any] | None = None
    priv: dict[str, Any] | None = None
    subscribe: bool = False
    publish: bool = False
    listen: bool = False
    send: bool = False

    def _matches_cred(self, client: Any) -> bool:
        if self.user is not None and client.user == self.user:
            return True
        return self.group is not None and client.group == self.group

    def _allows(self, method: str | None, acl_type: AclType) -> bool:
        if acl_type == AclType.PUBLISH:
            return self.publish
        if acl_type == AclType.SUBSCRIBE:
            return self.subscribe
        if acl_type == AclType.LISTEN:
            return self.listen
        if acl_type == AclType.SEND:
            return self.send
        if self.methods is None:
            return False
        return any(name == "*" or name == method for name in self.methods)


def _make_rule(pattern: str, user: str | None, group: str | None, **fields: Any) -> AclRule:
    partial = pattern.endswith("*")
    key = pattern[:-1] if partial else pattern
    return AclRule(key=key, partial=partial, user=user, group=group, **fields)


def _typed(document: Mapping[str, Any], name: str, kind: type) -> Any:
    value = document.get(name)
    return value if isinstance(value, kind) else None


def _parse_document(document: Mapping[str, Any]) -> list[AclRule]:
    user = _typed(document, "user", str)
    group = None
    if user is None:
        group = _typed(document, "group", str)
        if group is None:
            return []

    rules: list[AclRule] = []

    access = _typed(document, "access", dict)
    if access is not None:
        for name, entry in access.items():
            if not isinstance(entry, dict):
                continue
            methods = _typed(entry, "methods", list)
            tags = _typed(entry, "tags", list)
            priv = _typed(entry, "acl", dict)
            if methods is None and tags is None and priv is None:
                continue
            rules.append(
                _make_rule(
                    name,
                    user,
                    group,
                    methods=None if methods is None else tuple(m for m in methods if isinstance(m, str)),
                    tags=tags,
                    priv=priv,
                )
            )

    for flag in ("subscribe", "publish", "listen", "send"):
        patterns = _typed(document, flag, list)
        if patterns is None:
            continue
        for pattern in patterns:
            if isinstance(pattern, str):
                rules.append(_make_rule(pattern, user, group, **{flag: True}))

    return rules


def _matching(path: str, rules: Iterable[AclRule]) -> Iterator[AclRule]:
    """Yield the rules that apply to ``path``, walking them in key order.

    Since the rules are sorted, matches can only appear while the common prefix
    with ``path`` keeps growing; the walk stops as soon as it shrinks.
    """
    match_len = 0
    for rule in rules:
        full, cur_len = strmatch_len(path, rule.key)
        if cur_len < match_len:
            break
        match_len = cur_len
        if not full and not (rule.partial and match_len == len(rule.key)):
            continue
        yield rule


class AclStore:
    """The set of access rules, grouped by the file they came from."""

    def __init__(self, directory: str = DEFAULT_ACL_DIR) -> None:
        self.directory = directory
        self.seq = 0
        self.required_owner: tuple[int, int] = (0, 0)
        self.on_reload: Callable[[str, dict[str, Any]], None] | None = None
        self._files: dict[str, list[AclRule]] = {}
        self._rules: list[AclRule] = []

    def _rebuild(self) -> None:
        every = (rule for rules in self._files.values() for rule in rules)
        self._rules = sorted(every, key=lambda rule: rule.key)

    @property
    def rules(self) -> list[AclRule]:
        """All rules in key order."""
        return list(self._rules)

    def check(self, client: Any, obj: str | None, method: str | None, acl_type: AclType) -> bool:
        """Whether ``client`` may perform ``acl_type`` on object path ``obj``.

        Root, internal callers (no client) and checks without a path are always allowed.
        """
        if client is None or not client.uid or obj is None:
            return True
        acl_type = AclType(acl_type)
        for rule in _matching(obj, self._rules):
            if rule._matches_cred(client) and rule._allows(method, acl_type):
                return True
        return False

    def add_file(self, name: str, document: Mapping[str, Any]) -> None:
        """Install the rules of one parsed file, replacing any earlier file of that name."""
        self._files[name] = _parse_document(document)
        self._rebuild()

    def _acceptable(self, path: str) -> bool:
        try:
            st = os.stat(path)
        except OSError:
            return False
        if not stat.S_ISREG(st.st_mode):
            return False
        if (st.st_uid, st.st_gid) != self.required_owner:
            log.error("%s has wrong owner", path)
            return False
        if st.st_mode & (stat.S_IWOTH | stat.S_IWGRP | stat.S_IXOTH):
            log.error("%s has wrong permissions", path)
            return False
        return True

    def load(self) -> None:
        """Reload every ``*.json`` file of the directory and bump the sequence number.

        Nothing changes when the directory holds no matching files.
        """
        paths = sorted(glob.glob(os.path.join(self.directory, "*.json")))
        if not paths:
            return

        files: dict[str, list[AclRule]] = {}
        for path in paths:
            if not self._acceptable(path):
                continue
            try:
                with open(path, encoding="utf-8") as handle:
                    document = json.load(handle)
            except (OSError, ValueError):
                log.error("failed to parse %s", path)
                continue
            if not isinstance(document, dict):
                log.error("failed to parse %s", path)
                continue
            files[path] = _parse_document(document)
            log.info("loading %s", path)

        self._files = files
        self._rebuild()
        self.seq += 1
        if self.on_reload is not None:
            self.on_reload(SEQUENCE_EVENT, {"sequence": self.seq})

    def reply_entries(self, path: str | None) -> list[dict[str, Any]]:
        """The private ACL data that applies to an object path, one entry per rule."""
        if path is None:
            return []
        entries = []
        for rule in _matching(path, (r for r in self._rules if r.priv is not None)):
            entry: dict[str, Any] = {"obj": path}
            if rule.user is not None:
                entry["user"] = rule.user
            if rule.group is not None:
                entry["group"] = rule.group
            entry["acl"] = rule.priv
            entries.append(entry)
        return entries

    def query(self, client: Any, obj_id: int | None, objects: Any) -> bytes:
        """Build the reply blob for an ACL query over the client's own objects.

        Raises StatusError when the object id is missing or unknown.
        """
        if obj_id is None:
            raise StatusError(Status.INVALID_ARGUMENT)
        obj = objects.find(obj_id)
        if obj is None:
            raise StatusError(Status.NOT_FOUND)

        entries = [entry for own in client.objects for entry in self.reply_entries(own.path)]
        body = blobmsg_encode("seq", self.seq) + blobmsg_encode("acl", entries)
        return put_int32(Attr.OBJID, obj.id) + put_nested(Attr.DATA, body)


def client_credentials(sock: socket.socket) -> tuple[int, int, str, str]:
    """Return uid, gid, user name and group name of the peer of a Unix socket.

    Raises OSError if the credentials cannot be read and KeyError for an unknown uid or gid.
    """
    option = getattr(socket, "SO_PEERCRED", None)
    if option is None:
        uid = gid = 0
    else:
        raw = sock.getsockopt(socket.SOL_SOCKET, option, _UCRED.size)
        _pid, uid, gid = _UCRED.unpack(raw)
    user = pwd.getpwuid(uid).pw_name
    group = grp.getgrgid(gid).gr_name
    return uid, gid, user, group