"""Objects published on the bus, their method signatures and subscriptions."""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from .acl import AclStore, AclType, StatusError
from .blob import BlobAttr, blobmsg_decode, iter_attrs
from .ids import IdRegistry
from .protocol import Attr, Status


@dataclass(eq=False)
class ObjectType:
    """A shared method signature; ``methods`` holds (name, encoded field) pairs."""

    id: int = 0
    refcount: int = 1
    methods: list[tuple[str, bytes]] = field(default_factory=list)


@dataclass(eq=False)
class UbusObject:
    """An object registered on the bus, owned by a client or by the broker itself."""

    id: int = 0
    type: ObjectType | None = None
    path: str | None = None
    client: Any = None
    recv_msg: Callable[..., Any] | None = None
    events: list[Any] = field(default_factory=list)
    subscribers: list[Subscription] = field(default_factory=list)
    target_list: list[Subscription] = field(default_factory=list)
    event_seen: int = 0
    invoke_seq: int = 0


@dataclass(eq=False)
class Subscription:
    """A link from a subscribing object to the object it watches."""

    subscriber: UbusObject
    target: UbusObject


def _named_field(attr: BlobAttr) -> str | None:
    try:
        name, _ = blobmsg_decode(attr)
    except ValueError:
        return None
    return name or None


class ObjectRegistry:
    """All objects and object types known to the broker.

    ``notifier`` receives ``notify_subscription(obj)`` when an object gains its
    first or loses its last subscriber, and ``notify_unsubscribe(sub)`` when a
    watched object goes away (the registry drops the subscription afterwards).
    ``events``, when set, receives ``send_object_event`` and ``cleanup_object``.
    """

    def __init__(self, acl: AclStore, notifier: Any = None) -> None:
        self.acl = acl
        self.notifier = notifier
        self.events: Any = None
        self.types = IdRegistry()
        self.objects = IdRegistry()
        self._paths: dict[str, UbusObject] = {}

    def _unref_type(self, obj_type: ObjectType) -> None:
        obj_type.refcount -= 1
        if obj_type.refcount > 0:
            return
        obj_type.methods.clear()
        self.types.free(obj_type.id)

    def create_type(self, signature: bytes) -> ObjectType | None:
        """Register a type from an encoded signature; None if a method entry is invalid."""
        obj_type = ObjectType()
        obj_type.id = self.types.alloc(obj_type)
        for attr in iter_attrs(signature):
            name = _named_field(attr)
            if name is None:
                self._unref_type(obj_type)
                return None
            obj_type.methods.append((name, attr.pack()))
        return obj_type

    def get_type(self, type_id: int) -> ObjectType | None:
        """Look up a type and take a reference to it."""
        obj_type = self.types.find(type_id)
        if obj_type is None:
            return None
        obj_type.refcount += 1
        return obj_type

    def create_internal(self, obj_type: ObjectType | None, obj_id: int = 0) -> UbusObject:
        """Create an object without owner or path; raises ValueError if ``obj_id`` is taken."""
        obj = UbusObject(type=obj_type)
        obj.id = self.objects.alloc(obj, obj_id)
        if obj_type is not None:
            obj_type.refcount += 1
        return obj

    def create(self, client: Any, attrs: Mapping[int, BlobAttr]) -> UbusObject:
        """Create an object for ``client`` from parsed message attributes.

        Raises StatusError(INVALID_ARGUMENT) if the path may not be published or is taken.
        """
        obj_type = None
        if Attr.OBJTYPE in attrs:
            obj_type = self.get_type(attrs[Attr.OBJTYPE].as_int())
        elif Attr.SIGNATURE in attrs:
            obj_type = self.create_type(attrs[Attr.SIGNATURE].payload)

        obj = self.create_internal(obj_type)
        if obj_type is not None:
            self._unref_type(obj_type)

        path_attr = attrs.get(Attr.OBJPATH)
        if path_attr is not None:
            path = path_attr.as_string()
            if not self.acl.check(client, path, None, AclType.PUBLISH) or path in self._paths:
                self.free(obj)
                raise StatusError(Status.INVALID_ARGUMENT)
            obj.path = path
            self._paths[path] = obj
            if self.events is not None:
                self.events.send_object_event(obj, True)

        obj.client = client
        client.objects.insert(0, obj)
        return obj

    def find(self, obj_id: int) -> UbusObject | None:
        """The object with the given id, or None."""
        return self.objects.find(obj_id)

    def find_path(self, path: str) -> UbusObject | None:
        """The object published under ``path``, or None."""
        return self._paths.get(path)

    def paths(self) -> list[UbusObject]:
        """All objects that have a path, in path order."""
        return [self._paths[key] for key in sorted(self._paths)]

    def _notify_subscription(self, obj: UbusObject) -> None:
        if self.notifier is not None:
            self.notifier.notify_subscription(obj)

    def subscribe(self, obj: UbusObject, target: UbusObject) -> Subscription:
        """Make ``obj`` a subscriber of ``target``."""
        first = not target.subscribers
        sub = Subscription(subscriber=obj, target=target)
        target.subscribers.insert(0, sub)
        obj.target_list.insert(0, sub)
        if first:
            self._notify_subscription(target)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        """Drop a subscription."""
        target = sub.target
        target.subscribers.remove(sub)
        sub.subscriber.target_list.remove(sub)
        if not target.subscribers:
            self._notify_subscription(target)

    def free(self, obj: UbusObject) -> None:
        """Remove an object along with its subscriptions, events and path."""
        for sub in list(obj.target_list):
            self.unsubscribe(sub)
        for sub in list(obj.subscribers):
            if self.notifier is not None:
                self.notifier.notify_unsubscribe(sub)
            self.unsubscribe(sub)

        if self.events is not None:
            self.events.cleanup_object(obj)
        if obj.path is not None:
            if self.events is not None:
                self.events.send_object_event(obj, False)
            self._paths.pop(obj.path, None)
            obj.path = None
        if obj.client is not None and obj in obj.client.objects:
            obj.client.objects.remove(obj)
        self.objects.free(obj.id)
        if obj.type is not None:
            self._unref_type(obj.type)