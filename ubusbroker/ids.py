"""Registry that hands out unique 32-bit ids."""

from __future__ import annotations

import os
from typing import Any

from .protocol import SYSTEM_OBJECT_MAX


class IdRegistry:
    """Maps 32-bit ids to items; random ids stay clear of the system range."""

    def __init__(self) -> None:
        self._items: dict[int, Any] = {}

    def alloc(self, item: Any, value: int = 0) -> int:
        """Register ``item`` under ``value``, or under a fresh random id when it is 0."""
        if value:
            if not 0 < value <= 0xFFFFFFFF:
                raise ValueError(f"id {value} out of range")
            if value in self._items:
                raise ValueError(f"id {value:#x} already in use")
            self._items[value] = item
            return value

        while True:
            candidate = int.from_bytes(os.urandom(4), "big")
            if candidate < SYSTEM_OBJECT_MAX or candidate in self._items:
                continue
            self._items[candidate] = item
            return candidate

    def free(self, item_id: int) -> Any:
        """Release an id and return its item; raises KeyError if it is not registered."""
        try:
            return self._items.pop(item_id)
        except KeyError:
            raise KeyError(f"id {item_id:#x} is not registered") from None

    def find(self, item_id: int) -> Any:
        """Return the item registered under ``item_id``, or None."""
        return self._items.get(item_id)

    def __contains__(self, item_id: object) -> bool:
        return item_id in self._items

    def __len__(self) -> int:
        return len(self._items)