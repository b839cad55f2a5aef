"""
Local authorization overrides keyed by (group id, item id).
An override wins over the authoritative record until explicitly cleared or reconciled.
"""
from typing import Hashable, Iterator

OverrideKey = tuple[Hashable, Hashable]


class OptimisticOverlay:
    def __init__(self) -> None:
        self._overrides: dict[OverrideKey, bool] = {}

    def get(self, group_id: Hashable, item_id: Hashable) -> bool | None:
        """The override value, or None when the authoritative value applies."""
        return self._overrides.get((group_id, item_id))

    def set(self, group_id: Hashable, item_id: Hashable, value: bool) -> None:
        self._overrides[(group_id, item_id)] = bool(value)

    def clear(self, group_id: Hashable, item_id: Hashable) -> bool:
        """Drop an override. Returns True if one existed."""
        return self._overrides.pop((group_id, item_id), None) is not None

    def reconcile(self, group_id: Hashable, item_id: Hashable, authoritative: bool) -> bool:
        """Drop the override if the authoritative value caught up with it. Returns True if dropped."""
        current = self._overrides.get((group_id, item_id))
        if current is None or current != bool(authoritative):
            return False
        del self._overrides[(group_id, item_id)]
        return True

    def __contains__(self, key: object) -> bool:
        return key in self._overrides

    def __len__(self) -> int:
        return len(self._overrides)

    def __iter__(self) -> Iterator[OverrideKey]:
        return iter(list(self._overrides))
