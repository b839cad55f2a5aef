"""
Search overlay for the authorization tree.

Entering a search snapshots every group's expanded flag; leaving it restores
that snapshot exactly once. While active, groups without a matching item and
non-matching items are hidden (not unloaded).
"""
import logging
from typing import Iterable

from tree_nodes import Group, Item

logger = logging.getLogger(__name__)


class SearchSnapshot:
    """Saved expand state, restorable exactly once."""

    def __init__(self, expanded: dict[int, bool]) -> None:
        self._expanded = dict(expanded)
        self._restored = False

    @classmethod
    def take(cls, groups: Iterable[Group]) -> "SearchSnapshot":
        return cls({g.id: g.expanded for g in groups})

    @property
    def restored(self) -> bool:
        return self._restored

    def expanded(self, group_id: int) -> bool | None:
        return self._expanded.get(group_id)

    def restore(self, groups: Iterable[Group]) -> None:
        """Write the saved flags back. Groups first seen during the search go back to collapsed."""
        if self._restored:
            raise RuntimeError("Search snapshot was already restored.")
        self._restored = True
        for group in groups:
            group.expanded = self._expanded.get(group.id, False)


def matches(item: Item, term: str) -> bool:
    """Case-insensitive substring match on the display name."""
    return term.lower() in (item.name or "").lower()


class SearchOverlay:
    def __init__(self) -> None:
        self.term: str | None = None
        self.snapshot: SearchSnapshot | None = None
        self.hidden_groups: set[int] = set()
        self.hidden_items: set[int] = set()
        self.matching_groups: set[int] = set()

    @property
    def active(self) -> bool:
        return self.snapshot is not None

    def apply(
        self,
        term: str,
        groups: Iterable[Group],
        items: Iterable[Item],
        force_expand: bool = True,
    ) -> set[int]:
        """
        Apply a search term. Returns the ids of groups containing a matching item
        (force-expanded when force_expand is set). An empty term ends the search.
        """
        groups = list(groups)
        term = term or ""
        if not term:
            if self.snapshot is not None:
                self.snapshot.restore(groups)
                logger.debug("Search cleared; restored expand state of %d groups", len(groups))
            self.snapshot = None
            self.term = None
            self.hidden_groups = set()
            self.hidden_items = set()
            self.matching_groups = set()
            return set()
        if self.snapshot is None:
            self.snapshot = SearchSnapshot.take(groups)
        self.term = term
        self.recompute(groups, items)
        if force_expand:
            for group in groups:
                if group.id in self.matching_groups:
                    group.expanded = True
        return set(self.matching_groups)

    def recompute(self, groups: Iterable[Group], items: Iterable[Item]) -> None:
        """Recompute hidden sets for the current term (e.g. after a group loaded more items)."""
        if self.term is None:
            return
        matched_groups: set[int] = set()
        hidden_items: set[int] = set()
        for item in items:
            if matches(item, self.term):
                matched_groups.update(item.group_ids)
            else:
                hidden_items.add(item.id)
        group_ids = [g.id for g in groups]
        self.matching_groups = {gid for gid in group_ids if gid in matched_groups}
        self.hidden_groups = {gid for gid in group_ids if gid not in matched_groups}
        self.hidden_items = hidden_items

    def hides_group(self, group_id: int) -> bool:
        return self.active and group_id in self.hidden_groups

    def hides_item(self, item_id: int) -> bool:
        return self.active and item_id in self.hidden_items
