"""
Authorization tree: clients (groups) -> users (items) with a per-scope
authorization flag per user.

Groups load lazily on first expansion, through the store (and so through the
request ledger). Toggles are applied optimistically; search hides and
force-expands groups on top of the user's own expand state.
"""
import asyncio
import logging
from enum import Enum

from errors import NetworkFailure, StaleWrite
from optimistic_overlay import OptimisticOverlay
from query_resolver import resolve
from search_overlay import SearchOverlay
from store import AdminStore, AuthorizationScope
from tree_nodes import Group, Item

logger = logging.getLogger(__name__)


class TreeMode(Enum):
    GRANT = "grant"
    MANAGE = "manage"


class AuthorizationTree:
    """Tree state for one permissions panel; overrides live as long as the tree."""

    def __init__(
        self,
        store: AdminStore,
        scope: AuthorizationScope | None = None,
        *,
        mode: TreeMode = TreeMode.GRANT,
        limit_group_id: int | None = None,
    ) -> None:
        if mode is TreeMode.GRANT and scope is None:
            raise ValueError("Grant mode needs an authorization scope.")
        self.store = store
        self.scope = scope
        self.mode = mode
        self.limit_group_id = limit_group_id
        self.overrides = OptimisticOverlay()
        self.search_overlay = SearchOverlay()
        self._groups: dict[int, Group] = {}
        self._loading: dict[int, asyncio.Future] = {}

    # --- Structure ---

    async def load(self, force: bool = False) -> None:
        """Fetch clients and users (only the limited client's users when a limit is set)."""
        await asyncio.gather(
            self.store.get_clients(force=force),
            self.store.get_users(self.limit_group_id, force=force),
        )
        self._sync_groups()
        if self.search_overlay.active:
            self.search_overlay.recompute(self.groups, self.items())

    def _sync_groups(self) -> None:
        """Create groups for newly observed clients; existing groups keep their state."""
        for client in self.store.context.clients:
            group = self._groups.get(client["id"])
            if group is None:
                self._groups[client["id"]] = Group(id=client["id"], name=client.get("name") or "")
            elif client.get("name"):
                group.name = client["name"]

    @property
    def groups(self) -> list[Group]:
        """All groups ever observed, in client order."""
        self._sync_groups()
        order = {c["id"]: i for i, c in enumerate(self.store.context.clients)}
        return sorted(self._groups.values(), key=lambda g: order.get(g.id, len(order)))

    def group(self, group_id: int) -> Group:
        self._sync_groups()
        if group_id not in self._groups:
            self._groups[group_id] = Group(id=group_id)
        return self._groups[group_id]

    def items(self) -> list[Item]:
        return [Item.from_user(u) for u in self.store.context.users]

    # --- Expansion ---

    async def expand(self, group_id: int, forced: bool = False) -> None:
        """
        Toggle a group (forced=True always opens it). The first opening fetches the
        group's users and its authorization record; while that fetch is outstanding,
        further calls wait for it instead of toggling or fetching again.
        A failed fetch collapses the group and raises NetworkFailure.
        """
        group = self.group(group_id)
        pending = self._loading.get(group_id)
        if pending is not None:
            await pending
            return
        group.expanded = True if forced else not group.expanded
        if group.loaded or not group.expanded:
            return
        task = asyncio.ensure_future(self._load_group(group))
        self._loading[group_id] = task
        group.loading = True
        try:
            await task
        finally:
            group.loading = False
            self._loading.pop(group_id, None)

    async def _load_group(self, group: Group) -> None:
        fetches = [self.store.get_users(group.id)]
        if self.mode is TreeMode.GRANT:
            fetches.append(self.store.get_authorized_users(group.id, self.scope))
        try:
            await asyncio.gather(*fetches)
        except NetworkFailure as err:
            group.expanded = False
            logger.warning("Loading client %s failed: %s", group.id, err)
            raise
        group.loaded = True
        if self.search_overlay.active:
            self.search_overlay.recompute(self.groups, self.items())

    # --- Authorization status ---

    def _authoritative(self, group_id: int, item_id: int) -> bool:
        if self.scope is None:
            return False
        row = resolve(
            self.store.context.authorized_users,
            [lambda r: r.get("id") == item_id and bool(r.get("authorized"))],
            key=self.scope.record_key(group_id),
            index=0,
        )
        return row is not None

    def get_status(self, group_id: int, item_id: int) -> bool:
        """Override first, then the authoritative record; False when neither knows."""
        override = self.overrides.get(group_id, item_id)
        if override is not None:
            return override
        return self._authoritative(group_id, item_id)

    def set_status(self, group_id: int, item_id: int, value: bool) -> "asyncio.Future[None]":
        """
        Apply the toggle locally at once and start the write. The returned future
        raises StaleWrite if the write fails; the override stays either way.
        """
        if self.scope is None:
            raise ValueError("Authorization toggles need a scope.")
        self.overrides.set(group_id, item_id, value)
        return asyncio.ensure_future(self._write_status(group_id, item_id, bool(value)))

    async def _write_status(self, group_id: int, item_id: int, value: bool) -> None:
        try:
            await self.store.authorize_user(item_id, group_id, self.scope, {"authorize": value})
        except NetworkFailure as err:
            logger.warning("Authorization write for user %s in client %s failed: %s", item_id, group_id, err)
            raise StaleWrite(group_id, item_id, value) from err
        # Last write to land decides the local value.
        self.overrides.set(group_id, item_id, value)

    async def reconcile(self, group_id: int) -> int:
        """Re-fetch the group's authorization record and drop overrides it now agrees with."""
        if self.scope is None:
            return 0
        await self.store.get_authorized_users(group_id, self.scope, force=True)
        dropped = 0
        for g, i in self.overrides:
            if g == group_id and self.overrides.reconcile(g, i, self._authoritative(g, i)):
                dropped += 1
        return dropped

    # --- Search ---

    async def search(self, term: str) -> set[int]:
        """
        Filter the tree by user name. Matching groups are opened and loaded; a group
        that fails to load stays collapsed and the search goes on.
        """
        matched = self.search_overlay.apply(term, self.groups, self.items())
        if not matched:
            return matched
        to_load = [gid for gid in matched if not self._groups[gid].loaded]
        results = await asyncio.gather(
            *(self.expand(gid, forced=True) for gid in to_load), return_exceptions=True
        )
        for gid, result in zip(to_load, results):
            if isinstance(result, NetworkFailure):
                logger.warning("Search could not load client %s: %s", gid, result)
            elif isinstance(result, BaseException):
                raise result
        return matched

    # --- Visible state ---

    def visible_groups(self) -> list[Group]:
        """Groups to render: the limited client (or any client with known members), minus search-hidden ones."""
        members: set[int] = set()
        for item in self.items():
            members.update(item.group_ids)
        visible = []
        for group in self.groups:
            if self.limit_group_id is not None:
                if group.id != self.limit_group_id:
                    continue
            elif group.id not in members:
                continue
            if self.search_overlay.hides_group(group.id):
                continue
            visible.append(group)
        return visible

    def visible_items(self, group_id: int) -> list[Item]:
        """Members of an expanded, visible group that the search does not hide."""
        group = self._groups.get(group_id)
        if group is None or not group.expanded or self.search_overlay.hides_group(group_id):
            return []
        return [
            item
            for item in self.items()
            if group_id in item.group_ids and not self.search_overlay.hides_item(item.id)
        ]
