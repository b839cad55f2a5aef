"""
Pytest suite for search_overlay.py and AuthorizationTree.search.
Focus: snapshot/restore of the expand state, hiding, force-expansion and loading.
"""
import asyncio

import pytest

from authorization_tree import AuthorizationTree, TreeMode
from conftest import SCOPE
from search_overlay import SearchOverlay, SearchSnapshot, matches
from tree_nodes import Group, Item


@pytest.fixture
def tree(static_store) -> AuthorizationTree:
    return AuthorizationTree(static_store, SCOPE)


def _expanded(tree: AuthorizationTree) -> dict[int, bool]:
    return {g.id: g.expanded for g in tree.groups}


class TestSnapshot:
    def test_restore_writes_saved_flags(self):
        groups = [Group(1, expanded=True), Group(2)]
        snapshot = SearchSnapshot.take(groups)
        for g in groups:
            g.expanded = not g.expanded
        snapshot.restore(groups)
        assert [g.expanded for g in groups] == [True, False]
        assert snapshot.restored

    def test_restore_only_once(self):
        snapshot = SearchSnapshot.take([Group(1)])
        snapshot.restore([Group(1)])
        with pytest.raises(RuntimeError):
            snapshot.restore([Group(1)])

    def test_group_unknown_at_snapshot_restores_collapsed(self):
        snapshot = SearchSnapshot.take([Group(1)])
        late = Group(7, expanded=True)
        snapshot.restore([late])
        assert late.expanded is False
        assert snapshot.expanded(7) is None


class TestOverlay:
    GROUPS = [Group(1, "Acme"), Group(2, "Globex")]
    ITEMS = [Item(10, "Alice", frozenset({1})), Item(11, "Bob", frozenset({2})), Item(12, "Alina", frozenset({1, 2}))]

    def test_matches_is_case_insensitive(self):
        assert matches(Item(1, "Alice"), "ALI")
        assert not matches(Item(1, "Alice"), "bob")
        assert not matches(Item(1, ""), "a")

    def test_hidden_sets(self):
        overlay = SearchOverlay()
        groups = [Group(g.id, g.name) for g in self.GROUPS]
        matched = overlay.apply("bob", groups, self.ITEMS)
        assert matched == {2}
        assert overlay.hides_group(1) and not overlay.hides_group(2)
        assert overlay.hides_item(10) and not overlay.hides_item(11)
        assert [g.expanded for g in groups] == [False, True]

    def test_item_in_two_groups_matches_both(self):
        overlay = SearchOverlay()
        assert overlay.apply("alin", [Group(1), Group(2)], self.ITEMS) == {1, 2}

    def test_inactive_overlay_hides_nothing(self):
        overlay = SearchOverlay()
        assert not overlay.active
        assert not overlay.hides_group(1)
        assert not overlay.hides_item(10)

    def test_empty_term_without_search_is_noop(self):
        overlay = SearchOverlay()
        groups = [Group(1, expanded=True)]
        assert overlay.apply("", groups, self.ITEMS) == set()
        assert groups[0].expanded


class TestTreeSearch:
    def test_search_and_clear(self, tree, static_transport):
        """Searching 'ali' shows Acme with only Alice; clearing restores the collapsed tree."""
        async def run():
            await tree.load()
            matched = await tree.search("ali")
            visible = [g.id for g in tree.visible_groups()]
            items = [i.id for i in tree.visible_items(1)]
            await tree.search("")
            return matched, visible, items

        matched, visible, items = asyncio.run(run())
        assert matched == {1}
        assert visible == [1]
        assert items == [10]
        assert _expanded(tree) == {1: False, 2: False}
        assert tree.group(1).loaded
        assert [g.id for g in tree.visible_groups()] == [1, 2]
        assert static_transport.count("GET /clients/5/authorized?client_id=2") == 0

    @pytest.mark.parametrize("initially_open", [[], [1], [2], [1, 2]])
    def test_clear_restores_prior_expand_state(self, tree, initially_open):
        async def run():
            await tree.load()
            for gid in initially_open:
                await tree.expand(gid)
            before = _expanded(tree)
            await tree.search("bob")
            await tree.search("ali")
            await tree.search("")
            return before

        before = asyncio.run(run())
        assert _expanded(tree) == before

    def test_refining_term_keeps_first_snapshot(self, tree):
        async def run():
            await tree.load()
            await tree.search("a")
            snapshot = tree.search_overlay.snapshot
            await tree.search("al")
            assert tree.search_overlay.snapshot is snapshot
            await tree.search("")

        asyncio.run(run())
        assert _expanded(tree) == {1: False, 2: False}

    def test_search_is_case_insensitive(self, tree):
        async def run():
            await tree.load()
            return await tree.search("BOB")

        assert asyncio.run(run()) == {2}
        assert tree.group(2).expanded

    def test_no_match_hides_everything(self, tree):
        async def run():
            await tree.load()
            return await tree.search("zed")

        assert asyncio.run(run()) == set()
        assert tree.visible_groups() == []

    def test_manage_mode_expands_and_loads_matches(self, static_store, static_transport):
        """Search opens matching clients in manage mode too, without fetching authorizations."""
        tree = AuthorizationTree(static_store, mode=TreeMode.MANAGE)

        async def run():
            await tree.load()
            matched = await tree.search("ali")
            items = [i.id for i in tree.visible_items(1)]
            await tree.search("")
            return matched, items

        matched, items = asyncio.run(run())
        assert matched == {1}
        assert items == [10]
        assert static_transport.count("GET /users?client_id=1") == 1
        assert static_transport.count("GET /clients/5/authorized?client_id=1") == 0
        assert not tree.group(1).expanded

    def test_expanding_hidden_group_keeps_it_filtered(self, tree, static_transport):
        """A group opened by hand during a search loads, but stays hidden while nothing in it matches."""
        carol = {"id": 12, "email": "carol@globex.test", "contact_name": "Carol", "client_ids": [2]}
        static_transport.routes["GET /users?client_id=2"].append(carol)

        async def run():
            await tree.load()
            await tree.search("ali")
            await tree.expand(2)

        asyncio.run(run())
        group = tree.group(2)
        assert group.expanded and group.loaded
        assert 12 in {i.id for i in tree.items()}
        assert [g.id for g in tree.visible_groups()] == [1]
        assert tree.visible_items(2) == []
        assert tree.search_overlay.hides_item(11) and tree.search_overlay.hides_item(12)

    def test_loaded_group_is_matched_on_recompute(self, tree, static_transport):
        """Members discovered by a later group load are searched as well."""
        static_transport.routes["GET /users"] = static_transport.routes["GET /users"][:1]

        async def run():
            await tree.load()
            first = await tree.search("bob")
            await tree.expand(2)
            return first

        assert asyncio.run(run()) == set()
        assert [g.id for g in tree.visible_groups()] == [2]
        assert [i.id for i in tree.visible_items(2)] == [11]

    def test_load_failure_does_not_abort_search(self, tree, static_transport, caplog):
        static_transport.failing.add("GET /clients/5/authorized?client_id=1")

        async def run():
            await tree.load()
            return await tree.search("ali")

        assert asyncio.run(run()) == {1}
        assert not tree.group(1).expanded
        assert not tree.group(1).loaded
        assert "Search could not load client 1" in caplog.text
