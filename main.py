"""
Mercury Admin: Flet permissions screen.
Grant mode toggles user authorizations on a client; Manage mode removes users from clients.
The backend is the local SQLite database unless MERCURY_BACKEND=http.
"""
import asyncio
import logging
from typing import Callable

import flet as ft

from authorization_tree import AuthorizationTree, TreeMode
from config import AppConfig, setup_logging
from database_manager import DatabaseManager
from errors import NetworkFailure, StaleWrite
from store import AdminStore, AuthorizationScope, SessionContext
from transport import HttpTransport, LocalTransport, Transport

__version__ = "v0.1.0"

logger = logging.getLogger(__name__)


def build_transport(config: AppConfig) -> Transport:
    """HTTP transport for the real API, or the local database backend (seeded in development)."""
    if config.backend == "http":
        return HttpTransport(timeout=config.request_timeout, token=config.api_token)
    db = DatabaseManager(
        db_path=config.db_path,
        database_url=config.database_url,
        current_user_id=config.user_id,
    )
    db.init_db()
    if config.is_development:
        db.seed_demo_data()
    return LocalTransport(db, config.api_url)


async def close_transport(transport: Transport) -> None:
    """Release the transport's connections (only the HTTP transport holds any)."""
    if isinstance(transport, HttpTransport):
        await transport.aclose()
        logger.debug("HTTP transport closed")


def build_group_controls(
    tree: AuthorizationTree,
    *,
    on_toggle_group: Callable[[int], None],
    on_toggle_item: Callable[[int, int, bool], None],
    on_delete_item: Callable[[int, int], None],
) -> list[ft.Control]:
    """One folding tile per visible client, with its visible users below (switch or delete button)."""
    items = tree.items()
    controls: list[ft.Control] = []
    for group in tree.visible_groups():
        member_count = sum(1 for item in items if group.id in item.group_ids)
        if group.loading:
            trailing = ft.ProgressRing(width=16, height=16)
        else:
            trailing = ft.Icon(ft.Icons.EXPAND_LESS if group.expanded else ft.Icons.EXPAND_MORE, size=20)
        controls.append(
            ft.ListTile(
                title=ft.Text(group.name or f"Client {group.id}", weight=ft.FontWeight.W_500),
                subtitle=ft.Text(f"{member_count} user(s)"),
                trailing=trailing,
                data=group.id,
                on_click=lambda e, g=group.id: on_toggle_group(g),
            )
        )
        rows = []
        for item in tree.visible_items(group.id):
            if tree.mode is TreeMode.GRANT:
                action = ft.Switch(
                    value=tree.get_status(group.id, item.id),
                    on_change=lambda e, g=group.id, i=item.id: on_toggle_item(g, i, bool(e.control.value)),
                )
            else:
                action = ft.IconButton(
                    icon=ft.Icons.DELETE,
                    tooltip="Remove from client",
                    on_click=lambda e, g=group.id, i=item.id: on_delete_item(g, i),
                )
            rows.append(ft.ListTile(title=ft.Text(item.name, size=14), trailing=action, data=item.id))
        controls.append(
            ft.Container(
                content=ft.Column(rows),
                visible=group.expanded,
                padding=ft.Padding.only(left=24),
            )
        )
    return controls


class PermissionsApp:
    """Flet UI: holds page, store and the two trees; handlers run as page tasks."""

    def __init__(self, page: ft.Page, store: AdminStore) -> None:
        self.page = page
        self.store = store
        self.tree_list_ref: ft.Ref[ft.Column] = ft.Ref()
        self.search_ref: ft.Ref[ft.TextField] = ft.Ref()
        self.manage_tree = AuthorizationTree(store, mode=TreeMode.MANAGE)
        self.grant_tree: AuthorizationTree | None = None
        self.tree: AuthorizationTree = self.manage_tree

    def _snack(self, message: str) -> None:
        self.page.snack_bar = ft.SnackBar(ft.Text(message), open=True)
        self.page.update()

    def refresh(self) -> None:
        if self.tree_list_ref.current is None:
            return
        self.tree_list_ref.current.controls = build_group_controls(
            self.tree,
            on_toggle_group=lambda g: self.page.run_task(self._toggle_group, g),
            on_toggle_item=lambda g, i, v: self.page.run_task(self._toggle_item, g, i, v),
            on_delete_item=lambda g, i: self.page.run_task(self._delete_item, g, i),
        )
        self.page.update()

    async def _load(self) -> None:
        try:
            await self.tree.load()
        except NetworkFailure as err:
            self._snack(f"Could not load clients and users: {err.message}")
        self.refresh()

    async def _toggle_group(self, group_id: int) -> None:
        expanding = asyncio.ensure_future(self.tree.expand(group_id))
        self.refresh()
        try:
            await expanding
        except NetworkFailure as err:
            self._snack(f"Could not load client: {err.message}")
        self.refresh()

    async def _toggle_item(self, group_id: int, item_id: int, value: bool) -> None:
        write = self.tree.set_status(group_id, item_id, value)
        self.refresh()
        try:
            await write
        except StaleWrite as err:
            # The switch keeps the local value; the user is told it is unconfirmed.
            self._snack(str(err))
        self.refresh()

    async def _delete_item(self, group_id: int, item_id: int) -> None:
        try:
            await self.store.delete_user(item_id, client_id=group_id)
        except NetworkFailure as err:
            self._snack(f"Could not remove user: {err.message}")
        self.refresh()

    async def _search(self, term: str) -> None:
        await self.tree.search(term)
        self.refresh()

    async def _switch_tree(self, tree: AuthorizationTree) -> None:
        if self.tree.search_overlay.active:
            await self.tree.search("")
        if self.search_ref.current is not None:
            self.search_ref.current.value = ""
        self.tree = tree
        await self._load()

    def _grant_tree_for(self, client_id: int) -> AuthorizationTree:
        if self.grant_tree is None or self.grant_tree.scope != AuthorizationScope.of(client_id=client_id):
            self.grant_tree = AuthorizationTree(self.store, AuthorizationScope.of(client_id=client_id))
        return self.grant_tree

    def setup(self, clients: list[dict]) -> None:
        page = self.page
        scope_dd = ft.Dropdown(
            label="Grant access to",
            width=320,
            options=[ft.DropdownOption(key=str(c["id"]), text=c["name"]) for c in clients],
            value=str(clients[0]["id"]) if clients else None,
            on_select=lambda e: page.run_task(self._switch_tree, self._grant_tree_for(int(e.control.value))),
            visible=False,
        )

        def on_rail_change(e):
            grant = e.control.selected_index == 1 and bool(clients)
            scope_dd.visible = grant
            tree = self._grant_tree_for(int(scope_dd.value)) if grant else self.manage_tree
            page.run_task(self._switch_tree, tree)

        rail = ft.NavigationRail(
            selected_index=0,
            label_type=ft.NavigationRailLabelType.ALL,
            min_width=100,
            destinations=[
                ft.NavigationRailDestination(icon=ft.Icons.PEOPLE, selected_icon=ft.Icons.PEOPLE, label="Manage"),
                ft.NavigationRailDestination(icon=ft.Icons.LOCK_OPEN, selected_icon=ft.Icons.LOCK_OPEN, label="Grant"),
            ],
            on_change=on_rail_change,
        )
        search_field = ft.TextField(
            ref=self.search_ref,
            label="Search user",
            width=320,
            on_change=lambda e: page.run_task(self._search, e.control.value or ""),
        )
        body = ft.Column(
            [
                ft.Text("User permissions", size=24, weight=ft.FontWeight.BOLD),
                ft.Container(height=16),
                ft.Row([search_field, scope_dd], spacing=12),
                ft.Container(height=8),
                ft.Column(ref=self.tree_list_ref, controls=[], scroll=ft.ScrollMode.AUTO, expand=True),
            ],
            expand=True,
        )
        page.add(ft.Row([rail, ft.VerticalDivider(width=1), body], expand=True))
        page.run_task(self._load)


async def main(page: ft.Page) -> None:
    config = AppConfig.from_env()
    setup_logging(config.log_level)
    page.theme_mode = ft.ThemeMode.DARK
    page.title = f"Mercury Admin {__version__}"
    page.padding = 24
    transport = build_transport(config)
    store = AdminStore(SessionContext(), transport, config.api_url)

    async def on_close(e):
        await close_transport(transport)

    page.on_close = on_close
    try:
        clients = await store.get_clients()
    except NetworkFailure as err:
        logger.error("Startup failed: %s", err)
        page.add(ft.Text(f"Could not reach the API: {err}"))
        page.update()
        return
    app = PermissionsApp(page, store)
    app.setup(clients)
    page.update()


if __name__ == "__main__":
    ft.run(main)
