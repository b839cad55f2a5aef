"""
Session store and API actions.

SessionContext holds everything that lives for one application session: the
request ledger, the fetch-or-resolve façade and the collections loaded so far.
AdminStore exposes the API operations; reads go through FetchOrResolve and are
reduced into the context only when they actually came from the network.
"""
import asyncio
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable
from urllib.parse import urlencode

from errors import NetworkFailure
from fetch_or_resolve import Cached, FetchOrResolve
from query_resolver import resolve
from request_ledger import RequestLedger
from transport import Transport

logger = logging.getLogger(__name__)

# Every scoped "authorized users" listing, for any resource and client context.
AUTHORIZED_LISTINGS = re.compile(r"/authorized\?client_id=[0-9]+")


@dataclass(frozen=True)
class AuthorizationScope:
    """Resource the authorizations apply to: ('clients' | 'projects' | 'reports', id)."""

    resource_path: str
    resource_id: int

    @classmethod
    def of(
        cls,
        client_id: int | None = None,
        project_id: int | None = None,
        report_id: int | None = None,
    ) -> "AuthorizationScope":
        """The most specific id wins: report, then project, then client."""
        if report_id is not None:
            return cls("reports", report_id)
        if project_id is not None:
            return cls("projects", project_id)
        if client_id is not None:
            return cls("clients", client_id)
        raise ValueError("A client, project or report id is required.")

    def record_key(self, context_id: int) -> str:
        """Key of the authoritative record for this scope under a client context."""
        return f"{self.resource_path}-{self.resource_id}@{context_id}"


@dataclass
class SessionContext:
    ledger: RequestLedger = field(default_factory=RequestLedger)
    clients: list[dict] = field(default_factory=list)
    users: list[dict] = field(default_factory=list)
    researchers: list[dict] = field(default_factory=list)
    scopes: list[str] = field(default_factory=list)
    # user id -> authorization rows of that user
    authorizations: dict[int, list[dict]] = field(default_factory=dict)
    # AuthorizationScope.record_key(context) -> [{id, authorized}]
    authorized_users: dict[str, list[dict]] = field(default_factory=dict)
    # user id -> {scope name: granted}
    user_scopes: dict[int, dict] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.fetcher = FetchOrResolve(self.ledger)


def _upsert(rows: list[dict], row: dict | None) -> list[dict]:
    """Replace the row with the same id, or append it. Returns a new list."""
    if row is None:
        return list(rows)
    out = list(rows)
    for i, existing in enumerate(out):
        if existing.get("id") == row.get("id"):
            out[i] = row
            return out
    out.append(row)
    return out


def _member_of(client_id: int) -> Callable[[dict], bool]:
    return lambda user: client_id in (user.get("client_ids") or [])


class AdminStore:
    """API actions over a transport, cached through the session's ledger."""

    def __init__(self, context: SessionContext, transport: Transport, api_url: str) -> None:
        self.context = context
        self.transport = transport
        self.api_url = api_url.rstrip("/")

    @property
    def ledger(self) -> RequestLedger:
        return self.context.ledger

    def url(self, path: str, **params: Any) -> str:
        query = {k: v for k, v in params.items() if v is not None}
        return f"{self.api_url}{path}" + (f"?{urlencode(query)}" if query else "")

    async def _read(
        self,
        keys: list[str],
        url: str,
        local_op: Callable[[], Any],
        reduce: Callable[[Any], None],
        force: bool = False,
    ) -> Any:
        planned = self.context.fetcher.plan(
            keys, force, lambda: self.transport("GET", url), local_op, primary=url
        )
        if isinstance(planned, Cached):
            return planned.value
        value = await planned.future
        reduce(value)
        return value

    async def _write(self, method: str, url: str, body: Any = None) -> Any:
        result = await self.transport(method, url, json.dumps(body) if body is not None else None)
        if not result.ok:
            error = result.error or NetworkFailure("Request failed", url=url)
            logger.warning("%s %s failed: %s", method, url, error)
            raise error
        return result.value

    # --- Clients ---

    async def get_clients(self, force: bool = False) -> list[dict]:
        url = self.url("/clients")

        def reduce(value):
            self.context.clients = list(value or [])

        return await self._read([url], url, lambda: resolve(self.context.clients), reduce, force)

    async def get_client(self, client_id: int) -> dict | None:
        url = self.url(f"/clients/{client_id}")

        def reduce(value):
            self.context.clients = _upsert(self.context.clients, value)

        return await self._read(
            [self.url("/clients"), url],
            url,
            lambda: resolve(self.context.clients, [lambda c: c.get("id") == client_id], index=0),
            reduce,
        )

    # --- Users ---

    async def get_users(self, client_id: int | None = None, force: bool = False) -> list[dict]:
        """All users, or the members of client_id. A scoped listing is answered locally only when
        both the unscoped and the scoped listing were fetched before."""
        unscoped = self.url("/users")
        url = self.url("/users", client_id=client_id)
        keys = [unscoped] if client_id is None else [unscoped, url]

        def reduce(value):
            if client_id is None:
                self.context.users = list(value or [])
            else:
                for row in value or []:
                    self.context.users = _upsert(self.context.users, row)

        filters = [_member_of(client_id) if client_id is not None else None]
        return await self._read(keys, url, lambda: resolve(self.context.users, filters), reduce, force)

    async def get_user(self, user_id: int) -> dict | None:
        url = self.url(f"/users/{user_id}")

        def reduce(value):
            self.context.users = _upsert(self.context.users, value)

        return await self._read(
            [self.url("/users"), url],
            url,
            lambda: resolve(self.context.users, [lambda u: u.get("id") == user_id], index=0),
            reduce,
        )

    async def create_user(self, data: dict, client_id: int | None = None, no_auth: bool = False) -> dict:
        """Create (invite) a user. Every scoped authorized-users listing becomes stale."""
        url = self.url("/users", no_auth=1 if no_auth else None)
        body = {"user": data}
        if client_id is not None:
            body["client_id"] = client_id
        user = await self._write("POST", url, body)
        self.ledger.forget(AUTHORIZED_LISTINGS)
        self.context.users = _upsert(self.context.users, user)
        return user

    async def update_user(self, user_id: int, data: dict) -> dict:
        user = await self._write("PATCH", self.url(f"/users/{user_id}"), {"user": data})
        self.context.users = _upsert(self.context.users, user)
        return user

    async def delete_user(self, user_id: int, client_id: int | None = None) -> None:
        """Delete a user, or only remove them from client_id."""
        await self._write("DELETE", self.url(f"/users/{user_id}", client_id=client_id))
        if client_id is None:
            self.context.users = [u for u in self.context.users if u.get("id") != user_id]
            self.context.authorizations.pop(user_id, None)
            self.ledger.forget(self.url(f"/users/{user_id}"))
        else:
            updated = []
            for user in self.context.users:
                if user.get("id") == user_id:
                    user = {**user, "client_ids": [c for c in user.get("client_ids") or [] if c != client_id]}
                updated.append(user)
            self.context.users = updated
        self.ledger.forget(self.url(f"/users/{user_id}/authorized"))
        self.ledger.forget(AUTHORIZED_LISTINGS)

    async def get_researchers(self) -> list[dict]:
        url = self.url("/users/researchers")

        def reduce(value):
            self.context.researchers = list(value or [])

        return await self._read([url], url, lambda: resolve(self.context.researchers), reduce)

    async def get_scopes(self) -> list[str]:
        url = self.url("/scopes")

        def reduce(value):
            self.context.scopes = list(value or [])

        return await self._read([url], url, lambda: resolve(self.context.scopes), reduce)

    # --- Authorizations ---

    async def get_user_authorizations(self, user_id: int, force: bool = False) -> list[dict]:
        url = self.url(f"/users/{user_id}/authorized")

        def reduce(value):
            self.context.authorizations[user_id] = list(value or [])

        return await self._read(
            [url], url, lambda: resolve(self.context.authorizations, key=user_id), reduce, force
        )

    async def get_my_authorizations(self, user_id: int) -> list[dict]:
        """Authorizations of the signed-in user (stored under their id)."""
        url = self.url("/users/me")

        def reduce(value):
            self.context.authorizations[user_id] = list(value or [])

        return await self._read(
            [url], url, lambda: resolve(self.context.authorizations, key=user_id), reduce
        )

    async def get_authorized_users(
        self, context_id: int, scope: AuthorizationScope, force: bool = False
    ) -> list[dict]:
        """Members of client context_id with their authorization flag on scope."""
        url = self.url(f"/{scope.resource_path}/{scope.resource_id}/authorized", client_id=context_id)
        record_key = scope.record_key(context_id)

        def reduce(value):
            self.context.authorized_users[record_key] = list(value or [])

        return await self._read(
            [url], url, lambda: resolve(self.context.authorized_users, key=record_key), reduce, force
        )

    async def authorize_user(
        self,
        user_id: int,
        context_id: int | None,
        scope: AuthorizationScope | None,
        states: dict | None = None,
        is_global: bool = False,
    ) -> Any:
        """
        Write an authorization ({"authorize": bool} for a resource, or {scope: bool} when global),
        then refresh the user's own authorization list. Only a failed write raises;
        a failed refresh is logged and leaves the list to be fetched on next read.
        """
        states = states or {}
        if is_global:
            value = await self._write("POST", self.url(f"/users/{user_id}/scopes"), states)
            self.context.user_scopes[user_id] = dict(value or {})
        else:
            if scope is None:
                raise ValueError("A resource scope is required for a non-global authorization.")
            body = {"user_id": user_id, "client_id": context_id, **states}
            value = await self._write(
                "POST", self.url(f"/{scope.resource_path}/{scope.resource_id}/authorize"), body
            )
        self.ledger.forget(self.url(f"/users/{user_id}/authorized"))
        try:
            await self.get_user_authorizations(user_id)
        except NetworkFailure as err:
            logger.warning("Authorization refresh failed for user %s: %s", user_id, err)
        return value

    async def refresh_authorizations(
        self, scope: AuthorizationScope, user_id: int, context_id: int
    ) -> None:
        """Re-fetch both views of an authorization (scope listing and user list); failures are logged."""
        results = await asyncio.gather(
            self.get_authorized_users(context_id, scope, force=True),
            self.get_user_authorizations(user_id, force=True),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, NetworkFailure):
                logger.warning("Authorization refresh failed: %s", result)
            elif isinstance(result, BaseException):
                raise result
