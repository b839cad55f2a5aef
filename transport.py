"""
Transports: an async callable (method, url, body) -> Result.
HttpTransport talks to the real API with httpx; LocalTransport serves the same
routes from a DatabaseManager (development backend and tests).
"""
import asyncio
import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, Protocol
from urllib.parse import parse_qsl, urlsplit

import httpx

from database_manager import DatabaseManager, NotFoundError
from errors import NetworkFailure

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Result:
    """Outcome of a transport call: ok with a value, or a NetworkFailure."""

    ok: bool
    value: Any = None
    error: NetworkFailure | None = None

    @classmethod
    def success(cls, value: Any = None) -> "Result":
        return cls(True, value)

    @classmethod
    def failure(cls, message: str, *, url: str | None = None, status: int | None = None) -> "Result":
        return cls(False, None, NetworkFailure(message, url=url, status=status))


class Transport(Protocol):
    async def __call__(self, method: str, url: str, body: str | None = None) -> Result: ...


def _error_message(response: httpx.Response) -> str:
    """Best-effort message from an error response ({"error": ...} / {"message": ...} or the reason phrase)."""
    try:
        data = response.json()
    except ValueError:
        return response.reason_phrase or f"HTTP {response.status_code}"
    if isinstance(data, dict):
        for field in ("error", "message", "detail"):
            if data.get(field):
                return str(data[field])
    return response.reason_phrase or f"HTTP {response.status_code}"


class HttpTransport:
    """JSON-over-HTTP transport. Timeouts are configured here; callers only see Result."""

    def __init__(
        self,
        *,
        timeout: float = 30.0,
        token: str | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._timeout = timeout
        self._token = token
        self._client = client

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {"Accept": "application/json"}
            if self._token:
                headers["Authorization"] = f"Bearer {self._token}"
            self._client = httpx.AsyncClient(headers=headers, timeout=httpx.Timeout(self._timeout))
        return self._client

    async def __call__(self, method: str, url: str, body: str | None = None) -> Result:
        headers = {"Content-Type": "application/json"} if body is not None else None
        try:
            response = await self.client.request(method, url, content=body, headers=headers)
        except httpx.TimeoutException as err:
            logger.warning("%s %s timed out: %s", method, url, err)
            return Result.failure("Request timed out", url=url)
        except httpx.HTTPError as err:
            logger.warning("%s %s failed: %s", method, url, err)
            return Result.failure(f"{type(err).__name__}: {err}", url=url)
        if not response.is_success:
            return Result.failure(_error_message(response), url=url, status=response.status_code)
        if not response.content:
            return Result.success(None)
        try:
            return Result.success(response.json())
        except ValueError:
            return Result.failure("Invalid JSON in response", url=url, status=response.status_code)

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


Handler = Callable[..., Any]

_ID = r"(?P<{}>\d+)"
_RES = r"(?P<resource_type>clients|projects|reports)"


def _int(value: Any, name: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValueError(f"{name} must be an integer.") from None


class LocalTransport:
    """Serves the admin API routes from a DatabaseManager, shaped like the HTTP API."""

    def __init__(self, db: DatabaseManager, api_url: str) -> None:
        self.db = db
        self._prefix = urlsplit(api_url).path.rstrip("/")
        self._routes: list[tuple[str, re.Pattern, Handler]] = [
            ("GET", r"/clients", self._list_clients),
            ("GET", r"/clients/" + _ID.format("client_id"), self._get_client),
            ("GET", r"/users", self._list_users),
            ("POST", r"/users", self._create_user),
            ("GET", r"/users/researchers", self._list_researchers),
            ("GET", r"/users/me", self._me),
            ("GET", r"/users/" + _ID.format("user_id"), self._get_user),
            ("PATCH", r"/users/" + _ID.format("user_id"), self._update_user),
            ("DELETE", r"/users/" + _ID.format("user_id"), self._delete_user),
            ("GET", r"/users/" + _ID.format("user_id") + r"/authorized", self._user_authorizations),
            ("POST", r"/users/" + _ID.format("user_id") + r"/scopes", self._set_scopes),
            ("GET", r"/scopes", self._list_scopes),
            ("GET", "/" + _RES + "/" + _ID.format("resource_id") + r"/authorized", self._authorized_users),
            ("POST", "/" + _RES + "/" + _ID.format("resource_id") + r"/authorize", self._authorize),
        ]
        self._routes = [(m, re.compile(p), h) for m, p, h in self._routes]

    async def __call__(self, method: str, url: str, body: str | None = None) -> Result:
        # Yield once so callers observe the same suspension point as a real network call.
        await asyncio.sleep(0)
        parts = urlsplit(url)
        path = parts.path.rstrip("/")
        if self._prefix and path.startswith(self._prefix):
            path = path[len(self._prefix):]
        query = dict(parse_qsl(parts.query))
        try:
            payload = json.loads(body) if body else {}
        except json.JSONDecodeError:
            return Result.failure("Malformed JSON body", url=url, status=400)
        for route_method, pattern, handler in self._routes:
            match = pattern.fullmatch(path)
            if route_method != method.upper() or match is None:
                continue
            try:
                return Result.success(handler(query, payload, **match.groupdict()))
            except NotFoundError as err:
                return Result.failure(str(err), url=url, status=404)
            except ValueError as err:
                return Result.failure(str(err), url=url, status=422)
        return Result.failure(f"No route for {method.upper()} {path}", url=url, status=404)

    # --- Route handlers ---

    def _list_clients(self, query, payload):
        return self.db.list_clients()

    def _get_client(self, query, payload, client_id):
        return self.db.get_client(int(client_id))

    def _list_users(self, query, payload):
        client_id = query.get("client_id")
        return self.db.list_users(_int(client_id, "client_id") if client_id else None)

    def _create_user(self, query, payload):
        data = dict(payload.get("user") or {})
        client_id = payload.get("client_id")
        email = data.pop("email", None)
        return self.db.create_user(
            email,
            client_id=_int(client_id, "client_id") if client_id is not None else None,
            authorize=query.get("no_auth") != "1",
            **{k: v for k, v in data.items() if v is not None},
        )

    def _list_researchers(self, query, payload):
        return self.db.list_researchers()

    def _me(self, query, payload):
        return self.db.my_authorizations()

    def _get_user(self, query, payload, user_id):
        return self.db.get_user(int(user_id))

    def _update_user(self, query, payload, user_id):
        return self.db.update_user(int(user_id), **dict(payload.get("user") or {}))

    def _delete_user(self, query, payload, user_id):
        client_id = query.get("client_id")
        self.db.delete_user(int(user_id), _int(client_id, "client_id") if client_id else None)
        return None

    def _user_authorizations(self, query, payload, user_id):
        return self.db.user_authorizations(int(user_id))

    def _set_scopes(self, query, payload, user_id):
        return self.db.set_user_scopes(int(user_id), payload)

    def _list_scopes(self, query, payload):
        return self.db.list_scopes()

    def _authorized_users(self, query, payload, resource_type, resource_id):
        client_id = _int(query.get("client_id"), "client_id")
        return self.db.authorized_users(resource_type, int(resource_id), client_id)

    def _authorize(self, query, payload, resource_type, resource_id):
        return self.db.authorize(
            resource_type,
            int(resource_id),
            _int(payload.get("user_id"), "user_id"),
            _int(payload.get("client_id"), "client_id"),
            bool(payload.get("authorize", False)),
        )
