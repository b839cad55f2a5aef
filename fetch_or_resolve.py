"""
Fetch-or-resolve façade: every read goes through here. When the ledger says the
request (or the broader requests that cover it) already completed, the answer is
derived from local state; otherwise the network call runs and is recorded.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable

from errors import NetworkFailure
from request_ledger import RequestKey, RequestLedger
from transport import Result

logger = logging.getLogger(__name__)

NetworkOp = Callable[[], Awaitable[Result]]
LocalOp = Callable[[], Any]


@dataclass(frozen=True)
class Cached:
    """Answer already available from local state."""

    value: Any


@dataclass(frozen=True)
class Fetch:
    """Answer pending on a network call (possibly shared with other callers)."""

    future: "asyncio.Future[Any]"


class FetchOrResolve:
    """Single integration point between reads, the ledger and the transport."""

    def __init__(self, ledger: RequestLedger) -> None:
        self.ledger = ledger
        self._in_flight: dict[RequestKey, asyncio.Future] = {}

    def plan(
        self,
        keys: Iterable[RequestKey | str],
        force_network: bool,
        network_op: NetworkOp,
        local_op: LocalOp,
        primary: RequestKey | str | None = None,
    ) -> Cached | Fetch:
        """Decide between local resolution and a (shared) network call. Must run inside an event loop."""
        keys = [RequestKey.coerce(k) for k in keys]
        if not keys:
            raise ValueError("At least one request key is required.")
        primary_key = RequestKey.coerce(primary) if primary is not None else keys[-1]
        if not force_network and self.ledger.is_satisfied(keys):
            logger.debug("Resolved %s from local state", primary_key)
            return Cached(local_op())
        # A forced call always reaches the network; it may not reuse an older answer.
        shared = None if force_network else self._in_flight.get(primary_key)
        if shared is not None and not shared.done() and primary_key in self.ledger:
            logger.debug("Joining in-flight request %s", primary_key)
            return Fetch(shared)
        self.ledger.mark_pending(primary_key)
        task = asyncio.ensure_future(self._fetch(primary_key, network_op))
        self._in_flight[primary_key] = task
        task.add_done_callback(lambda t, k=primary_key: self._release(k, t))
        return Fetch(task)

    async def request(
        self,
        keys: Iterable[RequestKey | str],
        force_network: bool,
        network_op: NetworkOp,
        local_op: LocalOp,
        primary: RequestKey | str | None = None,
    ) -> Any:
        """Return the local answer or await the network one. Raises NetworkFailure on a failed call."""
        planned = self.plan(keys, force_network, network_op, local_op, primary)
        if isinstance(planned, Cached):
            return planned.value
        return await planned.future

    async def _fetch(self, key: RequestKey, network_op: NetworkOp) -> Any:
        try:
            result = await network_op()
        except BaseException:
            self.ledger.discard(key)
            raise
        if not result.ok:
            self.ledger.discard(key)
            error = result.error or NetworkFailure("Request failed", url=key.url)
            logger.warning("Request %s failed: %s", key, error)
            raise error
        # Forgotten while in flight: the answer is used but not remembered.
        if key in self.ledger:
            self.ledger.mark_completed(key)
        return result.value

    def _release(self, key: RequestKey, task: asyncio.Future) -> None:
        if self._in_flight.get(key) is task:
            del self._in_flight[key]
