"""
Request ledger: remembers which API requests already completed so identical
reads can be answered from local state, and lets writers forget entries
(by exact key, regex or predicate) to force the next read back to the network.
"""
import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterable
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RequestKey:
    """Normalized identity of a request: method + canonical URL (query included)."""

    method: str
    url: str

    @classmethod
    def of(cls, url: str, method: str = "GET") -> "RequestKey":
        """Canonicalize: lower-case scheme/host, strip trailing slash, sort query parameters."""
        parts = urlsplit(url.strip())
        path = parts.path.rstrip("/")
        query = urlencode(sorted(parse_qsl(parts.query, keep_blank_values=True)))
        canonical = urlunsplit((parts.scheme.lower(), parts.netloc.lower(), path, query, ""))
        return cls(method.upper(), canonical)

    @classmethod
    def coerce(cls, value: "RequestKey | str") -> "RequestKey":
        """Accept a RequestKey or a plain URL (assumed GET)."""
        if isinstance(value, RequestKey):
            return value
        return cls.of(value)

    def __str__(self) -> str:
        return f"{self.method} {self.url}"


class LedgerStatus(Enum):
    PENDING = "pending"
    COMPLETED = "completed"


KeyMatcher = RequestKey | str | re.Pattern | Callable[[RequestKey], bool]


class RequestLedger:
    """Bookkeeping of request keys; never fails and never looks at response data."""

    def __init__(self) -> None:
        self._entries: dict[RequestKey, LedgerStatus] = {}

    def status(self, key: RequestKey | str) -> LedgerStatus | None:
        return self._entries.get(RequestKey.coerce(key))

    def is_pending(self, key: RequestKey | str) -> bool:
        return self.status(key) is LedgerStatus.PENDING

    def is_satisfied(self, keys: Iterable[RequestKey | str]) -> bool:
        """True iff every key has a completed entry. An empty list is never satisfied."""
        coerced = [RequestKey.coerce(k) for k in keys]
        if not coerced:
            return False
        return all(self._entries.get(k) is LedgerStatus.COMPLETED for k in coerced)

    def mark_pending(self, key: RequestKey | str) -> None:
        """Record an outstanding call; a completed entry stays completed."""
        key = RequestKey.coerce(key)
        if self._entries.get(key) is not LedgerStatus.COMPLETED:
            self._entries[key] = LedgerStatus.PENDING

    def mark_completed(self, key: RequestKey | str) -> None:
        self._entries[RequestKey.coerce(key)] = LedgerStatus.COMPLETED

    def discard(self, key: RequestKey | str) -> None:
        """Drop a pending entry (the call failed). Completed entries are kept."""
        key = RequestKey.coerce(key)
        if self._entries.get(key) is LedgerStatus.PENDING:
            del self._entries[key]

    def forget(self, matcher: KeyMatcher) -> int:
        """Remove matching entries. Regex patterns are searched in the canonical URL. Returns count removed."""
        if isinstance(matcher, re.Pattern):
            pattern = matcher
            matches = lambda k: pattern.search(k.url) is not None
        elif callable(matcher):
            matches = matcher
        else:
            exact = RequestKey.coerce(matcher)
            if isinstance(matcher, str):
                # A bare URL forgets every method recorded for it.
                matches = lambda k: k.url == exact.url
            else:
                matches = lambda k: k == exact
        removed = [k for k in self._entries if matches(k)]
        for k in removed:
            del self._entries[k]
        if removed:
            logger.debug("Forgot %d ledger entr%s: %s", len(removed), "y" if len(removed) == 1 else "ies",
                         ", ".join(str(k) for k in removed))
        return len(removed)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        if not isinstance(key, (RequestKey, str)):
            return False
        return RequestKey.coerce(key) in self._entries
