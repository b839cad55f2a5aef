"""
Error types for the Mercury admin data layer.
Empty query results are not errors: resolvers return [] or None.
"""


class AdminClientError(Exception):
    """Base class for errors raised by the data layer."""


class NetworkFailure(AdminClientError):
    """The transport reported a failed call (HTTP error, connection error, backend rejection)."""

    def __init__(self, message: str, *, url: str | None = None, status: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.url = url
        self.status = status

    def __str__(self) -> str:
        parts = [self.message]
        if self.status is not None:
            parts.append(f"status={self.status}")
        if self.url:
            parts.append(f"url={self.url}")
        return " ".join(parts)


class StaleWrite(AdminClientError):
    """An authorization write failed after its override was applied optimistically."""

    def __init__(self, group_id: int, item_id: int, value: bool) -> None:
        super().__init__(
            f"Authorization write for item {item_id} in group {group_id} failed; "
            f"local value {value} is not confirmed by the server."
        )
        self.group_id = group_id
        self.item_id = item_id
        self.value = value
