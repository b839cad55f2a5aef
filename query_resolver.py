"""
Answer a read from already-loaded local state instead of the network.
"""
from typing import Any, Callable, Hashable, Iterable, Mapping, Sequence

Predicate = Callable[[Any], bool]


def resolve(
    source: Sequence[Any] | Mapping[Hashable, Sequence[Any]] | None,
    filters: Iterable[Predicate | None] = (),
    key: Hashable | None = None,
    index: int | None = None,
) -> Any:
    """
    Filter `source` with every predicate in order (None entries are disabled filters).
    With `key`, `source` is a mapping and only source[key] is considered; a missing key is empty.
    With `index`, return the element at that position of the filtered list, or None when out of range.
    Never mutates `source` and never raises for missing data.
    """
    if key is not None:
        source = source.get(key) if isinstance(source, Mapping) else None
    rows = list(source) if source is not None else []
    for predicate in filters:
        if predicate is None:
            continue
        rows = [row for row in rows if predicate(row)]
    if index is None:
        return rows
    if 0 <= index < len(rows):
        return rows[index]
    return None
