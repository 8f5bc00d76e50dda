from __future__ import annotations

import heapq
from operator import attrgetter, itemgetter
from typing import Callable, Iterable, Iterator, List, Optional, Tuple, TypeVar  # noqa: UP035

from simexport.export.errors import MatrixFormatError

T = TypeVar("T")

_source_id = attrgetter("source_id")


def _tagged(stream: Iterable[T], pos: int, key: Callable[[T], int]) -> Iterator[Tuple[int, int, T]]:
    last = None
    for item in stream:
        k = key(item)
        if last is not None and k <= last:
            raise MatrixFormatError(
                f"stream {pos} is not strictly ascending: key {k} after {last}",
                stage="streaming",
            )
        last = k
        yield k, pos, item


def merge_join(
    *streams: Iterable[T],
    key: Callable[[T], int] = _source_id,
) -> Iterator[Tuple[int, List[Optional[T]]]]:
    """
    Sorted-stream full outer join.

    Each stream must be strictly ascending by key. Yields (key, slots) once per
    distinct key, where slots[i] is the element of stream i with that key or None.
    Only one element per stream is held at a time.
    """
    n = len(streams)
    merged = heapq.merge(
        *(_tagged(s, pos, key) for pos, s in enumerate(streams)),
        key=itemgetter(0, 1),
    )

    current: Optional[int] = None
    slots: List[Optional[T]] = [None] * n

    for k, pos, item in merged:
        if current is not None and k != current:
            yield current, slots
            slots = [None] * n
        current = k
        slots[pos] = item

    if current is not None:
        yield current, slots
