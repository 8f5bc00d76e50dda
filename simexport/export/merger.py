from __future__ import annotations

import threading
from typing import Iterable, Iterator, List, Optional  # noqa: UP035

from simexport.data.id_index import IdIndex
from simexport.export.contracts import MergedExportRecord, ResolutionCounters, SimilarityRow
from simexport.export.errors import ExportCancelled, UnresolvedItemError
from simexport.similarity.merge_join import merge_join


class RowMerger:
    """
    Builds one MergedExportRecord per item id found in either matrix.

    Both matrices are optional per item: a missing row gives an empty list.
    Unresolvable ids are counted, never fatal on their own:
    - the item itself -> record skipped
    - a neighbor -> dropped from its list, the rest keep their order
    ResolutionCounters raises once the run-wide warning limit is passed.
    """

    def __init__(
        self,
        item_index: IdIndex,
        counters: Optional[ResolutionCounters] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        self.item_index = item_index
        self.counters = counters or ResolutionCounters()
        self.cancel_event = cancel_event

    def _resolve_neighbors(self, item_id: int, row: Optional[SimilarityRow], matrix: str) -> tuple:
        if row is None:
            return ()

        out: List[str] = []
        for neighbor_id, _score in row.neighbors:
            ext = self.item_index.get_external(neighbor_id)
            if ext is None:
                self.counters.add_unresolved_neighbor(item_id, neighbor_id, matrix)
                continue
            out.append(ext)
        return tuple(out)

    def resolve_item(self, item_id: int) -> str:
        ext = self.item_index.get_external(item_id)
        if ext is None:
            raise UnresolvedItemError(self.item_index.kind, item_id)
        return ext

    def merge(
        self,
        item_id: int,
        primary: Optional[SimilarityRow],
        cross: Optional[SimilarityRow],
    ) -> Optional[MergedExportRecord]:
        try:
            external_id = self.resolve_item(item_id)
        except UnresolvedItemError:
            self.counters.add_unresolved_item(item_id)
            return None

        return MergedExportRecord(
            item_id=external_id,
            similar_items=self._resolve_neighbors(item_id, primary, "primary"),
            cross_action_similar_items=self._resolve_neighbors(item_id, cross, "cross-action"),
        )

    def merge_streams(
        self,
        primary_rows: Iterable[SimilarityRow],
        cross_rows: Optional[Iterable[SimilarityRow]] = None,
    ) -> Iterator[MergedExportRecord]:
        """Merge-join both row streams by source id and emit records in id order."""
        for item_id, (primary, cross) in merge_join(primary_rows, cross_rows or ()):
            if self.cancel_event is not None and self.cancel_event.is_set():
                raise ExportCancelled("export cancelled")

            record = self.merge(item_id, primary, cross)
            if record is not None:
                yield record
