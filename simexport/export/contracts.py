from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import List, Optional, Tuple  # noqa: UP035

from simexport.export.errors import ResolutionThresholdExceeded

# =========================
# Similarity rows
# =========================

@dataclass(frozen=True)
class SimilarityRow:
    """
    One source row of a similarity matrix.

    neighbors keeps the upstream ranking (score-descending, already top-N).
    """
    source_id: int
    neighbors: Tuple[Tuple[int, float], ...]


# =========================
# Export records
# =========================

@dataclass(frozen=True)
class MergedExportRecord:
    """
    One search-index document: the item plus both neighbor lists, all as external ids.
    """
    item_id: str
    similar_items: Tuple[str, ...] = ()
    cross_action_similar_items: Tuple[str, ...] = ()


# =========================
# Resolution warnings
# =========================

@dataclass
class ResolutionCounters:
    """
    Run-wide counters for ids that could not be resolved.

    Shared by every partition of a run, hence the lock. The threshold is
    checked on every increment so a drifting mapping aborts early.
    """
    max_warnings: Optional[int] = None
    sample_limit: int = 5

    unresolved_items: int = 0
    unresolved_neighbors: int = 0
    samples: List[str] = field(default_factory=list)

    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    @property
    def warnings(self) -> int:
        return self.unresolved_items + self.unresolved_neighbors

    def add_unresolved_item(self, internal_id: int) -> None:
        self._add("item", f"item {internal_id} has no external id, record skipped")

    def add_unresolved_neighbor(self, item_id: int, neighbor_id: int, matrix: str) -> None:
        self._add(
            "neighbor",
            f"{matrix} neighbor {neighbor_id} of item {item_id} has no external id, dropped",
        )

    def _add(self, kind: str, message: str) -> None:
        with self._lock:
            if kind == "item":
                self.unresolved_items += 1
            else:
                self.unresolved_neighbors += 1

            if len(self.samples) < self.sample_limit:
                self.samples.append(message)
                print(f"[WARN] {message}")
                if len(self.samples) == self.sample_limit:
                    print("[WARN] further resolution warnings are counted but not printed")

            total = self.unresolved_items + self.unresolved_neighbors

        if self.max_warnings is not None and total > self.max_warnings:
            raise ResolutionThresholdExceeded(
                f"{total} resolution warnings exceed the limit of {self.max_warnings}; "
                "the id mapping looks out of sync with the similarity matrices"
            )


__all__ = [
    "SimilarityRow",
    "MergedExportRecord",
    "ResolutionCounters",
]
