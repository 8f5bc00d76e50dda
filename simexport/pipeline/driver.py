from __future__ import annotations

import json
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple  # noqa: UP035

import polars as pl
from tqdm import tqdm

from simexport.config.settings import ExportSettings, settings
from simexport.data.id_index import IdIndex, load_id_index
from simexport.export.contracts import ResolutionCounters
from simexport.export.errors import ExportCancelled, ExportError, ExportIOError
from simexport.export.merger import RowMerger
from simexport.export.writer import ShardedCsvWriter
from simexport.pipeline.cleanup import clean_output_dir
from simexport.similarity.reader import SimilarityRowReader, open_optional


class PipelineState(str, Enum):
    IDLE = "idle"
    INDEXES_LOADED = "indexes_loaded"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class ExportReport:
    state: PipelineState = PipelineState.IDLE
    records_written: int = 0
    unresolved_items: int = 0
    unresolved_neighbors: int = 0
    shards: List[str] = field(default_factory=list)
    elapsed_sec: float = 0.0

    # Failure details
    failed_stage: Optional[str] = None
    error_category: Optional[str] = None
    error: Optional[str] = None

    @property
    def warnings(self) -> int:
        return self.unresolved_items + self.unresolved_neighbors

    @property
    def ok(self) -> bool:
        return self.state == PipelineState.COMPLETED

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["state"] = self.state.value
        d["warnings"] = self.warnings
        return d


def split_id_range(lo: int, hi: int, parts: int) -> List[Tuple[int, int]]:
    """Split [lo, hi) into at most `parts` contiguous, disjoint, non-empty ranges."""
    if hi <= lo:
        return []
    parts = max(1, min(parts, hi - lo))
    size = -(-(hi - lo) // parts)
    return [(start, min(start + size, hi)) for start in range(lo, hi, size)]


class ExportPipeline:
    """
    Idle -> IndexesLoaded -> Streaming -> Completed / Failed.

    - load_indexes(): item + user index, fatal on any load problem
    - open_readers(): primary matrix required, cross-action matrix optional
    - stream():       clean the output location, merge-join, write shards

    run() drives all three and never raises ExportError: the failure is
    classified into the returned ExportReport. Partial shards stay on disk.
    """

    def __init__(self, cfg: Optional[ExportSettings] = None) -> None:
        self.cfg = cfg or settings
        self.state = PipelineState.IDLE
        self.stage = "config"

        self.item_index: Optional[IdIndex] = None
        self.user_index: Optional[IdIndex] = None
        self.counters = ResolutionCounters(max_warnings=self.cfg.MAX_RESOLUTION_WARNINGS)

        self._primary: Optional[SimilarityRowReader] = None
        self._cross: Optional[SimilarityRowReader] = None
        self._readers: List[SimilarityRowReader] = []
        self._writers: List[ShardedCsvWriter] = []
        self._cancel = threading.Event()
        self._output_owned = False

    # ---------------------------
    # Control
    # ---------------------------
    def cancel(self) -> None:
        """Cooperative abort; the streaming loop stops at the next record."""
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def _require(self, state: PipelineState) -> None:
        if self.state != state:
            raise RuntimeError(f"pipeline is {self.state.value}, expected {state.value}")

    # ---------------------------
    # Idle -> IndexesLoaded
    # ---------------------------
    def load_indexes(self) -> None:
        self._require(PipelineState.IDLE)
        self.stage = "load_indexes"
        cfg = self.cfg

        print("[START] Loading item index...")
        self.item_index = load_id_index(
            cfg.item_index_path,
            kind="item",
            internal_col=cfg.INDEX_INTERNAL_COLUMN,
            external_col=cfg.INDEX_EXTERNAL_COLUMN,
            reserved=cfg.reserved_characters(),
        )
        print(f"[OK] item ids: {len(self.item_index)}")

        print("[START] Loading user index...")
        self.user_index = load_id_index(
            cfg.user_index_path,
            kind="user",
            internal_col=cfg.INDEX_INTERNAL_COLUMN,
            external_col=cfg.INDEX_EXTERNAL_COLUMN,
        )
        print(f"[OK] user ids: {len(self.user_index)}")

        self.state = PipelineState.INDEXES_LOADED

    # ---------------------------
    # IndexesLoaded -> Streaming
    # ---------------------------
    def _open_reader(
        self,
        path: Path,
        name: str,
        id_range: Optional[Tuple[int, int]] = None,
    ) -> SimilarityRowReader:
        reader = SimilarityRowReader.open(path, **self._reader_kwargs(name, id_range))
        self._readers.append(reader)
        return reader

    def _reader_kwargs(self, name: str, id_range: Optional[Tuple[int, int]] = None) -> Dict[str, Any]:
        cfg = self.cfg
        return {
            "name": name,
            "row_col": cfg.MATRIX_ROW_COLUMN,
            "col_col": cfg.MATRIX_COL_COLUMN,
            "score_col": cfg.MATRIX_SCORE_COLUMN,
            "window": cfg.ROW_WINDOW,
            "id_range": id_range,
        }

    def open_readers(self) -> None:
        self._require(PipelineState.INDEXES_LOADED)
        self.stage = "open_readers"

        print("[START] Opening similarity matrices...")
        self._primary = self._open_reader(self.cfg.ITEM_SIMILARITY_MATRIX_DIR, "primary")
        # full scan for null ids before the output location is cleaned
        self._primary.id_bounds()
        print(f"[PATH] primary: {self._primary.path}")

        self._cross = open_optional(self.cfg.CROSS_SIMILARITY_MATRIX_DIR, **self._reader_kwargs("cross-action"))
        if self._cross is None:
            print("[WARN] No cross-action matrix, cross-action lists will be empty.")
        else:
            self._readers.append(self._cross)
            self._cross.id_bounds()
            print(f"[PATH] cross-action: {self._cross.path}")

    def _partition_ranges(self) -> List[Tuple[int, int]]:
        bounds = [r.id_bounds() for r in (self._primary, self._cross) if r is not None]
        bounds = [b for b in bounds if b is not None]
        if not bounds:
            return []
        lo = min(b[0] for b in bounds)
        hi = max(b[1] for b in bounds) + 1
        return split_id_range(lo, hi, self.cfg.PARTITIONS)

    def _make_writer(self, partition: int) -> ShardedCsvWriter:
        cfg = self.cfg
        writer = ShardedCsvWriter(
            cfg.OUTPUT_DIR,
            field_names=cfg.field_names,
            delimiter=cfg.FIELD_DELIMITER,
            list_delimiter=cfg.LIST_DELIMITER,
            write_header=cfg.WRITE_HEADER,
            max_records_per_shard=cfg.MAX_RECORDS_PER_SHARD,
            max_bytes_per_shard=cfg.MAX_BYTES_PER_SHARD,
            partition=partition,
        )
        self._writers.append(writer)
        return writer

    def _export_partition(
        self,
        partition: int,
        primary: SimilarityRowReader,
        cross: Optional[SimilarityRowReader],
    ) -> int:
        merger = RowMerger(self.item_index, self.counters, cancel_event=self._cancel)
        writer = self._make_writer(partition)

        try:
            records = merger.merge_streams(primary.rows(), cross.rows() if cross is not None else None)
            for record in tqdm(
                records,
                desc=f"Exporting partition {partition}",
                unit=" items",
                position=partition,
                disable=not self.cfg.SHOW_PROGRESS,
            ):
                writer.write(record)
        finally:
            writer.close()
            primary.close()
            if cross is not None:
                cross.close()

        return writer.records_written

    def _run_partition(self, partition: int, id_range: Tuple[int, int]) -> int:
        primary = self._open_reader(self.cfg.ITEM_SIMILARITY_MATRIX_DIR, "primary", id_range)
        cross = None
        if self._cross is not None:
            cross = self._open_reader(self.cfg.CROSS_SIMILARITY_MATRIX_DIR, "cross-action", id_range)
        return self._export_partition(partition, primary, cross)

    def stream(self) -> None:
        self._require(PipelineState.INDEXES_LOADED)
        if self._primary is None:
            raise RuntimeError("open_readers() must run before stream()")

        self.stage = "cleanup"
        clean_output_dir(self.cfg.OUTPUT_DIR)
        self._output_owned = True

        self.state = PipelineState.STREAMING
        self.stage = "streaming"

        if self.cfg.PARTITIONS <= 1:
            self._export_partition(0, self._primary, self._cross)
            return

        ranges = self._partition_ranges()
        print(f"[START] Streaming {len(ranges)} partitions: {ranges}")
        if not ranges:
            return

        with ThreadPoolExecutor(max_workers=len(ranges)) as pool:
            futures = {pool.submit(self._run_partition, p, r): p for p, r in enumerate(ranges)}
            for fut in as_completed(futures):
                try:
                    fut.result()
                except BaseException:
                    # stop the sibling partitions before the pool joins them
                    self._cancel.set()
                    raise

    # ---------------------------
    # Driver
    # ---------------------------
    def _close_all(self) -> None:
        for w in self._writers:
            try:
                w.close()
            except ExportIOError as e:
                print(f"[WARN] {e}")
        for r in self._readers:
            r.close()

    def _fail(self, e: ExportError, report: ExportReport) -> None:
        self.state = PipelineState.FAILED
        report.failed_stage = e.stage
        report.error_category = e.category
        report.error = str(e)
        print(f"[ERROR] stage '{e.stage}' failed ({e.category}): {e}")

    def _write_metadata(self, report: ExportReport) -> None:
        out_dir = Path(self.cfg.OUTPUT_DIR)
        path = out_dir / self.cfg.METADATA_FILENAME
        payload = {
            "created_at": time.strftime("%Y-%m-%dT%H:%M:%S%z"),
            "report": report.to_dict(),
            "options": self.cfg.model_dump(mode="json", exclude={"PROJECT_ROOT", "DATA_DIR"}),
        }
        try:
            out_dir.mkdir(parents=True, exist_ok=True)
            path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        except OSError as e:
            print(f"[WARN] could not write run metadata {path}: {e}")
            return
        print(f"[PATH] {path}")

    def run(self) -> ExportReport:
        t0 = time.time()
        report = ExportReport()

        try:
            self.cfg.validate_for_run()
            print("[START] Similarity index export with options:")
            print(self.cfg.describe())

            self.load_indexes()
            self.open_readers()
            self.stream()
            self.state = PipelineState.COMPLETED
        except ExportError as e:
            self._fail(e, report)
        except (OSError, pl.exceptions.PolarsError) as e:
            self._fail(ExportIOError(str(e), stage=self.stage), report)
        except KeyboardInterrupt:
            self._cancel.set()
            self._fail(ExportCancelled("interrupted", stage=self.stage), report)
        finally:
            self._close_all()

        report.state = self.state
        report.records_written = sum(w.records_written for w in self._writers)
        report.unresolved_items = self.counters.unresolved_items
        report.unresolved_neighbors = self.counters.unresolved_neighbors
        report.shards = sorted(p.name for w in self._writers for p in w.shard_paths)
        report.elapsed_sec = round(time.time() - t0, 3)

        if self._output_owned:
            self._write_metadata(report)

        if report.ok:
            print("[DONE] Similarity index export complete.")
        else:
            print("[DONE] Similarity index export FAILED, partial output left in place.")
        print(f"[OK] records written: {report.records_written}")
        print(f"[OK] shards: {len(report.shards)}")
        print(
            f"[OK] resolution warnings: {report.warnings} "
            f"(items skipped: {report.unresolved_items}, neighbors dropped: {report.unresolved_neighbors})"
        )
        print(f"[OK] Total time: {report.elapsed_sec:.2f}s")
        return report


def run_export(cfg: Optional[ExportSettings] = None) -> ExportReport:
    return ExportPipeline(cfg).run()
