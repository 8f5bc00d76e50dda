from __future__ import annotations

from pathlib import Path
from typing import Iterator, List, Optional, Tuple  # noqa: UP035

import polars as pl

from simexport.export.contracts import SimilarityRow
from simexport.export.errors import ExportIOError, MatrixFormatError, MatrixNotFoundError


def _source_files(path: Path) -> List[Path]:
    if path.is_dir():
        return sorted(p for p in path.glob("*.parquet") if p.is_file())
    if path.is_file():
        return [path]
    return []


class SimilarityRowReader:
    """
    Lazy, single-use reader over one similarity matrix.

    Memory is bounded by `window`: the matrix is scanned lazily and only the
    triples whose source id falls in [start, start + window) are collected at
    a time. Within a row the input order is kept, no re-ranking happens here.

    Each window is a separate filtered scan, so a full read costs about
    (id span / window) passes over the files. Parquet row-group statistics
    let polars skip most of them only when the files are written sorted by
    row_id; for unsorted inputs raise `window` or pre-sort upstream.

    Id columns must be integer typed and free of nulls (MatrixFormatError),
    never cast from floats or silently dropped.

    id_range restricts the reader to a half-open [lo, hi) slice of source ids,
    which is how a run is partitioned across workers.
    """

    def __init__(
        self,
        path: str | Path,
        name: str = "primary",
        row_col: str = "row_id",
        col_col: str = "col_id",
        score_col: str = "score",
        window: int = 100_000,
        id_range: Optional[Tuple[int, int]] = None,
    ) -> None:
        self.path = Path(path)
        self.name = name
        self.window = max(1, int(window))
        self.id_range = id_range

        self._files = _source_files(self.path)
        if not self._files:
            raise MatrixNotFoundError(f"{name} similarity matrix not found: {self.path}")

        lf = pl.scan_parquet(self._files)
        try:
            schema = lf.collect_schema()
        except (pl.exceptions.PolarsError, OSError) as e:
            raise MatrixFormatError(f"{name} similarity matrix unreadable: {self.path}: {e}") from e

        missing = [c for c in (row_col, col_col, score_col) if c not in schema.names()]
        if missing:
            raise MatrixFormatError(f"{name} similarity matrix {self.path} is missing columns {missing}")

        for c in (row_col, col_col):
            if not schema[c].is_integer():
                raise MatrixFormatError(
                    f"{name} similarity matrix {self.path} column {c!r} is {schema[c]}, expected integer ids"
                )
        if not schema[score_col].is_numeric():
            raise MatrixFormatError(
                f"{name} similarity matrix {self.path} column {score_col!r} is {schema[score_col]}, expected numeric"
            )

        self._lf = lf.select(
            pl.col(row_col).cast(pl.Int64).alias("row_id"),
            pl.col(col_col).cast(pl.Int64).alias("col_id"),
            pl.col(score_col).cast(pl.Float64).alias("score"),
        )

        self._bounds: Optional[Tuple[int, int]] = None
        self._scanned = False
        self._consumed = False
        self._closed = False

    @classmethod
    def open(cls, path: str | Path, **kwargs) -> SimilarityRowReader:
        return cls(path, **kwargs)

    def __enter__(self) -> SimilarityRowReader:
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def close(self) -> None:
        self._closed = True

    def id_bounds(self) -> Optional[Tuple[int, int]]:
        """
        (min, max) source id present in the matrix, None when it has no rows.

        The same full scan rejects null ids; the result is cached.
        """
        if self._scanned:
            return self._bounds

        try:
            stats = self._lf.select(
                pl.col("row_id").min().alias("lo"),
                pl.col("row_id").max().alias("hi"),
                pl.col("row_id").null_count().alias("null_rows"),
                pl.col("col_id").null_count().alias("null_cols"),
            ).collect()
        except (pl.exceptions.PolarsError, OSError) as e:
            raise ExportIOError(f"{self.name} similarity matrix unreadable: {e}", stage="open_readers") from e

        lo, hi, null_rows, null_cols = stats.row(0)
        if null_rows or null_cols:
            raise MatrixFormatError(
                f"{self.name} similarity matrix {self.path} has {null_rows} null row ids "
                f"and {null_cols} null col ids"
            )

        self._scanned = True
        self._bounds = None if lo is None else (int(lo), int(hi))
        return self._bounds

    def _window_starts(self) -> Iterator[int]:
        bounds = self.id_bounds()
        if bounds is None:
            return
        lo, hi = bounds[0], bounds[1] + 1
        if self.id_range is not None:
            lo = max(lo, self.id_range[0])
            hi = min(hi, self.id_range[1])
        yield from range(lo, hi, self.window)

    def _collect_window(self, start: int, stop: int) -> pl.DataFrame:
        if self.id_range is not None:
            stop = min(stop, self.id_range[1])
        try:
            chunk = self._lf.filter(
                (pl.col("row_id") >= start) & (pl.col("row_id") < stop)
            ).collect()
        except (pl.exceptions.PolarsError, OSError) as e:
            raise ExportIOError(f"{self.name} similarity matrix unreadable mid-stream: {e}") from e

        # stable sort keeps the upstream neighbor ranking inside each row
        return (
            chunk.sort("row_id", maintain_order=True)
            .group_by("row_id", maintain_order=True)
            .agg(pl.col("col_id"), pl.col("score"))
        )

    def rows(self) -> Iterator[SimilarityRow]:
        if self._consumed:
            raise RuntimeError(f"{self.name} reader already consumed; open a new one to re-read")
        self._consumed = True

        for start in self._window_starts():
            if self._closed:
                return
            grouped = self._collect_window(start, start + self.window)
            for row_id, col_ids, scores in grouped.iter_rows():
                if self._closed:
                    return
                yield SimilarityRow(
                    source_id=int(row_id),
                    neighbors=tuple(zip((int(c) for c in col_ids), (float(s) for s in scores))),
                )

    def __iter__(self) -> Iterator[SimilarityRow]:
        return self.rows()


def open_optional(path: Optional[str | Path], **kwargs) -> Optional[SimilarityRowReader]:
    """Open a reader when a location is configured and exists, else None."""
    if path is None or str(path) == "":
        return None
    if not _source_files(Path(path)):
        return None
    return SimilarityRowReader.open(path, **kwargs)
