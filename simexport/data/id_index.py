from __future__ import annotations

from pathlib import Path
from typing import Dict, Iterable, Optional  # noqa: UP035

import polars as pl

from simexport.export.errors import IndexLoadError, UnknownIdError


class IdIndex:
    """
    Immutable bijection between dense internal ids and external string ids
    for one entity kind (items or users).

    Everything lives in two dicts, so the whole index must fit in memory.
    That is the scaling ceiling of a single export process: O(distinct entities).
    Reads never mutate, so partitions can share one instance without locking.
    """

    def __init__(self, kind: str, to_external: Dict[int, str]) -> None:
        self.kind = kind
        self._to_external = dict(to_external)
        self._to_internal = {ext: idx for idx, ext in self._to_external.items()}

        if len(self._to_internal) != len(self._to_external):
            raise IndexLoadError(f"{kind} index is not a bijection: duplicate external ids")

    def __len__(self) -> int:
        return len(self._to_external)

    def __contains__(self, internal_id: object) -> bool:
        return internal_id in self._to_external

    def __repr__(self) -> str:
        return f"IdIndex(kind={self.kind!r}, size={len(self)})"

    def external_of(self, internal_id: int) -> str:
        try:
            return self._to_external[internal_id]
        except KeyError:
            raise UnknownIdError(self.kind, internal_id) from None

    def internal_of(self, external_id: str) -> int:
        try:
            return self._to_internal[external_id]
        except KeyError:
            raise UnknownIdError(self.kind, external_id) from None

    def get_external(self, internal_id: int) -> Optional[str]:
        return self._to_external.get(internal_id)


def _read_table(path: Path, external_col: str) -> pl.DataFrame:
    if path.suffix.lower() == ".csv":
        return pl.read_csv(path, schema_overrides={external_col: pl.Utf8})
    return pl.read_parquet(path)


def load_id_index(
    path: str | Path,
    kind: str,
    internal_col: str = "internal_id",
    external_col: str = "external_id",
    reserved: Iterable[str] = (),
) -> IdIndex:
    """
    Load a persisted internal<->external id table.

    Any defect is a data-integrity problem, so it raises IndexLoadError
    instead of being patched up:
    - missing file / columns
    - nulls, negative or non-integer internal ids
    - duplicates on either side
    - external ids containing a reserved output character
      (values are never escaped in the export, so they are rejected here)
    """
    path = Path(path)
    if not path.exists():
        raise IndexLoadError(f"{kind} index not found: {path}")

    try:
        df = _read_table(path, external_col)
    except (pl.exceptions.PolarsError, OSError) as e:
        raise IndexLoadError(f"{kind} index unreadable: {path}: {e}") from e

    missing = [c for c in (internal_col, external_col) if c not in df.columns]
    if missing:
        raise IndexLoadError(f"{kind} index {path} is missing columns {missing}")

    df = df.select(internal_col, external_col)
    if df.null_count().row(0) != (0, 0):
        raise IndexLoadError(f"{kind} index {path} contains null ids")

    # a cast would truncate 1.5 -> 1 and attach the name to the wrong id
    internal_dtype = df.schema[internal_col]
    if not internal_dtype.is_integer():
        raise IndexLoadError(
            f"{kind} index {path} has non-integer internal ids (dtype {internal_dtype})"
        )

    df = df.with_columns(
        pl.col(internal_col).cast(pl.Int64),
        pl.col(external_col).cast(pl.Utf8),
    )

    if df.height and df[internal_col].min() < 0:
        raise IndexLoadError(f"{kind} index {path} has negative internal ids")
    if df[internal_col].is_duplicated().any():
        raise IndexLoadError(f"{kind} index {path} has duplicate internal ids")
    if df[external_col].is_duplicated().any():
        raise IndexLoadError(f"{kind} index {path} has duplicate external ids")

    reserved = [r for r in reserved if r]
    if reserved:
        bad = df.filter(
            pl.any_horizontal(
                [pl.col(external_col).str.contains(r, literal=True) for r in reserved]
            )
        )
        if bad.height:
            sample = bad[external_col].head(5).to_list()
            raise IndexLoadError(
                f"{kind} index {path} has {bad.height} external ids containing "
                f"reserved characters {reserved!r}, e.g. {sample!r}"
            )

    to_external = dict(zip(df[internal_col].to_list(), df[external_col].to_list()))
    return IdIndex(kind, to_external)
