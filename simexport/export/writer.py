from __future__ import annotations

from pathlib import Path
from typing import BinaryIO, Iterable, List, Optional, Sequence  # noqa: UP035

from simexport.export.contracts import MergedExportRecord
from simexport.export.errors import ExportIOError, InvalidFieldError


class ShardedCsvWriter:
    """
    Writes MergedExportRecords as delimited rows, rolling over to a new shard
    file once a record-count or byte-size limit is reached.

        item_id,similar_items,cross_action_similar_items
        ipad,iphone,iphone nexus

    Values are never quoted or escaped. A value containing a delimiter, a
    quote or a newline raises InvalidFieldError; the item index rejects such
    ids at load time, so this only trips on records built elsewhere.

    Shards are opened lazily: no records means no files.
    """

    def __init__(
        self,
        out_dir: str | Path,
        field_names: Sequence[str] = ("item_id", "similar_items", "cross_action_similar_items"),
        delimiter: str = ",",
        list_delimiter: str = " ",
        write_header: bool = True,
        max_records_per_shard: Optional[int] = None,
        max_bytes_per_shard: Optional[int] = None,
        partition: int = 0,
    ) -> None:
        self.out_dir = Path(out_dir)
        self.field_names = tuple(field_names)
        self.delimiter = delimiter
        self.list_delimiter = list_delimiter
        self.write_header = write_header
        self.max_records = max_records_per_shard or None
        self.max_bytes = max_bytes_per_shard or None
        self.partition = partition

        self.reserved = (delimiter, list_delimiter, '"', "\n", "\r")

        self.shard_paths: List[Path] = []
        self.records_written = 0
        self.bytes_written = 0

        self._fh: Optional[BinaryIO] = None
        self._shard_records = 0
        self._shard_bytes = 0

    def __enter__(self) -> ShardedCsvWriter:
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def _check(self, value: str) -> str:
        for r in self.reserved:
            if r in value:
                raise InvalidFieldError(f"value {value!r} contains reserved character {r!r}")
        return value

    def render(self, record: MergedExportRecord) -> bytes:
        fields = [
            self._check(record.item_id),
            self.list_delimiter.join(self._check(v) for v in record.similar_items),
            self.list_delimiter.join(self._check(v) for v in record.cross_action_similar_items),
        ]
        return (self.delimiter.join(fields) + "\n").encode("utf-8")

    def _shard_path(self, shard: int) -> Path:
        return self.out_dir / f"part-{self.partition:05d}-{shard:05d}.csv"

    def _open_shard(self) -> None:
        path = self._shard_path(len(self.shard_paths))
        try:
            self.out_dir.mkdir(parents=True, exist_ok=True)
            self._fh = open(path, "wb")
        except OSError as e:
            raise ExportIOError(f"cannot create shard {path}: {e}", stage="write") from e

        self.shard_paths.append(path)
        self._shard_records = 0
        self._shard_bytes = 0

        if self.write_header:
            self._write_bytes((self.delimiter.join(self.field_names) + "\n").encode("utf-8"))

    def _write_bytes(self, data: bytes) -> None:
        try:
            self._fh.write(data)
        except OSError as e:
            raise ExportIOError(f"write failed on {self.shard_paths[-1]}: {e}", stage="write") from e
        self._shard_bytes += len(data)
        self.bytes_written += len(data)

    def _shard_full(self) -> bool:
        if self.max_records is not None and self._shard_records >= self.max_records:
            return True
        if self.max_bytes is not None and self._shard_bytes >= self.max_bytes:
            return True
        return False

    def write(self, record: MergedExportRecord) -> None:
        line = self.render(record)

        if self._fh is None:
            self._open_shard()

        self._write_bytes(line)
        self._shard_records += 1
        self.records_written += 1

        if self._shard_full():
            self._close_shard()

    def write_all(self, records: Iterable[MergedExportRecord]) -> int:
        for record in records:
            self.write(record)
        return self.records_written

    def _close_shard(self) -> None:
        if self._fh is None:
            return
        fh, self._fh = self._fh, None
        try:
            fh.close()
        except OSError as e:
            raise ExportIOError(f"closing {self.shard_paths[-1]} failed: {e}", stage="write") from e

    def close(self) -> None:
        self._close_shard()


def write_records(
    records: Iterable[MergedExportRecord],
    out_dir: str | Path,
    **kwargs,
) -> int:
    """Write every record under out_dir and return how many were written."""
    with ShardedCsvWriter(out_dir, **kwargs) as writer:
        return writer.write_all(records)
