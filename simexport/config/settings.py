from __future__ import annotations

from pathlib import Path
from typing import List, Optional  # noqa: UP035

from pydantic_settings import BaseSettings, SettingsConfigDict

from simexport.export.errors import ConfigError


class ExportSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="SIMEXPORT_",
        extra="ignore",
    )

    # Project root inferred from this file location:
    # repo/
    #   simexport/config/settings.py
    PROJECT_ROOT: Path = Path(__file__).resolve().parents[2]
    DATA_DIR: Path = PROJECT_ROOT / "data"

    # Inputs
    ITEM_SIMILARITY_MATRIX_DIR: Optional[Path] = None  # required
    CROSS_SIMILARITY_MATRIX_DIR: Optional[Path] = None  # optional
    INDEX_DIR: Optional[Path] = None
    ITEM_INDEX_PATH: Optional[Path] = None  # defaults to INDEX_DIR / ITEM_INDEX_FILENAME
    USER_INDEX_PATH: Optional[Path] = None  # defaults to INDEX_DIR / USER_INDEX_FILENAME
    ITEM_INDEX_FILENAME: str = "item_index.parquet"
    USER_INDEX_FILENAME: str = "user_index.parquet"

    # Output
    OUTPUT_DIR: Optional[Path] = None  # required, wiped before writing
    METADATA_FILENAME: str = "_export_meta.json"

    # Search index field labels
    ITEM_ID_FIELD_NAME: str = "item_id"
    ITEM_SIMILARITY_FIELD_NAME: str = "similar_items"
    CROSS_ACTION_SIMILARITY_FIELD_NAME: str = "cross_action_similar_items"

    # Row format
    FIELD_DELIMITER: str = ","
    LIST_DELIMITER: str = " "
    WRITE_HEADER: bool = True

    # Sharding (None or 0 disables a limit)
    MAX_RECORDS_PER_SHARD: Optional[int] = 1_000_000
    MAX_BYTES_PER_SHARD: Optional[int] = 256 * 1024 * 1024

    # Unresolved ids tolerated before the run is aborted (None disables)
    MAX_RESOLUTION_WARNINGS: Optional[int] = 10_000

    # Streaming knobs
    ROW_WINDOW: int = 100_000
    PARTITIONS: int = 1
    SHOW_PROGRESS: bool = True

    # Upstream column names
    INDEX_INTERNAL_COLUMN: str = "internal_id"
    INDEX_EXTERNAL_COLUMN: str = "external_id"
    MATRIX_ROW_COLUMN: str = "row_id"
    MATRIX_COL_COLUMN: str = "col_id"
    MATRIX_SCORE_COLUMN: str = "score"

    @property
    def item_index_path(self) -> Optional[Path]:
        if self.ITEM_INDEX_PATH is not None:
            return Path(self.ITEM_INDEX_PATH)
        if self.INDEX_DIR is not None:
            return Path(self.INDEX_DIR) / self.ITEM_INDEX_FILENAME
        return None

    @property
    def user_index_path(self) -> Optional[Path]:
        if self.USER_INDEX_PATH is not None:
            return Path(self.USER_INDEX_PATH)
        if self.INDEX_DIR is not None:
            return Path(self.INDEX_DIR) / self.USER_INDEX_FILENAME
        return None

    @property
    def field_names(self) -> tuple[str, str, str]:
        return (
            self.ITEM_ID_FIELD_NAME,
            self.ITEM_SIMILARITY_FIELD_NAME,
            self.CROSS_ACTION_SIMILARITY_FIELD_NAME,
        )

    def reserved_characters(self) -> tuple[str, ...]:
        """Strings that may never appear inside an exported value."""
        return (self.FIELD_DELIMITER, self.LIST_DELIMITER, '"', "\n", "\r")

    def validate_for_run(self) -> None:
        problems: List[str] = []

        if self.ITEM_SIMILARITY_MATRIX_DIR is None:
            problems.append("item similarity matrix location is required")
        if self.OUTPUT_DIR is None:
            problems.append("output location is required")
        if self.item_index_path is None:
            problems.append("item index path is required (set an index dir or an explicit path)")
        if self.user_index_path is None:
            problems.append("user index path is required (set an index dir or an explicit path)")

        if not self.FIELD_DELIMITER or not self.LIST_DELIMITER:
            problems.append("delimiters must not be empty")
        elif self.FIELD_DELIMITER == self.LIST_DELIMITER:
            problems.append("field and list delimiters must differ")
        for d in (self.FIELD_DELIMITER, self.LIST_DELIMITER):
            if any(c in d for c in ('"', "\n", "\r")):
                problems.append(f"delimiter {d!r} contains a quote or newline")

        for label in self.field_names:
            if not label:
                problems.append("field labels must not be empty")
            elif any(r and r in label for r in self.reserved_characters()):
                problems.append(f"field label {label!r} contains a reserved character")

        for name in ("MAX_RECORDS_PER_SHARD", "MAX_BYTES_PER_SHARD", "MAX_RESOLUTION_WARNINGS"):
            value = getattr(self, name)
            if value is not None and value < 0:
                problems.append(f"{name} must be >= 0")
        if self.ROW_WINDOW < 1:
            problems.append("ROW_WINDOW must be >= 1")
        if self.PARTITIONS < 1:
            problems.append("PARTITIONS must be >= 1")

        if problems:
            raise ConfigError("; ".join(problems))

    def describe(self) -> str:
        """Plain option dump for operators, one `# KEY = value` line per option."""
        lines = []
        for name in type(self).model_fields:
            if name in ("PROJECT_ROOT", "DATA_DIR"):
                continue
            lines.append(f"# {name} = {getattr(self, name)!r}")
        lines.append(f"# item_index_path = {self.item_index_path}")
        lines.append(f"# user_index_path = {self.user_index_path}")
        return "\n".join(lines)


settings = ExportSettings()
