from __future__ import annotations

from typing import Optional  # noqa: UP035


class ExportError(Exception):
    """
    Base class for every failure the export pipeline knows how to classify.

    category drives the driver's continue-vs-abort decision and the CLI exit code:
    - config:     bad or missing options, nothing has been written
    - index:      an ID index could not be loaded
    - resolution: an internal id has no external id (recoverable unless over threshold)
    - io:         a source or destination failed mid-run
    - cancelled:  cooperative abort
    """

    category = "io"
    default_stage = "streaming"

    def __init__(self, message: str, stage: Optional[str] = None) -> None:
        super().__init__(message)
        self.stage = stage or self.default_stage


class ConfigError(ExportError):
    category = "config"
    default_stage = "config"


class IndexLoadError(ExportError):
    category = "index"
    default_stage = "load_indexes"


class UnknownIdError(ExportError, LookupError):
    category = "resolution"
    default_stage = "streaming"

    def __init__(self, kind: str, key: object) -> None:
        super().__init__(f"{kind} index has no entry for {key!r}")
        self.kind = kind
        self.key = key


class UnresolvedItemError(UnknownIdError):
    """The item's own internal id is missing from the item index."""


class ResolutionThresholdExceeded(ExportError):
    category = "resolution"
    default_stage = "streaming"


class MatrixNotFoundError(ExportError):
    default_stage = "open_readers"


class MatrixFormatError(ExportError):
    default_stage = "open_readers"


class InvalidFieldError(ExportError):
    default_stage = "streaming"


class ExportIOError(ExportError):
    default_stage = "streaming"


class ExportCancelled(ExportError):
    category = "cancelled"
    default_stage = "streaming"


EXIT_CODES = {
    "config": 2,
    "index": 3,
    "io": 4,
    "resolution": 5,
    "cancelled": 130,
}
