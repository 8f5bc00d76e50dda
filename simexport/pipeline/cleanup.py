from __future__ import annotations

import shutil
from pathlib import Path

from simexport.export.errors import ExportIOError


def clean_output_dir(path: str | Path) -> bool:
    """
    Delete whatever exists at path (directory tree or single file).

    Destructive by contract: the output location belongs to this run.
    Returns False when there was nothing to delete.
    """
    path = Path(path)
    if not path.exists() and not path.is_symlink():
        print(f"[OK] No output dir to delete at {path}, skipping.")
        return False

    try:
        if path.is_dir() and not path.is_symlink():
            shutil.rmtree(path)
        else:
            path.unlink()
    except OSError as e:
        raise ExportIOError(f"cannot clean output location {path}: {e}", stage="cleanup") from e

    print(f"[OK] Removed previous output at {path}")
    return True
