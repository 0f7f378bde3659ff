"""Shared helpers for on-disk stores."""

from __future__ import annotations

import errno
import json
import logging
import os
import shutil
import sys
import tempfile
import time
import uuid
from pathlib import Path

logger = logging.getLogger(__name__)


def now_ms(clock=None) -> int:
    """Current epoch milliseconds, optionally from an injected seconds clock."""
    return int((clock or time.time)() * 1000)


def config_dir() -> Path:
    """Directory shared with the host agent for persisted state."""
    if sys.platform == "win32":
        base = os.environ.get("APPDATA") or str(Path.home() / "AppData" / "Roaming")
        return Path(base) / "opencode"
    xdg = os.environ.get("XDG_CONFIG_HOME") or str(Path.home() / ".config")
    return Path(xdg) / "opencode"


def atomic_write_json(
    path: str | Path,
    data: dict,
    scratch_dir: str | Path | None = None,
) -> None:
    """Write *data* as JSON to *path* via a uniquely-named temp file + rename.

    When the rename crosses devices, falls back to copy-then-delete; failure
    to delete the temp file afterwards is ignored.  Other errors propagate.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    scratch = Path(scratch_dir) if scratch_dir is not None else path.parent
    tmp_path = scratch / f"{path.stem}-{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}.tmp"
    tmp_path.write_text(json.dumps(data, indent=2), encoding="utf-8")

    try:
        os.replace(tmp_path, path)
    except OSError as e:
        if e.errno != errno.EXDEV:
            tmp_path.unlink(missing_ok=True)
            raise
        shutil.copyfile(tmp_path, path)
        try:
            tmp_path.unlink()
        except OSError:
            logger.debug("Could not remove temp file %s", tmp_path)


def scratch_dir() -> Path:
    return Path(tempfile.gettempdir())
