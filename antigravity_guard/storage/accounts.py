"""Credential store persistence: read, migrate, save, clear."""

from __future__ import annotations

import json
import logging
from pathlib import Path

from ..types import (
    AccountStorage,
    StorageError,
    StorageFormatError,
    StorageResult,
)
from .helpers import atomic_write_json, config_dir, now_ms as _now_ms
from .migrations import CURRENT_VERSION, migrate, parse_storage, storage_to_dict

logger = logging.getLogger(__name__)

ACCOUNTS_FILENAME = "antigravity-accounts.json"


def default_accounts_path() -> Path:
    return config_dir() / ACCOUNTS_FILENAME


def _clamp(index, length: int) -> int:
    if isinstance(index, bool) or not isinstance(index, int):
        return 0
    if index < 0 or index >= length:
        return 0
    return index


def normalize_indices(storage: AccountStorage) -> AccountStorage:
    """Clamp active_index and every per-family index into range."""
    n = len(storage.accounts)
    storage.active_index = _clamp(storage.active_index, n)
    storage.active_index_by_family = {
        family: _clamp(idx, n)
        for family, idx in storage.active_index_by_family.items()
        if isinstance(family, str)
    }
    return storage


def read_accounts(path: str | Path | None = None, now_ms: int | None = None) -> StorageResult:
    """Read and migrate the store file, reporting why when nothing usable exists."""
    path = Path(path) if path is not None else default_accounts_path()
    now = now_ms if now_ms is not None else _now_ms()

    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return StorageResult(error=StorageError.NOT_FOUND)
    except UnicodeDecodeError as e:
        return StorageResult(error=StorageError.PARSE_FAILED, detail=str(e))
    except OSError as e:
        return StorageResult(error=StorageError.READ_FAILED, detail=str(e))

    try:
        raw = json.loads(text)
    except (json.JSONDecodeError, RecursionError) as e:
        return StorageResult(error=StorageError.PARSE_FAILED, detail=str(e))

    try:
        parsed = parse_storage(raw)
    except StorageFormatError as e:
        return StorageResult(error=e.reason, detail=str(e))

    storage = normalize_indices(migrate(parsed, now))
    return StorageResult(storage=storage, source_version=parsed.version)


def load_accounts(path: str | Path | None = None, now_ms: int | None = None) -> AccountStorage | None:
    """Load the credential store, migrating and re-persisting older versions.

    Returns None when the file is missing, unreadable, malformed or of an
    unrecognized version.  Never raises.
    """
    path = Path(path) if path is not None else default_accounts_path()
    result = read_accounts(path, now_ms=now_ms)

    if result.storage is None:
        if result.error is StorageError.NOT_FOUND:
            return None
        if result.error in (StorageError.MALFORMED, StorageError.UNKNOWN_VERSION):
            logger.warning("Ignoring account storage at %s: %s", path, result.detail)
        else:
            logger.error("Failed to load account storage: %s", result.detail)
        return None

    if result.source_version != CURRENT_VERSION:
        logger.info(
            "Migrating account storage from v%s to v%d",
            result.source_version, CURRENT_VERSION,
        )
        try:
            save_accounts(result.storage, path)
            logger.info("Migration to v%d complete", CURRENT_VERSION)
        except OSError as e:
            logger.warning("Failed to persist migrated storage: %s", e)

    return result.storage


def save_accounts(storage: AccountStorage, path: str | Path | None = None) -> None:
    """Atomically write the full store at the current version."""
    path = Path(path) if path is not None else default_accounts_path()
    atomic_write_json(path, storage_to_dict(storage))


def clear_accounts(path: str | Path | None = None) -> None:
    path = Path(path) if path is not None else default_accounts_path()
    try:
        path.unlink()
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.error("Failed to clear account storage: %s", e)
