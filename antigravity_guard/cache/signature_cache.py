"""SignatureCache: dual-TTL store for thinking-block signatures.

Entries are keyed ``"{session_id}:{model_id}"``.  Memory holds entries for
``memory_ttl_seconds``; the JSON file on disk keeps them for the longer
``disk_ttl_seconds`` so a restart can re-admit signatures that are still
trustworthy upstream.

The cache is an optimization: every disk read/parse/write failure is
reported through ``CacheResult`` and treated as "start fresh", never raised.
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
from pathlib import Path
from typing import Callable

from ..core.periodic import PeriodicTask
from ..storage.helpers import atomic_write_json, config_dir, now_ms, scratch_dir
from ..types import (
    CacheEntry,
    CacheError,
    CacheResult,
    CacheStats,
    SignatureCacheConfig,
    ThinkingCacheData,
)

logger = logging.getLogger(__name__)

CACHE_FORMAT_VERSION = "1.0"
CACHE_FILENAME = "antigravity-signature-cache.json"
PREVIEW_CHARS = 100


def default_cache_path() -> Path:
    return config_dir() / CACHE_FILENAME


def _entry_to_dict(entry: CacheEntry) -> dict:
    out: dict = {"value": entry.value, "timestamp": entry.timestamp}
    if entry.thinking_text:
        out["thinkingText"] = entry.thinking_text
    if entry.text_preview:
        out["textPreview"] = entry.text_preview
    if entry.tool_ids:
        out["toolIds"] = list(entry.tool_ids)
    return out


def _entry_from_dict(raw: dict) -> CacheEntry | None:
    value = raw.get("value")
    timestamp = raw.get("timestamp")
    if not isinstance(value, str) or not value:
        return None
    if isinstance(timestamp, bool) or not isinstance(timestamp, (int, float)):
        return None
    if not math.isfinite(timestamp):
        return None
    tool_ids = raw.get("toolIds")
    return CacheEntry(
        value=value,
        timestamp=int(timestamp),
        thinking_text=raw.get("thinkingText") or None,
        text_preview=raw.get("textPreview") or None,
        tool_ids=list(tool_ids) if isinstance(tool_ids, list) else None,
    )


class SignatureCache:
    """In-memory signature cache with deferred, merged disk persistence."""

    def __init__(
        self,
        config: SignatureCacheConfig,
        path: str | Path | None = None,
        clock: Callable[[], float] | None = None,
        load: bool = True,
    ) -> None:
        self.config = config
        self.enabled = config.enabled
        self.memory_ttl_ms = config.memory_ttl_seconds * 1000
        self.disk_ttl_ms = config.disk_ttl_seconds * 1000
        if path is not None:
            self.path = Path(path)
        elif config.path:
            self.path = Path(config.path).expanduser()
        else:
            self.path = default_cache_path()
        self._clock = clock

        self._cache: dict[str, CacheEntry] = {}
        self._from_disk: set[str] = set()
        self._dirty = False
        self._stats = CacheStats()
        self._tasks: list[PeriodicTask] = []

        if self.enabled and load:
            self.load_from_disk()

    @staticmethod
    def make_key(session_id: str, model_id: str) -> str:
        return f"{session_id}:{model_id}"

    def _now(self) -> int:
        return now_ms(self._clock)

    def _fresh(self, entry: CacheEntry, now: int | None = None) -> bool:
        return (now if now is not None else self._now()) - entry.timestamp <= self.memory_ttl_ms

    # ------------------------------------------------------------------
    # Signatures
    # ------------------------------------------------------------------

    def store(self, key: str, signature: str) -> None:
        """Store a signature, superseding any previous entry for *key*."""
        if not self.enabled or not signature:
            return
        self._cache[key] = CacheEntry(value=signature, timestamp=self._now())
        self._from_disk.discard(key)
        self._dirty = True

    def retrieve(self, key: str) -> str | None:
        """Return the signature for *key*, or None if absent or memory-expired."""
        if not self.enabled:
            return None

        entry = self._cache.get(key)
        if entry is not None:
            if self._fresh(entry):
                self._count_hit(key)
                return entry.value
            del self._cache[key]
            self._from_disk.discard(key)

        self._stats.misses += 1
        return None

    def has(self, key: str) -> bool:
        """Existence check that leaves statistics untouched."""
        if not self.enabled:
            return False
        entry = self._cache.get(key)
        return entry is not None and self._fresh(entry)

    def is_signature_valid(self, key: str, signature: str) -> bool:
        """True when *signature* matches the fresh cached value for *key*."""
        if not signature:
            return False
        cached = self.retrieve(key)
        return cached is not None and cached == signature

    def _count_hit(self, key: str) -> None:
        if key in self._from_disk:
            self._stats.disk_hits += 1
        else:
            self._stats.memory_hits += 1

    # ------------------------------------------------------------------
    # Full thinking payloads
    # ------------------------------------------------------------------

    def store_thinking(
        self,
        key: str,
        thinking_text: str,
        signature: str,
        tool_ids: list[str] | None = None,
    ) -> None:
        """Store full thinking text alongside its signature for recovery."""
        if not self.enabled or not thinking_text or not signature:
            return
        self._cache[key] = CacheEntry(
            value=signature,
            timestamp=self._now(),
            thinking_text=thinking_text,
            text_preview=thinking_text[:PREVIEW_CHARS],
            tool_ids=list(tool_ids) if tool_ids else None,
        )
        self._from_disk.discard(key)
        self._dirty = True

    def retrieve_thinking(self, key: str) -> ThinkingCacheData | None:
        if not self.enabled:
            return None

        entry = self._cache.get(key)
        if entry is None or not entry.thinking_text:
            return None

        if not self._fresh(entry):
            del self._cache[key]
            self._from_disk.discard(key)
            return None

        self._count_hit(key)
        return ThinkingCacheData(
            text=entry.thinking_text,
            signature=entry.value,
            tool_ids=list(entry.tool_ids) if entry.tool_ids else None,
        )

    def has_thinking(self, key: str) -> bool:
        if not self.enabled:
            return False
        entry = self._cache.get(key)
        return entry is not None and bool(entry.thinking_text) and self._fresh(entry)

    def stats(self) -> CacheStats:
        return CacheStats(
            memory_hits=self._stats.memory_hits,
            disk_hits=self._stats.disk_hits,
            misses=self._stats.misses,
            writes=self._stats.writes,
            memory_entries=len(self._cache),
            dirty=self._dirty,
            disk_enabled=self.enabled,
        )

    def cleanup_expired(self) -> int:
        """Evict memory-expired entries. Returns count removed."""
        now = self._now()
        expired = [k for k, e in self._cache.items() if not self._fresh(e, now)]
        for key in expired:
            del self._cache[key]
            self._from_disk.discard(key)
        if expired:
            logger.debug("Signature cache: evicted %d expired entries", len(expired))
        return len(expired)

    # ------------------------------------------------------------------
    # Disk
    # ------------------------------------------------------------------

    def _read_disk(self) -> tuple[dict | None, CacheResult]:
        if not self.path.is_file():
            return None, CacheResult(ok=False, error=CacheError.NOT_FOUND)
        try:
            text = self.path.read_text(encoding="utf-8")
        except UnicodeDecodeError as e:
            return None, CacheResult(ok=False, error=CacheError.PARSE_FAILED, detail=str(e))
        except OSError as e:
            return None, CacheResult(ok=False, error=CacheError.READ_FAILED, detail=str(e))
        try:
            data = json.loads(text)
        except (json.JSONDecodeError, RecursionError) as e:
            return None, CacheResult(ok=False, error=CacheError.PARSE_FAILED, detail=str(e))
        if not isinstance(data, dict) or not isinstance(data.get("entries", {}), dict):
            return None, CacheResult(ok=False, error=CacheError.PARSE_FAILED, detail="not an object")
        if data.get("version") != CACHE_FORMAT_VERSION:
            return None, CacheResult(
                ok=False,
                error=CacheError.VERSION_MISMATCH,
                detail=f"version={data.get('version')!r}",
            )
        return data, CacheResult(ok=True)

    def load_from_disk(self) -> CacheResult:
        """Admit disk entries younger than the disk TTL, keeping their timestamps."""
        if not self.enabled:
            return CacheResult(ok=False, error=CacheError.DISABLED)

        data, result = self._read_disk()
        if data is None:
            if result.error is not CacheError.NOT_FOUND:
                logger.warning(
                    "Signature cache unreadable (%s: %s), starting fresh",
                    result.error.value, result.detail,
                )
            return result

        now = self._now()
        for key, raw in data.get("entries", {}).items():
            entry = _entry_from_dict(raw) if isinstance(raw, dict) else None
            if entry is None or now - entry.timestamp > self.disk_ttl_ms:
                result.expired += 1
                continue
            self._cache[key] = entry
            self._from_disk.add(key)
            result.loaded += 1

        logger.debug(
            "Signature cache loaded %d entries (%d expired) from %s",
            result.loaded, result.expired, self.path,
        )
        return result

    def save_to_disk(self) -> CacheResult:
        """Merge with the current disk file and write the union atomically.

        Disk entries past the disk TTL are discarded; memory entries win on
        key collision.  The read-then-write window is not locked.
        """
        if not self.enabled:
            return CacheResult(ok=False, error=CacheError.DISABLED)
        return self._finish_save(self._write_snapshot(*self._snapshot()))

    async def _save_off_loop(self) -> CacheResult:
        """Snapshot on the event loop, merge and write in a worker thread."""
        snapshot = self._snapshot()
        result = await asyncio.to_thread(self._write_snapshot, *snapshot)
        return self._finish_save(result)

    def _snapshot(self) -> tuple[dict[str, CacheEntry], dict, int]:
        """Capture memory entries and statistics, clearing the dirty flag.

        A store() after this point sets the flag again, so the next save
        picks it up even if it missed this one.
        """
        now = self._now()
        entries = dict(self._cache)
        stats = {
            "memory_hits": self._stats.memory_hits,
            "disk_hits": self._stats.disk_hits,
            "misses": self._stats.misses,
            "writes": self._stats.writes + 1,
            "last_write": now,
        }
        self._dirty = False
        return entries, stats, now

    def _write_snapshot(
        self, entries: dict[str, CacheEntry], stats: dict, now: int,
    ) -> CacheResult:
        """Merge *entries* with the disk file and write atomically. Thread-safe."""
        merged: dict[str, dict] = {}

        data, read_result = self._read_disk()
        if data is not None:
            for key, raw in data.get("entries", {}).items():
                entry = _entry_from_dict(raw) if isinstance(raw, dict) else None
                if entry is not None and now - entry.timestamp <= self.disk_ttl_ms:
                    merged[key] = _entry_to_dict(entry)
        elif read_result.error is not CacheError.NOT_FOUND:
            logger.debug("Ignoring unreadable cache file on save: %s", read_result.error.value)

        for key, entry in entries.items():
            if now - entry.timestamp <= self.disk_ttl_ms:
                merged[key] = _entry_to_dict(entry)

        payload = {
            "version": CACHE_FORMAT_VERSION,
            "memory_ttl_seconds": self.memory_ttl_ms // 1000,
            "disk_ttl_seconds": self.disk_ttl_ms // 1000,
            "entries": merged,
            "statistics": stats,
        }

        try:
            atomic_write_json(self.path, payload, scratch_dir=scratch_dir())
        except OSError as e:
            logger.warning("Signature cache write failed: %s", e)
            return CacheResult(ok=False, error=CacheError.WRITE_FAILED, detail=str(e))
        return CacheResult(ok=True, loaded=len(merged))

    def _finish_save(self, result: CacheResult) -> CacheResult:
        if result.ok:
            self._stats.writes += 1
        else:
            self._dirty = True
        return result

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> list[PeriodicTask]:
        """Start the write and cleanup loops. Requires a running event loop."""
        if not self.enabled or self._tasks:
            return list(self._tasks)
        self._tasks = [
            PeriodicTask(
                "signature-cache-write",
                self.config.write_interval_seconds,
                self._write_if_dirty,
            ).start(),
            PeriodicTask(
                "signature-cache-cleanup",
                self.config.cleanup_interval_seconds,
                self.cleanup_expired,
            ).start(),
        ]
        return list(self._tasks)

    async def _write_if_dirty(self) -> None:
        if self._dirty:
            await self._save_off_loop()

    async def flush(self) -> bool:
        """Force an out-of-band save. True on success (or when disabled)."""
        if not self.enabled:
            return True
        result = await self._save_off_loop()
        return result.ok

    async def shutdown(self) -> None:
        """Stop background loops, then save once more if anything changed."""
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            await task.stop()
        if self.enabled and self._dirty:
            await self._save_off_loop()
