"""Filesystem cache for provider responses.

The cache is advisory: every read, write, or parse failure is treated as a
miss, so disabling it or losing the directory never changes results.
"""

from __future__ import annotations

import json
import logging
import os
import re
import time
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any
from uuid import uuid4

from fin_research.canonical import task_digest
from fin_research.research.errors import CacheError

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 24 * 60 * 60
_ENTRY_SUFFIX = ".json"
_UNSAFE_KEY_CHARS = re.compile(r"[^a-zA-Z0-9_-]+")


@dataclass(slots=True)
class CacheStats:
    """Snapshot of cache directory health."""

    total: int = 0
    valid: int = 0
    expired: int = 0
    approx_size_bytes: int = 0


class ResponseCache:
    """Read-through memo of provider responses keyed by capability + arguments."""

    def __init__(
        self,
        directory: Path,
        *,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        enabled: bool = True,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.directory = directory
        self.ttl_seconds = ttl_seconds
        self.enabled = enabled
        self._clock = clock
        self._write_failure_reported = False
        if self.enabled:
            try:
                self.directory.mkdir(parents=True, exist_ok=True)
            except OSError as error:
                self._report_write_failure(error)

    def key_for(self, capability: str, arguments: Mapping[str, Any]) -> str:
        """Return the entry key for one capability + argument set."""

        prefix = _UNSAFE_KEY_CHARS.sub("_", str(getattr(capability, "value", capability)))
        return f"{prefix}_{task_digest(capability, arguments)}"

    def get(self, capability: str, arguments: Mapping[str, Any]) -> Any | None:
        """Return cached payload, or None when absent, expired, or unreadable."""

        if not self.enabled:
            return None
        key = self.key_for(capability, arguments)
        path = self._path_for(key)
        try:
            raw = path.read_text("utf-8")
        except FileNotFoundError:
            logger.debug("Cache miss for %s", key)
            return None
        except OSError:
            logger.debug("Cache read failed for %s", key, exc_info=True)
            return None

        entry = _parse_entry(raw)
        if entry is None or entry.get("key") != key:
            self._unlink_quietly(path)
            return None
        if not self._is_valid(entry["timestamp"]):
            logger.debug("Cache entry expired for %s", key)
            self._unlink_quietly(path)
            return None
        return entry["data"]

    def set(self, capability: str, arguments: Mapping[str, Any], payload: Any) -> None:
        """Store payload; failures are logged and otherwise ignored."""

        if not self.enabled:
            return
        key = self.key_for(capability, arguments)
        path = self._path_for(key)
        entry = {"data": payload, "timestamp": int(self._clock() * 1000), "key": key}
        try:
            self._write_entry(path, entry)
        except CacheError as error:
            self._report_write_failure(error)

    def purge_expired(self) -> int:
        """Delete expired and corrupt entries; return how many were removed."""

        cleared = 0
        for path in self._entry_paths():
            try:
                entry = _parse_entry(path.read_text("utf-8"))
            except OSError:
                entry = None
            if entry is not None and self._is_valid(entry["timestamp"]):
                continue
            if self._unlink_quietly(path):
                cleared += 1
        return cleared

    def purge_all(self) -> int:
        """Delete every entry; return how many were removed."""

        cleared = 0
        for path in self._entry_paths():
            if self._unlink_quietly(path):
                cleared += 1
        return cleared

    def stats(self) -> CacheStats:
        """Count valid/expired entries and their on-disk size."""

        stats = CacheStats()
        for path in self._entry_paths():
            stats.total += 1
            try:
                stats.approx_size_bytes += path.stat().st_size
                entry = _parse_entry(path.read_text("utf-8"))
            except OSError:
                entry = None
            if entry is not None and self._is_valid(entry["timestamp"]):
                stats.valid += 1
            else:
                stats.expired += 1
        return stats

    def _write_entry(self, path: Path, entry: dict[str, Any]) -> None:
        tmp_path = path.with_name(f".{path.name}.{uuid4().hex}.tmp")
        try:
            tmp_path.write_text(json.dumps(entry, ensure_ascii=False), "utf-8")
            os.replace(tmp_path, path)
        except (OSError, TypeError, ValueError) as error:
            self._unlink_quietly(tmp_path)
            raise CacheError(f"cannot write {path.name}: {error}") from error

    def _path_for(self, key: str) -> Path:
        return self.directory / f"{key}{_ENTRY_SUFFIX}"

    def _is_valid(self, timestamp_ms: int) -> bool:
        return self._clock() * 1000 - timestamp_ms < self.ttl_seconds * 1000

    def _entry_paths(self) -> Iterator[Path]:
        try:
            paths = sorted(self.directory.glob(f"*{_ENTRY_SUFFIX}"))
        except OSError:
            return iter(())
        return (path for path in paths if not path.name.startswith("."))

    def _unlink_quietly(self, path: Path) -> bool:
        try:
            path.unlink()
        except OSError:
            return False
        return True

    def _report_write_failure(self, error: Exception) -> None:
        if not self._write_failure_reported:
            self._write_failure_reported = True
            logger.warning(
                "Response cache at %s is not writable (%s); continuing without it.",
                self.directory,
                error,
            )
            return
        logger.debug("Cache write failed: %s", error)


def _parse_entry(raw: str) -> dict[str, Any] | None:
    try:
        entry = json.loads(raw)
    except ValueError:
        return None
    if not isinstance(entry, dict) or "data" not in entry or "key" not in entry:
        return None
    if not isinstance(entry.get("timestamp"), (int, float)):
        return None
    return entry
