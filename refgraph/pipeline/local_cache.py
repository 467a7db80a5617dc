"""Persistent on-disk cache for large result sets with TTL, gzip, and integrity sampling."""

from __future__ import annotations

import gzip
import hashlib
import json
import os
import random
import re
import threading
import time
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

from refgraph.core.errors import CacheCorruptionError, CacheDirectoryError
from refgraph.core.logging_utils import log_event
from refgraph.core.models import Entry
from refgraph.services.entry_filters import SORT_OPTIONS, sort_entries

CACHE_SCHEMA_VERSION = 3
COMPRESSED_EXT = ".json.gz"
PLAIN_EXT = ".json"
WRITE_TEST_NAME = ".refgraph-write-test"
PERMANENT_MODES = frozenset({"references"})
_SAMPLE_HEAD = 3
_MIDDLE_SCAN = 100
_DEFAULT_TTL = object()


@dataclass(frozen=True)
class CacheKey:
    """Structured identity of one persisted record."""

    query: str
    mode: str
    sort: Optional[str] = None
    schema_version: int = CACHE_SCHEMA_VERSION

    def digest(self) -> str:
        payload = json.dumps(
            [self.query, self.mode, self.sort, self.schema_version],
            separators=(",", ":"),
            ensure_ascii=False,
        )
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()

    def filename(self, compressed: bool) -> str:
        safe_query = re.sub(r"[^a-zA-Z0-9._-]", "_", self.query)[:40]
        sort_part = f"_{re.sub(r'[^a-zA-Z0-9]', '', self.sort)}" if self.sort else ""
        ext = COMPRESSED_EXT if compressed else PLAIN_EXT
        return f"{self.mode}_{safe_query}{sort_part}_{self.digest()[:16]}{ext}"


@dataclass(frozen=True)
class CachedResult:
    """A decoded record returned by ``read_record``."""

    entries: List[Entry]
    stored_at: float
    ttl_seconds: Optional[float]
    total: Optional[int]
    age_hours: float
    expired: bool = False
    compressed: bool = False
    shared: bool = False
    extras: Optional[List[Dict[str, Any]]] = None


def _is_cache_file(path: Path) -> bool:
    """Internal helper for is cache file."""
    return path.is_file() and (path.name.endswith(COMPRESSED_EXT) or path.name.endswith(PLAIN_EXT))


def _encode(envelope: Dict[str, Any], compressed: bool) -> bytes:
    """Internal helper for encode."""
    raw = json.dumps(envelope, ensure_ascii=False, separators=(",", ":")).encode("utf-8")
    return gzip.compress(raw) if compressed else raw


def _decode(path: Path) -> Dict[str, Any]:
    """Read and parse one cache file; every failure becomes ``CacheCorruptionError``."""
    try:
        data = path.read_bytes()
        if path.name.endswith(COMPRESSED_EXT):
            data = gzip.decompress(data)
        envelope = json.loads(data.decode("utf-8"))
    except (OSError, EOFError, UnicodeDecodeError, ValueError) as exc:
        raise CacheCorruptionError(f"unreadable cache file {path.name}: {exc}") from exc
    if not isinstance(envelope, dict):
        raise CacheCorruptionError(f"cache file {path.name} is not an object")
    return envelope


def _sample_indices(entries: Sequence[Any]) -> List[int]:
    """Pick the first, a random middle, and the last entry that carry a recid."""
    total = len(entries)
    picked: List[int] = []

    def _has_recid(idx: int) -> bool:
        item = entries[idx]
        return isinstance(item, dict) and bool(item.get("recid"))

    first = next((i for i in range(total) if _has_recid(i)), None)
    last = next((i for i in range(total - 1, -1, -1) if _has_recid(i)), None)
    middle_start = random.randint(total // 2, max(total // 2, total - 1)) if total else 0
    middle = next((i for i in range(middle_start, min(middle_start + _MIDDLE_SCAN, total)) if _has_recid(i)), None)
    for idx in (first, middle, last):
        if idx is not None and idx not in picked:
            picked.append(idx)
    return picked


def validate_entries(data: Any) -> List[Entry]:
    """Check the decoded payload and build entries.

    The first few entries must have the base shape; sampled entries with a
    recid must carry a title and at least one author.

    Raises:
        CacheCorruptionError: If the payload fails any check.
    """
    if not isinstance(data, list):
        raise CacheCorruptionError("payload is not a list")
    for idx in range(min(_SAMPLE_HEAD, len(data))):
        item = data[idx]
        if not isinstance(item, dict):
            raise CacheCorruptionError(f"entry[{idx}] is not an object")
        if not isinstance(item.get("authors"), list):
            raise CacheCorruptionError(f"entry[{idx}] missing authors list")
        if not isinstance(item.get("title"), str):
            raise CacheCorruptionError(f"entry[{idx}] missing title")
    for idx in _sample_indices(data):
        item = data[idx]
        title = item.get("title")
        authors = item.get("authors")
        if not isinstance(title, str) or not title.strip():
            raise CacheCorruptionError(f"entry recid={item.get('recid')} has no title")
        if not isinstance(authors, list) or not authors:
            raise CacheCorruptionError(f"entry recid={item.get('recid')} has no authors")
    try:
        return [Entry.from_dict(item) for item in data]
    except (TypeError, ValueError, AttributeError) as exc:
        raise CacheCorruptionError(f"entry decode failed: {exc}") from exc


class PersistentCache:
    """Disk-backed store for references, cited-by, author, search, and related result sets.

    Complete sets at or below ``split_threshold`` entries share one unsorted
    file per (query, mode) and are sorted at read time. Larger or truncated
    sets get one file per sort order. Every read or decode failure is a miss.
    """

    def __init__(
        self,
        directory: Path,
        *,
        enabled: bool = True,
        ttl_hours: float = 24.0,
        compression: bool = True,
        split_threshold: int = 10000,
        write_debounce_seconds: float = 0.5,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.enabled = enabled
        self.ttl_hours = float(ttl_hours) if ttl_hours and ttl_hours > 0 else 24.0
        self.compression = compression
        self.split_threshold = max(1, int(split_threshold))
        self.write_debounce_seconds = max(0.0, float(write_debounce_seconds))
        self._clock = clock
        self._lock = threading.RLock()
        self._pending: Dict[Path, tuple[threading.Timer, Dict[str, Any], Path]] = {}
        self._purge_timer: Optional[threading.Timer] = None
        self.directory = Path(directory)
        if enabled:
            self.directory.mkdir(parents=True, exist_ok=True)

    # paths

    def _path(self, key: CacheKey, compressed: bool) -> Path:
        return self.directory / key.filename(compressed)

    def _paths(self, key: CacheKey) -> List[Path]:
        return [self._path(key, True), self._path(key, False)]

    def default_ttl_seconds(self, mode: str) -> Optional[float]:
        """References never expire; every other mode uses the configured TTL."""
        if mode in PERMANENT_MODES:
            return None
        return self.ttl_hours * 3600.0

    # read

    def read(
        self,
        query: str,
        mode: str,
        sort: Optional[str] = None,
        *,
        ignore_ttl: bool = False,
    ) -> Optional[List[Entry]]:
        """Return cached entries for (query, mode, sort), or ``None`` on a miss."""
        record = self.read_record(query, mode, sort, ignore_ttl=ignore_ttl)
        return record.entries if record is not None else None

    def read_record(
        self,
        query: str,
        mode: str,
        sort: Optional[str] = None,
        *,
        ignore_ttl: bool = False,
    ) -> Optional[CachedResult]:
        """Return the decoded record with its age and expiry flag.

        With ``ignore_ttl`` an expired record is returned flagged ``expired``
        for offline fallback.
        """
        if not self.enabled:
            return None
        candidates: List[tuple[CacheKey, bool]] = []
        if sort:
            candidates.append((CacheKey(query, mode, sort), False))
        candidates.append((CacheKey(query, mode, None), bool(sort)))
        for key, shared in candidates:
            result = self._read_key(key, ignore_ttl=ignore_ttl)
            if result is None:
                continue
            if shared:
                result = replace(
                    result,
                    entries=sort_entries(result.entries, sort),
                    shared=True,
                    extras=result.extras if sort == "default" else None,
                )
            return result
        return None

    def _read_key(self, key: CacheKey, *, ignore_ttl: bool) -> Optional[CachedResult]:
        for path in self._paths(key):
            with self._lock:
                if not path.exists():
                    continue
                try:
                    envelope = _decode(path)
                    result = self._validate(envelope, key, path, ignore_ttl=ignore_ttl)
                except CacheCorruptionError as exc:
                    log_event("cache_corrupt", {"file": path.name, "error": str(exc)})
                    self._remove(path)
                    continue
            if result is not None:
                return result
        return None

    def _validate(
        self,
        envelope: Dict[str, Any],
        key: CacheKey,
        path: Path,
        *,
        ignore_ttl: bool,
    ) -> Optional[CachedResult]:
        if envelope.get("v") != key.schema_version:
            log_event("cache_version_mismatch", {"file": path.name, "version": envelope.get("v")})
            self._remove(path)
            return None
        if envelope.get("mode") != key.mode or envelope.get("key") != key.query or envelope.get("sort") != key.sort:
            raise CacheCorruptionError("record identity does not match its file")
        if envelope.get("c") is not True:
            raise CacheCorruptionError("record was not marked complete")
        stored_at = envelope.get("ts")
        if not isinstance(stored_at, (int, float)):
            raise CacheCorruptionError("record has no timestamp")
        entries = validate_entries(envelope.get("d"))
        ttl = envelope.get("ttl")
        age = max(0.0, self._clock() - float(stored_at))
        expired = isinstance(ttl, (int, float)) and ttl > 0 and age > float(ttl)
        if expired and not ignore_ttl:
            return None
        total = envelope.get("n")
        extras = envelope.get("x")
        if extras is not None and (not isinstance(extras, list) or len(extras) != len(entries)):
            raise CacheCorruptionError("extras do not align with entries")
        return CachedResult(
            entries=entries,
            stored_at=float(stored_at),
            ttl_seconds=float(ttl) if isinstance(ttl, (int, float)) else None,
            total=int(total) if isinstance(total, int) else None,
            age_hours=round(age / 3600.0, 2),
            expired=bool(expired),
            compressed=path.name.endswith(COMPRESSED_EXT),
            extras=extras,
        )

    # write

    def write(
        self,
        query: str,
        mode: str,
        entries: Sequence[Entry],
        sort: Optional[str] = None,
        *,
        total: Optional[int] = None,
        ttl_seconds: Any = _DEFAULT_TTL,
        extras: Optional[Sequence[Dict[str, Any]]] = None,
    ) -> Optional[Path]:
        """Schedule a write of a complete result set.

        Args:
            query (str): Recid or search query.
            mode (str): Result-set mode.
            entries (Sequence[Entry]): Entries in display order.
            sort (Optional[str]): Sort the entries were fetched with.
            total (Optional[int]): Total hits reported by the remote.
            ttl_seconds (Optional[float]): Override for the mode's default TTL; ``None`` is permanent.
            extras (Optional[Sequence[Dict[str, Any]]]): Per-entry side data stored alongside the entries.

        Returns:
            Optional[Path]: Target file path, or ``None`` when disabled.
        """
        if not self.enabled:
            return None
        items = list(entries)
        ttl = self.default_ttl_seconds(mode) if ttl_seconds is _DEFAULT_TTL else ttl_seconds
        complete = total is None or len(items) >= int(total)
        shared = complete and len(items) <= self.split_threshold
        key = CacheKey(query, mode, None if shared else sort)
        envelope = {
            "v": key.schema_version,
            "mode": mode,
            "key": query,
            "sort": key.sort,
            "ts": self._clock(),
            "ttl": ttl,
            "c": True,
            "n": total,
            "d": [entry.to_dict() for entry in items],
        }
        if extras is not None:
            envelope["x"] = [dict(item) for item in extras]
        target = self._path(key, self.compression)
        alternate = self._path(key, not self.compression)
        with self._lock:
            for path in (target, alternate):
                pending = self._pending.pop(path, None)
                if pending is not None:
                    pending[0].cancel()
            if self.write_debounce_seconds <= 0:
                self._write_file(target, envelope, alternate)
                return target
            timer = threading.Timer(self.write_debounce_seconds, self._run_pending, args=(target,))
            timer.daemon = True
            self._pending[target] = (timer, envelope, alternate)
            timer.start()
        return target

    def _run_pending(self, target: Path) -> None:
        with self._lock:
            pending = self._pending.pop(target, None)
            if pending is None:
                return
            _, envelope, alternate = pending
            self._write_file(target, envelope, alternate)

    def _write_file(self, target: Path, envelope: Dict[str, Any], alternate: Path) -> None:
        """Write atomically via a temp file and drop the other-format file."""
        tmp = target.with_name(target.name + ".tmp")
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            tmp.write_bytes(_encode(envelope, target.name.endswith(COMPRESSED_EXT)))
            os.replace(tmp, target)
            self._remove(alternate)
        except OSError as exc:
            log_event("cache_write_failed", {"file": target.name, "error": str(exc)})
            self._remove(tmp)

    def flush_writes(self) -> int:
        """Write every pending record now; returns how many were written."""
        with self._lock:
            pending = list(self._pending.items())
            self._pending.clear()
            for target, (timer, envelope, alternate) in pending:
                timer.cancel()
                self._write_file(target, envelope, alternate)
        return len(pending)

    # maintenance

    def _remove(self, path: Path) -> bool:
        try:
            path.unlink()
            return True
        except FileNotFoundError:
            return False
        except OSError as exc:
            log_event("cache_remove_failed", {"file": path.name, "error": str(exc)})
            return False

    def delete(self, query: str, mode: str, sort: Optional[str] = None) -> int:
        """Delete the record for (query, mode, sort) in both formats.

        With no sort the shared record and every known per-sort record go.
        """
        sorts: List[Optional[str]] = [sort] if sort else [None, *SORT_OPTIONS]
        removed = 0
        with self._lock:
            for item_sort in sorts:
                key = CacheKey(query, mode, item_sort)
                for path in self._paths(key):
                    pending = self._pending.pop(path, None)
                    if pending is not None:
                        pending[0].cancel()
                    if self._remove(path):
                        removed += 1
        return removed

    def _cache_files(self) -> List[Path]:
        if not self.directory.exists():
            return []
        return sorted(p for p in self.directory.iterdir() if _is_cache_file(p))

    def clear_all(self) -> int:
        """Delete every cache file; returns the number removed."""
        with self._lock:
            for timer, _, _ in self._pending.values():
                timer.cancel()
            self._pending.clear()
            deleted = sum(1 for path in self._cache_files() if self._remove(path))
        log_event("cache_cleared", {"deleted": deleted, "directory": str(self.directory)})
        return deleted

    def purge_expired(self) -> int:
        """Delete expired, outdated, and corrupt files; returns the number removed."""
        if not self.enabled:
            return 0
        now = self._clock()
        removed = 0
        with self._lock:
            for path in self._cache_files():
                try:
                    envelope = _decode(path)
                except CacheCorruptionError:
                    removed += int(self._remove(path))
                    continue
                ts = envelope.get("ts")
                ttl = envelope.get("ttl")
                if envelope.get("v") != CACHE_SCHEMA_VERSION or not isinstance(ts, (int, float)):
                    removed += int(self._remove(path))
                    continue
                if isinstance(ttl, (int, float)) and ttl > 0 and now - float(ts) > float(ttl):
                    removed += int(self._remove(path))
        log_event("cache_purged", {"removed": removed, "directory": str(self.directory)})
        return removed

    def schedule_purge(self, delay_seconds: float = 30.0) -> threading.Timer:
        """Run ``purge_expired`` once on a daemon timer so startup never waits on it."""
        with self._lock:
            if self._purge_timer is not None:
                self._purge_timer.cancel()
            timer = threading.Timer(max(0.0, float(delay_seconds)), self.purge_expired)
            timer.daemon = True
            self._purge_timer = timer
            timer.start()
        return timer

    def stats(self) -> Dict[str, Any]:
        files = self._cache_files()
        compressed = [p for p in files if p.name.endswith(COMPRESSED_EXT)]
        with self._lock:
            pending = len(self._pending)
        return {
            "directory": str(self.directory),
            "enabled": self.enabled,
            "file_count": len(files),
            "total_bytes": sum(p.stat().st_size for p in files),
            "compressed_count": len(compressed),
            "compressed_bytes": sum(p.stat().st_size for p in compressed),
            "pending_writes": pending,
        }

    def reinit(self, directory: Path) -> Path:
        """Point the cache at ``directory`` after checking it is writable.

        Raises:
            CacheDirectoryError: If the directory cannot be created or written;
                the previous directory stays active.
        """
        new_dir = Path(directory).expanduser()
        probe = new_dir / WRITE_TEST_NAME
        try:
            new_dir.mkdir(parents=True, exist_ok=True)
            probe.write_text("test", encoding="utf-8")
            probe.unlink()
        except OSError as exc:
            log_event("cache_reinit_rejected", {"directory": str(new_dir), "error": str(exc)})
            raise CacheDirectoryError(f"cache directory not writable: {new_dir}") from exc
        self.flush_writes()
        with self._lock:
            previous = self.directory
            self.directory = new_dir
        log_event("cache_reinit", {"previous": str(previous), "directory": str(new_dir)})
        return new_dir

    def close(self) -> None:
        self.flush_writes()
        with self._lock:
            if self._purge_timer is not None:
                self._purge_timer.cancel()
                self._purge_timer = None
