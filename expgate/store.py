"""
Persistent key-value stores used to cache the experiment manifest.
The store only records write timestamps; TTL policy lives in cache.py.
"""
import asyncio
import json
import os
import time
from pathlib import Path
from threading import Lock
from typing import Any, Callable, Dict, Optional, Protocol, Tuple

from expgate.errors import CacheUnavailable
from expgate.logging_config import setup_logging

logger = setup_logging()


class PersistentStore(Protocol):
    """Durable key-value storage contract"""

    async def get(self, key: str) -> Tuple[Any, bool]:
        ...

    async def set(self, key: str, value: Any) -> None:
        ...

    async def written_at(self, key: str) -> Optional[float]:
        ...


class InMemoryStore:
    """
    Process-local store. Used in tests and when no cache path is configured.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._values: Dict[str, Tuple[Any, float]] = {}

    async def get(self, key: str) -> Tuple[Any, bool]:
        if key not in self._values:
            return None, False
        return self._values[key][0], True

    async def set(self, key: str, value: Any) -> None:
        self._values[key] = (value, self._clock())

    async def written_at(self, key: str) -> Optional[float]:
        entry = self._values.get(key)
        return entry[1] if entry else None

    def seed(self, key: str, value: Any, written_at: float) -> None:
        """Insert a value with an explicit write timestamp"""
        self._values[key] = (value, written_at)


class JsonFileStore:
    """
    Single JSON document on disk holding {key: {"value": ..., "written_at": ...}}.
    Writes go through a temp file and os.replace so readers never see a
    truncated document.
    """

    def __init__(self, path: Path, clock: Callable[[], float] = time.time):
        self.path = Path(path)
        self._clock = clock
        self._lock = Lock()

    def _read_all(self) -> Dict[str, Dict[str, Any]]:
        try:
            if not self.path.exists():
                return {}
            with self.path.open("r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            raise CacheUnavailable(f"Cannot read cache file {self.path}: {e}") from e
        if not isinstance(data, dict):
            raise CacheUnavailable(f"Cache file {self.path} does not hold an object")
        return data

    def _write_entry(self, key: str, value: Any) -> None:
        with self._lock:
            try:
                data = self._read_all()
            except CacheUnavailable as e:
                # An unreadable document is replaced so the cache can recover
                logger.warning("Discarding unreadable cache file", extra={"error": str(e)})
                data = {}
            data[key] = {"value": value, "written_at": self._clock()}
            tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                with tmp_path.open("w", encoding="utf-8") as f:
                    json.dump(data, f)
                os.replace(tmp_path, self.path)
            except (OSError, TypeError, ValueError) as e:
                raise CacheUnavailable(f"Cannot write cache file {self.path}: {e}") from e

    def _read_entry(self, key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            entry = self._read_all().get(key)
        if entry is not None and not isinstance(entry, dict):
            raise CacheUnavailable(f"Cache entry {key!r} is malformed")
        return entry

    async def get(self, key: str) -> Tuple[Any, bool]:
        entry = await asyncio.to_thread(self._read_entry, key)
        if entry is None or "value" not in entry:
            return None, False
        return entry["value"], True

    async def set(self, key: str, value: Any) -> None:
        await asyncio.to_thread(self._write_entry, key, value)

    async def written_at(self, key: str) -> Optional[float]:
        entry = await asyncio.to_thread(self._read_entry, key)
        if entry is None:
            return None
        written = entry.get("written_at")
        return float(written) if isinstance(written, (int, float)) else None
