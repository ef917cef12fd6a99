"""
Content-addressed cache of sample measurements.

Keys are fingerprints of (content identity, sample window, parameter, tool
version, tool configuration). For one key:
- At most one computation is in flight; concurrent callers wait for it and
  get the same value or the same exception
- A failed computation is never cached, the next caller recomputes
- A store that cannot be read or written puts the cache in degraded mode:
  evaluations still run, results are just not persisted

The in-flight map is guarded by one short lock; computations run outside it.
"""

import hashlib
import json
import os
import tempfile
import threading
import time
from concurrent.futures import Future
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from ....utils.logging import get_logger
from ..errors import CacheIOError
from ..optimization.sample_windows import SampleWindow
from .tool_gateway import SampleMeasurement

logger = get_logger("result_cache")

CACHE_FORMAT_VERSION = 1


def fingerprint(content: str, window: SampleWindow, parameter: float,
                tool: Optional[Dict[str, str]] = None) -> str:
    """Stable hex key for one (content, window, parameter, tool) combination."""
    payload = {
        "v": CACHE_FORMAT_VERSION,
        "content": content,
        "window": window.identity(),
        "parameter": f"{parameter:.6g}",
        "tool": dict(sorted((tool or {}).items())),
    }
    blob = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(blob.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class CacheEntry:
    score: float
    encoded_size: int
    reference_size: int
    created_at: float

    @classmethod
    def from_measurement(cls, measurement: SampleMeasurement) -> "CacheEntry":
        return cls(measurement.score, measurement.encoded_size, measurement.reference_size, time.time())

    def to_measurement(self) -> SampleMeasurement:
        return SampleMeasurement(self.score, self.encoded_size, self.reference_size)


class CacheStore:
    """Key -> CacheEntry storage. Implementations raise CacheIOError on I/O failure."""

    def get(self, key: str) -> Optional[CacheEntry]:
        raise NotImplementedError

    def put(self, key: str, entry: CacheEntry):
        raise NotImplementedError

    def __len__(self) -> int:
        raise NotImplementedError


class MemoryCacheStore(CacheStore):
    def __init__(self):
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[CacheEntry]:
        with self._lock:
            return self._entries.get(key)

    def put(self, key: str, entry: CacheEntry):
        with self._lock:
            self._entries[key] = entry

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class JsonFileCacheStore(CacheStore):
    """Entries persisted in one JSON file, rewritten atomically.

    The lock only guards the in-memory map. One putting thread at a time
    rewrites the file outside it; puts that land during a rewrite are
    picked up by that thread's next round, so a burst of puts costs a few
    rewrites rather than one each.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self._entries: Optional[Dict[str, CacheEntry]] = None
        self._lock = threading.Lock()
        self._dirty = False
        self._writing = False

    def _load(self) -> Dict[str, CacheEntry]:
        if self._entries is not None:
            return self._entries
        entries: Dict[str, CacheEntry] = {}
        if self.path.exists():
            try:
                with open(self.path, 'r') as f:
                    data = json.load(f)
                if data.get("version") != CACHE_FORMAT_VERSION:
                    logger.cache(f"Ignoring cache {self.path} with version {data.get('version')}")
                else:
                    for key, raw in data.get("entries", {}).items():
                        entries[key] = CacheEntry(**raw)
            except (OSError, ValueError, TypeError, AttributeError) as e:
                raise CacheIOError(f"cannot read cache {self.path}: {e}") from e
        logger.cache(f"Loaded {len(entries)} entries from {self.path}")
        self._entries = entries
        return entries

    def _write(self, entries: Dict[str, CacheEntry]):
        data: Dict[str, Any] = {
            "version": CACHE_FORMAT_VERSION,
            "saved_at": time.time(),
            "entries": {key: asdict(entry) for key, entry in entries.items()},
        }
        tmp_path = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(prefix=f".{self.path.name}.", dir=str(self.path.parent))
            with os.fdopen(fd, 'w') as f:
                json.dump(data, f, indent=2)
            os.replace(tmp_path, self.path)
        except OSError as e:
            if tmp_path and os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise CacheIOError(f"cannot write cache {self.path}: {e}") from e

    def get(self, key: str) -> Optional[CacheEntry]:
        with self._lock:
            return self._load().get(key)

    def put(self, key: str, entry: CacheEntry):
        with self._lock:
            self._load()[key] = entry
            self._dirty = True
            if self._writing:
                return
            self._writing = True

        while True:
            with self._lock:
                if not self._dirty:
                    self._writing = False
                    return
                self._dirty = False
                snapshot = dict(self._load())
            try:
                self._write(snapshot)
            except CacheIOError:
                with self._lock:
                    self._writing = False
                raise

    def __len__(self) -> int:
        with self._lock:
            return len(self._load())


class ResultCache:
    """Deduplicating cache in front of a CacheStore."""

    def __init__(self, store: Optional[CacheStore] = None):
        self.store = store if store is not None else MemoryCacheStore()
        self._guard = threading.Lock()
        self._inflight: Dict[str, Future] = {}
        self.degraded = False
        self.hits = 0
        self.misses = 0
        self.waits = 0

    def _degrade(self, error: CacheIOError):
        with self._guard:
            first = not self.degraded
            self.degraded = True
        if first:
            logger.cache_degraded(f"{error}; continuing without persistent cache")

    def get(self, key: str) -> Optional[SampleMeasurement]:
        if self.degraded:
            return None
        try:
            entry = self.store.get(key)
        except CacheIOError as e:
            self._degrade(e)
            return None
        return entry.to_measurement() if entry else None

    def put(self, key: str, measurement: SampleMeasurement):
        if self.degraded:
            return
        try:
            self.store.put(key, CacheEntry.from_measurement(measurement))
        except CacheIOError as e:
            self._degrade(e)

    def evaluate_or_wait(self, key: str, compute: Callable[[], SampleMeasurement]) -> SampleMeasurement:
        """Cached value for `key`, computing it at most once across threads."""
        cached = self.get(key)
        if cached is not None:
            with self._guard:
                self.hits += 1
            logger.cache(f"hit {key[:12]}")
            return cached

        with self._guard:
            future = self._inflight.get(key)
            owner = future is None
            if owner:
                future = Future()
                self._inflight[key] = future
            else:
                self.waits += 1

        if not owner:
            logger.cache(f"waiting on in-flight {key[:12]}")
            return future.result()

        try:
            # Another owner may have finished between the first lookup and the guard
            value = self.get(key)
            if value is None:
                with self._guard:
                    self.misses += 1
                value = compute()
                self.put(key, value)
            future.set_result(value)
            return value
        except BaseException as e:
            future.set_exception(e)
            raise
        finally:
            with self._guard:
                self._inflight.pop(key, None)

    def stats(self) -> Dict[str, int]:
        with self._guard:
            return {"hits": self.hits, "misses": self.misses, "waits": self.waits,
                    "degraded": int(self.degraded)}
