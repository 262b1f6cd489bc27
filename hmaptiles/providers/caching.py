"""
Caches for textures and tiles.
"""

import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Hashable

import numpy as np
import structlog
from cachetools import LRUCache

from hmaptiles.processing.coords import Coordinate

ReleaseHook = Callable[[Hashable, np.ndarray], None]


class _ReleasingLRUCache(LRUCache):
    """
    LRU cache that hands evicted entries to a release hook.
    """

    def __init__(self, maxsize: int, release: ReleaseHook):
        super().__init__(maxsize=maxsize)
        self._release = release

    def popitem(self):
        key, value = super().popitem()
        self._release(key, value)
        return key, value


class LRUImageCache:
    """
    A bounded, thread-safe, in-memory cache of decoded images.

    Images handed to ``add`` are owned by the cache. ``get`` returns a copy so
    that a concurrent eviction can never invalidate a buffer that a caller is
    still using.
    """

    def __init__(self, maxsize: int = 50, on_release: ReleaseHook | None = None):
        self.cache = _ReleasingLRUCache(maxsize=maxsize, release=self._release)
        self.on_release = on_release
        self.lock = threading.Lock()
        self.logger = structlog.get_logger()

    def _release(self, key: Hashable, image: np.ndarray):
        self.logger.debug("cache.lru.released", key=key)
        if self.on_release is not None:
            self.on_release(key, image)

    def get(self, key: Hashable) -> np.ndarray | None:
        with self.lock:
            cached = self.cache.get(key)

            if cached is None:
                self.logger.debug("cache.lru.miss", key=key)
                return None

            return cached.copy()

    def contains(self, key: Hashable) -> bool:
        with self.lock:
            return key in self.cache

    def add(self, key: Hashable, image: np.ndarray):
        with self.lock:
            if key in self.cache:
                self._release(key, self.cache.pop(key))

            self.cache[key] = image
            self.logger.debug("cache.lru.added", key=key)

    def clear(self):
        with self.lock:
            self.cache.clear()

    def __len__(self) -> int:
        with self.lock:
            return len(self.cache)


@dataclass
class CachedTile:
    image: np.ndarray
    refcount: int


@dataclass
class PendingWrite:
    path: Path
    data: bytes


class ZoomTileCache:
    """
    Reference-counted arena of tiles used while building a zoom pyramid.

    A tile of zoom N is registered with a count equal to the number of zoom
    N+1 tiles that will consume it (one, for a quadtree). Each consumer calls
    ``decrement_ref`` once; the tile is released when its count reaches zero.
    Finished tiles are queued for a batched disk write together with the
    metadata of their database rows.
    """

    def __init__(self, on_release: ReleaseHook | None = None):
        self.tiles: dict[tuple[int, Coordinate], CachedTile] = {}
        self.lock = threading.Lock()
        self.on_release = on_release
        self.released = 0

        self.pending_writes: list[PendingWrite] = []
        self.pending_metadata: list[dict] = []
        self.pending_bytes = 0

        self.closed = False
        self.logger = structlog.get_logger()

    def _check_open(self):
        if self.closed:
            raise RuntimeError("ZoomTileCache has been closed")

    def _release(self, key: tuple[int, Coordinate], cached: CachedTile):
        self.released += 1
        if self.on_release is not None:
            self.on_release(key, cached.image)

    def add_tile(self, zoom: int, coord: Coordinate, image: np.ndarray, refcount: int):
        self._check_open()

        if refcount <= 0:
            raise ValueError("A cached tile needs at least one consumer")

        key = (zoom, coord)
        with self.lock:
            if (existing := self.tiles.pop(key, None)) is not None:
                self._release(key, existing)

            self.tiles[key] = CachedTile(image=image, refcount=refcount)

    def get_tile(self, zoom: int, coord: Coordinate) -> np.ndarray | None:
        """
        Copy of a cached tile. Does not change its reference count.
        """
        self._check_open()

        with self.lock:
            cached = self.tiles.get((zoom, coord))
            return None if cached is None else cached.image.copy()

    def decrement_ref(self, zoom: int, coord: Coordinate):
        self._check_open()

        key = (zoom, coord)
        with self.lock:
            cached = self.tiles.get(key)
            if cached is None:
                return

            cached.refcount -= 1
            if cached.refcount <= 0:
                del self.tiles[key]
                self._release(key, cached)

    def queue_write(self, path: Path, data: bytes, metadata: dict):
        self._check_open()

        with self.lock:
            self.pending_writes.append(PendingWrite(path=path, data=data))
            self.pending_metadata.append(metadata)
            self.pending_bytes += len(data)

    def flush_writes(self, max_workers: int = 8) -> int:
        """
        Write all queued tiles to disk in parallel. Returns the number written.
        """
        self._check_open()

        with self.lock:
            writes, self.pending_writes = self.pending_writes, []

        if not writes:
            return 0

        def write(pending: PendingWrite):
            pending.path.parent.mkdir(parents=True, exist_ok=True)
            pending.path.write_bytes(pending.data)

        with ThreadPoolExecutor(max_workers=max_workers) as pool:
            list(pool.map(write, writes))

        self.logger.debug("cache.zoom.flushed", count=len(writes))
        return len(writes)

    def extract_pending_metadata(self) -> tuple[list[dict], int]:
        """
        Take the queued row metadata and the total bytes they account for.
        """
        self._check_open()

        with self.lock:
            metadata, self.pending_metadata = self.pending_metadata, []
            total, self.pending_bytes = self.pending_bytes, 0

        return metadata, total

    def stats(self) -> tuple[int, int]:
        """
        Number of cached tiles and their approximate memory footprint.
        """
        with self.lock:
            return len(self.tiles), sum(t.image.nbytes for t in self.tiles.values())

    def close(self):
        if self.closed:
            return

        with self.lock:
            for key, cached in self.tiles.items():
                self._release(key, cached)
            self.tiles.clear()
            self.pending_writes.clear()
            self.pending_metadata.clear()
            self.pending_bytes = 0

        self.closed = True

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
