"""
Tileset texture provider.

Textures are looked up in an in-memory LRU cache, then in a local disk cache
directory, and finally downloaded from the remote resource server. Failed
downloads are never cached and never raise: the rasterizer falls back to gray
for textures that could not be resolved.
"""

import threading
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Callable, Iterable

import numpy as np
import requests
import structlog
from PIL import UnidentifiedImageError

from hmaptiles.errors import ResourceFetchError
from hmaptiles.processing.pyramid import decode_png
from hmaptiles.settings import settings

from .caching import LRUImageCache

PNG_MAGIC = b"\x89PNG"

FetchProgress = Callable[[int, int, str], None]


class TileResourceFetcher:
    def __init__(
        self,
        cache_dir: Path,
        base_url: str | None = None,
        memory_cache_size: int = 50,
        max_concurrency: int = 5,
        timeout: float = 30.0,
        session: requests.Session | None = None,
    ):
        self.cache_dir = Path(cache_dir)
        self.cache_dir.mkdir(parents=True, exist_ok=True)

        self.base_url = base_url or settings.resource_base_url
        self.max_concurrency = max_concurrency
        self.timeout = timeout

        self.session = session or requests.Session()
        self.memory = LRUImageCache(maxsize=memory_cache_size)

        self.first_network_error: str | None = None
        self._error_lock = threading.Lock()

        self.log = structlog.get_logger().bind(cache_dir=str(self.cache_dir))

    def cache_path(self, resource_name: str) -> Path:
        safe_name = resource_name.replace("/", "_").replace("\\", "_") + ".png"
        return self.cache_dir / safe_name

    def is_cached(self, resource_name: str) -> bool:
        return self.cache_path(resource_name).exists()

    def _record_network_error(self, message: str):
        with self._error_lock:
            if self.first_network_error is None:
                self.first_network_error = message

    def _download(self, resource_name: str) -> bytes:
        url = self.base_url + resource_name
        response = self.session.get(url, timeout=self.timeout)

        if not response.ok:
            raise ResourceFetchError(f"{url} returned HTTP {response.status_code}")

        data = response.content
        if len(data) < 8 or not data.startswith(PNG_MAGIC):
            raise ResourceFetchError(f"{url} did not return a PNG")

        return data

    def get_tile_image(self, resource_name: str) -> np.ndarray | None:
        """
        Resolve a texture to an RGBA buffer.

        Parameters
        ----------
        resource_name : str
            Resource path relative to the base URL, e.g. ``gfx/tiles/grass``.

        Returns
        -------
        np.ndarray | None
            A buffer owned by the caller, or ``None`` if the texture could not
            be resolved.
        """
        if (cached := self.memory.get(resource_name)) is not None:
            return cached

        log = self.log.bind(resource=resource_name)
        path = self.cache_path(resource_name)

        if path.exists():
            try:
                image = decode_png(path)
                self.memory.add(resource_name, image)
                return image.copy()
            except (OSError, UnidentifiedImageError):
                log.warning("resources.disk.corrupt")

        try:
            data = self._download(resource_name)
            image = decode_png(data)
        except (requests.ConnectionError, requests.Timeout) as e:
            self._record_network_error(
                f"Failed to fetch {self.base_url + resource_name}: {e}"
            )
            log.warning("resources.remote.unreachable", error=str(e))
            return None
        except requests.RequestException as e:
            log.warning("resources.remote.failed", error=str(e))
            return None
        except ResourceFetchError as e:
            log.warning("resources.remote.invalid", error=str(e))
            return None
        except (OSError, UnidentifiedImageError):
            log.warning("resources.remote.undecodable")
            return None

        path.write_bytes(data)
        self.memory.add(resource_name, image)
        log.debug("resources.remote.fetched", size=len(data))

        return image.copy()

    def prefetch(
        self, resource_names: Iterable[str], progress: FetchProgress | None = None
    ) -> int:
        """
        Fetch every distinct, not yet disk-cached texture in parallel.

        Returns the number of textures that were fetched successfully.
        """
        names = list(dict.fromkeys(n for n in resource_names if not self.is_cached(n)))
        if not names:
            return 0

        total = len(names)
        counter_lock = threading.Lock()
        done = 0
        fetched = 0

        def fetch(name: str):
            nonlocal done, fetched
            image = self.get_tile_image(name)

            with counter_lock:
                done += 1
                fetched += image is not None
                current = done

            if progress is not None:
                progress(current, total, name)

        with ThreadPoolExecutor(max_workers=self.max_concurrency) as pool:
            list(pool.map(fetch, names))

        self.log.info("resources.prefetched", requested=total, fetched=fetched)

        return fetched

    def stats(self) -> tuple[int, int, int]:
        """
        Number of textures on disk, their total size in bytes, and the number
        of textures held in memory.
        """
        files = list(self.cache_dir.glob("*.png"))
        return len(files), sum(f.stat().st_size for f in files), len(self.memory)

    def clear_memory_cache(self):
        self.memory.clear()

    def close(self):
        self.memory.clear()
        self.session.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
