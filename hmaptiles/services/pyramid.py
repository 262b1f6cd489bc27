"""
Batched zoom pyramid generation for a whole map.

Used after an import: instead of rebuilding every dirty tile on its own, the
map's dirty tiles are rebuilt one level at a time. Each finished tile stays in
a reference-counted cache until its parent on the next level has consumed it,
so only zoom-0 tiles are ever read back from disk. Files are written in
parallel and tile records are saved once per level.
"""

import threading
from pathlib import Path

import numpy as np
import structlog
from sqlalchemy.exc import SQLAlchemyError

from hmaptiles.errors import HmapTilesError, ImportCancelledError, QuotaExceededError
from hmaptiles.orm import DirtyTile, Tile
from hmaptiles.processing.coords import MAX_ZOOM, Coordinate
from hmaptiles.processing.pyramid import compose_parent, encode_png
from hmaptiles.providers.caching import ZoomTileCache
from hmaptiles.settings import settings

from .quota import StorageQuotaService, bytes_to_mb
from .tiles import TileService, cache_stamp, tile_path


class ZoomPyramidBuilder:
    def __init__(
        self,
        tiles: TileService,
        quota: StorageQuotaService | None = None,
        write_workers: int = 8,
    ):
        self.tiles = tiles
        self.quota = quota or tiles.quota
        self.write_workers = write_workers
        self.log = structlog.get_logger()

    def _child_images(
        self,
        cache: ZoomTileCache,
        zoom: int,
        coord: Coordinate,
        below: dict[Coordinate, Tile],
        storage: Path,
    ) -> list[np.ndarray | None]:
        children = coord.children()

        try:
            images = []
            for child in children:
                image = cache.get_tile(zoom - 1, child)

                if image is None and (tile := below.get(child)) is not None:
                    image = self.tiles.load_image(Path(storage) / tile.file)

                images.append(image)

            return images
        finally:
            for child in children:
                cache.decrement_ref(zoom - 1, child)

    def _commit_level(
        self,
        cache: ZoomTileCache,
        tenant_id: str,
        metadata: list[dict],
        delta_bytes: int,
        enforce_quota: bool,
        skip_existence_check: bool,
    ):
        """
        Write a finished level's files, save its records and charge the net
        growth. The quota check happens before anything is written.
        """
        delta_mb = bytes_to_mb(delta_bytes)

        if enforce_quota and delta_mb > 0:
            if not self.quota.check_quota(tenant_id, delta_mb):
                raise QuotaExceededError(tenant_id, delta_mb)

        cache.flush_writes(max_workers=self.write_workers)
        self.tiles.save_tiles_batch(metadata, skip_existence_check=skip_existence_check)

        if delta_mb != 0:
            self.quota.increment_usage(tenant_id, delta_mb)

    def build_map(
        self,
        tenant_id: str,
        map_id: int,
        storage: Path,
        cancel: threading.Event | None = None,
        enforce_quota: bool | None = None,
    ) -> tuple[int, int, int]:
        """
        Rebuild every dirty zoom tile of a map, zoom 1 through 6.

        Parameters
        ----------
        tenant_id : str
            Owner of the map.
        map_id : int
            Map to rebuild.
        storage : Path
            Storage root.
        cancel : threading.Event | None
            Checked before every tile.
        enforce_quota : bool | None
            Overrides ``settings.enforce_quota``. The check is made once per
            level, before any file of that level is written.

        Returns
        -------
        tuple[int, int, int]
            Number of tiles written, their total size in bytes, and the number
            of tiles that failed. A failing tile is logged and its flag kept.
            A level that cannot be committed (quota, disk, database) stops the
            run for this map; its flags and those of higher levels are kept
            for ``TileService.rebuild_dirty_tiles``.
        """
        if enforce_quota is None:
            enforce_quota = settings.enforce_quota

        log = self.log.bind(tenant_id=tenant_id, map_id=map_id)

        dirty_by_zoom: dict[int, list[DirtyTile]] = {}
        for marker in self.tiles.dirty_tiles_for_map(tenant_id, map_id):
            dirty_by_zoom.setdefault(marker.zoom, []).append(marker)

        if not dirty_by_zoom:
            log.debug("pyramid.nothing_dirty")
            return 0, 0, 0

        written = 0
        written_bytes = 0
        failed = 0
        below = self.tiles.tiles_at_zoom(map_id, 0, tenant_id)

        with ZoomTileCache() as cache:
            for zoom in range(1, MAX_ZOOM + 1):
                markers = dirty_by_zoom.get(zoom, [])
                current = self.tiles.tiles_at_zoom(map_id, zoom, tenant_id)

                if not markers:
                    below = current
                    continue

                replaced_bytes = 0
                consumed = []

                for marker in markers:
                    if cancel is not None and cancel.is_set():
                        raise ImportCancelledError("Zoom generation was cancelled")

                    coord = Coordinate(marker.x, marker.y)

                    try:
                        images = self._child_images(cache, zoom, coord, below, storage)

                        if all(image is None for image in images):
                            log.debug("pyramid.no_children", zoom=zoom, coord=str(coord))
                            consumed.append(marker.id)
                            continue

                        image = compose_parent(images)
                        data = encode_png(image)
                    except (OSError, ValueError) as e:
                        log.warning(
                            "pyramid.tile.failed", zoom=zoom, coord=str(coord), error=str(e)
                        )
                        failed += 1
                        continue

                    relative = tile_path(tenant_id, map_id, zoom, coord)

                    if zoom < MAX_ZOOM:
                        cache.add_tile(zoom, coord, image, refcount=1)

                    if (existing := current.get(coord)) is not None:
                        replaced_bytes += existing.file_size_bytes

                    cache.queue_write(
                        Path(storage) / relative,
                        data,
                        dict(
                            tenant_id=tenant_id,
                            map_id=map_id,
                            x=coord.x,
                            y=coord.y,
                            zoom=zoom,
                            file=relative.as_posix(),
                            cache=cache_stamp(),
                            file_size_bytes=len(data),
                        ),
                    )
                    consumed.append(marker.id)

                metadata, total_bytes = cache.extract_pending_metadata()

                try:
                    self._commit_level(
                        cache,
                        tenant_id,
                        metadata,
                        total_bytes - replaced_bytes,
                        enforce_quota,
                        skip_existence_check=not current,
                    )
                except (HmapTilesError, OSError, SQLAlchemyError) as e:
                    failed += len(metadata)
                    log.warning(
                        "pyramid.level.failed",
                        zoom=zoom,
                        tiles=len(metadata),
                        levels_left_dirty=MAX_ZOOM - zoom + 1,
                        error=str(e),
                    )
                    break

                self.tiles.delete_dirty_tiles(consumed)

                written += len(metadata)
                written_bytes += total_bytes
                log.debug("pyramid.level.complete", zoom=zoom, tiles=len(metadata))

                below = self.tiles.tiles_at_zoom(map_id, zoom, tenant_id)

            log.info(
                "pyramid.complete",
                tiles=written,
                bytes=written_bytes,
                failed=failed,
                released=cache.released,
            )

        return written, written_bytes, failed
