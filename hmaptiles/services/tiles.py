"""
Tile records, dirty-tile tracking and incremental zoom rebuilds.

Every write of a zoom-0 tile flags its six ancestors (zoom 1..6) as dirty.
``rebuild_dirty_tiles`` consumes those flags lowest zoom first, so each level
is rebuilt from children that are already up to date.
"""

import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Iterable

import numpy as np
import structlog
from PIL import UnidentifiedImageError
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import func, select

from hmaptiles.database import SessionFactory, get_session, retry_on_contention
from hmaptiles.errors import HmapTilesError, QuotaExceededError
from hmaptiles.orm import DirtyTile, Grid, Tile
from hmaptiles.processing.coords import MAX_ZOOM, Coordinate
from hmaptiles.processing.pyramid import compose_parent, decode_png, encode_png
from hmaptiles.settings import settings

from .quota import StorageQuotaService, bytes_to_mb

QUERY_CHUNK_SIZE = 500


def tile_path(tenant_id: str, map_id: int, zoom: int, coord: Coordinate) -> Path:
    """
    Storage-relative path of a tile image.
    """
    return Path("tenants") / tenant_id / str(map_id) / str(zoom) / f"{coord.name()}.png"


def cache_stamp() -> int:
    return int(time.time() * 1000)


class TileService:
    def __init__(
        self,
        session_factory: SessionFactory | None = None,
        quota: StorageQuotaService | None = None,
        max_workers: int = 4,
    ):
        self.session_factory = session_factory or get_session
        self.quota = quota or StorageQuotaService(session_factory=self.session_factory)
        self.loader = ThreadPoolExecutor(max_workers=max_workers)
        self.log = structlog.get_logger()

    def close(self):
        self.loader.shutdown(wait=True)

    # Tiles

    def get_tile(
        self, map_id: int, coord: Coordinate, zoom: int, tenant_id: str | None = None
    ) -> Tile | None:
        """
        Look up a tile. Background work passes no tenant; request handlers
        pass the tenant of the caller so that other tenants' maps are never
        visible to them.
        """
        query = select(Tile).where(
            Tile.map_id == map_id, Tile.x == coord.x, Tile.y == coord.y, Tile.zoom == zoom
        )
        if tenant_id is not None:
            query = query.where(Tile.tenant_id == tenant_id)

        with self.session_factory() as session:
            return session.exec(query).first()

    def tiles_at_zoom(
        self, map_id: int, zoom: int, tenant_id: str
    ) -> dict[Coordinate, Tile]:
        with self.session_factory() as session:
            tiles = session.exec(
                select(Tile).where(
                    Tile.tenant_id == tenant_id, Tile.map_id == map_id, Tile.zoom == zoom
                )
            ).all()

        return {Coordinate(t.x, t.y): t for t in tiles}

    @retry_on_contention
    def _upsert_tile(self, values: dict):
        with self.session_factory() as session:
            key = select(Tile).where(
                Tile.map_id == values["map_id"],
                Tile.x == values["x"],
                Tile.y == values["y"],
                Tile.zoom == values["zoom"],
                Tile.tenant_id == values["tenant_id"],
            )

            tile = session.exec(key).first()

            if tile is None:
                session.add(Tile(**values))
                try:
                    session.commit()
                    return
                except IntegrityError:
                    # Inserted concurrently; fall through and update it.
                    session.rollback()
                    tile = session.exec(key).one()

            tile.file = values["file"]
            tile.cache = values["cache"]
            tile.file_size_bytes = values["file_size_bytes"]
            session.add(tile)
            session.commit()

    def save_tile(
        self,
        map_id: int,
        coord: Coordinate,
        zoom: int,
        file: str,
        cache: int,
        tenant_id: str,
        file_size_bytes: int,
    ):
        """
        Create or update a tile record. Writing a zoom-0 tile marks all of
        its ancestors dirty.
        """
        self._upsert_tile(
            dict(
                tenant_id=tenant_id,
                map_id=map_id,
                x=coord.x,
                y=coord.y,
                zoom=zoom,
                file=file,
                cache=cache,
                file_size_bytes=file_size_bytes,
            )
        )

        if zoom == 0:
            self.mark_parents_dirty(map_id, coord, tenant_id)

    @retry_on_contention
    def _insert_tiles(self, tiles: list[dict]):
        with self.session_factory() as session:
            session.add_all([Tile(**values) for values in tiles])
            session.commit()

    def save_tiles_batch(self, tiles: list[dict], skip_existence_check: bool = False):
        """
        Save many tile records. With ``skip_existence_check`` the rows are
        inserted in a single transaction, which is only valid when none of
        them exist yet (e.g. for a freshly created map).
        """
        if not tiles:
            return

        if skip_existence_check:
            self._insert_tiles(tiles)
        else:
            for values in tiles:
                self._upsert_tile(values)

        for values in tiles:
            if values["zoom"] == 0:
                self.mark_parents_dirty(
                    values["map_id"], Coordinate(values["x"], values["y"]), values["tenant_id"]
                )

        self.log.debug("tiles.batch.saved", count=len(tiles))

    @retry_on_contention
    def delete_tiles_by_map(self, map_id: int) -> int:
        with self.session_factory() as session:
            tiles = session.exec(select(Tile).where(Tile.map_id == map_id)).all()
            for tile in tiles:
                session.delete(tile)
            session.commit()

        return len(tiles)

    def load_child_tiles(
        self, tenant_id: str, map_id: int, parent: Coordinate, subzoom: int
    ) -> list[Tile]:
        """
        The (up to four) tiles one level below `parent`, selected by their
        coordinate range.
        """
        min_x, min_y = parent.x * 2, parent.y * 2

        with self.session_factory() as session:
            return list(
                session.exec(
                    select(Tile).where(
                        Tile.tenant_id == tenant_id,
                        Tile.map_id == map_id,
                        Tile.zoom == subzoom,
                        Tile.x >= min_x,
                        Tile.x <= min_x + 1,
                        Tile.y >= min_y,
                        Tile.y <= min_y + 1,
                    )
                ).all()
            )

    def write_tile_image(
        self,
        tenant_id: str,
        storage: Path,
        relative: Path,
        data: bytes,
        enforce_quota: bool | None = None,
        replaced_bytes: int = 0,
    ) -> int:
        """
        Write an encoded tile below the storage root and charge it to the
        tenant.

        When the write replaces a file of `replaced_bytes`, only the
        difference is checked against the quota and charged.

        Raises
        ------
        QuotaExceededError
            If quota is enforced and the tenant has no room for the growth.
            Nothing is written and usage is left unchanged.
        """
        delta_mb = bytes_to_mb(len(data) - replaced_bytes)

        if enforce_quota is None:
            enforce_quota = settings.enforce_quota

        if enforce_quota and delta_mb > 0:
            if not self.quota.check_quota(tenant_id, delta_mb):
                raise QuotaExceededError(tenant_id, delta_mb)

        path = Path(storage) / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)

        if delta_mb != 0:
            self.quota.increment_usage(tenant_id, delta_mb)

        return len(data)

    def load_image(self, path: Path) -> np.ndarray | None:
        if not path.exists():
            return None

        try:
            return decode_png(path)
        except (OSError, UnidentifiedImageError):
            self.log.warning("tiles.child.unreadable", path=str(path))
            return None

    def update_zoom_level(
        self,
        map_id: int,
        coord: Coordinate,
        zoom: int,
        tenant_id: str,
        storage: Path,
        preloaded: list[Tile] | None = None,
        enforce_quota: bool | None = None,
    ) -> int:
        """
        Rebuild one zoom tile from its four children.

        Parameters
        ----------
        map_id : int
            Map the tile belongs to.
        coord : Coordinate
            Coordinate of the tile at `zoom`.
        zoom : int
            Zoom level, 1 to 6.
        tenant_id : str
            Owner of the map.
        storage : Path
            Storage root.
        preloaded : list[Tile] | None
            Child tile records, if already known. Otherwise they are queried.
        enforce_quota : bool | None
            Overrides ``settings.enforce_quota``.

        Returns
        -------
        int
            Size of the written file in bytes.
        """
        log = self.log.bind(map_id=map_id, zoom=zoom, coord=str(coord))

        if preloaded is None:
            preloaded = self.load_child_tiles(tenant_id, map_id, coord, zoom - 1)

        known = {
            Coordinate(t.x, t.y): t
            for t in preloaded
            if t.map_id == map_id and t.zoom == zoom - 1 and t.file
        }

        slots: list[np.ndarray | None] = [None] * 4

        def load(index: int, child: Coordinate):
            if (tile := known.get(child)) is not None:
                slots[index] = self.load_image(Path(storage) / tile.file)

        futures = [
            self.loader.submit(load, index, child)
            for index, child in enumerate(coord.children())
        ]
        for future in futures:
            future.result()

        loaded = sum(slot is not None for slot in slots)
        if loaded == 0:
            log.warning("tiles.zoom.no_children")
        elif loaded < 4:
            log.debug("tiles.zoom.partial", children=loaded)

        data = encode_png(compose_parent(slots))
        relative = tile_path(tenant_id, map_id, zoom, coord)

        path = Path(storage) / relative
        replaced = path.stat().st_size if path.exists() else 0

        size = self.write_tile_image(
            tenant_id, storage, relative, data, enforce_quota, replaced_bytes=replaced
        )
        self.save_tile(map_id, coord, zoom, relative.as_posix(), cache_stamp(), tenant_id, size)

        return size

    # Dirty tiles

    @retry_on_contention
    def _mark_dirty(self, tenant_id: str, map_id: int, coord: Coordinate, zoom: int) -> bool:
        with self.session_factory() as session:
            exists = session.exec(
                select(DirtyTile.id).where(
                    DirtyTile.tenant_id == tenant_id,
                    DirtyTile.map_id == map_id,
                    DirtyTile.x == coord.x,
                    DirtyTile.y == coord.y,
                    DirtyTile.zoom == zoom,
                )
            ).first()

            if exists is not None:
                return False

            session.add(
                DirtyTile(
                    tenant_id=tenant_id, map_id=map_id, x=coord.x, y=coord.y, zoom=zoom
                )
            )

            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                self.log.debug(
                    "tiles.dirty.duplicate", map_id=map_id, zoom=zoom, coord=str(coord)
                )
                return False

        return True

    def mark_parents_dirty(self, map_id: int, coord: Coordinate, tenant_id: str) -> int:
        """
        Flag the six ancestors of a zoom-0 tile for rebuild. Returns how many
        flags were newly created; existing flags are left alone.
        """
        created = sum(
            self._mark_dirty(tenant_id, map_id, parent, zoom)
            for zoom, parent in coord.ancestors(MAX_ZOOM)
        )

        if created:
            self.log.debug(
                "tiles.dirty.marked", map_id=map_id, coord=str(coord), created=created
            )

        return created

    def has_dirty_tiles(self, tenant_id: str) -> bool:
        with self.session_factory() as session:
            return (
                session.exec(
                    select(DirtyTile.id).where(DirtyTile.tenant_id == tenant_id)
                ).first()
                is not None
            )

    def dirty_tile_count(self, tenant_id: str) -> int:
        with self.session_factory() as session:
            return session.exec(
                select(func.count(DirtyTile.id)).where(DirtyTile.tenant_id == tenant_id)
            ).one()

    def dirty_tiles_for_map(self, tenant_id: str, map_id: int) -> list[DirtyTile]:
        with self.session_factory() as session:
            return list(
                session.exec(
                    select(DirtyTile)
                    .where(DirtyTile.tenant_id == tenant_id, DirtyTile.map_id == map_id)
                    .order_by(DirtyTile.zoom, DirtyTile.x, DirtyTile.y)
                ).all()
            )

    @retry_on_contention
    def delete_dirty_tiles(self, ids: Iterable[int]) -> int:
        ids = list(ids)
        if not ids:
            return 0

        with self.session_factory() as session:
            deleted = 0
            for start in range(0, len(ids), QUERY_CHUNK_SIZE):
                chunk = ids[start : start + QUERY_CHUNK_SIZE]
                for dirty in session.exec(
                    select(DirtyTile).where(DirtyTile.id.in_(chunk))
                ).all():
                    session.delete(dirty)
                    deleted += 1
            session.commit()

        return deleted

    @retry_on_contention
    def delete_dirty_tiles_by_map(self, map_id: int) -> int:
        with self.session_factory() as session:
            dirty = session.exec(select(DirtyTile).where(DirtyTile.map_id == map_id)).all()
            for marker in dirty:
                session.delete(marker)
            session.commit()

        return len(dirty)

    def rebuild_dirty_tiles(
        self, tenant_id: str, storage: Path, max_tiles: int | None = None
    ) -> int:
        """
        Rebuild up to `max_tiles` dirty zoom tiles of a tenant.

        Flags are processed by zoom, then map, then coordinate. A flag whose
        children are all missing is dropped without writing a tile. A flag
        that fails to rebuild is kept for the next call. Returns the number of
        tiles rebuilt.
        """
        max_tiles = max_tiles or settings.rebuild_batch_size
        log = self.log.bind(tenant_id=tenant_id)

        with self.session_factory() as session:
            dirty = session.exec(
                select(DirtyTile)
                .where(DirtyTile.tenant_id == tenant_id)
                .order_by(DirtyTile.zoom, DirtyTile.map_id, DirtyTile.x, DirtyTile.y)
                .limit(max_tiles)
            ).all()

        if not dirty:
            log.debug("tiles.rebuild.nothing_dirty")
            return 0

        consumed = []
        rebuilt = 0

        for marker in dirty:
            coord = Coordinate(marker.x, marker.y)
            marker_log = log.bind(map_id=marker.map_id, zoom=marker.zoom, coord=str(coord))

            try:
                children = self.load_child_tiles(
                    tenant_id, marker.map_id, coord, marker.zoom - 1
                )

                if not children:
                    marker_log.debug("tiles.rebuild.no_children")
                    consumed.append(marker.id)
                    continue

                self.update_zoom_level(
                    marker.map_id, coord, marker.zoom, tenant_id, storage, preloaded=children
                )

                consumed.append(marker.id)
                rebuilt += 1
            except (HmapTilesError, OSError, SQLAlchemyError) as e:
                marker_log.warning("tiles.rebuild.failed", error=str(e))

        self.delete_dirty_tiles(consumed)

        if rebuilt:
            log.info("tiles.rebuild.complete", rebuilt=rebuilt, consumed=len(consumed))

        return rebuilt

    # Grids

    def get_grid(self, grid_id: str, tenant_id: str) -> Grid | None:
        with self.session_factory() as session:
            return session.get(Grid, (grid_id, tenant_id))

    def existing_grid_ids(self, tenant_id: str, grid_ids: Iterable[str]) -> dict[str, int]:
        """
        Which of `grid_ids` the tenant already has, mapped to their map id.
        """
        grid_ids = list(grid_ids)
        found = {}

        with self.session_factory() as session:
            for start in range(0, len(grid_ids), QUERY_CHUNK_SIZE):
                chunk = grid_ids[start : start + QUERY_CHUNK_SIZE]
                rows = session.exec(
                    select(Grid.id, Grid.map_id).where(
                        Grid.tenant_id == tenant_id, Grid.id.in_(chunk)
                    )
                ).all()
                found.update({grid_id: map_id for grid_id, map_id in rows})

        return found

    def grids_by_map(self, map_id: int, tenant_id: str | None = None) -> list[Grid]:
        query = select(Grid).where(Grid.map_id == map_id)
        if tenant_id is not None:
            query = query.where(Grid.tenant_id == tenant_id)

        with self.session_factory() as session:
            return list(session.exec(query).all())

    @retry_on_contention
    def save_grid(self, grid: Grid) -> Grid:
        with self.session_factory() as session:
            grid = session.merge(grid)
            session.commit()
            return grid

    @retry_on_contention
    def delete_grid(self, grid_id: str, tenant_id: str) -> bool:
        with self.session_factory() as session:
            grid = session.get(Grid, (grid_id, tenant_id))
            if grid is None:
                return False

            session.delete(grid)
            session.commit()

        return True

    @retry_on_contention
    def move_grid(self, grid_id: str, tenant_id: str, map_id: int) -> bool:
        with self.session_factory() as session:
            grid = session.get(Grid, (grid_id, tenant_id))
            if grid is None:
                return False

            grid.map_id = map_id
            session.add(grid)
            session.commit()

        return True
