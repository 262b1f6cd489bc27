"""
Importing `.hmap` exports.

An import runs through a fixed sequence of phases:

    Parse -> SelectSegments -> PrefetchTextures -> ImportSegments
          -> GenerateZoomLevels -> ImportMarkers -> Complete

Parsing and segment selection are all-or-nothing. Within the later phases a
failing grid, zoom tile or marker is logged and counted without stopping its
siblings. Whatever happens, ``import_hmap`` returns a result rather than
raising; a failed or cancelled run can then be compensated with
``cleanup_failed_import``.
"""

import shutil
import threading
import time
from enum import Enum
from pathlib import Path
from typing import BinaryIO, Callable

import structlog
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import select

from hmaptiles.database import SessionFactory, retry_on_contention
from hmaptiles.errors import (
    CleanupPartialFailure,
    HmapTilesError,
    ImportBusyError,
    ImportCancelledError,
)
from hmaptiles.hmap import HmapDocument, HmapGrid, HmapReader
from hmaptiles.orm import Grid, Map, Marker
from hmaptiles.orm.map import utcnow
from hmaptiles.processing.coords import Coordinate
from hmaptiles.processing.pyramid import encode_png
from hmaptiles.processing.rasterizer import render_grid
from hmaptiles.providers.resources import TileResourceFetcher
from hmaptiles.settings import settings

from .locks import ImportLockService
from .pyramid import ZoomPyramidBuilder
from .quota import StorageQuotaService, bytes_to_mb, tenant_directory
from .tiles import TileService, cache_stamp, tile_path

TEXTURE_CACHE_DIRECTORY = "hmap-tile-cache"
CANCELLED_MESSAGE = "Import was canceled"


class ImportMode(str, Enum):
    MERGE = "merge"
    "Add new grids to the map that already holds grids of the segment."
    CREATE_NEW = "create-new"
    "Create a fresh map for every segment."


class ImportPhase(str, Enum):
    PARSE = "Parsing"
    SELECT_SEGMENTS = "Selecting segments"
    PREFETCH_TEXTURES = "Fetching tiles"
    IMPORT_SEGMENTS = "Importing segments"
    GENERATE_ZOOM_LEVELS = "Generating zoom levels"
    IMPORT_MARKERS = "Importing markers"
    COMPLETE = "Complete"


class ImportProgress(BaseModel):
    phase: ImportPhase
    current_item: int = 0
    total_items: int = 0
    current_item_name: str | None = None


ProgressSink = Callable[[ImportProgress], None]
FetcherFactory = Callable[[Path], TileResourceFetcher]


class HmapImportResult(BaseModel):
    success: bool = False
    error_message: str | None = None

    maps_created: int = 0
    grids_imported: int = 0
    grids_skipped: int = 0
    grids_failed: int = 0
    tiles_rendered: int = 0
    zoom_tiles_generated: int = 0
    zoom_tiles_failed: int = 0
    "Zoom tiles left dirty for a later rebuild."
    markers_imported: int = 0
    markers_skipped: int = 0

    affected_map_ids: list[int] = []
    created_map_ids: list[int] = []
    created_grid_ids: list[str] = []
    moved_grids: dict[str, int] = {}
    "Existing grids moved onto a new map, with the map they came from."

    storage_bytes_used: int = 0
    texture_warning: str | None = None
    "First network error seen while fetching textures, if any."
    duration: float = 0.0
    "Seconds."


def select_segments(
    document: HmapDocument, max_segments: int
) -> tuple[list[int], list[tuple[int, int]]]:
    """
    Keep the `max_segments` segments with the most grids.

    Returns the kept segment ids, largest first, and the dropped ones as
    ``(segment_id, grid_count)`` pairs. Ties keep document order.
    """
    ranked = sorted(
        ((segment_id, len(document.grids_for_segment(segment_id)))
         for segment_id in document.segment_ids()),
        key=lambda s: s[1],
        reverse=True,
    )

    return [s for s, _ in ranked[:max_segments]], ranked[max_segments:]


def default_fetcher(storage: Path) -> TileResourceFetcher:
    return TileResourceFetcher(
        cache_dir=Path(storage) / TEXTURE_CACHE_DIRECTORY,
        base_url=settings.resource_base_url,
        memory_cache_size=settings.resource_cache_size,
        max_concurrency=settings.resource_concurrency,
        timeout=settings.resource_timeout_seconds,
    )


class _ImportRun:
    """
    State shared by the phases of a single import.
    """

    def __init__(
        self,
        tenant_id: str,
        mode: ImportMode,
        storage: Path,
        progress: ProgressSink | None,
        cancel: threading.Event | None,
    ):
        self.tenant_id = tenant_id
        self.mode = mode
        self.storage = Path(storage)
        self.progress = progress
        self.cancel = cancel
        self.result = HmapImportResult()

    def check_cancelled(self):
        if self.cancel is not None and self.cancel.is_set():
            raise ImportCancelledError(CANCELLED_MESSAGE)

    def report(
        self, phase: ImportPhase, current: int, total: int, name: str | None = None
    ):
        if self.progress is not None:
            self.progress(
                ImportProgress(
                    phase=phase,
                    current_item=current,
                    total_items=total,
                    current_item_name=name,
                )
            )


class HmapImportService:
    def __init__(
        self,
        tiles: TileService,
        quota: StorageQuotaService | None = None,
        session_factory: SessionFactory | None = None,
        fetcher_factory: FetcherFactory | None = None,
        locks: ImportLockService | None = None,
        max_segments: int | None = None,
    ):
        self.tiles = tiles
        self.quota = quota or tiles.quota
        self.session_factory = session_factory or tiles.session_factory
        self.fetcher_factory = fetcher_factory or default_fetcher
        self.locks = locks or ImportLockService(
            cooldown_seconds=settings.import_cooldown_seconds
        )
        self.max_segments = max_segments or settings.max_segments
        self.builder = ZoomPyramidBuilder(tiles=tiles, quota=self.quota)
        self.log = structlog.get_logger()

    # Entry points

    def run_import(
        self,
        stream: BinaryIO | bytes,
        tenant_id: str,
        mode: ImportMode,
        storage: Path,
        progress: ProgressSink | None = None,
        cancel: threading.Event | None = None,
    ) -> HmapImportResult:
        """
        Import under the tenant's import lock, cleaning up after a failed run.

        Raises
        ------
        ImportBusyError
            If the tenant is already importing or still cooling down.
        """
        attempt = self.locks.try_acquire(tenant_id)
        if not attempt.success:
            raise ImportBusyError(attempt.reason, attempt.wait_time)

        return self.run_acquired_import(stream, tenant_id, mode, storage, progress, cancel)

    def run_acquired_import(
        self,
        stream: BinaryIO | bytes,
        tenant_id: str,
        mode: ImportMode,
        storage: Path,
        progress: ProgressSink | None = None,
        cancel: threading.Event | None = None,
    ) -> HmapImportResult:
        """
        Like ``run_import``, for a caller that already holds the tenant's
        import lock. The lock is released when the import finishes.
        """
        success = False
        try:
            result = self.import_hmap(stream, tenant_id, mode, storage, progress, cancel)
            success = result.success

            if not success:
                map_ids, grid_ids = self.locks.items_to_cleanup(tenant_id)
                self.cleanup_failed_import(
                    map_ids,
                    grid_ids,
                    tenant_id,
                    storage,
                    moved_grids=self.locks.moved_grids(tenant_id),
                )

            return result
        finally:
            self.locks.release(tenant_id, success)

    def import_hmap(
        self,
        stream: BinaryIO | bytes,
        tenant_id: str,
        mode: ImportMode,
        storage: Path,
        progress: ProgressSink | None = None,
        cancel: threading.Event | None = None,
    ) -> HmapImportResult:
        """
        Import an export into the tenant's maps.

        Parameters
        ----------
        stream : BinaryIO | bytes
            The `.hmap` export.
        tenant_id : str
            Tenant that receives the maps.
        mode : ImportMode
            Whether segments are merged into existing maps or always get a
            new map.
        storage : Path
            Storage root; tiles are written below ``tenants/{tenant_id}``.
        progress : ProgressSink | None
            Called at every phase boundary and for every item.
        cancel : threading.Event | None
            Checked between phases and items; setting it stops the run.

        Returns
        -------
        HmapImportResult
            Always returned, including for failed and cancelled runs, with the
            counts reached so far.
        """
        started = time.monotonic()
        run = _ImportRun(tenant_id, mode, storage, progress, cancel)
        log = self.log.bind(tenant_id=tenant_id, mode=mode.value)

        try:
            self._run(run, stream)
            run.result.success = True
            run.report(ImportPhase.COMPLETE, 1, 1)
        except ImportCancelledError:
            log.warning("import.cancelled")
            run.result.error_message = CANCELLED_MESSAGE
        except Exception as e:
            log.error("import.failed", error=str(e), exc_info=e)
            run.result.error_message = str(e) or type(e).__name__

        run.result.duration = time.monotonic() - started

        result = run.result
        log.info(
            "import.finished",
            success=result.success,
            maps_created=result.maps_created,
            grids_imported=result.grids_imported,
            grids_skipped=result.grids_skipped,
            grids_failed=result.grids_failed,
            zoom_tiles_failed=result.zoom_tiles_failed,
            markers_imported=result.markers_imported,
            duration=result.duration,
        )

        return result

    # Phases

    def _run(self, run: _ImportRun, stream: BinaryIO | bytes):
        run.check_cancelled()
        run.report(ImportPhase.PARSE, 0, 1)
        document = HmapReader().read(stream)

        run.check_cancelled()
        run.report(ImportPhase.SELECT_SEGMENTS, 0, 1)
        segments, skipped = select_segments(document, self.max_segments)

        if skipped:
            self.log.info(
                "import.segments.skipped",
                tenant_id=run.tenant_id,
                kept=len(segments),
                skipped=[f"{s:X}({count} grids)" for s, count in skipped],
            )

        run.check_cancelled()
        grids = [g for s in segments for g in document.grids_for_segment(s)]
        resources = list(dict.fromkeys(name for g in grids for name in g.resource_names))
        run.report(ImportPhase.PREFETCH_TEXTURES, 0, len(resources))

        with self.fetcher_factory(run.storage) as fetcher:
            fetcher.prefetch(
                resources,
                progress=lambda current, total, name: run.report(
                    ImportPhase.PREFETCH_TEXTURES, current, total, name
                ),
            )

            if fetcher.first_network_error is not None:
                run.result.texture_warning = fetcher.first_network_error
                self.log.warning(
                    "import.textures.network_error", error=fetcher.first_network_error
                )

            for index, segment_id in enumerate(segments, start=1):
                run.check_cancelled()
                segment_grids = document.grids_for_segment(segment_id)
                run.report(
                    ImportPhase.IMPORT_SEGMENTS,
                    index,
                    len(segments),
                    f"Segment {segment_id:X} ({len(segment_grids)} grids)",
                )
                self._import_segment(run, segment_id, segment_grids, fetcher)

        self._generate_zoom_levels(run)
        self._import_markers(run, document, segments)

    def _import_segment(
        self,
        run: _ImportRun,
        segment_id: int,
        grids: list[HmapGrid],
        fetcher: TileResourceFetcher,
    ):
        result = run.result
        log = self.log.bind(tenant_id=run.tenant_id, segment=f"{segment_id:X}")

        existing = self.tiles.existing_grid_ids(
            run.tenant_id, [g.grid_id_string for g in grids]
        )

        map_id = None
        if run.mode == ImportMode.MERGE:
            map_id = next(
                (existing[g.grid_id_string] for g in grids if g.grid_id_string in existing),
                None,
            )

        if map_id is None:
            map_id = self._create_map(run.tenant_id, f"Segment {segment_id:X}")
            self.locks.track_created_map(run.tenant_id, map_id)
            result.created_map_ids.append(map_id)
            result.maps_created += 1
            log.info("import.segment.new_map", map_id=map_id)
        else:
            log.info("import.segment.merging", map_id=map_id)

        if map_id not in result.affected_map_ids:
            result.affected_map_ids.append(map_id)

        for grid in grids:
            run.check_cancelled()

            if run.mode == ImportMode.MERGE and grid.grid_id_string in existing:
                result.grids_skipped += 1
                continue

            previous_map_id = existing.get(grid.grid_id_string)
            if previous_map_id is not None and previous_map_id != map_id:
                self.locks.track_moved_grid(
                    run.tenant_id, grid.grid_id_string, previous_map_id
                )
                result.moved_grids.setdefault(grid.grid_id_string, previous_map_id)

            try:
                result.storage_bytes_used += self._import_grid(run, grid, map_id, fetcher)
            except (HmapTilesError, OSError, SQLAlchemyError) as e:
                log.warning("import.grid.failed", grid_id=grid.grid_id_string, error=str(e))
                result.grids_failed += 1
                continue

            if grid.grid_id_string not in existing:
                self.locks.track_created_grid(run.tenant_id, grid.grid_id_string)
                result.created_grid_ids.append(grid.grid_id_string)

            result.grids_imported += 1
            result.tiles_rendered += 1

    def _import_grid(
        self,
        run: _ImportRun,
        grid: HmapGrid,
        map_id: int,
        fetcher: TileResourceFetcher,
    ) -> int:
        textures = [fetcher.get_tile_image(name) for name in grid.resource_names]
        data = encode_png(render_grid(grid.tile_indices, grid.heights, textures))

        coord = Coordinate(grid.x, grid.y)
        relative = tile_path(run.tenant_id, map_id, 0, coord)
        size = self.tiles.write_tile_image(run.tenant_id, run.storage, relative, data)

        self.tiles.save_grid(
            Grid(
                id=grid.grid_id_string,
                tenant_id=run.tenant_id,
                map_id=map_id,
                x=grid.x,
                y=grid.y,
                next_update=utcnow(),
            )
        )
        self.tiles.save_tile(
            map_id, coord, 0, relative.as_posix(), cache_stamp(), run.tenant_id, size
        )

        return size

    def _generate_zoom_levels(self, run: _ImportRun):
        result = run.result
        total = len(result.affected_map_ids)
        run.report(ImportPhase.GENERATE_ZOOM_LEVELS, 0, total)

        for index, map_id in enumerate(result.affected_map_ids, start=1):
            run.check_cancelled()
            run.report(ImportPhase.GENERATE_ZOOM_LEVELS, index, total, f"Map {map_id}")

            try:
                written, written_bytes, failed = self.builder.build_map(
                    run.tenant_id, map_id, run.storage, cancel=run.cancel
                )
            except ImportCancelledError:
                raise
            except (HmapTilesError, OSError, SQLAlchemyError) as e:
                self.log.warning(
                    "import.zoom.failed", tenant_id=run.tenant_id, map_id=map_id, error=str(e)
                )
                result.zoom_tiles_failed += len(
                    self.tiles.dirty_tiles_for_map(run.tenant_id, map_id)
                )
                continue

            result.zoom_tiles_generated += written
            result.zoom_tiles_failed += failed
            result.storage_bytes_used += written_bytes

    def _import_markers(self, run: _ImportRun, document: HmapDocument, segments: list[int]):
        result = run.result
        markers = [(s, m) for s in segments for m in document.markers_for_segment(s)]

        if not markers:
            return

        run.report(ImportPhase.IMPORT_MARKERS, 0, len(markers))

        lookups = {
            s: {(g.x, g.y): g.grid_id_string for g in document.grids_for_segment(s)}
            for s in segments
        }

        for index, (segment_id, marker) in enumerate(markers, start=1):
            run.check_cancelled()
            run.report(ImportPhase.IMPORT_MARKERS, index, len(markers), marker.name)

            grid_id = lookups[segment_id].get(marker.grid_coordinate)
            if grid_id is None:
                result.markers_skipped += 1
                continue

            x, y = marker.local_position

            try:
                self._save_marker(
                    Marker(
                        tenant_id=run.tenant_id,
                        grid_id=grid_id,
                        x=x,
                        y=y,
                        name=marker.name,
                        image=marker.image,
                    )
                )
            except (HmapTilesError, SQLAlchemyError) as e:
                self.log.warning("import.marker.failed", name=marker.name, error=str(e))
                result.markers_skipped += 1
                continue

            result.markers_imported += 1

        self.log.info(
            "import.markers",
            imported=result.markers_imported,
            skipped=result.markers_skipped,
        )

    # Persistence

    @retry_on_contention
    def _create_map(self, tenant_id: str, name: str) -> int:
        with self.session_factory() as session:
            orm_map = Map(name=name, tenant_id=tenant_id)
            session.add(orm_map)
            session.commit()
            session.refresh(orm_map)
            return orm_map.id

    @retry_on_contention
    def _save_marker(self, marker: Marker):
        with self.session_factory() as session:
            session.add(marker)
            session.commit()

    @retry_on_contention
    def _delete_map(self, map_id: int):
        with self.session_factory() as session:
            if (orm_map := session.get(Map, map_id)) is not None:
                session.delete(orm_map)
                session.commit()

    @retry_on_contention
    def _delete_markers(self, grid_id: str, tenant_id: str):
        with self.session_factory() as session:
            for marker in session.exec(
                select(Marker).where(Marker.grid_id == grid_id, Marker.tenant_id == tenant_id)
            ).all():
                session.delete(marker)
            session.commit()

    # Compensation

    def cleanup_failed_import(
        self,
        map_ids: list[int],
        grid_ids: list[str],
        tenant_id: str,
        storage: Path,
        moved_grids: dict[str, int] | None = None,
        strict: bool = False,
    ) -> list[str]:
        """
        Remove what a failed import created.

        Grids the import moved onto one of its maps are put back on the map
        they came from. Created grids (and their markers) are deleted next,
        then each map's files,
        tile records, dirty flags and the map itself. The size of the removed
        files is returned to the tenant's quota. Each step is attempted once;
        failures are logged and collected.

        Parameters
        ----------
        map_ids : list[int]
            Maps created by the import.
        grid_ids : list[str]
            Grids created by the import.
        moved_grids : dict[str, int] | None
            Existing grids the import moved, mapped to their previous map.
        tenant_id : str
            Owner of the maps and grids.
        storage : Path
            Storage root.
        strict : bool
            Raise ``CleanupPartialFailure`` if any step failed.

        Returns
        -------
        list[str]
            Description of every failed step.
        """
        log = self.log.bind(tenant_id=tenant_id)
        log.info(
            "import.cleanup.start",
            maps=len(map_ids),
            grids=len(grid_ids),
            moved_grids=len(moved_grids or {}),
        )

        failures = []

        for grid_id, previous_map_id in (moved_grids or {}).items():
            try:
                self.tiles.move_grid(grid_id, tenant_id, previous_map_id)
            except (HmapTilesError, SQLAlchemyError) as e:
                failures.append(f"grid {grid_id} restore: {e}")
                log.warning("import.cleanup.restore_failed", grid_id=grid_id, error=str(e))

        for grid_id in grid_ids:
            try:
                self._delete_markers(grid_id, tenant_id)
                self.tiles.delete_grid(grid_id, tenant_id)
            except (HmapTilesError, SQLAlchemyError) as e:
                failures.append(f"grid {grid_id}: {e}")
                log.warning("import.cleanup.grid_failed", grid_id=grid_id, error=str(e))

        for map_id in map_ids:
            directory = tenant_directory(storage, tenant_id) / str(map_id)

            try:
                if directory.is_dir():
                    removed = sum(p.stat().st_size for p in directory.rglob("*.png"))
                    shutil.rmtree(directory)

                    if removed > 0:
                        self.quota.decrement_usage(tenant_id, bytes_to_mb(removed))
            except (HmapTilesError, OSError, SQLAlchemyError) as e:
                failures.append(f"map {map_id} files: {e}")
                log.warning("import.cleanup.files_failed", map_id=map_id, error=str(e))

            try:
                self.tiles.delete_tiles_by_map(map_id)
                self.tiles.delete_dirty_tiles_by_map(map_id)
                self._delete_map(map_id)
            except (HmapTilesError, SQLAlchemyError) as e:
                failures.append(f"map {map_id}: {e}")
                log.warning("import.cleanup.map_failed", map_id=map_id, error=str(e))

        self.locks.clear_tracked(tenant_id)

        if failures:
            log.warning("import.cleanup.partial", failures=len(failures))
            if strict:
                raise CleanupPartialFailure(failures)
        else:
            log.info("import.cleanup.complete")

        return failures
