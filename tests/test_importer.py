"""End-to-end tests for importing exports"""
import threading

import pytest
from sqlmodel import select

from hmaptiles.errors import ImportBusyError
from hmaptiles.hmap import read_hmap
from hmaptiles.orm import Grid, Map, Marker, Tenant, Tile
from hmaptiles.processing.coords import MAX_ZOOM, Coordinate
from hmaptiles.services.importer import (
    HmapImportService,
    ImportMode,
    ImportPhase,
    select_segments,
)
from hmaptiles.services.locks import ImportLockService
from hmaptiles.services.quota import BYTES_PER_MB, tenant_directory

GRASS = [("gfx/tiles/grass", 1, 0)]


@pytest.fixture
def importer(tiles, quota, offline_fetcher_factory):
    return HmapImportService(
        tiles=tiles,
        quota=quota,
        fetcher_factory=offline_fetcher_factory,
        locks=ImportLockService(cooldown_seconds=0),
    )


def square_segment(hmap, segment_id=1, first_grid_id=1):
    grid_id = first_grid_id
    for y in range(2):
        for x in range(2):
            hmap.grid(grid_id, segment_id, x, y, tilesets=GRASS)
            grid_id += 1
    return hmap


def rows(session_factory, model, *where):
    with session_factory() as session:
        return session.exec(select(model).where(*where)).all()


class TestCreateNew:
    def test_imports_grids_and_builds_pyramid(self, importer, tiles, tenant, storage, hmap):
        data = square_segment(hmap).build()

        result = importer.run_import(data, tenant, ImportMode.CREATE_NEW, storage)

        assert result.success, result.error_message
        assert result.maps_created == 1
        assert result.grids_imported == 4
        assert result.tiles_rendered == 4
        assert result.zoom_tiles_generated == MAX_ZOOM
        assert result.created_grid_ids == ["1", "2", "3", "4"]
        assert result.storage_bytes_used > 0
        assert "network unreachable" in result.texture_warning

        (map_id,) = result.affected_map_ids
        for zoom in range(0, MAX_ZOOM + 1):
            tile = tiles.get_tile(map_id, Coordinate(0, 0), zoom, tenant_id=tenant)
            assert tile is not None, zoom
            assert (storage / tile.file).exists()

        assert tiles.dirty_tile_count(tenant) == 0

    def test_usage_matches_written_files(self, importer, quota, tenant, storage, hmap):
        result = importer.import_hmap(
            square_segment(hmap).build(), tenant, ImportMode.CREATE_NEW, storage
        )

        on_disk = sum(
            p.stat().st_size for p in tenant_directory(storage, tenant).rglob("*.png")
        )
        assert result.storage_bytes_used == on_disk
        assert quota.current_usage(tenant) == pytest.approx(on_disk / BYTES_PER_MB)

    def test_reports_phases_in_order(self, importer, tenant, storage, hmap):
        hmap = square_segment(hmap)
        hmap.marker(1, 150, 20, "Home")
        phases = []

        importer.import_hmap(
            hmap.build(),
            tenant,
            ImportMode.CREATE_NEW,
            storage,
            progress=lambda p: phases.append(p.phase),
        )

        assert list(dict.fromkeys(phases)) == list(ImportPhase)

    def test_always_creates_new_map(self, importer, session_factory, tenant, storage, hmap):
        data = square_segment(hmap).build()

        first = importer.import_hmap(data, tenant, ImportMode.CREATE_NEW, storage)
        second = importer.import_hmap(data, tenant, ImportMode.CREATE_NEW, storage)

        assert second.success
        assert second.maps_created == 1
        assert second.affected_map_ids != first.affected_map_ids
        assert second.created_grid_ids == []

        grids = rows(session_factory, Grid, Grid.tenant_id == tenant)
        assert {g.map_id for g in grids} == set(second.affected_map_ids)


class TestMerge:
    def test_existing_grids_are_skipped(self, importer, tiles, tenant, storage, hmap):
        data = square_segment(hmap).build()
        first = importer.import_hmap(data, tenant, ImportMode.MERGE, storage)

        second = importer.import_hmap(data, tenant, ImportMode.MERGE, storage)

        assert second.success
        assert second.maps_created == 0
        assert second.grids_skipped == 4
        assert second.grids_imported == 0
        assert second.zoom_tiles_generated == 0
        assert second.affected_map_ids == first.affected_map_ids

    def test_new_grids_join_existing_map(self, importer, tiles, tenant, storage, hmap):
        importer.import_hmap(square_segment(hmap).build(), tenant, ImportMode.MERGE, storage)

        extended = square_segment(type(hmap)())
        extended.grid(5, 1, 2, 0, tilesets=GRASS)
        result = importer.import_hmap(extended.build(), tenant, ImportMode.MERGE, storage)

        (map_id,) = result.affected_map_ids
        assert result.maps_created == 0
        assert result.grids_imported == 1
        assert result.grids_skipped == 4
        assert result.zoom_tiles_generated == MAX_ZOOM
        assert tiles.get_tile(map_id, Coordinate(2, 0), 0) is not None
        assert tiles.get_tile(map_id, Coordinate(1, 0), 1) is not None


class TestMarkers:
    def test_markers_are_placed_in_their_grid(
        self, importer, session_factory, tenant, storage, hmap
    ):
        hmap = square_segment(hmap)
        hmap.marker(1, 150, 20, "Home")
        hmap.marker(1, 130, 170, "Cave", resource="gfx/hud/mmap/cave")
        hmap.marker(1, 1000, 1000, "Far away")

        result = importer.import_hmap(hmap.build(), tenant, ImportMode.CREATE_NEW, storage)

        assert result.markers_imported == 2
        assert result.markers_skipped == 1

        markers = {m.name: m for m in rows(session_factory, Marker, Marker.tenant_id == tenant)}
        assert (markers["Home"].grid_id, markers["Home"].x, markers["Home"].y) == ("2", 50, 20)
        assert markers["Cave"].grid_id == "4"
        assert markers["Cave"].image == "gfx/hud/mmap/cave"


class TestFailures:
    def test_malformed_export(self, importer, session_factory, tenant, storage):
        result = importer.run_import(b"not an export", tenant, ImportMode.CREATE_NEW, storage)

        assert not result.success
        assert "signature" in result.error_message
        assert rows(session_factory, Map, Map.tenant_id == tenant) == []
        assert importer.locks.status(tenant).last_was_successful is False

    def test_cancelled_import_is_cleaned_up(
        self, importer, quota, session_factory, tenant, storage, hmap
    ):
        cancel = threading.Event()

        def progress(p):
            if p.phase == ImportPhase.IMPORT_SEGMENTS:
                cancel.set()

        result = importer.run_import(
            square_segment(hmap).build(),
            tenant,
            ImportMode.CREATE_NEW,
            storage,
            progress=progress,
            cancel=cancel,
        )

        assert not result.success
        assert result.error_message == "Import was canceled"
        assert result.maps_created == 1
        assert rows(session_factory, Map, Map.tenant_id == tenant) == []
        assert importer.locks.items_to_cleanup(tenant) == ([], [])

    def test_busy_tenant_is_rejected(self, importer, tenant, storage, hmap):
        assert importer.locks.try_acquire(tenant).success

        with pytest.raises(ImportBusyError):
            importer.run_import(
                square_segment(hmap).build(), tenant, ImportMode.CREATE_NEW, storage
            )

    def test_cleanup_removes_everything_created(
        self, importer, quota, session_factory, tenant, storage, hmap
    ):
        hmap = square_segment(hmap)
        hmap.marker(1, 10, 10, "Home")
        result = importer.import_hmap(hmap.build(), tenant, ImportMode.CREATE_NEW, storage)
        (map_id,) = result.created_map_ids

        failures = importer.cleanup_failed_import(
            result.created_map_ids, result.created_grid_ids, tenant, storage
        )

        assert failures == []
        assert not (tenant_directory(storage, tenant) / str(map_id)).exists()
        assert quota.current_usage(tenant) == pytest.approx(0.0, abs=1e-9)
        for model in (Map, Grid, Tile, Marker):
            assert rows(session_factory, model, model.tenant_id == tenant) == []

    def test_failed_create_new_restores_moved_grids(
        self, importer, tiles, session_factory, tenant, storage, hmap
    ):
        data = square_segment(hmap).build()
        first = importer.run_import(data, tenant, ImportMode.CREATE_NEW, storage)
        (first_map,) = first.affected_map_ids
        cancel = threading.Event()

        def progress(p):
            if p.phase == ImportPhase.GENERATE_ZOOM_LEVELS:
                cancel.set()

        second = importer.run_import(
            data, tenant, ImportMode.CREATE_NEW, storage, progress=progress, cancel=cancel
        )

        assert not second.success
        assert second.moved_grids == dict.fromkeys(["1", "2", "3", "4"], first_map)
        assert {m.id for m in rows(session_factory, Map, Map.tenant_id == tenant)} == {first_map}
        assert {g.map_id for g in rows(session_factory, Grid, Grid.tenant_id == tenant)} == {
            first_map
        }
        assert tiles.get_tile(first_map, Coordinate(0, 0), MAX_ZOOM) is not None
        assert importer.locks.moved_grids(tenant) == {}

    def test_zoom_quota_failure_keeps_imported_grids(
        self, importer, tiles, quota, session_factory, tenant, storage, hmap
    ):
        def progress(p):
            if p.phase == ImportPhase.GENERATE_ZOOM_LEVELS:
                with session_factory() as session:
                    row = session.get(Tenant, tenant)
                    row.storage_quota_mb = row.current_storage_mb + 10 / BYTES_PER_MB
                    session.add(row)
                    session.commit()

        result = importer.run_import(
            square_segment(hmap).build(),
            tenant,
            ImportMode.CREATE_NEW,
            storage,
            progress=progress,
        )

        assert result.success, result.error_message
        assert result.grids_imported == 4
        assert result.zoom_tiles_generated == 0
        assert result.zoom_tiles_failed == 1
        assert len(rows(session_factory, Grid, Grid.tenant_id == tenant)) == 4
        assert tiles.dirty_tile_count(tenant) == MAX_ZOOM

        with session_factory() as session:
            row = session.get(Tenant, tenant)
            row.storage_quota_mb = 1024.0
            session.add(row)
            session.commit()

        assert tiles.rebuild_dirty_tiles(tenant, storage) == MAX_ZOOM
        assert tiles.dirty_tile_count(tenant) == 0


class TestSegmentSelection:
    def test_keeps_largest_segments(self, hmap):
        grid_id = 1
        for segment_id, size in [(10, 1), (20, 3), (30, 2), (40, 5)]:
            for x in range(size):
                hmap.grid(grid_id, segment_id, x, 0)
                grid_id += 1

        kept, skipped = select_segments(read_hmap(hmap.build()), 3)

        assert kept == [40, 20, 30]
        assert skipped == [(10, 1)]

    def test_only_selected_segments_are_imported(
        self, tiles, quota, offline_fetcher_factory, tenant, storage, hmap
    ):
        importer = HmapImportService(
            tiles=tiles, quota=quota, fetcher_factory=offline_fetcher_factory, max_segments=1
        )
        hmap.grid(1, 10, 0, 0)
        hmap.grid(2, 20, 5, 5)
        hmap.grid(3, 20, 6, 5)

        result = importer.import_hmap(hmap.build(), tenant, ImportMode.CREATE_NEW, storage)

        assert result.maps_created == 1
        assert result.grids_imported == 2
        assert result.created_grid_ids == ["2", "3"]
