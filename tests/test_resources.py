"""Tests for fetching tileset textures"""
from unittest import mock

import requests

from hmaptiles.providers.resources import TileResourceFetcher

from conftest import offline_session, png_bytes


def response(content=b"", status_code=200):
    return mock.Mock(ok=status_code < 400, status_code=status_code, content=content)


def make_fetcher(tmp_path, session):
    return TileResourceFetcher(
        cache_dir=tmp_path / "textures",
        base_url="http://textures.test/",
        session=session,
    )


class TestTileResourceFetcher:
    def test_cache_path_flattens_resource_names(self, tmp_path):
        fetcher = make_fetcher(tmp_path, offline_session())

        assert fetcher.cache_path("gfx/tiles/grass").name == "gfx_tiles_grass.png"

    def test_downloads_once_and_caches(self, tmp_path):
        session = mock.Mock(spec=requests.Session)
        session.get.return_value = response(png_bytes((10, 20, 30, 255)))
        fetcher = make_fetcher(tmp_path, session)

        image = fetcher.get_tile_image("gfx/tiles/grass")
        again = fetcher.get_tile_image("gfx/tiles/grass")

        assert image.shape == (4, 4, 4)
        assert image[0, 0].tolist() == [10, 20, 30, 255]
        assert (again == image).all()
        assert fetcher.is_cached("gfx/tiles/grass")
        session.get.assert_called_once_with(
            "http://textures.test/gfx/tiles/grass", timeout=30.0
        )

    def test_reads_disk_cache_without_network(self, tmp_path):
        fetcher = make_fetcher(tmp_path, offline_session())
        fetcher.cache_path("gfx/tiles/rock").write_bytes(png_bytes((1, 2, 3, 255)))

        image = fetcher.get_tile_image("gfx/tiles/rock")

        assert image[0, 0].tolist() == [1, 2, 3, 255]
        assert fetcher.first_network_error is None

    def test_rejects_non_png_responses(self, tmp_path):
        session = mock.Mock(spec=requests.Session)
        session.get.return_value = response(b"<html>not found</html>")
        fetcher = make_fetcher(tmp_path, session)

        assert fetcher.get_tile_image("gfx/tiles/odd") is None
        assert not fetcher.is_cached("gfx/tiles/odd")
        assert fetcher.first_network_error is None

    def test_http_errors_are_not_cached(self, tmp_path):
        session = mock.Mock(spec=requests.Session)
        session.get.return_value = response(status_code=404)
        fetcher = make_fetcher(tmp_path, session)

        assert fetcher.get_tile_image("gfx/tiles/gone") is None
        assert fetcher.get_tile_image("gfx/tiles/gone") is None
        assert session.get.call_count == 2

    def test_remembers_first_network_error(self, tmp_path):
        session = mock.Mock(spec=requests.Session)
        session.get.side_effect = [
            requests.ConnectionError("first failure"),
            requests.Timeout("second failure"),
        ]
        fetcher = make_fetcher(tmp_path, session)

        assert fetcher.get_tile_image("gfx/tiles/a") is None
        assert fetcher.get_tile_image("gfx/tiles/b") is None

        assert "first failure" in fetcher.first_network_error
        assert "gfx/tiles/a" in fetcher.first_network_error

    def test_prefetch_reports_progress(self, tmp_path):
        session = mock.Mock(spec=requests.Session)
        session.get.return_value = response(png_bytes())
        fetcher = make_fetcher(tmp_path, session)
        fetcher.cache_path("gfx/tiles/cached").write_bytes(png_bytes())

        progress = []
        fetched = fetcher.prefetch(
            ["gfx/tiles/a", "gfx/tiles/b", "gfx/tiles/a", "gfx/tiles/cached"],
            progress=lambda current, total, name: progress.append((current, total)),
        )

        assert fetched == 2
        assert session.get.call_count == 2
        assert sorted(progress) == [(1, 2), (2, 2)]

        files, size, in_memory = fetcher.stats()
        assert files == 3
        assert size > 0
        assert in_memory == 2

    def test_close_releases_session(self, tmp_path):
        session = offline_session()

        with make_fetcher(tmp_path, session) as fetcher:
            fetcher.memory.add("x", png_bytes())

        session.close.assert_called_once()
        assert len(fetcher.memory) == 0
