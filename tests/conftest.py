"""Shared fixtures: a throwaway database, storage root, tenant and export builder"""
import io
import struct
import zlib
from unittest import mock

import numpy as np
import pytest
import requests
from PIL import Image

from hmaptiles.database import create_database_and_tables, make_engine, make_session_factory
from hmaptiles.hmap.reader import SIGNATURE
from hmaptiles.orm import Tenant
from hmaptiles.providers.resources import TileResourceFetcher
from hmaptiles.services.quota import StorageQuotaService
from hmaptiles.services.tiles import TileService

TENANT = "tenant-a"


def cstring(value: str) -> bytes:
    return value.encode("utf-8") + b"\x00"


class HmapBuilder:
    """Encodes `.hmap` exports record by record"""

    def __init__(self):
        self.records = []

    def record(self, record_type: str, payload: bytes):
        self.records.append(cstring(record_type) + struct.pack("<I", len(payload)) + payload)
        return self

    def grid(
        self,
        grid_id,
        segment_id,
        x,
        y,
        tilesets=(),
        indices=None,
        heights=None,
        version=None,
        trailing=b"",
    ):
        version = version or (2 if heights is not None else 1)

        payload = struct.pack("<Bqqii", version, grid_id, segment_id, x, y)
        payload += struct.pack("<B", len(tilesets))
        for name, resource_version, priority in tilesets:
            payload += cstring(name) + struct.pack("<HB", resource_version, priority)

        if indices is None:
            indices = np.zeros(10000, dtype=np.uint8)
        payload += np.asarray(indices, dtype=np.uint8).tobytes()

        if version >= 2:
            if heights is None:
                payload += b"\x00"
            else:
                payload += b"\x01" + np.asarray(heights, dtype="<f4").tobytes()

        return self.record("grid", payload + trailing)

    def marker(self, segment_id, tile_x, tile_y, name, resource=None):
        payload = struct.pack("<Bqii", 1, segment_id, tile_x, tile_y) + cstring(name)
        if resource is None:
            payload += bytes([ord("p")])
        else:
            payload += bytes([ord("s")]) + cstring(resource) + struct.pack("<H", 1)

        return self.record("mark", payload)

    def build(self) -> bytes:
        return SIGNATURE + zlib.compress(b"".join(self.records))


def png_bytes(color=(200, 200, 200, 255), size=(4, 4)) -> bytes:
    with io.BytesIO() as output:
        Image.new("RGBA", size, color).save(output, format="PNG")
        return output.getvalue()


def offline_session():
    session = mock.Mock(spec=requests.Session)
    session.get.side_effect = requests.ConnectionError("network unreachable")
    return session


@pytest.fixture
def hmap():
    return HmapBuilder()


@pytest.fixture
def engine(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'hmaptiles.db'}")
    create_database_and_tables(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def tenant(session_factory):
    with session_factory() as session:
        session.add(Tenant(id=TENANT, name="Tenant A", storage_quota_mb=1024.0))
        session.commit()

    return TENANT


@pytest.fixture
def storage(tmp_path):
    root = tmp_path / "map"
    root.mkdir()
    return root


@pytest.fixture
def quota(session_factory):
    return StorageQuotaService(session_factory=session_factory)


@pytest.fixture
def tiles(session_factory, quota):
    service = TileService(session_factory=session_factory, quota=quota)
    yield service
    service.close()


@pytest.fixture
def offline_fetcher_factory():
    def factory(storage):
        return TileResourceFetcher(
            cache_dir=storage / "hmap-tile-cache",
            base_url="http://textures.invalid/",
            session=offline_session(),
        )

    return factory
