"""
Rendered tile images and pending rebuilds.

A tile row points at one PNG under the storage root. It is unique on
(map_id, x, y, zoom, tenant_id), and looked up per level through
(tenant_id, map_id, zoom).

Dirty tiles are pending-rebuild flags for zoom >= 1 tiles whose children
changed. At most one flag exists per (tenant_id, map_id, x, y, zoom).
"""

from datetime import datetime

from sqlalchemy import Index, UniqueConstraint
from sqlmodel import Field, SQLModel

from .map import utcnow


class Tile(SQLModel, table=True):
    __table_args__ = (
        UniqueConstraint("map_id", "x", "y", "zoom", "tenant_id", name="uq_tile_key"),
        Index("ix_tile_tenant_map_zoom", "tenant_id", "map_id", "zoom"),
    )

    id: int | None = Field(default=None, primary_key=True)
    tenant_id: str = Field(foreign_key="tenant.id")
    map_id: int = Field(foreign_key="map.id")
    x: int
    y: int
    zoom: int

    file: str = Field(description="Path of the PNG, relative to the storage root.")
    cache: int = Field(description="Cache-busting version stamp.")
    file_size_bytes: int = Field(default=0)


class DirtyTile(SQLModel, table=True):
    __table_args__ = (
        UniqueConstraint(
            "tenant_id", "map_id", "x", "y", "zoom", name="uq_dirty_tile_key"
        ),
        Index("ix_dirty_tile_tenant_zoom_map", "tenant_id", "zoom", "map_id"),
    )

    id: int | None = Field(default=None, primary_key=True)
    tenant_id: str = Field(foreign_key="tenant.id")
    map_id: int = Field(foreign_key="map.id")
    x: int
    y: int
    zoom: int
    created_at: datetime = Field(default_factory=utcnow)
