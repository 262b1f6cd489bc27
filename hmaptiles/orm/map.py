"""
Maps and the grids that make them up.

Grid identifiers are content hashes produced by the game client, so the same
grid can show up for several tenants; the primary key is (id, tenant_id).
"""

from datetime import datetime, timezone

from sqlmodel import Field, SQLModel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Map(SQLModel, table=True):
    id: int | None = Field(default=None, primary_key=True)
    name: str = Field(max_length=255, description="The name of the map.")
    tenant_id: str = Field(foreign_key="tenant.id", index=True)
    hidden: bool = Field(default=False)
    priority: int = Field(default=0)
    created_at: datetime = Field(default_factory=utcnow)

    def __str__(self):
        return f"Map {self.id} ({self.name}) of tenant {self.tenant_id}"


class Grid(SQLModel, table=True):
    id: str = Field(primary_key=True, max_length=255)
    tenant_id: str = Field(primary_key=True, foreign_key="tenant.id")
    map_id: int = Field(foreign_key="map.id", index=True)

    x: int = Field(description="Grid x coordinate (zoom 0).")
    y: int = Field(description="Grid y coordinate (zoom 0).")

    next_update: datetime = Field(
        default_factory=utcnow,
        description="When the grid may next be re-requested from a client.",
    )
