"""
Points of interest, positioned within a grid.
"""

from sqlmodel import Field, SQLModel


class Marker(SQLModel, table=True):
    id: int | None = Field(default=None, primary_key=True)
    tenant_id: str = Field(foreign_key="tenant.id", index=True)
    grid_id: str = Field(max_length=255, index=True)

    x: int = Field(description="Position within the grid (0-99).")
    y: int = Field(description="Position within the grid (0-99).")

    name: str = Field(default="", max_length=255)
    image: str = Field(max_length=255, description="Icon resource name.")
