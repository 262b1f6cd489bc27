"""
Structured view of a parsed map export.

An export is a set of grids (100x100 tile chunks) and markers, each tagged
with the segment they belong to. A segment is a connected cluster of grids.

Example, in the terms of the models below:

```
HmapDocument(
    grids=[
        HmapGrid(grid_id=..., segment_id=7, x=0, y=0, tilesets=[...], tile_indices=...),
        HmapGrid(grid_id=..., segment_id=7, x=1, y=0, tilesets=[...], tile_indices=...),
    ],
    markers=[
        HmapMarker(segment_id=7, tile_x=150, tile_y=20, name="Home", resource_name=None),
    ],
)
```
"""

from functools import cached_property

import numpy as np
from pydantic import BaseModel, ConfigDict

GRID_SIZE = 100
"Number of tiles along each edge of a grid."

DEFAULT_MARKER_IMAGE = "gfx/terobjs/mm/custom"


class HmapTileset(BaseModel):
    resource_name: str
    resource_version: int = 0
    priority: int = 0


class HmapGrid(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    grid_id: int
    segment_id: int
    x: int
    "Grid coordinate in world space (zoom 0)."
    y: int
    tilesets: list[HmapTileset]
    tile_indices: np.ndarray | None = None
    "One tileset index per tile, row-major (y * 100 + x)."
    heights: np.ndarray | None = None
    "One height per tile, row-major. Absent in older exports."

    @property
    def grid_id_string(self) -> str:
        return str(self.grid_id)

    @property
    def resource_names(self) -> list[str]:
        return [t.resource_name for t in self.tilesets]


class HmapMarker(BaseModel):
    segment_id: int
    tile_x: int
    "Absolute tile coordinate in world space."
    tile_y: int
    name: str
    resource_name: str | None = None
    "Icon of resource markers; plain markers have none."

    @property
    def image(self) -> str:
        return self.resource_name or DEFAULT_MARKER_IMAGE

    @property
    def grid_coordinate(self) -> tuple[int, int]:
        return self.tile_x // GRID_SIZE, self.tile_y // GRID_SIZE

    @property
    def local_position(self) -> tuple[int, int]:
        return self.tile_x % GRID_SIZE, self.tile_y % GRID_SIZE


class HmapDocument(BaseModel):
    grids: list[HmapGrid] = []
    markers: list[HmapMarker] = []

    @cached_property
    def grids_by_segment(self) -> dict[int, list[HmapGrid]]:
        segments: dict[int, list[HmapGrid]] = {}
        for grid in self.grids:
            segments.setdefault(grid.segment_id, []).append(grid)
        return segments

    @cached_property
    def markers_by_segment(self) -> dict[int, list[HmapMarker]]:
        segments: dict[int, list[HmapMarker]] = {}
        for marker in self.markers:
            segments.setdefault(marker.segment_id, []).append(marker)
        return segments

    def segment_ids(self) -> list[int]:
        return list(self.grids_by_segment)

    def grids_for_segment(self, segment_id: int) -> list[HmapGrid]:
        return self.grids_by_segment.get(segment_id, [])

    def markers_for_segment(self, segment_id: int) -> list[HmapMarker]:
        return self.markers_by_segment.get(segment_id, [])
