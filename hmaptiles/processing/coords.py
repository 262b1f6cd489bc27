"""
Tile coordinates and the zoom pyramid arithmetic.

Zoom 0 holds one tile per grid. Every tile at zoom z >= 1 covers the 2x2 block
of tiles beneath it. Halving uses floor division so that negative world
coordinates map to the same parent as their non-negative neighbours would
under a consistent tiling: (-1, -1) sits under (-1, -1), not (0, 0).
"""

from typing import Iterator

from pydantic import BaseModel, ConfigDict

MAX_ZOOM = 6
"Highest zoom level of the pyramid."


class Coordinate(BaseModel):
    model_config = ConfigDict(frozen=True)

    x: int
    y: int

    def __init__(self, x: int, y: int, **kwargs):
        super().__init__(x=x, y=y, **kwargs)

    def parent(self) -> "Coordinate":
        return Coordinate(self.x // 2, self.y // 2)

    def children(self) -> list["Coordinate"]:
        """
        The four tiles one level down, in quadrant order top-left, top-right,
        bottom-left, bottom-right.
        """
        x, y = self.x * 2, self.y * 2
        return [
            Coordinate(x, y),
            Coordinate(x + 1, y),
            Coordinate(x, y + 1),
            Coordinate(x + 1, y + 1),
        ]

    def quadrant(self) -> tuple[int, int]:
        """
        Position of this tile within its parent, as (dx, dy) in {0, 1}.
        """
        return self.x % 2, self.y % 2

    def ancestors(self, levels: int = MAX_ZOOM) -> Iterator[tuple[int, "Coordinate"]]:
        coord = self
        for zoom in range(1, levels + 1):
            coord = coord.parent()
            yield zoom, coord

    def name(self) -> str:
        return f"{self.x}_{self.y}"

    def __str__(self):
        return f"({self.x}, {self.y})"
