"""
Reading of `.hmap` map exports.
"""

from .definitions import GRID_SIZE, HmapDocument, HmapGrid, HmapMarker, HmapTileset
from .reader import HmapReader, read_hmap

__all__ = (
    GRID_SIZE,
    HmapDocument,
    HmapGrid,
    HmapMarker,
    HmapTileset,
    HmapReader,
    read_hmap,
)
