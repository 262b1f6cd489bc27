"""
ORM mappings for the database tables.
"""

from .map import Grid, Map
from .marker import Marker
from .tenant import Tenant
from .tiles import DirtyTile, Tile

__all__ = (Tenant, Map, Grid, Tile, DirtyTile, Marker)
