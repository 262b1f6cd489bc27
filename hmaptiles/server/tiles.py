"""
Endpoints for tiles.
"""

from pathlib import Path

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import FileResponse

from hmaptiles.processing.coords import MAX_ZOOM, Coordinate

from ..settings import settings
from .imports import require_tenant

tiles_router = APIRouter(prefix="/tenants/{tenant}", tags=["Maps and Tiles"])


@tiles_router.get(
    "/maps/{map_id}/{zoom}/{x}_{y}.png",
    summary="Retrieve an individual tile.",
    description="Tiles are addressed by map, zoom level (0 is full resolution, 6 the most zoomed out) and coordinate at that level.",
)
def get_tile(tenant: str, map_id: int, zoom: int, x: int, y: int, request: Request):
    if not 0 <= zoom <= MAX_ZOOM:
        raise HTTPException(status_code=400, detail=f"Zoom must be between 0 and {MAX_ZOOM}")

    tile = request.app.tiles.get_tile(map_id, Coordinate(x, y), zoom, tenant_id=tenant)

    if tile is None:
        raise HTTPException(status_code=404, detail="Tile not found")

    path = Path(settings.storage_path) / tile.file

    if not path.exists():
        raise HTTPException(status_code=404, detail="Tile not found")

    return FileResponse(
        path,
        media_type="image/png",
        headers={"Cache-Control": "public, max-age=3600", "ETag": f'"{tile.cache}"'},
    )


@tiles_router.post(
    "/rebuild",
    summary="Rebuild stale zoom tiles.",
    description="Rebuild up to `max_tiles` dirty zoom tiles of the tenant, lowest zoom first.",
)
def post_rebuild(tenant: str, request: Request, max_tiles: int | None = None):
    require_tenant(request, tenant)

    rebuilt = request.app.tiles.rebuild_dirty_tiles(
        tenant, settings.storage_path, max_tiles
    )

    return {"rebuilt": rebuilt, "remaining": request.app.tiles.dirty_tile_count(tenant)}
