"""
Main server app.
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI

from ..logs import configure_logging
from ..settings import settings
from .imports import imports_router
from .tiles import tiles_router


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan event handler for the FastAPI app.
    """

    configure_logging(level=settings.log_level, json=settings.log_json)
    settings.setup_app(app=app)

    yield

    app.tiles.close()


tags_metadata = [
    {
        "name": "Imports",
        "description": "Uploading map exports and following the progress of their import.",
    },
    {
        "name": "Maps and Tiles",
        "description": "Operations to retrieve rendered tiles and rebuild stale zoom levels.",
    },
]

app = FastAPI(lifespan=lifespan, openapi_tags=tags_metadata)

app.include_router(imports_router)
app.include_router(tiles_router)
