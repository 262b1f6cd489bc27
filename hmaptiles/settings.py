"""
Settings for the project.
"""

from pathlib import Path

from fastapi import FastAPI
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = "sqlite:///hmaptiles.db"
    "SQLAlchemy URL of the embedded store holding tenants, maps, grids and tiles."

    storage_path: Path = Path("map")
    "Root of the blob storage. Tiles live under `tenants/{tenant}/{map}/{zoom}`."

    # Remote texture settings
    resource_base_url: str = "https://www.havenandhearth.com/mt/r/"
    "Base URL that tileset resource names are appended to."
    resource_cache_size: int = 50
    "Number of decoded textures kept in memory during an import."
    resource_concurrency: int = 5
    "Maximum number of textures fetched at the same time."
    resource_timeout_seconds: float = 30.0
    "Timeout for a single texture download."

    # Import settings
    max_segments: int = 3
    "Only the largest segments (by grid count) of an export are imported."
    import_cooldown_seconds: float = 300.0
    "Time a tenant has to wait after an import finishes before starting another."
    rebuild_batch_size: int = 500
    "Maximum number of dirty zoom tiles processed by a single rebuild call."
    enforce_quota: bool = True
    "Whether tile writes are rejected once a tenant runs out of storage."

    # Store contention
    write_retry_attempts: int = 5
    "Number of attempts for a write that hits a locked database."
    write_retry_base_delay_seconds: float = 0.1
    "First back-off delay; doubled after every failed attempt."

    # Maintenance
    temp_retention_days: int = 7
    "Uploaded exports older than this are removed from `hmap-temp`."

    log_level: str = "INFO"
    log_json: bool = False
    "Render log lines as JSON rather than the console renderer."

    class Config:
        env_prefix = "HMAPTILES_"

    def setup_app(self, app: FastAPI):
        from hmaptiles.database import create_database_and_tables
        from hmaptiles.services.importer import HmapImportService
        from hmaptiles.services.locks import ImportLockService
        from hmaptiles.services.quota import StorageQuotaService
        from hmaptiles.services.tiles import TileService

        create_database_and_tables()

        app.quota = StorageQuotaService()
        app.tiles = TileService(quota=app.quota)
        app.locks = ImportLockService(cooldown_seconds=self.import_cooldown_seconds)
        app.importer = HmapImportService(
            tiles=app.tiles, quota=app.quota, locks=app.locks
        )

        return app


settings = Settings()
