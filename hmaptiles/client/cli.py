"""
CLI components (using typer)
"""

from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from hmaptiles.services.importer import ImportMode
from hmaptiles.settings import settings

CONSOLE = Console()

APP = typer.Typer()


def _setup():
    from hmaptiles.database import create_database_and_tables
    from hmaptiles.logs import configure_logging

    configure_logging(level=settings.log_level, json=settings.log_json)
    create_database_and_tables()


@APP.command("import")
def import_hmap(
    filename: Path,
    tenant: str,
    mode: ImportMode = ImportMode.MERGE,
    storage: Path = settings.storage_path,
):
    """
    Import a `.hmap` export into the maps of a tenant.
    """
    from hmaptiles.services.importer import HmapImportService, ImportProgress
    from hmaptiles.services.tiles import TileService

    _setup()

    def report(progress: ImportProgress):
        name = f" {progress.current_item_name}" if progress.current_item_name else ""
        CONSOLE.print(
            f"[bold]{progress.phase.value}[/bold] "
            f"{progress.current_item}/{progress.total_items}{name}"
        )

    tiles = TileService()
    importer = HmapImportService(tiles=tiles)

    try:
        with filename.open("rb") as handle:
            result = importer.run_import(handle, tenant, mode, storage, progress=report)
    finally:
        tiles.close()

    if not result.success:
        CONSOLE.print(f"[red]Import failed:[/red] {result.error_message}")
        raise typer.Exit(code=1)

    if result.texture_warning:
        CONSOLE.print(f"[yellow]Warning:[/yellow] {result.texture_warning}")

    if result.zoom_tiles_failed:
        CONSOLE.print(
            f"[yellow]Warning:[/yellow] {result.zoom_tiles_failed} zoom tile(s) were "
            "left for a later rebuild."
        )

    CONSOLE.print(
        f"Imported {result.grids_imported} grids ({result.grids_skipped} skipped, "
        f"{result.grids_failed} failed) into {len(result.affected_map_ids)} map(s), "
        f"{result.markers_imported} markers, in {result.duration:.1f}s."
    )


@APP.command()
def rebuild(
    tenant: str,
    max_tiles: int = settings.rebuild_batch_size,
    storage: Path = settings.storage_path,
):
    """
    Rebuild the dirty zoom tiles of a tenant.
    """
    from hmaptiles.services.tiles import TileService

    _setup()

    tiles = TileService()
    try:
        rebuilt = tiles.rebuild_dirty_tiles(tenant, storage, max_tiles)
        remaining = tiles.dirty_tile_count(tenant)
    finally:
        tiles.close()

    CONSOLE.print(f"Rebuilt {rebuilt} tiles, {remaining} still dirty.")


@APP.command("storage")
def storage_usage(
    tenant: str | None = None,
    storage: Path = settings.storage_path,
):
    """
    Reconcile storage usage with the files on disk, for one tenant or all.
    """
    from hmaptiles.services.quota import StorageQuotaService

    _setup()

    quota = StorageQuotaService()

    if tenant is None:
        usage = quota.verify_all_tenants(storage)
    else:
        usage = {tenant: quota.recalculate_usage(tenant, storage)}

    table = Table("Tenant", "Usage (MB)", "Quota (MB)")
    for tenant_id, usage_mb in usage.items():
        table.add_row(tenant_id, f"{usage_mb:.2f}", f"{quota.quota_limit(tenant_id):.2f}")

    CONSOLE.print(table)


@APP.command()
def cleanup_temp(
    storage: Path = settings.storage_path,
    retention_days: float = settings.temp_retention_days,
):
    """
    Delete stale uploaded exports.
    """
    from hmaptiles.services.maintenance import cleanup_temp_uploads

    _setup()

    deleted = cleanup_temp_uploads(storage, retention_days)
    CONSOLE.print(f"Deleted {deleted} stale upload(s).")


@APP.command()
def tenant_add(tenant_id: str, name: str = "", quota: float = 1024.0):
    """
    Create a tenant with a storage quota in MB.
    """
    from hmaptiles import database as db
    from hmaptiles import orm

    _setup()

    with db.get_session() as session:
        session.add(orm.Tenant(id=tenant_id, name=name, storage_quota_mb=quota))
        session.commit()

    CONSOLE.print(f"Tenant {tenant_id} successfully added ({quota:.0f}MB quota).")


@APP.command()
def serve(host: str = "127.0.0.1", port: int = 8000):
    """
    Start the import and tile server.
    """
    from uvicorn import run

    from hmaptiles.server.app import app

    run(app, host=host, port=port)


def main():
    global APP

    APP()
