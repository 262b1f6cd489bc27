"""
Housekeeping of uploaded exports.

Uploads are stored under `hmap-temp` until their import has run. Files that
are older than the retention period are removed.
"""

import time
from pathlib import Path

import structlog

from .quota import bytes_to_mb

TEMP_UPLOAD_DIRECTORY = "hmap-temp"


def temp_upload_directory(storage: Path) -> Path:
    return Path(storage) / TEMP_UPLOAD_DIRECTORY


def cleanup_temp_uploads(
    storage: Path, retention_days: float, now: float | None = None
) -> int:
    """
    Delete `.hmap` uploads last modified more than `retention_days` ago.
    Returns the number of files deleted.
    """
    log = structlog.get_logger().bind(retention_days=retention_days)
    directory = temp_upload_directory(storage)

    if not directory.is_dir():
        log.debug("maintenance.temp.missing")
        return 0

    cutoff = (now if now is not None else time.time()) - retention_days * 86400
    deleted = 0
    freed = 0

    for path in directory.glob("*.hmap"):
        try:
            stat = path.stat()
            if stat.st_mtime < cutoff:
                path.unlink()
                deleted += 1
                freed += stat.st_size
        except OSError as e:
            log.warning("maintenance.temp.delete_failed", path=str(path), error=str(e))

    if deleted:
        log.info("maintenance.temp.cleaned", deleted=deleted, freed_mb=bytes_to_mb(freed))
    else:
        log.debug("maintenance.temp.nothing_stale")

    return deleted
