"""
Exceptions raised by the import and tiling pipeline.
"""


class HmapTilesError(Exception):
    pass


class MalformedInputError(HmapTilesError):
    """The export does not match the expected header or record layout."""

    pass


class StorageContentionError(HmapTilesError):
    """A write kept failing because the database was locked."""

    pass


class ResourceFetchError(HmapTilesError):
    """A tileset texture could not be downloaded or was not a PNG."""

    pass


class QuotaExceededError(HmapTilesError):
    """The tenant does not have enough storage left for a write."""

    def __init__(self, tenant_id: str, size_mb: float):
        self.tenant_id = tenant_id
        self.size_mb = size_mb
        super().__init__(
            f"Tenant {tenant_id} does not have room for another {size_mb:.4f}MB "
            f"({round(size_mb * 1024 * 1024)} bytes)"
        )


class TenantNotFoundError(HmapTilesError):
    pass


class CleanupPartialFailure(HmapTilesError):
    """One or more compensation steps failed after an aborted import."""

    def __init__(self, failures: list[str]):
        self.failures = failures
        super().__init__(f"{len(failures)} cleanup step(s) failed: " + "; ".join(failures))


class ImportBusyError(HmapTilesError):
    """Another import is running for the tenant, or it is cooling down."""

    def __init__(self, reason: str, wait_seconds: float | None = None):
        self.reason = reason
        self.wait_seconds = wait_seconds
        super().__init__(reason)


class ImportCancelledError(HmapTilesError):
    pass
