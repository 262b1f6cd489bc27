"""
Per-tenant storage bookkeeping.

Usage is tracked in megabytes on the tenant row and adjusted on every tile
write. Because increments are approximate, usage is periodically reconciled
against the files actually on disk, which also writes a `.storage.json`
summary into the tenant directory.
"""

from datetime import datetime, timezone
from pathlib import Path

import structlog
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import select

from hmaptiles.database import SessionFactory, get_session, retry_on_contention
from hmaptiles.errors import HmapTilesError, TenantNotFoundError
from hmaptiles.orm import Tenant

BYTES_PER_MB = 1024 * 1024
DISCREPANCY_WARNING_MB = 1.0


def bytes_to_mb(size: int) -> float:
    return size / BYTES_PER_MB


def tenant_directory(storage: Path, tenant_id: str) -> Path:
    return Path(storage) / "tenants" / tenant_id


class StorageSummary(BaseModel):
    """
    Contents of `.storage.json`.
    """

    model_config = ConfigDict(populate_by_name=True)

    tenant_id: str = Field(alias="tenantId")
    calculated_at: datetime = Field(alias="calculatedAt")
    total_size_bytes: int = Field(alias="totalSizeBytes")
    total_size_mb: float = Field(alias="totalSizeMB")
    file_count: int = Field(alias="fileCount")


def directory_size(directory: Path) -> tuple[int, int]:
    """
    File count and total size in bytes of everything below `directory`.
    Files that disappear or cannot be read during the scan are skipped.
    """
    if not directory.is_dir():
        return 0, 0

    count = 0
    total = 0

    for path in directory.rglob("*"):
        try:
            if path.is_file():
                total += path.stat().st_size
                count += 1
        except OSError:
            continue

    return count, total


class StorageQuotaService:
    def __init__(self, session_factory: SessionFactory | None = None):
        self.session_factory = session_factory or get_session
        self.log = structlog.get_logger()

    def _tenant(self, session, tenant_id: str) -> Tenant | None:
        return session.exec(select(Tenant).where(Tenant.id == tenant_id)).one_or_none()

    def get_tenant(self, tenant_id: str) -> Tenant | None:
        with self.session_factory() as session:
            return self._tenant(session, tenant_id)

    def check_quota(self, tenant_id: str, size_mb: float) -> bool:
        """
        Whether the tenant can store another `size_mb` without exceeding its
        quota. Unknown and inactive tenants never have room.
        """
        log = self.log.bind(tenant_id=tenant_id, size_mb=size_mb)

        with self.session_factory() as session:
            tenant = self._tenant(session, tenant_id)

        if tenant is None:
            log.warning("quota.check.unknown_tenant")
            return False

        if not tenant.is_active:
            log.warning("quota.check.inactive_tenant")
            return False

        if tenant.current_storage_mb + size_mb > tenant.storage_quota_mb:
            log.warning(
                "quota.check.exceeded",
                current_mb=tenant.current_storage_mb,
                quota_mb=tenant.storage_quota_mb,
            )
            return False

        return True

    @retry_on_contention
    def increment_usage(self, tenant_id: str, size_mb: float) -> float:
        """
        Adjust usage by `size_mb` (which may be negative). Usage never drops
        below zero. Returns the new usage.
        """
        with self.session_factory() as session:
            tenant = self._tenant(session, tenant_id)

            if tenant is None:
                raise TenantNotFoundError(f"Tenant {tenant_id} not found")

            tenant.current_storage_mb = max(0.0, tenant.current_storage_mb + size_mb)
            session.add(tenant)
            session.commit()

            usage = tenant.current_storage_mb

        self.log.debug(
            "quota.usage.adjusted", tenant_id=tenant_id, delta_mb=size_mb, usage_mb=usage
        )

        return usage

    def decrement_usage(self, tenant_id: str, size_mb: float) -> float:
        return self.increment_usage(tenant_id, -size_mb)

    def current_usage(self, tenant_id: str) -> float:
        with self.session_factory() as session:
            tenant = self._tenant(session, tenant_id)
            return tenant.current_storage_mb if tenant is not None else 0.0

    def quota_limit(self, tenant_id: str) -> float:
        with self.session_factory() as session:
            tenant = self._tenant(session, tenant_id)
            return tenant.storage_quota_mb if tenant is not None else 0.0

    def recalculate_usage(self, tenant_id: str, storage: Path) -> float:
        """
        Scan the tenant directory, store the measured usage and write
        `.storage.json`. Returns the measured usage in MB.
        """
        count, total = directory_size(tenant_directory(storage, tenant_id))
        return self.update_from_calculation(tenant_id, storage, total, count)

    @retry_on_contention
    def _store_usage(self, tenant_id: str, usage_mb: float) -> float:
        with self.session_factory() as session:
            tenant = self._tenant(session, tenant_id)

            if tenant is None:
                raise TenantNotFoundError(f"Tenant {tenant_id} not found")

            previous = tenant.current_storage_mb
            tenant.current_storage_mb = usage_mb
            session.add(tenant)
            session.commit()

        return previous

    def update_from_calculation(
        self, tenant_id: str, storage: Path, total_bytes: int, file_count: int
    ) -> float:
        """
        Store a usage figure measured elsewhere, avoiding a second scan.
        """
        usage_mb = bytes_to_mb(total_bytes)
        log = self.log.bind(tenant_id=tenant_id, files=file_count, usage_mb=usage_mb)

        previous = self._store_usage(tenant_id, usage_mb)
        log.info("quota.recalculated")

        if abs(previous - usage_mb) > DISCREPANCY_WARNING_MB:
            log.warning("quota.recalculated.discrepancy", recorded_mb=previous)

        self.write_summary(
            StorageSummary(
                tenant_id=tenant_id,
                calculated_at=datetime.now(timezone.utc),
                total_size_bytes=total_bytes,
                total_size_mb=round(usage_mb, 2),
                file_count=file_count,
            ),
            storage,
        )

        return usage_mb

    def write_summary(self, summary: StorageSummary, storage: Path):
        directory = tenant_directory(storage, summary.tenant_id)

        try:
            directory.mkdir(parents=True, exist_ok=True)
            (directory / ".storage.json").write_text(
                summary.model_dump_json(by_alias=True, indent=2)
            )
        except OSError as e:
            self.log.warning(
                "quota.summary.write_failed", tenant_id=summary.tenant_id, error=str(e)
            )

    def verify_all_tenants(self, storage: Path) -> dict[str, float]:
        """
        Reconcile every active tenant. Returns the measured usage per tenant.
        A tenant that fails is logged and left out; the others still run.
        """
        with self.session_factory() as session:
            tenant_ids = session.exec(
                select(Tenant.id).where(Tenant.is_active == True)  # noqa: E712
            ).all()

        results = {}
        failed = 0

        for tenant_id in tenant_ids:
            try:
                results[tenant_id] = self.recalculate_usage(tenant_id, storage)
            except (HmapTilesError, OSError, SQLAlchemyError) as e:
                failed += 1
                self.log.error("quota.verify.failed", tenant_id=tenant_id, exc_info=e)

        self.log.info("quota.verified", tenants=len(results), failed=failed)

        return results
