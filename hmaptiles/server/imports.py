"""
Endpoints for uploading and importing map exports.
"""

import uuid
from pathlib import Path

import structlog
from fastapi import (
    APIRouter,
    BackgroundTasks,
    FastAPI,
    HTTPException,
    Request,
    UploadFile,
)

from hmaptiles.services.importer import ImportMode
from hmaptiles.services.locks import ImportStatus
from hmaptiles.services.maintenance import temp_upload_directory

from ..settings import settings

imports_router = APIRouter(prefix="/tenants/{tenant}/imports", tags=["Imports"])


def require_tenant(request: Request, tenant: str):
    if request.app.quota.get_tenant(tenant) is None:
        raise HTTPException(status_code=404, detail=f"Tenant {tenant} not found")


def run_uploaded_import(app: FastAPI, path: Path, tenant: str, mode: ImportMode):
    """
    Import a stored upload. The tenant's import lock must already be held.
    """
    with path.open("rb") as handle:
        result = app.importer.run_acquired_import(
            handle, tenant, mode, settings.storage_path
        )

    structlog.get_logger().info(
        "server.import.finished",
        tenant_id=tenant,
        upload=path.name,
        success=result.success,
        error=result.error_message,
    )


@imports_router.post(
    "",
    status_code=202,
    summary="Upload a map export.",
    description="Store an `.hmap` export and import it in the background. Only one import may run per tenant, followed by a cooldown.",
)
def post_import(
    tenant: str,
    file: UploadFile,
    request: Request,
    bt: BackgroundTasks,
    mode: ImportMode = ImportMode.MERGE,
):
    require_tenant(request, tenant)

    attempt = request.app.locks.try_acquire(tenant)

    if not attempt.success:
        headers = (
            {"Retry-After": str(int(attempt.wait_time) + 1)}
            if attempt.wait_time is not None
            else None
        )
        raise HTTPException(status_code=409, detail=attempt.reason, headers=headers)

    directory = temp_upload_directory(settings.storage_path)
    path = directory / f"{tenant}-{uuid.uuid4().hex}.hmap"

    try:
        directory.mkdir(parents=True, exist_ok=True)
        with path.open("wb") as handle:
            while chunk := file.file.read(1024 * 1024):
                handle.write(chunk)
    except OSError:
        request.app.locks.release(tenant, success=False)
        raise HTTPException(status_code=500, detail="Could not store the upload")

    bt.add_task(run_uploaded_import, request.app, path, tenant, mode)

    return {"upload": path.name, "mode": mode.value}


@imports_router.get(
    "/status",
    response_model=ImportStatus,
    summary="Import state of a tenant.",
)
def get_import_status(tenant: str, request: Request):
    require_tenant(request, tenant)

    return request.app.locks.status(tenant)
