"""
Tenants own maps, grids and tiles and carry a storage quota. Usage is an
approximation that is periodically reconciled against the file system.
"""

from sqlmodel import Field, SQLModel


class Tenant(SQLModel, table=True):
    id: str = Field(primary_key=True, max_length=255)
    name: str = Field(default="", max_length=255)

    storage_quota_mb: float = Field(
        default=1024.0, description="Maximum storage the tenant may use, in MB."
    )
    current_storage_mb: float = Field(
        default=0.0, description="Storage currently used by tiles, in MB."
    )
    is_active: bool = Field(default=True)

    def __str__(self):
        return (
            f"Tenant {self.id} using {self.current_storage_mb:.2f}MB "
            f"of {self.storage_quota_mb:.2f}MB"
        )
