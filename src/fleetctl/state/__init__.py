"""Fleet registry: persisted tenants, instances and schema migrations."""
from __future__ import annotations

from .migrations import MigrationError, migrate
from .models import (
    CURRENT_VERSION,
    Instance,
    MeshAttachment,
    RecordError,
    RegistryDocument,
    RemoteRefs,
    Secrets,
    Tenant,
    TenantSummary,
)
from .registry import (
    DuplicateSlugError,
    InstanceNotFoundError,
    InstanceRegistry,
    RegistryError,
    TenantNotFoundError,
)

__all__ = [
    "CURRENT_VERSION",
    "DuplicateSlugError",
    "Instance",
    "InstanceNotFoundError",
    "InstanceRegistry",
    "MeshAttachment",
    "MigrationError",
    "RecordError",
    "RegistryDocument",
    "RegistryError",
    "RemoteRefs",
    "Secrets",
    "Tenant",
    "TenantNotFoundError",
    "TenantSummary",
    "migrate",
]
