"""Schema migrations for the fleet registry document.

Each entry in :data:`MIGRATIONS` upgrades a raw document from version ``N``
to ``N + 1``. Documents written before versioning existed carry no
``version`` key and are treated as version 1.
"""
from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from typing import Any

from ..naming import DEFAULT_TENANT_NAME, DEFAULT_TENANT_SLUG
from .models import CURRENT_VERSION, new_identifier, utc_timestamp

log = logging.getLogger(__name__)

MIGRATION_NOTES = "Auto-created during migration from v1. Contains pre-existing instances."

Migration = Callable[[Mapping[str, Any]], dict[str, Any]]


class MigrationError(RuntimeError):
    """Raised when a document cannot be upgraded."""


def document_version(raw: Mapping[str, Any]) -> int:
    """Return the schema version of a raw document."""
    version = raw.get("version")
    if version is None or version == 0:
        return 1
    if isinstance(version, bool) or not isinstance(version, int):
        raise MigrationError(f"Registry version must be an integer, got {version!r}.")
    return version


def needs_migration(raw: Mapping[str, Any]) -> bool:
    """Return ``True`` when *raw* is older than :data:`CURRENT_VERSION`."""
    return document_version(raw) < CURRENT_VERSION


def migrate_v1_to_v2(raw: Mapping[str, Any]) -> dict[str, Any]:
    """Nest the flat instance map under a freshly created default tenant.

    Other top-level keys are carried into the new envelope unchanged.
    """
    instances = raw.get("instances") or {}
    if not isinstance(instances, Mapping):
        raise MigrationError("Version 1 documents must store 'instances' as an object.")
    tenant_id = new_identifier()
    carried = {k: v for k, v in raw.items() if k not in {"instances", "version", "tenants"}}
    return {
        **carried,
        "version": 2,
        "tenants": {
            tenant_id: {
                "id": tenant_id,
                "name": DEFAULT_TENANT_NAME,
                "slug": DEFAULT_TENANT_SLUG,
                "createdAt": utc_timestamp(),
                "notes": MIGRATION_NOTES,
                "tailscale": None,
                "instances": dict(instances),
            }
        },
    }


MIGRATIONS: dict[int, Migration] = {
    1: migrate_v1_to_v2,
}


def migrate(raw: Mapping[str, Any]) -> dict[str, Any]:
    """Apply every pending migration to *raw* and return the upgraded document."""
    version = document_version(raw)
    if version > CURRENT_VERSION:
        raise MigrationError(
            f"Registry version {version} is newer than supported version {CURRENT_VERSION}."
        )
    document = dict(raw)
    while version < CURRENT_VERSION:
        step = MIGRATIONS.get(version)
        if step is None:
            raise MigrationError(f"No migration registered from version {version}.")
        log.info("Migrating fleet registry from v%d to v%d.", version, version + 1)
        document = step(document)
        version = document_version(document)
    return document


__all__ = [
    "MIGRATIONS",
    "MIGRATION_NOTES",
    "MigrationError",
    "document_version",
    "migrate",
    "migrate_v1_to_v2",
    "needs_migration",
]
