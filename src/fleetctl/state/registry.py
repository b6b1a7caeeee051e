"""Durable registry of tenants and their instances.

The registry is a single JSON document (``fleet.json`` under the state
directory by default). It is the only code path that reads or writes fleet
state. Every mutating helper performs a full load-modify-save cycle, so each
call observes the latest on-disk document; nothing is cached in memory.

Writes are atomic: the new payload goes to a temporary file in the same
directory and is renamed over the canonical path. Before the rename the
previous document is copied to ``fleet.bak-<timestamp>.json``; the newest
``backup_retention`` copies are kept. Migrating a pre-tenant (version 1)
document additionally leaves ``fleet.bak-premigrate.json`` behind, which is
never pruned.
"""
from __future__ import annotations

import json
import logging
import os
import shutil
import tempfile
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from ..naming import DEFAULT_TENANT_NAME, DEFAULT_TENANT_SLUG, slugify
from .migrations import MigrationError, document_version, migrate
from .models import (
    CURRENT_VERSION,
    Instance,
    RecordError,
    RegistryDocument,
    Tenant,
    TenantSummary,
    new_identifier,
    utc_timestamp,
)

log = logging.getLogger(__name__)

PREMIGRATE_LABEL = "premigrate"


class RegistryError(RuntimeError):
    """Raised when registry operations fail."""


class DuplicateSlugError(RegistryError):
    """Raised when a tenant slug is already held by another tenant."""


class TenantNotFoundError(RegistryError):
    """Raised when a tenant id is unknown."""


class InstanceNotFoundError(RegistryError):
    """Raised when an instance id is unknown within its tenant."""


def bootstrap_document() -> RegistryDocument:
    """Return a fresh document holding only the default tenant."""
    tenant = _default_tenant()
    return RegistryDocument(tenants={tenant.id: tenant})


def _default_tenant(notes: str = "") -> Tenant:
    return Tenant(
        id=new_identifier(),
        name=DEFAULT_TENANT_NAME,
        slug=DEFAULT_TENANT_SLUG,
        created_at=utc_timestamp(),
        notes=notes,
    )


@dataclass(slots=True)
class InstanceRegistry:
    """Load, persist and mutate the fleet registry document."""

    path: Path
    backup_retention: int = 20

    def __post_init__(self) -> None:
        """Normalise the document path after initialisation."""
        self.path = Path(self.path).expanduser()
        if self.backup_retention < 0:
            raise RegistryError("backup_retention must be zero or positive.")

    @property
    def root(self) -> Path:
        """Return the directory that holds the document and its backups."""
        return self.path.parent

    def ensure_root(self) -> None:
        """Create the registry directory if it does not yet exist."""
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise RegistryError(f"Failed to prepare registry directory {self.root}: {exc}") from exc

    # ------------------------------------------------------------------
    # Document I/O
    # ------------------------------------------------------------------
    def load(self) -> RegistryDocument:
        """Return the current document, bootstrapping or migrating it as needed."""
        if not self.path.exists():
            document = bootstrap_document()
            self.save(document)
            log.info("Initialised new fleet registry at %s with the default tenant.", self.path)
            return document

        raw = self._read_raw()
        try:
            version = document_version(raw)
            if version > CURRENT_VERSION:
                raise MigrationError(
                    f"Registry version {version} is newer than supported version "
                    f"{CURRENT_VERSION}."
                )
            if version < CURRENT_VERSION:
                self._write_premigration_backup()
                document = self._parse(migrate(raw))
                self.save(document)
                log.info("Fleet registry migration complete.")
                return document
        except MigrationError as exc:
            raise RegistryError(f"Cannot migrate {self.path}: {exc}") from exc

        document = self._parse(raw)
        if document.default_tenant() is None:
            tenant = _default_tenant()
            document.tenants[tenant.id] = tenant
            self.save(document)
            log.warning("Registry had no default tenant; recreated it as %s.", tenant.id)
        return document

    def save(self, document: RegistryDocument) -> None:
        """Atomically persist *document*, backing up the previous version first."""
        self.ensure_root()
        if self.path.exists():
            backup = self.backup_path(_backup_stamp())
            try:
                shutil.copy2(self.path, backup)
            except OSError as exc:
                log.warning("Registry backup to %s failed: %s", backup, exc)

        tmp_fd, tmp_name = tempfile.mkstemp(dir=str(self.root), prefix=f".{self.path.name}.")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                json.dump(document.to_dict(), handle, indent=2)
                handle.write("\n")
            os.replace(tmp_path, self.path)
            os.chmod(self.path, 0o600)
        except OSError as exc:
            raise RegistryError(f"Failed to write registry {self.path}: {exc}") from exc
        finally:
            tmp_path.unlink(missing_ok=True)

        self._prune_backups()

    def backup_path(self, label: str) -> Path:
        """Return the backup path for *label* (a timestamp or ``premigrate``)."""
        return self.root / f"{self.path.stem}.bak-{label}{self.path.suffix}"

    @property
    def premigration_backup_path(self) -> Path:
        """Return the fixed path of the pre-migration backup."""
        return self.backup_path(PREMIGRATE_LABEL)

    def list_backups(self) -> list[Path]:
        """Return timestamped backups, oldest first (pre-migration copy excluded)."""
        pattern = f"{self.path.stem}.bak-*{self.path.suffix}"
        premigrate = self.premigration_backup_path
        return sorted(path for path in self.root.glob(pattern) if path != premigrate)

    # ------------------------------------------------------------------
    # Tenant helpers
    # ------------------------------------------------------------------
    def list_tenants(self) -> list[TenantSummary]:
        """Return every tenant with its instance count."""
        return [tenant.summary() for tenant in self.load().tenants.values()]

    def get_tenant(self, tenant_id: str) -> Tenant | None:
        """Return the tenant for *tenant_id* if registered."""
        return self.load().tenants.get(tenant_id)

    def get_tenant_by_slug(self, slug: str) -> Tenant | None:
        """Return the tenant holding *slug* if any."""
        return next((t for t in self.load().tenants.values() if t.slug == slug), None)

    def get_default_tenant(self) -> Tenant | None:
        """Return the tenant with the ``default`` slug."""
        return self.load().default_tenant()

    def add_tenant(self, tenant: Tenant) -> Tenant:
        """Register *tenant*; its id and slug must be pre-generated."""
        document = self.load()
        if tenant.id in document.tenants:
            raise RegistryError(f"Tenant id '{tenant.id}' is already registered.")
        _ensure_unique_slug(document, tenant.slug)
        document.tenants[tenant.id] = tenant
        self.save(document)
        return tenant

    def update_tenant(
        self,
        tenant_id: str,
        *,
        name: str | None = None,
        notes: str | None = None,
    ) -> Tenant:
        """Update tenant metadata; a new *name* also recomputes the slug."""
        document = self.load()
        tenant = document.tenants.get(tenant_id)
        if tenant is None:
            raise TenantNotFoundError(f"Tenant '{tenant_id}' not found in registry")
        if name is not None:
            slug = slugify(name)
            _ensure_unique_slug(document, slug, ignore=tenant_id)
            tenant.name = name
            tenant.slug = slug
        if notes is not None:
            tenant.notes = notes
        self.save(document)
        return tenant

    def remove_tenant(self, tenant_id: str) -> Tenant | None:
        """Remove the tenant unconditionally and return it.

        Remote resources owned by its instances are not touched here; callers
        are expected to tear them down first.
        """
        document = self.load()
        removed = document.tenants.pop(tenant_id, None)
        self.save(document)
        return removed

    # ------------------------------------------------------------------
    # Instance helpers
    # ------------------------------------------------------------------
    def list_instances(self, tenant_id: str) -> list[Instance]:
        """Return the instances of *tenant_id* (empty when the tenant is unknown)."""
        tenant = self.get_tenant(tenant_id)
        if tenant is None:
            return []
        return list(tenant.instances.values())

    def get_instance(self, tenant_id: str, instance_id: str) -> Instance | None:
        """Return the instance if it belongs to *tenant_id*."""
        tenant = self.get_tenant(tenant_id)
        if tenant is None:
            return None
        return tenant.instances.get(instance_id)

    def add_instance(self, tenant_id: str, instance: Instance) -> Instance:
        """Attach *instance* to *tenant_id*."""
        document = self.load()
        tenant = document.tenants.get(tenant_id)
        if tenant is None:
            raise TenantNotFoundError(f"Tenant '{tenant_id}' not found in registry")
        tenant.instances[instance.id] = instance
        self.save(document)
        return instance

    def update_instance(self, tenant_id: str, instance_id: str, *, notes: str) -> Instance:
        """Replace the instance notes; every other field is fixed at provisioning."""
        document = self.load()
        tenant = document.tenants.get(tenant_id)
        if tenant is None:
            raise TenantNotFoundError(f"Tenant '{tenant_id}' not found in registry")
        instance = tenant.instances.get(instance_id)
        if instance is None:
            raise InstanceNotFoundError(
                f"Instance '{instance_id}' not found in tenant '{tenant_id}'"
            )
        instance.notes = notes
        self.save(document)
        return instance

    def remove_instance(self, tenant_id: str, instance_id: str) -> Instance | None:
        """Remove the instance from its tenant and return it."""
        document = self.load()
        tenant = document.tenants.get(tenant_id)
        if tenant is None:
            return None
        removed = tenant.instances.pop(instance_id, None)
        self.save(document)
        return removed

    def find_instance(self, instance_id: str) -> tuple[Tenant, Instance] | None:
        """Locate an instance by id alone, scanning every tenant."""
        for tenant in self.load().tenants.values():
            instance = tenant.instances.get(instance_id)
            if instance is not None:
                return tenant, instance
        return None

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _read_raw(self) -> Mapping[str, object]:
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise RegistryError(f"Registry file corrupted ({self.path}): {exc}") from exc
        except OSError as exc:
            raise RegistryError(f"Failed to read registry {self.path}: {exc}") from exc
        if not isinstance(data, Mapping):
            raise RegistryError(f"Registry file must contain a JSON object ({self.path}).")
        return data

    def _parse(self, raw: Mapping[str, object]) -> RegistryDocument:
        try:
            return RegistryDocument.from_dict(raw)
        except RecordError as exc:
            raise RegistryError(f"Invalid registry document {self.path}: {exc}") from exc

    def _write_premigration_backup(self) -> None:
        target = self.premigration_backup_path
        try:
            shutil.copy2(self.path, target)
            log.info("Pre-migration backup written to %s", target)
        except OSError as exc:
            log.warning("Pre-migration backup to %s failed: %s", target, exc)

    def _prune_backups(self) -> None:
        if self.backup_retention == 0:
            return
        backups = self.list_backups()
        for stale in backups[: max(len(backups) - self.backup_retention, 0)]:
            try:
                stale.unlink()
            except OSError as exc:
                log.warning("Could not prune registry backup %s: %s", stale, exc)


def _ensure_unique_slug(
    document: RegistryDocument,
    slug: str,
    *,
    ignore: str | None = None,
) -> None:
    for tenant in document.tenants.values():
        if tenant.id != ignore and tenant.slug == slug:
            raise DuplicateSlugError(f'A tenant with slug "{slug}" already exists.')


def _backup_stamp() -> str:
    return datetime.now(tz=UTC).strftime("%Y-%m-%dT%H-%M-%S-%fZ")


__all__ = [
    "DuplicateSlugError",
    "InstanceNotFoundError",
    "InstanceRegistry",
    "RegistryError",
    "TenantNotFoundError",
    "bootstrap_document",
]
