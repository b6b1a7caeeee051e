"""Tenant and instance lifecycle operations.

:class:`FleetManager` validates operator input, coordinates the control-plane
client with the registry and keeps the status cache in step with lifecycle
changes. Tenant deletion and instance deletion deliberately differ:

* deleting a tenant attempts every remote project deletion, records failures
  as warnings and then removes the tenant record regardless;
* deleting an instance removes the record only after the remote project
  deletion succeeded, so a failure can simply be retried.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field

from .naming import InvalidNameError, clean_name, slugify
from .providers.control_plane import ControlPlaneClient, RemoteApiError
from .state.models import Instance, Tenant, TenantSummary, new_identifier, utc_timestamp
from .state.registry import InstanceNotFoundError, InstanceRegistry, TenantNotFoundError
from .status import StatusResolver, StatusSnapshot

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class TenantDeletion:
    """Outcome of a cascading tenant delete."""

    tenant: Tenant
    removed: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


class FleetManager:
    """High-level tenant and instance operations."""

    def __init__(
        self,
        registry: InstanceRegistry,
        client: ControlPlaneClient,
        resolver: StatusResolver,
    ) -> None:
        self.registry = registry
        self.client = client
        self.resolver = resolver

    # ------------------------------------------------------------------
    # Tenants
    # ------------------------------------------------------------------
    def list_tenants(self) -> list[TenantSummary]:
        """Return every tenant with its instance count."""
        return self.registry.list_tenants()

    def resolve_tenant(self, ref: str) -> Tenant:
        """Return the tenant whose id or slug equals *ref*."""
        tenant = self.registry.get_tenant(ref) or self.registry.get_tenant_by_slug(ref)
        if tenant is None:
            raise TenantNotFoundError(f"Tenant '{ref}' not found.")
        return tenant

    def default_tenant(self) -> Tenant:
        """Return the default tenant (the registry recreates it when missing)."""
        tenant = self.registry.get_default_tenant()
        if tenant is None:
            raise TenantNotFoundError("No default tenant found.")
        return tenant

    def create_tenant(self, name: str, notes: str = "") -> Tenant:
        """Validate *name* and register a new tenant with a unique slug."""
        cleaned = clean_name(name)
        slug = slugify(cleaned)
        if not slug:
            raise InvalidNameError("Name must contain alphanumeric characters.")
        tenant = Tenant(
            id=new_identifier(),
            name=cleaned,
            slug=slug,
            created_at=utc_timestamp(),
            notes=notes or "",
        )
        self.registry.add_tenant(tenant)
        log.info('Tenant created: "%s" (%s)', tenant.name, tenant.id)
        return tenant

    def update_tenant(
        self,
        tenant_id: str,
        *,
        name: str | None = None,
        notes: str | None = None,
    ) -> Tenant:
        """Rename a tenant (recomputing its slug) or change its notes."""
        if name is not None:
            name = clean_name(name)
            if not slugify(name):
                raise InvalidNameError("Name must contain alphanumeric characters.")
        return self.registry.update_tenant(tenant_id, name=name, notes=notes)

    def delete_tenant(self, tenant_id: str) -> TenantDeletion:
        """Tear down every instance's remote project, then drop the tenant."""
        tenant = self.registry.get_tenant(tenant_id)
        if tenant is None:
            raise TenantNotFoundError(f"Tenant '{tenant_id}' not found.")

        removed: list[str] = []
        warnings: list[str] = []
        for instance in tenant.instances.values():
            try:
                self.client.delete_project(instance.remote.project_id)
            except RemoteApiError as exc:
                warnings.append(f"{instance.name}: {exc}")
            self.resolver.invalidate(instance.id)
            removed.append(instance.id)
        if warnings:
            log.warning("Tenant delete partial errors: %s", "; ".join(warnings))

        self.registry.remove_tenant(tenant.id)
        log.info(
            'Tenant deleted: "%s" (%s), %d instance(s) removed.',
            tenant.name,
            tenant.id,
            len(removed),
        )
        return TenantDeletion(tenant=tenant, removed=removed, warnings=warnings)

    # ------------------------------------------------------------------
    # Instances
    # ------------------------------------------------------------------
    def locate_instance(
        self,
        instance_id: str,
        tenant_ref: str | None = None,
    ) -> tuple[Tenant, Instance]:
        """Find an instance within *tenant_ref*, or across all tenants."""
        if tenant_ref:
            tenant = self.resolve_tenant(tenant_ref)
            instance = tenant.instances.get(instance_id)
            if instance is None:
                raise InstanceNotFoundError(
                    f"Instance '{instance_id}' not found in tenant '{tenant.slug}'."
                )
            return tenant, instance
        found = self.registry.find_instance(instance_id)
        if found is None:
            raise InstanceNotFoundError(f"Instance '{instance_id}' not found.")
        return found

    def instance_status(self, instance: Instance, *, force: bool = False) -> StatusSnapshot:
        """Return the composite status of *instance*."""
        return self.resolver.get_status(instance, force=force)

    def redeploy_instance(self, tenant_id: str, instance_id: str) -> Instance:
        """Redeploy the latest build and evict the cached status."""
        instance = self._require_instance(tenant_id, instance_id)
        self.client.redeploy_service_instance(
            instance.remote.service_id, instance.remote.environment_id
        )
        self.resolver.invalidate(instance.id)
        return instance

    def restart_instance(self, tenant_id: str, instance_id: str) -> Instance:
        """Restart by redeploying; the control plane has no separate restart."""
        return self.redeploy_instance(tenant_id, instance_id)

    def delete_instance(self, tenant_id: str, instance_id: str) -> Instance:
        """Delete the remote project, then remove the instance record.

        A :class:`RemoteApiError` propagates and leaves the record in place.
        """
        instance = self._require_instance(tenant_id, instance_id)
        self.client.delete_project(instance.remote.project_id)
        self.registry.remove_instance(tenant_id, instance.id)
        self.resolver.invalidate(instance.id)
        log.info('Instance deleted: "%s" (%s)', instance.name, instance.id)
        return instance

    def _require_instance(self, tenant_id: str, instance_id: str) -> Instance:
        instance = self.registry.get_instance(tenant_id, instance_id)
        if instance is None:
            raise InstanceNotFoundError(
                f"Instance '{instance_id}' not found in tenant '{tenant_id}'."
            )
        return instance


__all__ = ["FleetManager", "TenantDeletion"]
