"""Tests for tenant and instance lifecycle operations."""
from __future__ import annotations

from typing import TYPE_CHECKING

import httpx
import pytest

from fleetctl.config import AppConfig
from fleetctl.fleet import FleetManager
from fleetctl.naming import InvalidNameError
from fleetctl.providers import RemoteApiError
from fleetctl.provisioning import ProvisioningOrchestrator
from fleetctl.state import (
    DuplicateSlugError,
    Instance,
    InstanceNotFoundError,
    InstanceRegistry,
    Tenant,
    TenantNotFoundError,
)
from fleetctl.status import StatusResolver

if TYPE_CHECKING:
    from conftest import FakeControlPlane


class Fleet:
    """Wires a fleet manager and orchestrator to the fake control plane."""

    def __init__(
        self, app_config: AppConfig, registry: InstanceRegistry, control_plane: FakeControlPlane
    ) -> None:
        client = control_plane.client(app_config)
        health = httpx.MockTransport(
            lambda request: httpx.Response(
                200, json={"configured": True, "gateway": {"reachable": True}}
            )
        )
        self.resolver = StatusResolver(
            client, app_config.status, http_client=httpx.Client(transport=health)
        )
        self.manager = FleetManager(registry, client, self.resolver)
        self.orchestrator = ProvisioningOrchestrator(app_config, registry, client)

    def provision(self, tenant: Tenant, name: str) -> Instance:
        return self.orchestrator.create_instance(tenant.id, name).instance


@pytest.fixture
def fleet(
    app_config: AppConfig, registry: InstanceRegistry, control_plane: FakeControlPlane
) -> Fleet:
    return Fleet(app_config, registry, control_plane)


def test_create_tenant_cleans_name_and_slugs(fleet: Fleet, registry: InstanceRegistry) -> None:
    """Tenant names are sanitised and slugged before persisting."""
    tenant = fleet.manager.create_tenant("  Acme <Corp>! ", notes="vip")

    assert tenant.name == "Acme Corp"
    assert tenant.slug == "acme-corp"
    found = registry.get_tenant_by_slug("acme-corp")
    assert found is not None and found.id == tenant.id
    names = [summary.name for summary in fleet.manager.list_tenants()]
    assert names == ["Default", "Acme Corp"]


def test_invalid_tenant_name_writes_nothing(fleet: Fleet, registry: InstanceRegistry) -> None:
    """A rejected name leaves the registry untouched."""
    registry.load()
    before = registry.path.read_text(encoding="utf-8")

    with pytest.raises(InvalidNameError):
        fleet.manager.create_tenant("<>!")

    assert registry.path.read_text(encoding="utf-8") == before


def test_duplicate_slug_is_rejected(fleet: Fleet) -> None:
    """Two tenants may not share a slug."""
    fleet.manager.create_tenant("Acme Corp")

    with pytest.raises(DuplicateSlugError):
        fleet.manager.create_tenant("acme corp")


def test_update_tenant_renames_and_reslugs(fleet: Fleet) -> None:
    """Renaming recomputes the slug."""
    tenant = fleet.manager.create_tenant("Acme")

    updated = fleet.manager.update_tenant(tenant.id, name="Acme Labs", notes="renamed")

    assert updated.slug == "acme-labs"
    assert updated.notes == "renamed"
    with pytest.raises(InvalidNameError):
        fleet.manager.update_tenant(tenant.id, name="!!!")


def test_resolve_tenant_by_id_or_slug(fleet: Fleet) -> None:
    """Tenants can be addressed by id or slug."""
    tenant = fleet.manager.create_tenant("Acme")

    assert fleet.manager.resolve_tenant(tenant.id).id == tenant.id
    assert fleet.manager.resolve_tenant("acme").id == tenant.id
    assert fleet.manager.default_tenant().slug == "default"
    with pytest.raises(TenantNotFoundError):
        fleet.manager.resolve_tenant("missing")


def test_tenant_delete_cascades_despite_remote_failures(
    fleet: Fleet, registry: InstanceRegistry, control_plane: FakeControlPlane
) -> None:
    """Every project deletion is attempted and the tenant is removed regardless."""
    tenant = fleet.manager.create_tenant("Acme")
    first = fleet.provision(tenant, "Alpha")
    second = fleet.provision(tenant, "Beta")
    control_plane.failing_projects.add(first.remote.project_id)

    outcome = fleet.manager.delete_tenant(tenant.id)

    assert registry.get_tenant(tenant.id) is None
    assert outcome.removed == [first.id, second.id]
    assert len(outcome.warnings) == 1
    assert outcome.warnings[0].startswith("Alpha: ")
    assert "Project is locked" in outcome.warnings[0]
    deleted = [v["id"] for v in control_plane.variables_for("projectDelete")]
    assert deleted == [first.remote.project_id, second.remote.project_id]


def test_delete_unknown_tenant(fleet: Fleet) -> None:
    """Deleting a missing tenant raises."""
    with pytest.raises(TenantNotFoundError):
        fleet.manager.delete_tenant("missing")


def test_instance_delete_failure_keeps_record(
    fleet: Fleet, registry: InstanceRegistry, control_plane: FakeControlPlane
) -> None:
    """Single-instance deletion only drops the record after remote success."""
    tenant = fleet.manager.default_tenant()
    instance = fleet.provision(tenant, "Alpha")
    control_plane.failing_projects.add(instance.remote.project_id)

    with pytest.raises(RemoteApiError):
        fleet.manager.delete_instance(tenant.id, instance.id)
    assert registry.get_instance(tenant.id, instance.id) is not None

    control_plane.failing_projects.clear()
    fleet.manager.delete_instance(tenant.id, instance.id)
    assert registry.get_instance(tenant.id, instance.id) is None


def test_locate_instance(fleet: Fleet) -> None:
    """Instances are found across tenants or within a named tenant."""
    tenant = fleet.manager.create_tenant("Acme")
    instance = fleet.provision(tenant, "Alpha")

    found_tenant, found = fleet.manager.locate_instance(instance.id)
    assert (found_tenant.id, found.id) == (tenant.id, instance.id)
    assert fleet.manager.locate_instance(instance.id, "acme")[1].id == instance.id
    with pytest.raises(InstanceNotFoundError):
        fleet.manager.locate_instance(instance.id, "default")
    with pytest.raises(InstanceNotFoundError):
        fleet.manager.locate_instance("missing")


def test_instance_names_need_not_be_unique(fleet: Fleet) -> None:
    """Two instances of one tenant may share a display name."""
    tenant = fleet.manager.default_tenant()

    first = fleet.provision(tenant, "Alpha")
    second = fleet.provision(tenant, "Alpha")

    assert first.id != second.id


def test_redeploy_invalidates_status_cache(
    fleet: Fleet, control_plane: FakeControlPlane
) -> None:
    """Lifecycle actions evict the cached status."""
    tenant = fleet.manager.default_tenant()
    instance = fleet.provision(tenant, "Alpha")
    fleet.manager.instance_status(instance)
    assert fleet.resolver.cached(instance.id) is not None

    fleet.manager.restart_instance(tenant.id, instance.id)

    assert fleet.resolver.cached(instance.id) is None
    (variables,) = control_plane.variables_for("serviceInstanceRedeploy")
    assert variables == {"serviceId": instance.remote.service_id, "environmentId": "env-1"}


def test_redeploy_unknown_instance(fleet: Fleet) -> None:
    """Redeploying a missing instance raises before any remote call."""
    with pytest.raises(InstanceNotFoundError):
        fleet.manager.redeploy_instance(fleet.manager.default_tenant().id, "missing")
