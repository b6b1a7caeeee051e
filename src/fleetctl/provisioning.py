"""End-to-end provisioning of a new instance.

The workflow runs eight strictly sequential steps against the control plane
and records one or more human-readable lines per completed step. A failure
in a required step aborts the run with :class:`ProvisioningError`, which
carries the log collected so far. Remote resources created by earlier steps
are left in place; the operator cleans them up.

The mesh key (step 5) and the public domain (step 6) are best effort: their
failures are written to the log and the run continues.
"""
from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass, field

from .config import AppConfig
from .naming import clean_name, project_name, service_name
from .providers.control_plane import ControlPlaneClient, RemoteApiError
from .providers.mesh import MeshKeyIssuer
from .state.models import (
    Instance,
    MeshAttachment,
    RemoteRefs,
    Secrets,
    new_identifier,
    utc_timestamp,
)
from .state.registry import InstanceRegistry, RegistryError, TenantNotFoundError

log = logging.getLogger(__name__)


class ProvisioningError(RuntimeError):
    """Raised when a required provisioning step fails."""

    def __init__(
        self,
        message: str,
        *,
        log: list[str],
        cause: Exception | None = None,
        step: str = "",
    ) -> None:
        super().__init__(message)
        self.log = log
        self.cause = cause
        self.step = step


@dataclass(slots=True)
class ProvisioningResult:
    """Instance persisted by a successful run plus its step log."""

    instance: Instance
    log: list[str] = field(default_factory=list)


class _StepLog:
    """Collects step lines and mirrors them to the module logger."""

    def __init__(self, tenant_slug: str, name: str) -> None:
        self.prefix = f"[{tenant_slug}/{name}]"
        self.lines: list[str] = []

    def add(self, line: str) -> None:
        self.lines.append(line)
        log.info("%s %s", self.prefix, line)


class ProvisioningOrchestrator:
    """Create instances end to end for a tenant."""

    def __init__(
        self,
        config: AppConfig,
        registry: InstanceRegistry,
        client: ControlPlaneClient,
        mesh: MeshKeyIssuer | None = None,
    ) -> None:
        self.config = config
        self.registry = registry
        self.client = client
        self.mesh = mesh

    def create_instance(
        self,
        tenant_id: str,
        name: str,
        setup_password: str | None = None,
        notes: str = "",
    ) -> ProvisioningResult:
        """Provision a new instance called *name* under *tenant_id*.

        Raises :class:`~fleetctl.naming.InvalidNameError` or
        :class:`~fleetctl.state.TenantNotFoundError` before any remote call,
        and :class:`ProvisioningError` when a required step fails.
        """
        cleaned = clean_name(name)
        tenant = self.registry.get_tenant(tenant_id)
        if tenant is None:
            raise TenantNotFoundError(f"Tenant '{tenant_id}' not found in registry")

        cp = self.config.control_plane
        layout = self.config.instance
        steps = _StepLog(tenant.slug, cleaned)
        password = setup_password or secrets.token_hex(16)
        gateway_token = secrets.token_hex(32)
        service = service_name(cp.service_prefix, cleaned)
        current = "project"

        try:
            # 1. project + default environment
            label = project_name(cp.project_prefix, tenant.slug, cleaned)
            project = self.client.create_project(label)
            steps.add(f'Project "{label}" created: {project.id}')
            steps.add(f"Environment: {project.environment_name} ({project.environment_id})")

            # 2. service
            current = "service"
            service_id = self.client.create_service(project.id, service, cp.source_repo)
            steps.add(f'Service "{service}" created from {cp.source_repo}: {service_id}')

            # 3. volume
            current = "volume"
            volume_id = self.client.create_volume(
                project.id, service_id, project.environment_id, layout.mount_path
            )
            steps.add(f"Volume created at {layout.mount_path}: {volume_id}")

            # 4. variables
            current = "variables"
            self.client.upsert_variables(
                project.id,
                project.environment_id,
                service_id,
                {
                    "SETUP_PASSWORD": password,
                    "OPENCLAW_STATE_DIR": layout.state_dir,
                    "OPENCLAW_WORKSPACE_DIR": layout.workspace_dir,
                    "OPENCLAW_GATEWAY_TOKEN": gateway_token,
                    "PORT": str(layout.port),
                    "OPENCLAW_PUBLIC_PORT": str(layout.port),
                },
            )
            steps.add("Variables set.")

            # 5. mesh key (optional)
            mesh_hostname = self._attach_mesh(
                steps, project.id, project.environment_id, service_id, service
            )

            # 6. public domain (optional)
            try:
                domain = self.client.create_service_domain(service_id, project.environment_id)
                steps.add(f"Domain: {domain or '(pending)'}")
            except RemoteApiError as exc:
                steps.add(f"Domain creation note: {exc} (may auto-assign later).")

            # 7. deployment
            current = "deploy"
            self.client.deploy_service_instance(service_id, project.environment_id)
            steps.add("Deployment triggered. Build will take several minutes.")

            # 8. registry
            current = "persist"
            instance = Instance(
                id=new_identifier(),
                name=cleaned,
                created_at=utc_timestamp(),
                remote=RemoteRefs(
                    project_id=project.id,
                    service_id=service_id,
                    environment_id=project.environment_id,
                    volume_id=volume_id,
                ),
                secrets=Secrets(setup_password=password, gateway_token=gateway_token),
                notes=notes or "",
                mesh=MeshAttachment(hostname=mesh_hostname) if mesh_hostname else None,
            )
            self.registry.add_instance(tenant.id, instance)
            steps.add("Instance saved to fleet store.")
        except (RemoteApiError, RegistryError) as exc:
            log.error("%s provisioning failed at step %s: %s", steps.prefix, current, exc)
            raise ProvisioningError(
                f"Provisioning failed at step '{current}': {exc}",
                log=list(steps.lines),
                cause=exc,
                step=current,
            ) from exc

        return ProvisioningResult(instance=instance, log=list(steps.lines))

    def _attach_mesh(
        self,
        steps: _StepLog,
        project_id: str,
        environment_id: str,
        service_id: str,
        hostname: str,
    ) -> str | None:
        if self.mesh is None or not self.mesh.is_configured():
            return None
        try:
            token = self.mesh.get_token()
            key = self.mesh.create_key(token, hostname)
            self.client.upsert_variables(
                project_id,
                environment_id,
                service_id,
                {"TS_AUTHKEY": key.key, "TS_HOSTNAME": hostname},
            )
        except RemoteApiError as exc:
            steps.add(f"Mesh setup skipped: {exc}")
            return None
        steps.add(f'Mesh key created. Device will join as "{hostname}".')
        return hostname


__all__ = [
    "ProvisioningError",
    "ProvisioningOrchestrator",
    "ProvisioningResult",
]
