"""Typer-powered command line for ``fleetctl``.

Every command runs inside a structured operation scope so the outcome lands in
``operations.jsonl``. Failures are mapped onto :class:`~fleetctl.exit_codes.ExitCode`:
validation and lookup problems exit with 2, local configuration or state
problems with 3 and control-plane failures with 4.
"""
from __future__ import annotations

import json
import logging
import textwrap
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import httpx
import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from . import __version__
from .config import AppConfig, ConfigError, load_config
from .exit_codes import ExitCode
from .fleet import FleetManager
from .logging import OperationScope, StructuredLogger
from .naming import InvalidNameError
from .providers import ControlPlaneClient, MeshKeyIssuer, RemoteApiError
from .provisioning import ProvisioningError, ProvisioningOrchestrator
from .state import (
    DuplicateSlugError,
    Instance,
    InstanceNotFoundError,
    InstanceRegistry,
    RegistryError,
    Tenant,
    TenantNotFoundError,
)
from .status import StatusResolver, StatusSnapshot

console = Console()
err_console = Console(stderr=True)

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to fleetctl's YAML config file.",
)

JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit output as JSON instead of a table.",
)

TENANT_OPTION = typer.Option(
    None,
    "--tenant",
    "-t",
    help="Tenant id or slug. Defaults to the default tenant or a search of all tenants.",
)

YES_OPTION = typer.Option(
    False,
    "--yes",
    "-y",
    help="Skip the confirmation prompt.",
)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Multi-tenant fleet manager.

        Provision, inspect and tear down hosted assistant instances grouped by
        tenant. Instances are created through the remote control plane and
        tracked in a local JSON registry.
        """
    ).strip(),
)

tenants_app = typer.Typer(help="Manage tenants.")
instances_app = typer.Typer(help="Provision and manage instances.")
config_app = typer.Typer(help="Inspect the effective configuration.")

app.add_typer(tenants_app, name="tenant")
app.add_typer(instances_app, name="instance")
app.add_typer(config_app, name="config")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    registry: InstanceRegistry
    client: ControlPlaneClient
    mesh: MeshKeyIssuer
    resolver: StatusResolver
    orchestrator: ProvisioningOrchestrator
    fleet: FleetManager
    logger: StructuredLogger


def _http_client(timeout: float) -> httpx.Client:
    return httpx.Client(timeout=timeout)


def _configure_logging(verbose: bool) -> None:
    if not verbose:
        return
    logging.basicConfig(
        level=logging.DEBUG,
        format="%(message)s",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )


def _ensure_runtime(ctx: typer.Context, config_file: Path | None) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    try:
        config = load_config(config_file=config_file)
        registry = InstanceRegistry(config.registry_file, config.backup_retention)
        registry.ensure_root()
    except (ConfigError, RegistryError) as exc:
        err_console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=int(ExitCode.ENVIRONMENT)) from exc

    logger = StructuredLogger(config.logs_dir)
    client = ControlPlaneClient(
        config.control_plane,
        client=_http_client(config.control_plane.timeout),
    )
    mesh = MeshKeyIssuer(config.mesh, client=_http_client(config.control_plane.timeout))
    resolver = StatusResolver(
        client,
        config.status,
        http_client=_http_client(config.status.health_timeout),
    )
    runtime = RuntimeContext(
        config=config,
        registry=registry,
        client=client,
        mesh=mesh,
        resolver=resolver,
        orchestrator=ProvisioningOrchestrator(config, registry, client, mesh),
        fleet=FleetManager(registry, client, resolver),
        logger=logger,
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the fleetctl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Log debug output to stderr.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    _configure_logging(verbose)
    if version:
        runtime = _ensure_runtime(ctx, config_file)
        with runtime.logger.operation(
            "root --version",
            args={"version": True},
            target={"kind": "meta", "scope": "version"},
        ) as op:
            console.print(f"fleetctl {__version__}")
            op.success("Reported CLI version.", changed=0)
        raise typer.Exit(code=0)

    _ensure_runtime(ctx, config_file)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


# ----------------------------------------------------------------------
# Helpers
# ----------------------------------------------------------------------
def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = int(ExitCode.VALIDATION),
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=rc)
    raise typer.Exit(code=rc)


def _fail(op: OperationScope, exc: Exception) -> NoReturn:
    """Map a domain exception onto the matching exit code."""
    if isinstance(
        exc,
        (InvalidNameError, DuplicateSlugError, TenantNotFoundError, InstanceNotFoundError),
    ):
        _command_error(op, str(exc), rc=int(ExitCode.VALIDATION))
    if isinstance(exc, (RemoteApiError, ProvisioningError)):
        _command_error(op, str(exc), rc=int(ExitCode.REMOTE))
    _command_error(op, str(exc), rc=int(ExitCode.ENVIRONMENT))


def _confirm(op: OperationScope, prompt: str, *, yes: bool) -> None:
    if yes or typer.confirm(prompt, default=False):
        return
    op.add_step("confirm", status="skipped", detail="declined")
    _command_error(op, "Aborted.", rc=int(ExitCode.VALIDATION))


def _tenant_or_default(runtime: RuntimeContext, ref: str | None) -> Tenant:
    if ref:
        return runtime.fleet.resolve_tenant(ref)
    return runtime.fleet.default_tenant()


def _tenant_payload(tenant: Tenant) -> dict[str, object]:
    return tenant.summary().to_dict()


def _instance_payload(
    tenant: Tenant,
    instance: Instance,
    snapshot: StatusSnapshot | None = None,
) -> dict[str, object]:
    payload: dict[str, object] = {
        "id": instance.id,
        "name": instance.name,
        "tenant": tenant.slug,
        "createdAt": instance.created_at,
        "notes": instance.notes,
        "setupPassword": instance.secrets.setup_password,
        "railway": {
            "projectId": instance.remote.project_id,
            "serviceId": instance.remote.service_id,
            "environmentId": instance.remote.environment_id,
        },
        "tailscale": instance.mesh.to_dict() if instance.mesh else None,
    }
    if snapshot is not None:
        payload["status"] = snapshot.status.value
        payload["domain"] = snapshot.domain
        payload["deployment"] = (
            snapshot.deployment.to_dict() if snapshot.deployment else None
        )
    return payload


def _render_mapping(data: Mapping[str, object]) -> None:
    table = Table(show_header=False)
    for key, value in data.items():
        if value in (None, ""):
            continue
        if isinstance(value, Mapping):
            rendered = json.dumps(value, indent=2, sort_keys=True)
        else:
            rendered = str(value)
        table.add_row(key, rendered)
    console.print(table)


# ----------------------------------------------------------------------
# config
# ----------------------------------------------------------------------
@config_app.command("show")
def config_show(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Display the effective configuration with credentials redacted."""
    runtime = _get_runtime(ctx)
    data = runtime.config.to_dict()

    with runtime.logger.operation(
        "config show",
        args={"json": json_output},
        target={"kind": "config"},
    ) as op:
        if json_output:
            console.print_json(data=data)
            op.success("Rendered configuration as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Key", style="bold")
        table.add_column("Value")
        for key, value in data.items():
            if isinstance(value, dict):
                rendered = json.dumps(value, indent=2, sort_keys=True)
            else:
                rendered = str(value)
            table.add_row(key, rendered)
        console.print(table)
        op.success("Rendered configuration table.", changed=0)


# ----------------------------------------------------------------------
# tenant
# ----------------------------------------------------------------------
@tenants_app.command("list")
def tenant_list(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """List tenants with their instance counts."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "tenant list",
        args={"json": json_output},
        target={"kind": "tenant", "scope": "registry"},
    ) as op:
        try:
            tenants = runtime.fleet.list_tenants()
        except RegistryError as exc:
            _fail(op, exc)

        if json_output:
            console.print_json(data={"tenants": [t.to_dict() for t in tenants]})
            op.success("Reported tenant list as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Slug", style="bold")
        table.add_column("Name")
        table.add_column("Instances", justify="right")
        table.add_column("Created")
        table.add_column("Id")
        for tenant in tenants:
            table.add_row(
                tenant.slug,
                tenant.name,
                str(tenant.instance_count),
                tenant.created_at,
                tenant.id,
            )
        console.print(table)
        op.success("Reported tenant list.", changed=0)


@tenants_app.command("show")
def tenant_show(
    ctx: typer.Context,
    tenant_ref: str = typer.Argument(..., metavar="TENANT", help="Tenant id or slug."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Show a single tenant."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "tenant show",
        args={"tenant": tenant_ref, "json": json_output},
        target={"kind": "tenant", "ref": tenant_ref},
    ) as op:
        try:
            tenant = runtime.fleet.resolve_tenant(tenant_ref)
        except RegistryError as exc:
            _fail(op, exc)

        data = _tenant_payload(tenant)
        if json_output:
            console.print_json(data=data)
        else:
            _render_mapping(data)
        op.success("Displayed tenant details.", changed=0)


@tenants_app.command("create")
def tenant_create(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Display name; the slug is derived from it."),
    notes: str = typer.Option("", "--notes", help="Free-form operator notes."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Create a tenant."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "tenant create",
        args={"name": name, "notes": notes},
        target={"kind": "tenant", "name": name},
    ) as op:
        try:
            tenant = runtime.fleet.create_tenant(name, notes)
        except (InvalidNameError, RegistryError) as exc:
            _fail(op, exc)
        op.add_step("registry.add", detail=tenant.id)

        if json_output:
            console.print_json(data=_tenant_payload(tenant))
        else:
            console.print(
                f"[green]Tenant '{tenant.name}' created[/green] (slug {tenant.slug}, id {tenant.id})."
            )
        op.success("Tenant created.", changed=1, context={"id": tenant.id, "slug": tenant.slug})


@tenants_app.command("update")
def tenant_update(
    ctx: typer.Context,
    tenant_ref: str = typer.Argument(..., metavar="TENANT", help="Tenant id or slug."),
    name: str | None = typer.Option(None, "--name", help="New display name."),
    notes: str | None = typer.Option(None, "--notes", help="Replacement notes."),
) -> None:
    """Rename a tenant or change its notes."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "tenant update",
        args={"tenant": tenant_ref, "name": name, "notes": notes},
        target={"kind": "tenant", "ref": tenant_ref},
    ) as op:
        if name is None and notes is None:
            _command_error(op, "Nothing to update; pass --name and/or --notes.")
        try:
            tenant = runtime.fleet.resolve_tenant(tenant_ref)
            updated = runtime.fleet.update_tenant(tenant.id, name=name, notes=notes)
        except (InvalidNameError, RegistryError) as exc:
            _fail(op, exc)
        op.add_step("registry.update", detail=updated.id)
        console.print(
            f"[green]Tenant '{updated.name}' updated[/green] (slug {updated.slug})."
        )
        op.success("Tenant updated.", changed=1, context={"slug": updated.slug})


@tenants_app.command("delete")
def tenant_delete(
    ctx: typer.Context,
    tenant_ref: str = typer.Argument(..., metavar="TENANT", help="Tenant id or slug."),
    yes: bool = YES_OPTION,
) -> None:
    """Delete a tenant and the remote projects of all its instances."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "tenant delete",
        args={"tenant": tenant_ref, "yes": yes},
        target={"kind": "tenant", "ref": tenant_ref},
    ) as op:
        try:
            tenant = runtime.fleet.resolve_tenant(tenant_ref)
        except RegistryError as exc:
            _fail(op, exc)
        _confirm(
            op,
            f"Delete tenant '{tenant.name}' and {len(tenant.instances)} instance(s)?",
            yes=yes,
        )
        try:
            outcome = runtime.fleet.delete_tenant(tenant.id)
        except RegistryError as exc:
            _fail(op, exc)
        for instance_id in outcome.removed:
            op.add_step("project.delete", detail=instance_id)
        op.add_step("registry.remove", detail=tenant.id)

        message = f"Deleted tenant '{tenant.name}' and {len(outcome.removed)} instance(s)."
        if outcome.warnings:
            for warning in outcome.warnings:
                console.print(f"[yellow]Warning:[/yellow] {warning}")
            console.print(message)
            op.warning(message, warnings=outcome.warnings, changed=1)
            return
        console.print(f"[green]{message}[/green]")
        op.success(message, changed=1)


# ----------------------------------------------------------------------
# instance
# ----------------------------------------------------------------------
@instances_app.command("list")
def instance_list(
    ctx: typer.Context,
    tenant_ref: str | None = TENANT_OPTION,
    no_status: bool = typer.Option(
        False,
        "--no-status",
        help="Skip control-plane status queries.",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """List the instances of a tenant with their composite status."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "instance list",
        args={"tenant": tenant_ref, "no_status": no_status, "json": json_output},
        target={"kind": "instance", "scope": tenant_ref or "default"},
    ) as op:
        try:
            tenant = _tenant_or_default(runtime, tenant_ref)
        except RegistryError as exc:
            _fail(op, exc)

        entries: list[dict[str, object]] = []
        for instance in tenant.instances.values():
            snapshot = None if no_status else runtime.fleet.instance_status(instance)
            entries.append(_instance_payload(tenant, instance, snapshot))

        if json_output:
            console.print_json(data={"tenant": tenant.slug, "instances": entries})
            op.success("Reported instance list as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Name", style="bold")
        table.add_column("Status")
        table.add_column("Domain")
        table.add_column("Created")
        table.add_column("Id")
        if not entries:
            table.add_row("(none)", "", "", "", "")
        for entry in entries:
            table.add_row(
                str(entry["name"]),
                str(entry.get("status", "") or ""),
                str(entry.get("domain", "") or ""),
                str(entry["createdAt"]),
                str(entry["id"]),
            )
        console.print(table)
        op.success("Reported instance list.", changed=0)


@instances_app.command("show")
def instance_show(
    ctx: typer.Context,
    instance_id: str = typer.Argument(..., metavar="ID", help="Instance id."),
    tenant_ref: str | None = TENANT_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Show an instance with a freshly resolved status."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "instance show",
        args={"id": instance_id, "tenant": tenant_ref, "json": json_output},
        target={"kind": "instance", "id": instance_id},
    ) as op:
        try:
            tenant, instance = runtime.fleet.locate_instance(instance_id, tenant_ref)
        except RegistryError as exc:
            _fail(op, exc)

        snapshot = runtime.fleet.instance_status(instance, force=True)
        data = _instance_payload(tenant, instance, snapshot)
        data["health"] = dict(snapshot.health) if snapshot.health is not None else None
        if json_output:
            console.print_json(data=data)
        else:
            _render_mapping(data)
            if snapshot.deployment and snapshot.deployment.error:
                console.print(f"[yellow]Status degraded:[/yellow] {snapshot.deployment.error}")
        op.success("Displayed instance details.", changed=0, context={"status": data["status"]})


@instances_app.command("create")
def instance_create(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Display name of the new instance."),
    tenant_ref: str | None = TENANT_OPTION,
    setup_password: str | None = typer.Option(
        None,
        "--setup-password",
        help="Setup password to inject; a random one is generated when omitted.",
    ),
    notes: str = typer.Option("", "--notes", help="Free-form operator notes."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Provision a new instance through the control plane."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "instance create",
        args={"name": name, "tenant": tenant_ref, "notes": notes},
        target={"kind": "instance", "name": name},
    ) as op:
        try:
            tenant = _tenant_or_default(runtime, tenant_ref)
            result = runtime.orchestrator.create_instance(
                tenant.id, name, setup_password=setup_password, notes=notes
            )
        except ProvisioningError as exc:
            for line in exc.log:
                op.add_step("provision", detail=line)
                console.print(f"  {line}")
            _command_error(
                op,
                f"{exc} Remote resources created so far were not removed.",
                rc=int(ExitCode.REMOTE),
            )
        except (InvalidNameError, RegistryError) as exc:
            _fail(op, exc)

        for line in result.log:
            op.add_step("provision", detail=line)
        instance = result.instance
        if json_output:
            console.print_json(
                data={"instance": _instance_payload(tenant, instance), "log": result.log}
            )
        else:
            for line in result.log:
                console.print(f"  {line}")
            console.print(
                f"[green]Instance '{instance.name}' created[/green] in tenant "
                f"{tenant.slug} (id {instance.id})."
            )
            console.print(f"Setup password: {instance.secrets.setup_password}")
        op.success(
            "Instance provisioned.",
            changed=1,
            context={"id": instance.id, "tenant": tenant.slug},
        )


def _instance_action(
    ctx: typer.Context,
    command: str,
    instance_id: str,
    tenant_ref: str | None,
) -> None:
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        f"instance {command}",
        args={"id": instance_id, "tenant": tenant_ref},
        target={"kind": "instance", "id": instance_id},
    ) as op:
        try:
            tenant, instance = runtime.fleet.locate_instance(instance_id, tenant_ref)
            if command == "restart":
                runtime.fleet.restart_instance(tenant.id, instance.id)
            else:
                runtime.fleet.redeploy_instance(tenant.id, instance.id)
        except (RegistryError, RemoteApiError) as exc:
            _fail(op, exc)
        op.add_step("service.redeploy", detail=instance.remote.service_id)
        console.print(f"[green]Redeployment triggered for '{instance.name}'.[/green]")
        op.success("Redeployment triggered.", changed=1)


@instances_app.command("restart")
def instance_restart(
    ctx: typer.Context,
    instance_id: str = typer.Argument(..., metavar="ID", help="Instance id."),
    tenant_ref: str | None = TENANT_OPTION,
) -> None:
    """Restart an instance by redeploying its latest build."""
    _instance_action(ctx, "restart", instance_id, tenant_ref)


@instances_app.command("redeploy")
def instance_redeploy(
    ctx: typer.Context,
    instance_id: str = typer.Argument(..., metavar="ID", help="Instance id."),
    tenant_ref: str | None = TENANT_OPTION,
) -> None:
    """Redeploy an instance."""
    _instance_action(ctx, "redeploy", instance_id, tenant_ref)


@instances_app.command("delete")
def instance_delete(
    ctx: typer.Context,
    instance_id: str = typer.Argument(..., metavar="ID", help="Instance id."),
    tenant_ref: str | None = TENANT_OPTION,
    yes: bool = YES_OPTION,
) -> None:
    """Delete an instance's remote project and its registry record."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "instance delete",
        args={"id": instance_id, "tenant": tenant_ref, "yes": yes},
        target={"kind": "instance", "id": instance_id},
    ) as op:
        try:
            tenant, instance = runtime.fleet.locate_instance(instance_id, tenant_ref)
        except RegistryError as exc:
            _fail(op, exc)
        _confirm(op, f"Delete instance '{instance.name}' and its remote project?", yes=yes)
        try:
            runtime.fleet.delete_instance(tenant.id, instance.id)
        except (RegistryError, RemoteApiError) as exc:
            _fail(op, exc)
        op.add_step("project.delete", detail=instance.remote.project_id)
        op.add_step("registry.remove", detail=instance.id)
        console.print(f"[green]Deleted project for '{instance.name}'.[/green]")
        op.success("Instance deleted.", changed=1)


@instances_app.command("health")
def instance_health(
    ctx: typer.Context,
    instance_id: str = typer.Argument(..., metavar="ID", help="Instance id."),
    tenant_ref: str | None = TENANT_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Probe the instance's health endpoint directly."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "instance health",
        args={"id": instance_id, "tenant": tenant_ref, "json": json_output},
        target={"kind": "instance", "id": instance_id},
    ) as op:
        try:
            _, instance = runtime.fleet.locate_instance(instance_id, tenant_ref)
        except RegistryError as exc:
            _fail(op, exc)

        # Each invocation starts with an empty cache; resolve once to learn the domain.
        runtime.fleet.instance_status(instance)
        probe = runtime.resolver.probe_health(instance)
        if json_output:
            console.print_json(data=probe.to_dict())
        elif probe.ok:
            _render_mapping(dict(probe.health or {}))
        else:
            detail = probe.error or f"HTTP {probe.status_code}"
            console.print(f"[yellow]Health check failed:[/yellow] {detail}")

        if probe.ok:
            op.success("Health endpoint responded.", changed=0)
        else:
            op.warning(
                "Health endpoint unavailable.",
                warnings=[probe.error or f"HTTP {probe.status_code}"],
            )


__all__ = ["app"]
