"""Typed records persisted in the fleet registry document.

The on-disk JSON keeps the camelCase layout written by earlier releases
(``createdAt``, ``railway``, ``config``, ``tailscale``). Each record keeps any
keys it does not understand in ``extra`` so that a load/save round-trip never
drops data written by a newer or older tool.
"""
from __future__ import annotations

import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from ..naming import DEFAULT_TENANT_SLUG

CURRENT_VERSION = 2


class RecordError(ValueError):
    """Raised when a persisted record has an invalid shape."""


def utc_timestamp() -> str:
    """Return the current UTC time as an ISO-8601 string with a ``Z`` suffix."""
    return datetime.now(tz=UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def new_identifier() -> str:
    """Return a fresh opaque identifier."""
    return str(uuid.uuid4())


def _as_mapping(value: object, label: str) -> Mapping[str, Any]:
    if not isinstance(value, Mapping):
        raise RecordError(f"{label} must be a JSON object, got {type(value).__name__}.")
    return value


def _text(value: object) -> str:
    return "" if value is None else str(value)


def _extra(raw: Mapping[str, Any], known: set[str]) -> dict[str, Any]:
    return {key: value for key, value in raw.items() if key not in known}


@dataclass(frozen=True, slots=True)
class RemoteRefs:
    """Control-plane identifiers captured during provisioning."""

    project_id: str
    service_id: str
    environment_id: str
    volume_id: str = ""
    extra: dict[str, Any] = field(default_factory=dict, compare=False)

    _KEYS = {"projectId", "serviceId", "environmentId", "volumeId"}

    @classmethod
    def from_dict(cls, raw: object) -> RemoteRefs:
        """Parse the ``railway`` block of an instance."""
        data = _as_mapping(raw or {}, "instance.railway")
        return cls(
            project_id=_text(data.get("projectId")),
            service_id=_text(data.get("serviceId")),
            environment_id=_text(data.get("environmentId")),
            volume_id=_text(data.get("volumeId")),
            extra=_extra(data, cls._KEYS),
        )

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON representation."""
        return {
            "projectId": self.project_id,
            "serviceId": self.service_id,
            "environmentId": self.environment_id,
            "volumeId": self.volume_id,
            **self.extra,
        }


@dataclass(frozen=True, slots=True)
class Secrets:
    """Credentials generated once at provisioning time."""

    setup_password: str
    gateway_token: str
    extra: dict[str, Any] = field(default_factory=dict, compare=False)

    _KEYS = {"setupPassword", "gatewayToken"}

    @classmethod
    def from_dict(cls, raw: object) -> Secrets:
        """Parse the ``config`` block of an instance."""
        data = _as_mapping(raw or {}, "instance.config")
        return cls(
            setup_password=_text(data.get("setupPassword")),
            gateway_token=_text(data.get("gatewayToken")),
            extra=_extra(data, cls._KEYS),
        )

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON representation."""
        return {
            "setupPassword": self.setup_password,
            "gatewayToken": self.gateway_token,
            **self.extra,
        }


@dataclass(frozen=True, slots=True)
class MeshAttachment:
    """Mesh-network hostname an instance joins as."""

    hostname: str
    extra: dict[str, Any] = field(default_factory=dict, compare=False)

    @classmethod
    def from_dict(cls, raw: object) -> MeshAttachment | None:
        """Parse the ``tailscale`` block; ``None`` when absent or empty."""
        if raw is None:
            return None
        data = _as_mapping(raw, "instance.tailscale")
        hostname = _text(data.get("hostname"))
        if not hostname:
            return None
        return cls(hostname=hostname, extra=_extra(data, {"hostname"}))

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON representation."""
        return {"hostname": self.hostname, **self.extra}


@dataclass(slots=True)
class Instance:
    """A provisioned deployment owned by exactly one tenant."""

    id: str
    name: str
    created_at: str
    remote: RemoteRefs
    secrets: Secrets
    notes: str = ""
    mesh: MeshAttachment | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    _KEYS = {"id", "name", "createdAt", "railway", "config", "tailscale", "notes"}

    @classmethod
    def from_dict(cls, raw: object, *, key: str | None = None) -> Instance:
        """Parse an instance record; *key* fills a missing ``id``."""
        data = _as_mapping(raw, f"instance {key or '?'}")
        identifier = _text(data.get("id")) or _text(key)
        if not identifier:
            raise RecordError("Instance record is missing an id.")
        return cls(
            id=identifier,
            name=_text(data.get("name")),
            created_at=_text(data.get("createdAt")),
            remote=RemoteRefs.from_dict(data.get("railway")),
            secrets=Secrets.from_dict(data.get("config")),
            notes=_text(data.get("notes")),
            mesh=MeshAttachment.from_dict(data.get("tailscale")),
            extra=_extra(data, cls._KEYS),
        )

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON representation."""
        return {
            "id": self.id,
            "name": self.name,
            "createdAt": self.created_at,
            "railway": self.remote.to_dict(),
            "config": self.secrets.to_dict(),
            "tailscale": self.mesh.to_dict() if self.mesh else None,
            "notes": self.notes,
            **self.extra,
        }


@dataclass(slots=True)
class Tenant:
    """Isolation boundary grouping one client's instances."""

    id: str
    name: str
    slug: str
    created_at: str
    notes: str = ""
    mesh: dict[str, Any] | None = None
    instances: dict[str, Instance] = field(default_factory=dict)
    extra: dict[str, Any] = field(default_factory=dict)

    _KEYS = {"id", "name", "slug", "createdAt", "notes", "tailscale", "instances"}

    @classmethod
    def from_dict(cls, raw: object, *, key: str | None = None) -> Tenant:
        """Parse a tenant record including its nested instances."""
        data = _as_mapping(raw, f"tenant {key or '?'}")
        identifier = _text(data.get("id")) or _text(key)
        if not identifier:
            raise RecordError("Tenant record is missing an id.")
        raw_instances = _as_mapping(data.get("instances") or {}, f"tenant {identifier} instances")
        instances = {
            str(instance_key): Instance.from_dict(value, key=str(instance_key))
            for instance_key, value in raw_instances.items()
        }
        mesh = data.get("tailscale")
        return cls(
            id=identifier,
            name=_text(data.get("name")),
            slug=_text(data.get("slug")),
            created_at=_text(data.get("createdAt")),
            notes=_text(data.get("notes")),
            mesh=dict(mesh) if isinstance(mesh, Mapping) else None,
            instances=instances,
            extra=_extra(data, cls._KEYS),
        )

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON representation."""
        return {
            "id": self.id,
            "name": self.name,
            "slug": self.slug,
            "createdAt": self.created_at,
            "notes": self.notes,
            "tailscale": self.mesh,
            "instances": {key: value.to_dict() for key, value in self.instances.items()},
            **self.extra,
        }

    def summary(self) -> TenantSummary:
        """Return a summary without the nested instances."""
        return TenantSummary(
            id=self.id,
            name=self.name,
            slug=self.slug,
            created_at=self.created_at,
            notes=self.notes,
            mesh=self.mesh,
            instance_count=len(self.instances),
        )


@dataclass(frozen=True, slots=True)
class TenantSummary:
    """Tenant metadata plus the number of owned instances."""

    id: str
    name: str
    slug: str
    created_at: str
    notes: str
    mesh: dict[str, Any] | None
    instance_count: int

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-friendly mapping."""
        return {
            "id": self.id,
            "name": self.name,
            "slug": self.slug,
            "createdAt": self.created_at,
            "notes": self.notes,
            "tailscale": self.mesh,
            "instanceCount": self.instance_count,
        }


@dataclass(slots=True)
class RegistryDocument:
    """Versioned envelope holding every tenant."""

    version: int = CURRENT_VERSION
    tenants: dict[str, Tenant] = field(default_factory=dict)
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, raw: object) -> RegistryDocument:
        """Parse a version 2 document."""
        data = _as_mapping(raw, "registry document")
        version = data.get("version")
        if not isinstance(version, int) or isinstance(version, bool):
            raise RecordError(f"Registry version must be an integer, got {version!r}.")
        raw_tenants = _as_mapping(data.get("tenants") or {}, "registry tenants")
        tenants = {
            str(key): Tenant.from_dict(value, key=str(key)) for key, value in raw_tenants.items()
        }
        return cls(
            version=version,
            tenants=tenants,
            extra=_extra(data, {"version", "tenants"}),
        )

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON representation."""
        return {
            "version": self.version,
            "tenants": {key: tenant.to_dict() for key, tenant in self.tenants.items()},
            **self.extra,
        }

    def default_tenant(self) -> Tenant | None:
        """Return the tenant holding the ``default`` slug, if any."""
        return next(
            (tenant for tenant in self.tenants.values() if tenant.slug == DEFAULT_TENANT_SLUG),
            None,
        )


__all__ = [
    "CURRENT_VERSION",
    "Instance",
    "MeshAttachment",
    "RecordError",
    "RegistryDocument",
    "RemoteRefs",
    "Secrets",
    "Tenant",
    "TenantSummary",
    "new_identifier",
    "utc_timestamp",
]
