"""Composite lifecycle status for provisioned instances.

A status read combines the latest control-plane deployment, the service's
public domain and, for successfully deployed services, the instance's own
health endpoint. Results are cached per instance for ``cache_ttl`` seconds;
lifecycle operations evict the entry so the next read is fresh.

Status resolution never raises: control-plane failures degrade the snapshot
to :attr:`CompositeStatus.UNKNOWN` with the error recorded on the deployment.
"""
from __future__ import annotations

import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any

import httpx

from .config import StatusConfig
from .providers.control_plane import ControlPlaneClient, RemoteApiError
from .state.models import Instance, utc_timestamp

log = logging.getLogger(__name__)


class CompositeStatus(str, Enum):
    """Single lifecycle label derived from deployment and health signals."""

    NO_DEPLOYMENT = "no-deployment"
    BUILDING = "building"
    DEPLOYING = "deploying"
    FAILED = "failed"
    UNHEALTHY = "unhealthy"
    NEEDS_SETUP = "needs-setup"
    RUNNING = "running"
    STOPPED = "stopped"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class DeploymentInfo:
    """Coarse deployment state reported by the control plane."""

    status: str
    id: str = ""
    created_at: str = ""
    error: str = ""

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-friendly mapping."""
        data: dict[str, object] = {
            "id": self.id,
            "status": self.status,
            "createdAt": self.created_at,
        }
        if self.error:
            data["error"] = self.error
        return data


@dataclass(frozen=True)
class StatusSnapshot:
    """Point-in-time view of one instance."""

    deployment: DeploymentInfo | None
    domain: str | None
    health: Mapping[str, Any] | None
    status: CompositeStatus
    fetched_at: str

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-friendly mapping."""
        return {
            "deployment": self.deployment.to_dict() if self.deployment else None,
            "domain": self.domain,
            "health": dict(self.health) if self.health is not None else None,
            "status": self.status.value,
            "fetchedAt": self.fetched_at,
        }


@dataclass(frozen=True)
class HealthProbe:
    """Outcome of a direct health-endpoint request."""

    ok: bool
    health: Mapping[str, Any] | None = None
    status_code: int | None = None
    error: str = ""

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-friendly mapping."""
        data: dict[str, object] = {"ok": self.ok}
        if self.health is not None:
            data["health"] = dict(self.health)
        if self.status_code is not None:
            data["status"] = self.status_code
        if self.error:
            data["error"] = self.error
        return data


def resolve_composite_status(
    deployment: DeploymentInfo | None,
    health: Mapping[str, Any] | None,
) -> CompositeStatus:
    """Apply the lifecycle decision table; the first matching row wins."""
    if deployment is None:
        return CompositeStatus.NO_DEPLOYMENT
    state = deployment.status
    if state == "BUILDING":
        return CompositeStatus.BUILDING
    if state == "DEPLOYING":
        return CompositeStatus.DEPLOYING
    if state in {"FAILED", "CRASHED"}:
        return CompositeStatus.FAILED
    if state == "SUCCESS":
        if health is None:
            return CompositeStatus.UNHEALTHY
        if not health.get("configured"):
            return CompositeStatus.NEEDS_SETUP
        gateway = health.get("gateway")
        if isinstance(gateway, Mapping) and gateway.get("reachable"):
            return CompositeStatus.RUNNING
        return CompositeStatus.UNHEALTHY
    if state == "REMOVED":
        return CompositeStatus.STOPPED
    return CompositeStatus.UNKNOWN


class StatusResolver:
    """Resolve and cache :class:`StatusSnapshot` values per instance id."""

    def __init__(
        self,
        client: ControlPlaneClient,
        config: StatusConfig,
        *,
        http_client: httpx.Client | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.client = client
        self.config = config
        self._http = http_client or httpx.Client(timeout=config.health_timeout)
        self._clock = clock
        self._cache: dict[str, tuple[float, StatusSnapshot]] = {}

    def close(self) -> None:
        """Release the health-probe connection pool."""
        self._http.close()

    def get_status(self, instance: Instance, *, force: bool = False) -> StatusSnapshot:
        """Return the instance status, served from cache when still fresh."""
        now = self._clock()
        if not force:
            cached = self._cache.get(instance.id)
            if cached is not None and now - cached[0] < self.config.cache_ttl:
                return cached[1]

        deployment: DeploymentInfo | None = None
        domain: str | None = None
        try:
            latest = self.client.latest_deployment(
                instance.remote.service_id, instance.remote.environment_id
            )
            if latest is not None:
                deployment = DeploymentInfo(
                    status=latest.status, id=latest.id, created_at=latest.created_at
                )
            domain = self.client.service_domain(
                instance.remote.project_id, instance.remote.service_id
            )
        except RemoteApiError as exc:
            log.warning("Status query for instance %s failed: %s", instance.id, exc)
            deployment = DeploymentInfo(status="UNKNOWN", error=str(exc))

        health: Mapping[str, Any] | None = None
        if domain and deployment is not None and deployment.status == "SUCCESS":
            health = self._fetch_health(domain)

        snapshot = StatusSnapshot(
            deployment=deployment,
            domain=domain,
            health=health,
            status=resolve_composite_status(deployment, health),
            fetched_at=utc_timestamp(),
        )
        self._cache[instance.id] = (now, snapshot)
        return snapshot

    def cached(self, instance_id: str) -> StatusSnapshot | None:
        """Return the cached snapshot regardless of its age."""
        entry = self._cache.get(instance_id)
        return entry[1] if entry else None

    def invalidate(self, instance_id: str) -> None:
        """Evict the cache entry for *instance_id*."""
        self._cache.pop(instance_id, None)

    def clear(self) -> None:
        """Drop every cached snapshot."""
        self._cache.clear()

    def probe_health(self, instance: Instance) -> HealthProbe:
        """Query the health endpoint using the domain from the cached snapshot."""
        snapshot = self.cached(instance.id)
        domain = snapshot.domain if snapshot else None
        if not domain:
            return HealthProbe(ok=False, error="Domain not yet available.")
        try:
            response = self._http.get(self.health_url(domain), timeout=self.config.health_timeout)
        except httpx.HTTPError as exc:
            return HealthProbe(ok=False, error=str(exc) or type(exc).__name__)
        if not response.is_success:
            return HealthProbe(ok=False, status_code=response.status_code)
        try:
            payload = response.json()
        except ValueError as exc:
            return HealthProbe(ok=False, status_code=response.status_code, error=str(exc))
        if not isinstance(payload, Mapping):
            return HealthProbe(
                ok=False,
                status_code=response.status_code,
                error="Health endpoint returned a non-object body.",
            )
        return HealthProbe(ok=True, health=dict(payload), status_code=response.status_code)

    def health_url(self, domain: str) -> str:
        """Return the health endpoint URL for *domain*."""
        return f"https://{domain}{self.config.health_path}"

    # ------------------------------------------------------------------
    def _fetch_health(self, domain: str) -> Mapping[str, Any] | None:
        try:
            response = self._http.get(self.health_url(domain), timeout=self.config.health_timeout)
        except httpx.HTTPError as exc:
            log.debug("Health probe for %s failed: %s", domain, exc)
            return None
        if not response.is_success:
            return None
        try:
            payload = response.json()
        except ValueError:
            return None
        return dict(payload) if isinstance(payload, Mapping) else None


__all__ = [
    "CompositeStatus",
    "DeploymentInfo",
    "HealthProbe",
    "StatusResolver",
    "StatusSnapshot",
    "resolve_composite_status",
]
