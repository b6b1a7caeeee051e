"""Tests for composite status resolution and caching."""
from __future__ import annotations

from collections.abc import Callable
from typing import TYPE_CHECKING, Any

import httpx
import pytest

from fleetctl.config import AppConfig
from fleetctl.providers import ControlPlaneClient
from fleetctl.state import Instance, RemoteRefs, Secrets
from fleetctl.status import (
    CompositeStatus,
    DeploymentInfo,
    StatusResolver,
    resolve_composite_status,
)

if TYPE_CHECKING:
    from conftest import FakeControlPlane

HEALTHY = {"configured": True, "gateway": {"reachable": True}}


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def _instance() -> Instance:
    return Instance(
        id="inst-1",
        name="Demo",
        created_at="2026-01-01T00:00:00Z",
        remote=RemoteRefs(project_id="proj-1", service_id="svc-1", environment_id="env-1"),
        secrets=Secrets(setup_password="pw", gateway_token="gt"),
    )


def _resolver(
    app_config: AppConfig,
    control_plane: FakeControlPlane,
    health: Callable[[httpx.Request], httpx.Response] | None = None,
    clock: FakeClock | None = None,
) -> StatusResolver:
    handler = health or (lambda request: httpx.Response(200, json=HEALTHY))
    return StatusResolver(
        control_plane.client(app_config),
        app_config.status,
        http_client=httpx.Client(transport=httpx.MockTransport(handler)),
        clock=clock or FakeClock(),
    )


@pytest.mark.parametrize(
    ("deployment", "health", "expected"),
    [
        (None, None, CompositeStatus.NO_DEPLOYMENT),
        ("BUILDING", None, CompositeStatus.BUILDING),
        ("DEPLOYING", None, CompositeStatus.DEPLOYING),
        ("FAILED", None, CompositeStatus.FAILED),
        ("CRASHED", None, CompositeStatus.FAILED),
        ("SUCCESS", None, CompositeStatus.UNHEALTHY),
        ("SUCCESS", {"configured": False}, CompositeStatus.NEEDS_SETUP),
        ("SUCCESS", HEALTHY, CompositeStatus.RUNNING),
        ("SUCCESS", {"configured": True, "gateway": {}}, CompositeStatus.UNHEALTHY),
        ("SUCCESS", {"configured": True}, CompositeStatus.UNHEALTHY),
        ("REMOVED", None, CompositeStatus.STOPPED),
        ("QUEUED", None, CompositeStatus.UNKNOWN),
    ],
)
def test_decision_table(
    deployment: str | None, health: dict[str, Any] | None, expected: CompositeStatus
) -> None:
    """Each deployment and health combination maps to one lifecycle label."""
    info = DeploymentInfo(status=deployment) if deployment else None
    assert resolve_composite_status(info, health) is expected


def test_running_instance(app_config: AppConfig, control_plane: FakeControlPlane) -> None:
    """A successful deployment with a healthy gateway is running."""
    requested: list[str] = []

    def health(request: httpx.Request) -> httpx.Response:
        requested.append(str(request.url))
        return httpx.Response(200, json=HEALTHY)

    snapshot = _resolver(app_config, control_plane, health).get_status(_instance())

    assert snapshot.status is CompositeStatus.RUNNING
    assert snapshot.domain == "demo.up.railway.app"
    assert snapshot.health == HEALTHY
    assert requested == ["https://demo.up.railway.app/healthz"]
    assert snapshot.to_dict()["status"] == "running"
    assert "fetchedAt" in snapshot.to_dict()


def test_health_timeout_is_unhealthy(
    app_config: AppConfig, control_plane: FakeControlPlane
) -> None:
    """An unreachable health endpoint degrades to unhealthy."""

    def health(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectTimeout("timed out", request=request)

    snapshot = _resolver(app_config, control_plane, health).get_status(_instance())

    assert snapshot.status is CompositeStatus.UNHEALTHY
    assert snapshot.health is None


def test_building_skips_health_probe(
    app_config: AppConfig, control_plane: FakeControlPlane
) -> None:
    """Health is only fetched for successful deployments."""
    control_plane.deployment_status = "BUILDING"

    def health(request: httpx.Request) -> httpx.Response:
        raise AssertionError("health should not be requested")

    snapshot = _resolver(app_config, control_plane, health).get_status(_instance())

    assert snapshot.status is CompositeStatus.BUILDING


def test_no_deployment(app_config: AppConfig, control_plane: FakeControlPlane) -> None:
    """A service with no deployments reports no-deployment."""
    control_plane.deployment_status = None

    snapshot = _resolver(app_config, control_plane).get_status(_instance())

    assert snapshot.status is CompositeStatus.NO_DEPLOYMENT
    assert snapshot.deployment is None


def test_status_is_cached_for_ttl(app_config: AppConfig, control_plane: FakeControlPlane) -> None:
    """Reads within the TTL reuse the snapshot; later reads refetch."""
    clock = FakeClock()
    resolver = _resolver(app_config, control_plane, clock=clock)
    instance = _instance()

    first = resolver.get_status(instance)
    clock.now += 10
    second = resolver.get_status(instance)
    assert first is second
    assert control_plane.operations().count("deployments") == 1

    clock.now += 21
    third = resolver.get_status(instance)
    assert third is not first
    assert control_plane.operations().count("deployments") == 2


def test_force_and_invalidate_bypass_cache(
    app_config: AppConfig, control_plane: FakeControlPlane
) -> None:
    """Forced reads and evicted entries query the control plane again."""
    resolver = _resolver(app_config, control_plane)
    instance = _instance()

    resolver.get_status(instance)
    resolver.get_status(instance, force=True)
    assert control_plane.operations().count("deployments") == 2

    resolver.invalidate(instance.id)
    assert resolver.cached(instance.id) is None
    resolver.get_status(instance)
    assert control_plane.operations().count("deployments") == 3


def test_query_error_yields_unknown(app_config: AppConfig, control_plane: FakeControlPlane) -> None:
    """Control-plane failures never raise from a status read."""
    control_plane.failures["deployments"] = "Not authorized"

    snapshot = _resolver(app_config, control_plane).get_status(_instance())

    assert snapshot.status is CompositeStatus.UNKNOWN
    assert snapshot.deployment is not None
    assert "Not authorized" in snapshot.deployment.error
    assert snapshot.to_dict()["deployment"]["error"]  # type: ignore[index]


def test_probe_health_requires_cached_domain(
    app_config: AppConfig, control_plane: FakeControlPlane
) -> None:
    """Without a resolved domain the probe reports it is unavailable."""
    resolver = _resolver(app_config, control_plane)

    probe = resolver.probe_health(_instance())

    assert probe.ok is False
    assert probe.error == "Domain not yet available."
    assert control_plane.calls == []


def test_probe_health_uses_cached_domain(
    app_config: AppConfig, control_plane: FakeControlPlane
) -> None:
    """After a status read the probe returns the raw health payload."""
    resolver = _resolver(app_config, control_plane)
    instance = _instance()
    resolver.get_status(instance)

    probe = resolver.probe_health(instance)

    assert probe.ok is True
    assert probe.status_code == 200
    assert probe.health == HEALTHY


def test_probe_health_reports_http_status(
    app_config: AppConfig, control_plane: FakeControlPlane
) -> None:
    """Non-success health responses are reported with their status."""
    resolver = _resolver(
        app_config, control_plane, lambda request: httpx.Response(503, text="down")
    )
    instance = _instance()
    resolver.get_status(instance)

    probe = resolver.probe_health(instance)

    assert probe.ok is False
    assert probe.status_code == 503
    assert probe.to_dict() == {"ok": False, "status": 503}


def test_malformed_deployments_yield_unknown(app_config: AppConfig) -> None:
    """A null deployment edge degrades the snapshot instead of raising."""

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"data": {"deployments": {"edges": [None]}}})

    client = ControlPlaneClient(
        app_config.control_plane,
        client=httpx.Client(transport=httpx.MockTransport(handler)),
        sleep=lambda _: None,
    )
    resolver = StatusResolver(
        client,
        app_config.status,
        http_client=httpx.Client(transport=httpx.MockTransport(handler)),
        clock=FakeClock(),
    )

    snapshot = resolver.get_status(_instance())

    assert snapshot.status is CompositeStatus.UNKNOWN
    assert snapshot.deployment is not None
    assert "malformed" in snapshot.deployment.error


def test_rate_limit_with_nan_retry_after_still_resolves(
    app_config: AppConfig, control_plane: FakeControlPlane
) -> None:
    """A throttled status read with a NaN Retry-After still produces a snapshot."""
    throttled = [True]
    sleeps: list[float] = []

    def handler(request: httpx.Request) -> httpx.Response:
        if throttled:
            throttled.pop()
            return httpx.Response(429, headers={"Retry-After": "nan"})
        return control_plane.handler(request)

    client = ControlPlaneClient(
        app_config.control_plane,
        client=httpx.Client(transport=httpx.MockTransport(handler)),
        sleep=sleeps.append,
    )
    resolver = StatusResolver(
        client,
        app_config.status,
        http_client=httpx.Client(
            transport=httpx.MockTransport(lambda request: httpx.Response(200, json=HEALTHY))
        ),
        clock=FakeClock(),
    )

    snapshot = resolver.get_status(_instance())

    assert sleeps == [5.0]
    assert snapshot.status is CompositeStatus.RUNNING
