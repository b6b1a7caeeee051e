"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import json
import re
from pathlib import Path

import httpx
import pytest

from fleetctl.config import AppConfig, load_config
from fleetctl.providers import ControlPlaneClient
from fleetctl.state import InstanceRegistry

_OPERATION = re.compile(r"(?:query|mutation)\s+(\w+)")


class FakeControlPlane:
    """In-memory stand-in for the control-plane GraphQL endpoint."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, dict[str, object]]] = []
        self.failures: dict[str, str] = {}
        self.failing_projects: set[str] = set()
        self.deployment_status: str | None = "SUCCESS"
        self.service_domain: str | None = "demo.up.railway.app"
        self.custom_domain: str | None = None
        self._projects = 0

    # ------------------------------------------------------------------
    def handler(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        match = _OPERATION.search(body["query"])
        operation = match.group(1) if match else "?"
        variables = body.get("variables") or {}
        self.calls.append((operation, variables))
        if operation in self.failures:
            return httpx.Response(200, json={"errors": [{"message": self.failures[operation]}]})
        if operation == "projectDelete" and variables.get("id") in self.failing_projects:
            return httpx.Response(200, json={"errors": [{"message": "Project is locked"}]})
        return httpx.Response(200, json={"data": self._data(operation, variables)})

    def operations(self) -> list[str]:
        return [name for name, _ in self.calls]

    def variables_for(self, operation: str) -> list[dict[str, object]]:
        return [variables for name, variables in self.calls if name == operation]

    def client(self, config: AppConfig) -> ControlPlaneClient:
        transport = httpx.MockTransport(self.handler)
        return ControlPlaneClient(
            config.control_plane,
            client=httpx.Client(transport=transport),
            sleep=lambda _: None,
        )

    # ------------------------------------------------------------------
    def _data(self, operation: str, variables: dict[str, object]) -> dict[str, object]:
        if operation == "projectCreate":
            self._projects += 1
            return {
                "projectCreate": {
                    "id": f"proj-{self._projects}",
                    "name": variables["input"]["name"],  # type: ignore[index]
                    "environments": {
                        "edges": [{"node": {"id": f"env-{self._projects}", "name": "production"}}]
                    },
                }
            }
        if operation == "serviceCreate":
            return {"serviceCreate": {"id": f"svc-{self._projects}", "name": "svc"}}
        if operation == "volumeCreate":
            return {"volumeCreate": {"id": f"vol-{self._projects}"}}
        if operation == "serviceDomainCreate":
            return {"serviceDomainCreate": {"id": "dom-1", "domain": self.service_domain}}
        if operation == "deployments":
            edges = []
            if self.deployment_status is not None:
                edges.append(
                    {
                        "node": {
                            "id": "dep-1",
                            "status": self.deployment_status,
                            "createdAt": "2026-01-01T00:00:00Z",
                        }
                    }
                )
            return {"deployments": {"edges": edges}}
        if operation == "project":
            service_id = str(variables.get("id", "")).replace("proj-", "svc-")
            domains = {
                "serviceDomains": [{"domain": self.service_domain}] if self.service_domain else [],
                "customDomains": [{"domain": self.custom_domain}] if self.custom_domain else [],
            }
            return {
                "project": {
                    "id": variables.get("id"),
                    "services": {
                        "edges": [
                            {
                                "node": {
                                    "id": service_id,
                                    "name": "svc",
                                    "serviceInstances": {
                                        "edges": [{"node": {"domains": domains}}]
                                    },
                                }
                            }
                        ]
                    },
                }
            }
        return {operation: True}


@pytest.fixture
def app_config(tmp_path: Path) -> AppConfig:
    """Configuration rooted in a temporary directory."""
    return load_config(
        config_file=tmp_path / "config.yml",
        env={},
        overrides={
            "state_dir": str(tmp_path / "state"),
            "logs_dir": str(tmp_path / "logs"),
            "control_plane": {"token": "test-token"},
        },
    )


@pytest.fixture
def registry(app_config: AppConfig) -> InstanceRegistry:
    """Registry stored under the temporary state directory."""
    return InstanceRegistry(app_config.registry_file, app_config.backup_retention)


@pytest.fixture
def control_plane() -> FakeControlPlane:
    """Fake control plane recording every GraphQL operation."""
    return FakeControlPlane()
