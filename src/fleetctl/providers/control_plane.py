"""Client for the remote control-plane GraphQL API.

All requests are HTTPS POSTs carrying ``{"query": ..., "variables": ...}``
with bearer-token authentication. A ``429`` response is retried after the
server-provided ``Retry-After`` interval, at most
``max_rate_limit_retries`` times; every other failure surfaces immediately as
:class:`RemoteApiError`.
"""
from __future__ import annotations

import logging
import math
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

import httpx

from ..config import ControlPlaneConfig

log = logging.getLogger(__name__)


class RemoteApiError(RuntimeError):
    """Raised when a control-plane or mesh API call fails."""

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.status = status


PROJECT_CREATE = """
  mutation projectCreate($input: ProjectCreateInput!) {
    projectCreate(input: $input) {
      id
      name
      environments { edges { node { id name } } }
    }
  }
"""

PROJECT_QUERY = """
  query project($id: String!) {
    project(id: $id) {
      id
      name
      environments { edges { node { id name } } }
      services {
        edges {
          node {
            id
            name
            serviceInstances {
              edges {
                node {
                  latestDeployment { id status createdAt }
                  domains {
                    serviceDomains { domain }
                    customDomains { domain }
                  }
                }
              }
            }
          }
        }
      }
    }
  }
"""

PROJECT_DELETE = """
  mutation projectDelete($id: String!) {
    projectDelete(id: $id)
  }
"""

SERVICE_CREATE = """
  mutation serviceCreate($input: ServiceCreateInput!) {
    serviceCreate(input: $input) {
      id
      name
    }
  }
"""

VOLUME_CREATE = """
  mutation volumeCreate($input: VolumeCreateInput!) {
    volumeCreate(input: $input) {
      id
    }
  }
"""

VARIABLE_COLLECTION_UPSERT = """
  mutation variableCollectionUpsert($input: VariableCollectionUpsertInput!) {
    variableCollectionUpsert(input: $input)
  }
"""

SERVICE_INSTANCE_DEPLOY = """
  mutation serviceInstanceDeploy($serviceId: String!, $environmentId: String!) {
    serviceInstanceDeploy(serviceId: $serviceId, environmentId: $environmentId)
  }
"""

SERVICE_INSTANCE_REDEPLOY = """
  mutation serviceInstanceRedeploy($serviceId: String!, $environmentId: String!) {
    serviceInstanceRedeploy(serviceId: $serviceId, environmentId: $environmentId)
  }
"""

DEPLOYMENTS_QUERY = """
  query deployments($input: DeploymentListInput!) {
    deployments(input: $input, first: 1) {
      edges {
        node {
          id
          status
          createdAt
        }
      }
    }
  }
"""

SERVICE_DOMAIN_CREATE = """
  mutation serviceDomainCreate($input: ServiceDomainCreateInput!) {
    serviceDomainCreate(input: $input) {
      id
      domain
    }
  }
"""


@dataclass(frozen=True)
class CreatedProject:
    """Identifiers returned when a project is created."""

    id: str
    name: str
    environment_id: str
    environment_name: str


@dataclass(frozen=True)
class Deployment:
    """Most recent deployment of a service instance."""

    id: str
    status: str
    created_at: str


class ControlPlaneClient:
    """Typed wrapper around the control-plane GraphQL endpoint."""

    def __init__(
        self,
        config: ControlPlaneConfig,
        *,
        client: httpx.Client | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config
        self._client = client or httpx.Client(timeout=config.timeout)
        self._sleep = sleep
        if not config.token:
            log.warning("Control-plane token is not set; API calls will fail.")

    def close(self) -> None:
        """Release the underlying HTTP connection pool."""
        self._client.close()

    def __enter__(self) -> ControlPlaneClient:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    # ------------------------------------------------------------------
    def execute(self, query: str, variables: Mapping[str, Any] | None = None) -> dict[str, Any]:
        """Run *query* and return the ``data`` portion of the response."""
        payload = {"query": query, "variables": dict(variables or {})}
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.config.token}",
        }
        retries = 0
        while True:
            try:
                response = self._client.post(self.config.api_url, json=payload, headers=headers)
            except httpx.HTTPError as exc:
                raise RemoteApiError(f"Control plane request failed: {exc}") from exc
            if response.status_code != 429 or retries >= self.config.max_rate_limit_retries:
                break
            delay = self._retry_after(response)
            log.warning("Control plane rate limited, retrying in %ss", delay)
            self._sleep(delay)
            retries += 1

        if not response.is_success:
            raise RemoteApiError(
                f"Control plane HTTP {response.status_code}: {response.text}",
                status=response.status_code,
            )
        try:
            body = response.json()
        except ValueError as exc:
            raise RemoteApiError(
                f"Control plane returned invalid JSON: {exc}",
                status=response.status_code,
            ) from exc
        if not isinstance(body, Mapping):
            raise RemoteApiError("Control plane returned a non-object response.")

        errors = body.get("errors")
        if errors:
            messages = "; ".join(_error_message(item) for item in errors)
            raise RemoteApiError(
                f"Control plane error: {messages}",
                status=response.status_code,
            )
        data = body.get("data")
        return dict(data) if isinstance(data, Mapping) else {}

    def _retry_after(self, response: httpx.Response) -> float:
        raw = response.headers.get("Retry-After")
        if raw is None:
            return self.config.default_retry_after
        try:
            delay = float(raw)
        except ValueError:
            return self.config.default_retry_after
        if not math.isfinite(delay):
            return self.config.default_retry_after
        return max(delay, 0.0)

    # ------------------------------------------------------------------
    # Typed operations
    # ------------------------------------------------------------------
    def create_project(self, name: str) -> CreatedProject:
        """Create a project and return its id and default environment."""
        data = self.execute(PROJECT_CREATE, {"input": {"name": name}})
        project = _require(data, "projectCreate")
        environments = _nodes(project, "environments")
        if not environments:
            raise RemoteApiError("No default environment found in new project.")
        environment = environments[0]
        return CreatedProject(
            id=str(_require(project, "id")),
            name=str(project.get("name") or name),
            environment_id=str(_require(environment, "id")),
            environment_name=str(environment.get("name") or ""),
        )

    def get_project(self, project_id: str) -> dict[str, Any]:
        """Return the project with its services, domains and deployments."""
        data = self.execute(PROJECT_QUERY, {"id": project_id})
        project = data.get("project")
        return dict(project) if isinstance(project, Mapping) else {}

    def delete_project(self, project_id: str) -> None:
        """Delete the project and every resource inside it."""
        self.execute(PROJECT_DELETE, {"id": project_id})

    def create_service(self, project_id: str, name: str, repo: str) -> str:
        """Create a service built from *repo* and return its id."""
        data = self.execute(
            SERVICE_CREATE,
            {"input": {"projectId": project_id, "name": name, "source": {"repo": repo}}},
        )
        return str(_require(_require(data, "serviceCreate"), "id"))

    def create_volume(
        self,
        project_id: str,
        service_id: str,
        environment_id: str,
        mount_path: str,
    ) -> str:
        """Attach a persistent volume to the service and return its id."""
        data = self.execute(
            VOLUME_CREATE,
            {
                "input": {
                    "projectId": project_id,
                    "serviceId": service_id,
                    "environmentId": environment_id,
                    "mountPath": mount_path,
                }
            },
        )
        return str(_require(_require(data, "volumeCreate"), "id"))

    def upsert_variables(
        self,
        project_id: str,
        environment_id: str,
        service_id: str,
        variables: Mapping[str, str],
    ) -> None:
        """Add *variables* to the service without replacing existing ones."""
        self.execute(
            VARIABLE_COLLECTION_UPSERT,
            {
                "input": {
                    "projectId": project_id,
                    "environmentId": environment_id,
                    "serviceId": service_id,
                    "variables": dict(variables),
                    "replace": False,
                }
            },
        )

    def deploy_service_instance(self, service_id: str, environment_id: str) -> None:
        """Trigger a deployment of the service."""
        self.execute(
            SERVICE_INSTANCE_DEPLOY,
            {"serviceId": service_id, "environmentId": environment_id},
        )

    def redeploy_service_instance(self, service_id: str, environment_id: str) -> None:
        """Redeploy the latest build of the service."""
        self.execute(
            SERVICE_INSTANCE_REDEPLOY,
            {"serviceId": service_id, "environmentId": environment_id},
        )

    def latest_deployment(self, service_id: str, environment_id: str) -> Deployment | None:
        """Return the newest deployment, or ``None`` if the service has none."""
        data = self.execute(
            DEPLOYMENTS_QUERY,
            {"input": {"serviceId": service_id, "environmentId": environment_id}},
        )
        deployments = _nodes(data, "deployments")
        if not deployments:
            return None
        node = deployments[0]
        return Deployment(
            id=str(node.get("id") or ""),
            status=str(node.get("status") or ""),
            created_at=str(node.get("createdAt") or ""),
        )

    def create_service_domain(self, service_id: str, environment_id: str) -> str | None:
        """Request a platform domain; returns it when assigned immediately."""
        data = self.execute(
            SERVICE_DOMAIN_CREATE,
            {"input": {"serviceId": service_id, "environmentId": environment_id}},
        )
        domain = _dig(data, "serviceDomainCreate", "domain")
        return str(domain) if domain else None

    def service_domain(self, project_id: str, service_id: str) -> str | None:
        """Return the service's domain, preferring a custom domain."""
        project = self.get_project(project_id)
        for node in _nodes(project, "services"):
            if node.get("id") != service_id:
                continue
            instances = _nodes(node, "serviceInstances")
            if not instances:
                return None
            domains = instances[0].get("domains")
            for kind in ("customDomains", "serviceDomains"):
                candidates = _dig(domains, kind)
                if not isinstance(candidates, list) or not candidates:
                    continue
                domain = _dig(candidates[0], "domain")
                if domain:
                    return str(domain)
            return None
        return None


def _nodes(value: object, connection: str) -> list[Mapping[str, Any]]:
    """Return the ``node`` objects of a GraphQL ``{edges: [{node}]}`` connection."""
    edges = _dig(value, connection, "edges")
    if edges is None:
        return []
    if not isinstance(edges, list):
        raise RemoteApiError(f"Control plane returned malformed '{connection}' edges.")
    nodes: list[Mapping[str, Any]] = []
    for edge in edges:
        node = _dig(edge, "node")
        if not isinstance(node, Mapping):
            raise RemoteApiError(f"Control plane returned a malformed '{connection}' node.")
        nodes.append(node)
    return nodes


def _dig(value: object, *keys: str) -> Any:
    current: Any = value
    for key in keys:
        if not isinstance(current, Mapping):
            return None
        current = current.get(key)
    return current


def _require(value: object, key: str) -> Any:
    result = _dig(value, key)
    if result is None:
        raise RemoteApiError(f"Control plane response missing '{key}'.")
    return result


def _error_message(item: object) -> str:
    if isinstance(item, Mapping):
        return str(item.get("message", item))
    return str(item)


__all__ = [
    "ControlPlaneClient",
    "CreatedProject",
    "Deployment",
    "RemoteApiError",
]
