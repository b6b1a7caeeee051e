"""Remote API clients used by fleetctl."""
from __future__ import annotations

from .control_plane import ControlPlaneClient, CreatedProject, Deployment, RemoteApiError
from .mesh import MeshKey, MeshKeyIssuer

__all__ = [
    "ControlPlaneClient",
    "CreatedProject",
    "Deployment",
    "MeshKey",
    "MeshKeyIssuer",
    "RemoteApiError",
]
