"""fleetctl package bootstrap.

Exposes lightweight metadata used by the CLI and packaging machinery. The
functional surface lives in the submodules (registry, provisioning, status).
"""
from __future__ import annotations

__all__ = ["__version__", "get_version"]

# NOTE: The version is duplicated in ``pyproject.toml`` and managed by Hatch.
__version__ = "0.3.0"


def get_version() -> str:
    """Return the current package version."""
    return __version__
