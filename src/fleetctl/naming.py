"""Name sanitisation helpers shared by tenants and instances."""
from __future__ import annotations

import re

MAX_NAME_LENGTH = 50
MAX_SLUG_LENGTH = 30
DEFAULT_TENANT_SLUG = "default"
DEFAULT_TENANT_NAME = "Default"

_NAME_DISALLOWED = re.compile(r"[^A-Za-z0-9 -]")
_SLUG_SEPARATORS = re.compile(r"[^a-z0-9]+")
_WHITESPACE = re.compile(r"\s+")
_SERVICE_DISALLOWED = re.compile(r"[^a-z0-9-]")


class InvalidNameError(ValueError):
    """Raised when a tenant or instance name sanitises to nothing."""


def clean_name(name: object) -> str:
    """Return *name* restricted to letters, digits, spaces and hyphens.

    The result is trimmed and capped at :data:`MAX_NAME_LENGTH` characters.
    An empty result raises :class:`InvalidNameError`.
    """
    if not isinstance(name, str) or not name.strip():
        raise InvalidNameError("Name is required.")
    cleaned = _NAME_DISALLOWED.sub("", name).strip()[:MAX_NAME_LENGTH].strip()
    if not cleaned:
        raise InvalidNameError("Name must contain alphanumeric characters.")
    return cleaned


def slugify(name: str) -> str:
    """Return a URL-safe slug for *name*.

    Slugs are lowercase, contain only ``[a-z0-9-]``, never start or end with a
    hyphen and are at most :data:`MAX_SLUG_LENGTH` characters long.
    """
    slug = _SLUG_SEPARATORS.sub("-", str(name or "").lower()).strip("-")
    return slug[:MAX_SLUG_LENGTH].strip("-")


def service_name(prefix: str, name: str) -> str:
    """Return the control-plane service name for a sanitised instance *name*."""
    token = _SERVICE_DISALLOWED.sub("", _WHITESPACE.sub("-", name.lower()))
    return f"{prefix}-{token}"


def project_name(prefix: str, tenant_slug: str, name: str) -> str:
    """Return the control-plane project label.

    Projects of the default tenant omit the slug so their names match those
    created before tenants existed.
    """
    if tenant_slug == DEFAULT_TENANT_SLUG:
        return f"{prefix} - {name}"
    return f"{prefix} - {tenant_slug} - {name}"


__all__ = [
    "DEFAULT_TENANT_NAME",
    "DEFAULT_TENANT_SLUG",
    "InvalidNameError",
    "MAX_NAME_LENGTH",
    "MAX_SLUG_LENGTH",
    "clean_name",
    "project_name",
    "service_name",
    "slugify",
]
