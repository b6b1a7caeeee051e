"""Join-key issuance for the optional VPN mesh.

The issuer exchanges OAuth client credentials for a short-lived bearer token
and uses it to mint one single-use, pre-authorised, tagged device key per
provisioned instance.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass

import httpx

from ..config import MeshConfig
from .control_plane import RemoteApiError

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class MeshKey:
    """A device join key returned by the mesh API."""

    key: str
    id: str


class MeshKeyIssuer:
    """Mint mesh join keys with OAuth client credentials."""

    def __init__(self, config: MeshConfig, *, client: httpx.Client | None = None) -> None:
        self.config = config
        self._client = client or httpx.Client(timeout=30.0)

    def close(self) -> None:
        """Release the underlying HTTP connection pool."""
        self._client.close()

    def is_configured(self) -> bool:
        """Return ``True`` when both OAuth credentials are available."""
        return self.config.configured

    def get_token(self) -> str:
        """Exchange the client credentials for an access token."""
        response = self._post(
            f"{self.config.api_url}/oauth/token",
            data={
                "grant_type": "client_credentials",
                "client_id": self.config.client_id,
                "client_secret": self.config.client_secret,
            },
        )
        if not response.is_success:
            raise RemoteApiError(
                f"Mesh OAuth error {response.status_code}: {response.text}",
                status=response.status_code,
            )
        token = self._json(response).get("access_token")
        if not token:
            raise RemoteApiError("Mesh OAuth response did not include an access token.")
        return str(token)

    def create_key(self, token: str, hostname: str) -> MeshKey:
        """Request a single-use key for the device that will join as *hostname*."""
        body = {
            "capabilities": {
                "devices": {
                    "create": {
                        "reusable": False,
                        "ephemeral": False,
                        "preauthorized": True,
                        "tags": [self.config.tag],
                    }
                }
            },
            "expirySeconds": self.config.key_expiry_seconds,
            "description": f"Fleet: {hostname}",
        }
        response = self._post(
            f"{self.config.api_url}/tailnet/{self.config.tailnet}/keys",
            json=body,
            headers={"Authorization": f"Bearer {token}"},
        )
        if not response.is_success:
            raise RemoteApiError(
                f"Mesh key creation error {response.status_code}: {response.text}",
                status=response.status_code,
            )
        payload = self._json(response)
        key = payload.get("key")
        if not key:
            raise RemoteApiError("Mesh key response did not include a key.")
        log.debug("Issued mesh key %s for %s", payload.get("id"), hostname)
        return MeshKey(key=str(key), id=str(payload.get("id") or ""))

    # ------------------------------------------------------------------
    def _post(self, url: str, **kwargs: object) -> httpx.Response:
        try:
            return self._client.post(url, **kwargs)  # type: ignore[arg-type]
        except httpx.HTTPError as exc:
            raise RemoteApiError(f"Mesh request failed: {exc}") from exc

    @staticmethod
    def _json(response: httpx.Response) -> dict[str, object]:
        try:
            payload = response.json()
        except ValueError as exc:
            raise RemoteApiError(f"Mesh API returned invalid JSON: {exc}") from exc
        if not isinstance(payload, dict):
            raise RemoteApiError("Mesh API returned a non-object response.")
        return payload


__all__ = ["MeshKey", "MeshKeyIssuer"]
