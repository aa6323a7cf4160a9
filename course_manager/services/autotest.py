"""Client for the remote autotest server."""

from __future__ import annotations

import json
import logging
from typing import Optional

import httpx


LOGGER = logging.getLogger(__name__)


class AutotestError(RuntimeError):
    """Raised when the autotest server cannot be reached or answers badly."""


class AutotestClient:
    def __init__(
        self,
        *,
        timeout: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self._timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.Client:
        return httpx.Client(timeout=self._timeout, transport=self._transport)

    def register(self, url: str) -> str:
        """Register this installation with the server at *url* and return its api key."""

        endpoint = f"{url.rstrip('/')}/api/register"
        LOGGER.info("Registering with autotest server %s", endpoint)
        try:
            with self._client() as client:
                response = client.post(endpoint)
                response.raise_for_status()
                payload = response.json()
        except (httpx.HTTPError, ValueError) as error:
            raise AutotestError(f"Could not register with autotest server {url}: {error}") from error

        api_key = payload.get("api_key") if isinstance(payload, dict) else None
        if not api_key:
            raise AutotestError(f"Autotest server {url} did not return an api key")
        return str(api_key)

    def get_schema(self, url: str, api_key: str) -> str:
        """Return the server's test specification schema as a JSON string."""

        endpoint = f"{url.rstrip('/')}/api/schema"
        try:
            with self._client() as client:
                response = client.get(endpoint, headers={"Authorization": f"Bearer {api_key}"})
                response.raise_for_status()
                payload = response.json()
        except (httpx.HTTPError, ValueError) as error:
            raise AutotestError(f"Could not fetch schema from {url}: {error}") from error
        return json.dumps(payload)


__all__ = ["AutotestClient", "AutotestError"]
