from __future__ import annotations

import logging

import httpx

from companion_core.shared import normalize_base_url


HEALTH_PATH = "/global/health"
DEFAULT_PROBE_TIMEOUT_SECONDS = 2.0

LOGGER = logging.getLogger("opencode_companion.health")


class HealthProbe:
    """Bounded liveness check against the server's health endpoint."""

    def __init__(
        self,
        *,
        timeout_seconds: float = DEFAULT_PROBE_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.timeout_seconds = float(timeout_seconds)
        self._transport = transport

    async def check(self, base_url: str) -> bool:
        url = f"{normalize_base_url(base_url)}{HEALTH_PATH}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport) as client:
                response = await client.get(url)
        except (httpx.HTTPError, OSError) as exc:
            LOGGER.debug("Health probe failed url=%s error=%s", url, exc.__class__.__name__)
            return False
        return response.is_success
