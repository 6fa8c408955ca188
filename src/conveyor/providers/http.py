"""HTTP readiness probe backed by httpx.

Example:
    >>> probe = HttpHealthProbe("http://{target}.internal:8080/healthz")
    >>> probe.status("api-staging")  # GET http://api-staging.internal:8080/healthz
"""

from __future__ import annotations

import httpx
import structlog

from conveyor.providers.base import HealthProbe, ProbeStatus

logger = structlog.get_logger(__name__)


class HttpHealthProbe(HealthProbe):
    """Probe a readiness endpoint with HTTP GET.

    2xx and 3xx responses are healthy; anything else, including connection
    errors and timeouts, is unhealthy.

    Attributes:
        url_template: URL with a ``{target}`` placeholder.
        timeout_seconds: Per-request timeout.
    """

    def __init__(
        self,
        url_template: str,
        timeout_seconds: float = 5.0,
        headers: dict[str, str] | None = None,
        *,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        if "{target}" not in url_template:
            raise ValueError("url_template must contain a {target} placeholder")
        self.url_template = url_template
        self.timeout_seconds = timeout_seconds
        self._client = httpx.Client(
            timeout=timeout_seconds,
            headers=headers or {},
            transport=transport,
            follow_redirects=False,
        )

    def status(self, target: str) -> ProbeStatus:
        url = self.url_template.format(target=target)
        try:
            response = self._client.get(url)
        except httpx.TimeoutException:
            logger.debug("health_probe_timeout", url=url)
            return ProbeStatus.UNHEALTHY
        except httpx.RequestError as e:
            logger.debug("health_probe_error", url=url, error=str(e))
            return ProbeStatus.UNHEALTHY

        if response.status_code < 400:
            return ProbeStatus.HEALTHY
        logger.debug("health_probe_unhealthy", url=url, status_code=response.status_code)
        return ProbeStatus.UNHEALTHY

    def close(self) -> None:
        self._client.close()


__all__: list[str] = ["HttpHealthProbe"]
