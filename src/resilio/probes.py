"""HTTP availability probe built on httpx.

The monitor only sees :class:`~resilio.availability.ProbeResult` values; this
module is one way of producing them against a health endpoint.
"""

import time
from typing import Optional

import httpx

from resilio.availability import ProbeResult
from resilio.classification import ErrorClassifier, ErrorKind
from resilio.logging import get_logger

logger = get_logger(__name__, component="probes")

# Statuses where a HEAD response cannot be trusted and a GET is made instead.
_GET_FALLBACK_STATUSES = (405, 501, 503)


class HttpProbe:
    """Probe that issues a HEAD (falling back to GET) against ``url``.

    2xx and 3xx responses count as success. A 503 whose body mentions
    maintenance reports SERVICE_MAINTENANCE; other failures are classified
    from the status code and body.

    Example:
        >>> probe = HttpProbe("https://api.example.com/health")
        >>> monitor = AvailabilityMonitor(probe)
    """

    def __init__(
        self,
        url: str,
        timeout_ms: int = 5_000,
        client: Optional[httpx.AsyncClient] = None,
        classifier: Optional[ErrorClassifier] = None,
        use_head: bool = True,
    ):
        self.url = url
        self.timeout_ms = timeout_ms
        self.use_head = use_head
        self._client = client
        self._owns_client = client is None
        self._classifier = classifier or ErrorClassifier()

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout_ms / 1000)
        return self._client

    async def __call__(self) -> ProbeResult:
        client = self._get_client()
        started = time.perf_counter()
        try:
            response = await client.request("HEAD" if self.use_head else "GET", self.url)
            if self.use_head and response.status_code in _GET_FALLBACK_STATUSES:
                response = await client.get(self.url)
        except httpx.TimeoutException as e:
            latency = (time.perf_counter() - started) * 1000
            logger.warning("probe_timeout", url=self.url, error=str(e))
            return ProbeResult.failure(ErrorKind.NETWORK, latency_ms=latency, error=str(e))
        except httpx.HTTPError as e:
            latency = (time.perf_counter() - started) * 1000
            logger.warning("probe_connection_failed", url=self.url, error=str(e))
            return ProbeResult.failure(ErrorKind.NETWORK, latency_ms=latency, error=str(e))

        latency = (time.perf_counter() - started) * 1000
        if response.status_code < 400:
            return ProbeResult.success(latency)

        body = response.text[:500] if response.request.method != "HEAD" else ""
        message = f"{response.reason_phrase} {body}".strip()
        if response.status_code == 503 and "maintenance" in message.lower():
            kind = ErrorKind.SERVICE_MAINTENANCE
        else:
            kind = self._classifier.classify({"status": response.status_code, "message": message})
        logger.info(
            "probe_failed",
            url=self.url,
            status_code=response.status_code,
            kind=kind.value,
        )
        return ProbeResult.failure(
            kind,
            latency_ms=latency,
            error=f"HTTP {response.status_code}",
        )

    async def close(self) -> None:
        """Close the HTTP client if this probe created it."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None

    async def __aenter__(self) -> "HttpProbe":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()
