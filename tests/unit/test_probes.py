"""Tests for the HTTP availability probe."""

import httpx
import pytest

from resilio.classification import ErrorKind
from resilio.probes import HttpProbe

URL = "http://svc.test/health"


def make_probe(handler, **kwargs):
    """Probe whose client is served by ``handler``."""
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpProbe(URL, client=client, **kwargs), client


class TestHttpProbe:
    """Tests for HttpProbe outcomes."""

    @pytest.mark.asyncio
    async def test_head_success(self):
        """A 2xx HEAD response is a success."""
        methods = []

        def handler(request):
            methods.append(request.method)
            return httpx.Response(200)

        probe, client = make_probe(handler)
        result = await probe()

        assert result.ok is True
        assert result.latency_ms >= 0
        assert methods == ["HEAD"]
        await client.aclose()

    @pytest.mark.asyncio
    async def test_get_fallback_on_405(self):
        """HEAD rejected with 405 falls back to GET."""
        methods = []

        def handler(request):
            methods.append(request.method)
            return httpx.Response(405 if request.method == "HEAD" else 200)

        probe, client = make_probe(handler)
        assert (await probe()).ok is True
        assert methods == ["HEAD", "GET"]
        await client.aclose()

    @pytest.mark.asyncio
    async def test_get_only(self):
        """use_head=False issues a single GET."""
        methods = []

        def handler(request):
            methods.append(request.method)
            return httpx.Response(204)

        probe, client = make_probe(handler, use_head=False)
        assert (await probe()).ok is True
        assert methods == ["GET"]
        await client.aclose()

    @pytest.mark.asyncio
    async def test_maintenance_body(self):
        """A 503 mentioning maintenance reports SERVICE_MAINTENANCE."""

        def handler(request):
            return httpx.Response(503, text="Down for scheduled maintenance")

        probe, client = make_probe(handler)
        result = await probe()

        assert result.ok is False
        assert result.kind == ErrorKind.SERVICE_MAINTENANCE
        assert result.error == "HTTP 503"
        await client.aclose()

    @pytest.mark.asyncio
    async def test_plain_503(self):
        """A bare 503 reports SERVICE_UNAVAILABLE."""
        probe, client = make_probe(lambda request: httpx.Response(503))
        assert (await probe()).kind == ErrorKind.SERVICE_UNAVAILABLE
        await client.aclose()

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status,kind",
        [
            (500, ErrorKind.SERVER_ERROR),
            (401, ErrorKind.INVALID_CREDENTIALS),
            (429, ErrorKind.RATE_LIMITED),
        ],
    )
    async def test_error_statuses_classified(self, status, kind):
        """Other error statuses are classified."""
        probe, client = make_probe(lambda request: httpx.Response(status))
        assert (await probe()).kind == kind
        await client.aclose()

    @pytest.mark.asyncio
    async def test_connection_error(self):
        """Transport failures report NETWORK."""

        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        probe, client = make_probe(handler)
        result = await probe()

        assert result.ok is False
        assert result.kind == ErrorKind.NETWORK
        assert "refused" in result.error
        await client.aclose()

    @pytest.mark.asyncio
    async def test_timeout(self):
        """Timeouts report NETWORK."""

        def handler(request):
            raise httpx.ReadTimeout("too slow", request=request)

        probe, client = make_probe(handler)
        assert (await probe()).kind == ErrorKind.NETWORK
        await client.aclose()

    @pytest.mark.asyncio
    async def test_close_leaves_injected_client_open(self):
        """Injected clients are owned by the caller."""
        probe, client = make_probe(lambda request: httpx.Response(200))
        async with probe:
            await probe()

        assert client.is_closed is False
        await client.aclose()

    @pytest.mark.asyncio
    async def test_close_owned_client(self):
        """A probe closes the client it created."""
        probe = HttpProbe(URL)
        client = probe._get_client()
        await probe.close()
        assert client.is_closed is True
