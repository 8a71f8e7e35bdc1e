import pytest

from conftest import StubTransport
from webtools.availability import probe
from webtools.config import ProxyConfig
from webtools.errors import AcquisitionError, ErrorKind

URL = "https://example.com"


@pytest.mark.asyncio
async def test_probe_available_uses_head():
    transport = StubTransport(200)
    result = await probe(URL, transport=transport, timeout_ms=1234)
    assert result.available is True
    assert result.status == 200
    assert transport.calls[0]["method"] == "HEAD"
    assert transport.calls[0]["timeout_ms"] == 1234


@pytest.mark.asyncio
async def test_probe_unavailable_on_http_error(no_backoff):
    transport = StubTransport(503)
    result = await probe(URL, transport=transport, max_retries=2)
    assert result.available is False
    assert result.status == 503
    assert result.error == "HTTP error! status: 503"
    assert result.error_kind == ErrorKind.NETWORK
    assert result.recommendation == "Please try again later or check if the URL is correct."
    assert len(transport.calls) == 2


@pytest.mark.asyncio
async def test_probe_unavailable_on_network_error(no_backoff):
    transport = StubTransport(AcquisitionError(ErrorKind.NETWORK, "Connection refused", retryable=False, code="connection_refused"))
    result = await probe(URL, transport=transport)
    assert result.available is False
    assert result.status is None
    assert "refused" in result.error
    assert len(transport.calls) == 1


@pytest.mark.asyncio
async def test_probe_honors_ignore_ssl_errors():
    transport = StubTransport(200)
    await probe(URL, transport=transport, ignore_ssl_errors=True)
    assert transport.calls[0]["verify"] is False


@pytest.mark.asyncio
async def test_probe_escalates_through_proxy(no_backoff):
    transport = StubTransport(403, 200)
    result = await probe(URL, transport=transport, proxy_config=ProxyConfig(enabled=True, url="http://proxy:1"))
    assert result.available is True
    assert [c["proxy"] for c in transport.calls] == [None, "http://proxy:1"]


@pytest.mark.asyncio
async def test_probe_reports_failure_code(no_backoff):
    refused = AcquisitionError(ErrorKind.NETWORK, "Proxy connection failed", retryable=False, code="proxy_connection_failed")
    transport = StubTransport(refused)
    result = await probe(URL, transport=transport, use_proxy=True)
    assert result.available is False
    assert result.error_kind == ErrorKind.NETWORK
    assert result.error_code == "proxy_connection_failed"


@pytest.mark.asyncio
async def test_probe_forced_proxy_and_headers():
    transport = StubTransport(200)
    await probe(URL, transport=transport, use_proxy=True, headers={"Authorization": "Bearer t"})
    call = transport.calls[0]
    assert call["proxy"] == ProxyConfig().url
    assert call["headers"]["Authorization"] == "Bearer t"
