import errno
import json
import logging
import ssl
from unittest.mock import AsyncMock

import brotli
import httpx
import pytest
import respx

from conftest import StubTransport
from consts.http_headers import DEFAULT_HEADERS
from webtools.config import ProxyConfig
from webtools.errors import AcquisitionError, ErrorKind
from webtools.fetch import (
    AcquisitionRequest,
    Failure,
    FetchOptions,
    HttpxTransport,
    Success,
    acquire,
    fetch_with_retry,
)
from webtools.logging_utils import JsonFormatter

URL = "https://example.com/page"
PROXY = ProxyConfig(enabled=True, url="http://proxy.local:8888", timeout_ms=5000)


def get_json_logs(caplog_fixture):
    """Formats captured webtools records with JsonFormatter, as they appear on stderr."""
    formatter = JsonFormatter()
    return [
        json.loads(formatter.format(record))
        for record in caplog_fixture.records
        if record.name.startswith("webtools")
    ]


@pytest.mark.asyncio
async def test_first_attempt_success_makes_one_direct_call(no_backoff):
    transport = StubTransport(200)
    response = await fetch_with_retry(URL, FetchOptions(), 3, transport=transport, proxy_config=PROXY)
    assert response.status == 200
    assert len(transport.calls) == 1
    assert transport.calls[0]["proxy"] is None
    assert transport.calls[0]["headers"] == DEFAULT_HEADERS


@pytest.mark.asyncio
async def test_rate_limited_escalates_to_proxy_then_succeeds(no_backoff):
    transport = StubTransport(429, 429, 200)
    response = await fetch_with_retry(URL, FetchOptions(), 3, transport=transport, proxy_config=PROXY)
    assert response.status == 200
    assert [c["proxy"] for c in transport.calls] == [None, PROXY.url, PROXY.url]
    # proxied attempts use the proxy's own timeout
    assert [c["timeout_ms"] for c in transport.calls] == [30000, 5000, 5000]


@pytest.mark.asyncio
async def test_blocked_exhausts_budget(no_backoff):
    transport = StubTransport(403)
    with pytest.raises(AcquisitionError) as exc_info:
        await fetch_with_retry(URL, FetchOptions(), 3, transport=transport, proxy_config=PROXY)
    error = exc_info.value
    assert error.kind == ErrorKind.BLOCKED
    assert error.retryable is True
    assert error.status == 403
    assert error.used_proxy is True
    assert len(transport.calls) == 3
    assert [c["proxy"] for c in transport.calls] == [None, PROXY.url, PROXY.url]


@pytest.mark.asyncio
async def test_no_delay_after_final_attempt(mocker):
    delay = mocker.patch("webtools.fetch.backoff_delay_ms", return_value=0)
    sleep = mocker.patch("webtools.fetch.asyncio.sleep", new_callable=AsyncMock)
    transport = StubTransport(403)
    with pytest.raises(AcquisitionError):
        await fetch_with_retry(URL, FetchOptions(), 3, transport=transport, proxy_config=PROXY)
    assert len(transport.calls) == 3
    assert delay.call_count == 2
    assert sleep.await_count == 2


@pytest.mark.asyncio
async def test_disabled_proxy_never_escalates(no_backoff):
    transport = StubTransport(429)
    with pytest.raises(AcquisitionError):
        await fetch_with_retry(URL, FetchOptions(), 3, transport=transport, proxy_config=ProxyConfig(enabled=False))
    assert len(transport.calls) == 3
    assert all(c["proxy"] is None for c in transport.calls)


@pytest.mark.asyncio
async def test_use_proxy_forces_proxy_from_first_attempt(no_backoff):
    transport = StubTransport(200)
    await fetch_with_retry(URL, FetchOptions(use_proxy=True), 3, transport=transport, proxy_config=ProxyConfig(enabled=False, url="http://p:1"))
    assert transport.calls[0]["proxy"] == "http://p:1"


@pytest.mark.asyncio
async def test_certificate_failure_is_not_retried(no_backoff):
    transport = StubTransport(AcquisitionError(ErrorKind.CERTIFICATE, "self-signed certificate"))
    with pytest.raises(AcquisitionError) as exc_info:
        await fetch_with_retry(URL, FetchOptions(), 3, transport=transport, proxy_config=PROXY)
    assert exc_info.value.kind == ErrorKind.CERTIFICATE
    assert exc_info.value.retryable is False
    assert len(transport.calls) == 1


@pytest.mark.asyncio
async def test_connection_refused_is_not_retried(no_backoff):
    transport = StubTransport(AcquisitionError(ErrorKind.NETWORK, "Connection refused", retryable=False, code="connection_refused"))
    with pytest.raises(AcquisitionError) as exc_info:
        await fetch_with_retry(URL, FetchOptions(), 3, transport=transport, proxy_config=PROXY)
    assert exc_info.value.retryable is False
    assert len(transport.calls) == 1


@pytest.mark.asyncio
async def test_timeouts_are_retried(no_backoff):
    timeout = AcquisitionError(ErrorKind.TIMEOUT, "Request timed out after 30000ms", code="timeout")
    transport = StubTransport(timeout, 200)
    response = await fetch_with_retry(URL, FetchOptions(), 3, transport=transport, proxy_config=ProxyConfig())
    assert response.status == 200
    assert len(transport.calls) == 2


@pytest.mark.asyncio
async def test_untyped_exception_is_classified(no_backoff):
    transport = StubTransport(RuntimeError("boom"))
    with pytest.raises(AcquisitionError) as exc_info:
        await fetch_with_retry(URL, FetchOptions(), 2, transport=transport)
    assert exc_info.value.kind == ErrorKind.INTERNAL
    assert isinstance(exc_info.value.__cause__, RuntimeError)
    assert len(transport.calls) == 2


@pytest.mark.asyncio
async def test_caller_headers_override_defaults(no_backoff):
    transport = StubTransport(200)
    await fetch_with_retry(URL, FetchOptions(headers={"User-Agent": "custom/1.0", "X-Test": "1"}), 1, transport=transport)
    sent = transport.calls[0]["headers"]
    assert sent["User-Agent"] == "custom/1.0"
    assert sent["X-Test"] == "1"
    assert sent["Accept-Language"] == DEFAULT_HEADERS["Accept-Language"]


@pytest.mark.asyncio
async def test_ignore_ssl_errors_disables_verification(no_backoff):
    transport = StubTransport(200)
    await fetch_with_retry(URL, FetchOptions(ignore_ssl_errors=True), 1, transport=transport)
    assert transport.calls[0]["verify"] is False


@pytest.mark.asyncio
async def test_invalid_max_retries_rejected():
    with pytest.raises(ValueError):
        await fetch_with_retry(URL, FetchOptions(), 0, transport=StubTransport())


@pytest.mark.asyncio
async def test_retry_logs_are_structured(no_backoff, caplog):
    caplog.set_level(logging.INFO, logger="webtools")
    transport = StubTransport(429, 200)
    await fetch_with_retry(URL, FetchOptions(), 3, transport=transport, proxy_config=PROXY)
    events = [log["event"] for log in get_json_logs(caplog)]
    assert events[0] == "fetch_start"
    assert "fetch_attempt_failed" in events
    assert "retry_scheduled" in events
    assert "proxy_escalation" in events
    assert events[-1] == "fetch_success"
    failed = next(log for log in get_json_logs(caplog) if log["event"] == "fetch_attempt_failed")
    assert failed["error_kind"] == "rate_limited"
    assert failed["will_retry"] is True


# --- acquire ---
@pytest.mark.asyncio
async def test_acquire_success():
    transport = StubTransport(200)
    result = await acquire(AcquisitionRequest(url=URL), transport=transport)
    assert isinstance(result, Success)
    assert result.type == "success"
    assert result.body == "<html></html>"


@pytest.mark.asyncio
async def test_acquire_failure_never_raises(no_backoff):
    transport = StubTransport(403)
    result = await acquire(AcquisitionRequest(url=URL, maxRetries=2), transport=transport, proxy_config=PROXY)
    assert isinstance(result, Failure)
    assert result.kind == ErrorKind.BLOCKED
    assert result.retryable is True
    assert result.status == 403
    assert result.recommendation
    assert len(transport.calls) == 2


@pytest.mark.parametrize("url", ["ftp://example.com", "example.com", "", "https://"])
def test_request_rejects_non_http_urls(url):
    with pytest.raises(ValueError):
        AcquisitionRequest(url=url)


def test_request_accepts_tool_argument_names():
    request = AcquisitionRequest.model_validate({
        "url": URL, "useJavaScript": True, "useProxy": True, "timeoutMs": 500,
        "maxRetries": 5, "ignoreSSLErrors": True, "headers": {"X": "1"}, "selector": "main",
    })
    assert request.use_dynamic_rendering is True
    assert request.use_proxy is True
    assert request.timeout_ms == 500
    assert request.max_retries == 5
    assert request.ignore_ssl_errors is True
    assert request.extra_headers == {"X": "1"}


# --- HttpxTransport ---
@pytest.mark.asyncio
@respx.mock
async def test_httpx_transport_returns_response():
    respx.get(URL).mock(return_value=httpx.Response(200, text="<p>ok</p>", headers={"Content-Type": "text/html"}))
    response = await HttpxTransport().send(URL, headers={"User-Agent": "t"})
    assert response.status == 200
    assert response.text == "<p>ok</p>"
    assert response.headers["content-type"] == "text/html"


@pytest.mark.asyncio
@respx.mock
async def test_httpx_transport_timeout():
    respx.get(URL).mock(side_effect=httpx.ReadTimeout("read timed out"))
    with pytest.raises(AcquisitionError) as exc_info:
        await HttpxTransport().send(URL, timeout_ms=1000)
    assert exc_info.value.kind == ErrorKind.TIMEOUT
    assert exc_info.value.retryable is True


@pytest.mark.asyncio
@respx.mock
async def test_httpx_transport_connection_refused():
    def refuse(request):
        raise httpx.ConnectError("connection refused", request=request) from ConnectionRefusedError(errno.ECONNREFUSED, "Connection refused")

    respx.get(URL).mock(side_effect=refuse)
    with pytest.raises(AcquisitionError) as exc_info:
        await HttpxTransport().send(URL)
    assert exc_info.value.kind == ErrorKind.NETWORK
    assert exc_info.value.code == "connection_refused"
    assert exc_info.value.retryable is False


@pytest.mark.asyncio
@respx.mock
async def test_httpx_transport_certificate_failure():
    def bad_cert(request):
        raise httpx.ConnectError("certificate verify failed", request=request) from ssl.SSLCertVerificationError("certificate verify failed")

    respx.get(URL).mock(side_effect=bad_cert)
    with pytest.raises(AcquisitionError) as exc_info:
        await HttpxTransport().send(URL)
    assert exc_info.value.kind == ErrorKind.CERTIFICATE
    assert exc_info.value.retryable is False


@pytest.mark.asyncio
@respx.mock
async def test_httpx_transport_generic_connect_error_is_retryable():
    respx.get(URL).mock(side_effect=httpx.ConnectError("name resolution failed"))
    with pytest.raises(AcquisitionError) as exc_info:
        await HttpxTransport().send(URL)
    assert exc_info.value.kind == ErrorKind.NETWORK
    assert exc_info.value.code == "connect_error"
    assert exc_info.value.retryable is True


@pytest.mark.asyncio
@respx.mock
async def test_httpx_transport_tls_handshake_drop_is_retryable():
    def eof(request):
        raise httpx.ConnectError("EOF occurred in violation of protocol", request=request) from ssl.SSLEOFError(8, "EOF occurred in violation of protocol")

    respx.get(URL).mock(side_effect=eof)
    with pytest.raises(AcquisitionError) as exc_info:
        await HttpxTransport().send(URL)
    assert exc_info.value.kind == ErrorKind.NETWORK
    assert exc_info.value.code == "connect_error"
    assert exc_info.value.retryable is True


@pytest.mark.asyncio
@respx.mock
async def test_httpx_transport_decodes_brotli_with_default_headers():
    page = b"<html><body>compressed</body></html>"
    route = respx.get(URL).mock(
        return_value=httpx.Response(
            200,
            content=brotli.compress(page),
            headers={"Content-Encoding": "br", "Content-Type": "text/html"},
        )
    )
    response = await HttpxTransport().send(URL, headers=DEFAULT_HEADERS)
    assert "br" in route.calls.last.request.headers["Accept-Encoding"]
    assert response.status == 200
    assert response.text == page.decode()
