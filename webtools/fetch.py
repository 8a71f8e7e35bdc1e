"""
Retrying, timeout-bounded, proxy-escalating HTTP acquisition.

Attempt 0 goes direct; every later attempt is routed through the configured
proxy when proxy escalation is enabled. A caller-level ``use_proxy`` forces the
proxy from the first attempt. Attempts are strictly sequential.
"""
import asyncio
import errno
import ssl
import time
from typing import Any, Dict, List, Literal, NamedTuple, Optional, Union
from urllib.parse import urlparse

import httpx
from pydantic import BaseModel, ConfigDict, Field, field_validator

from consts.http_headers import DEFAULT_HEADERS
from webtools.backoff import backoff_delay_ms
from webtools.config import DEFAULT_MAX_RETRIES, DEFAULT_REQUEST_TIMEOUT_MS, ProxyConfig
from webtools.errors import AcquisitionError, ErrorKind, classify, classify_status
from webtools.logging_utils import get_logger

logger = get_logger(__name__)


# --- Request / result types ---
class AcquisitionRequest(BaseModel):
    """Parameters of one tool invocation's acquisition. Built fresh per call."""
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    url: str
    timeout_ms: int = Field(default=DEFAULT_REQUEST_TIMEOUT_MS, gt=0, alias="timeoutMs")
    use_dynamic_rendering: bool = Field(default=False, alias="useJavaScript")
    use_proxy: bool = Field(default=False, alias="useProxy")
    extra_headers: Dict[str, str] = Field(default_factory=dict, alias="headers")
    max_retries: int = Field(default=DEFAULT_MAX_RETRIES, ge=1, alias="maxRetries")
    ignore_ssl_errors: bool = Field(default=False, alias="ignoreSSLErrors")

    @field_validator("url")
    @classmethod
    def _check_url(cls, value: str) -> str:
        value = (value or "").strip()
        parsed = urlparse(value)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError(f"not an http(s) URL: {value!r}")
        return value


class FetchOptions(NamedTuple):
    method: str = "GET"
    headers: Dict[str, str] = {}
    timeout_ms: int = DEFAULT_REQUEST_TIMEOUT_MS
    use_proxy: bool = False
    ignore_ssl_errors: bool = False


class TransportResponse(NamedTuple):
    status: int
    headers: Dict[str, str]
    text: str
    url: str


class AttemptRecord(NamedTuple):
    attempt_index: int
    used_proxy: bool
    started_at: float
    outcome: Literal["success", "error"]
    error_kind: Optional[ErrorKind] = None


class Success(NamedTuple):
    type: Literal["success"]
    status: int
    headers: Dict[str, str]
    body: str
    url: str


class Failure(NamedTuple):
    type: Literal["failure"]
    kind: ErrorKind
    message: str
    retryable: bool
    recommendation: str
    suggested_parameter_changes: Dict[str, Any] = {}
    status: Optional[int] = None
    code: Optional[str] = None


AcquisitionResult = Union[Success, Failure]


def failure_from_error(error: AcquisitionError, suggestions: Optional[Dict[str, Any]] = None) -> Failure:
    return Failure(
        type="failure",
        kind=error.kind,
        message=error.message,
        retryable=error.retryable,
        recommendation=error.recommendation,
        suggested_parameter_changes=dict(suggestions or {}),
        status=error.status,
        code=error.code,
    )


# --- Transport ---
def _exception_chain(exc: BaseException):
    seen = set()
    while exc is not None and id(exc) not in seen:
        seen.add(id(exc))
        yield exc
        exc = exc.__cause__ or exc.__context__


def _is_connection_refused(exc: BaseException) -> bool:
    return any(
        isinstance(e, ConnectionRefusedError) or (isinstance(e, OSError) and e.errno == errno.ECONNREFUSED)
        for e in _exception_chain(exc)
    )


def _is_certificate_failure(exc: BaseException) -> bool:
    return any(isinstance(e, ssl.SSLCertVerificationError) for e in _exception_chain(exc))


class HttpxTransport:
    """Single request/response exchange over httpx, raising typed AcquisitionErrors."""

    async def send(
        self,
        url: str,
        *,
        method: str = "GET",
        headers: Optional[Dict[str, str]] = None,
        timeout_ms: int = DEFAULT_REQUEST_TIMEOUT_MS,
        proxy: Optional[str] = None,
        verify: bool = True,
    ) -> TransportResponse:
        timeout_s = timeout_ms / 1000.0
        used_proxy = proxy is not None
        try:
            async with httpx.AsyncClient(
                follow_redirects=True,
                proxy=proxy,
                verify=verify,
                timeout=httpx.Timeout(timeout_s),
            ) as client:
                response = await asyncio.wait_for(client.request(method, url, headers=headers), timeout_s)
                return TransportResponse(
                    status=response.status_code,
                    headers=dict(response.headers),
                    text=response.text if method != "HEAD" else "",
                    url=str(response.url),
                )
        except (httpx.TimeoutException, asyncio.TimeoutError) as e:
            raise AcquisitionError(
                ErrorKind.TIMEOUT, f"Request timed out after {timeout_ms}ms", code="timeout", used_proxy=used_proxy
            ) from e
        except httpx.ProxyError as e:
            raise AcquisitionError(
                ErrorKind.NETWORK, f"Proxy connection failed: {e}", code="proxy_connection_failed", used_proxy=True
            ) from e
        except httpx.ConnectError as e:
            if _is_certificate_failure(e):
                raise AcquisitionError(
                    ErrorKind.CERTIFICATE, f"TLS certificate verification failed: {e}", retryable=False,
                    code="certificate_invalid", used_proxy=used_proxy,
                ) from e
            if _is_connection_refused(e):
                if used_proxy:
                    raise AcquisitionError(
                        ErrorKind.NETWORK, f"Proxy connection failed: {e}", retryable=False,
                        code="proxy_connection_failed", used_proxy=True,
                    ) from e
                raise AcquisitionError(
                    ErrorKind.NETWORK, f"Connection refused: {e}", retryable=False,
                    code="connection_refused", used_proxy=used_proxy,
                ) from e
            raise AcquisitionError(ErrorKind.NETWORK, f"Connection error: {e}", code="connect_error", used_proxy=used_proxy) from e
        except httpx.TransportError as e:
            raise AcquisitionError(ErrorKind.NETWORK, f"{type(e).__name__}: {e}", code="transport_error", used_proxy=used_proxy) from e


_default_transport = HttpxTransport()


# --- Retry loop ---
async def fetch_with_retry(
    url: str,
    options: Optional[FetchOptions] = None,
    max_retries: int = DEFAULT_MAX_RETRIES,
    *,
    transport=None,
    proxy_config: Optional[ProxyConfig] = None,
) -> TransportResponse:
    """Fetches ``url``, retrying retryable failures with backoff. Raises AcquisitionError."""
    if max_retries < 1:
        raise ValueError("max_retries must be >= 1")
    options = options or FetchOptions()
    transport = transport or _default_transport
    proxy_config = proxy_config or ProxyConfig()
    final_headers = {**DEFAULT_HEADERS, **(options.headers or {})}
    attempts: List[AttemptRecord] = []

    logger.info(f"Starting {options.method} fetch for {url}", extra={"url": url, "method": options.method, "max_retries": max_retries, "event_type": "fetch_start"})

    for attempt in range(max_retries):
        use_proxy = options.use_proxy or (proxy_config.enabled and attempt > 0)
        timeout_ms = proxy_config.timeout_ms if use_proxy else options.timeout_ms
        log_extra = {"url": url, "method": options.method, "attempt": attempt + 1, "max_retries": max_retries, "used_proxy": use_proxy}
        if use_proxy and attempt > 0 and not attempts[-1].used_proxy:
            logger.info(f"Escalating to proxy on attempt {attempt + 1}", extra={**log_extra, "proxy": proxy_config.url, "event_type": "proxy_escalation"})

        started_at = time.time()
        try:
            logger.info(
                f"{options.method} request to {url}, attempt {attempt + 1}",
                extra={**log_extra, "timeout_ms": timeout_ms, "header_names": sorted(final_headers), "event_type": "fetch_attempt"},
            )
            response = await transport.send(
                url,
                method=options.method,
                headers=final_headers,
                timeout_ms=timeout_ms,
                proxy=proxy_config.url if use_proxy else None,
                verify=not options.ignore_ssl_errors,
            )
            if not 200 <= response.status < 300:
                raise classify_status(response.status, used_proxy=use_proxy)
        except Exception as e:
            error = classify(e)
            error.used_proxy = error.used_proxy or use_proxy
            attempts.append(AttemptRecord(attempt, use_proxy, started_at, "error", error.kind))
            is_last = attempt == max_retries - 1
            logger.warning(
                f"{options.method} request to {url} failed on attempt {attempt + 1}: {error.message}",
                extra={**log_extra, "error_kind": error.kind.value, "retryable": error.retryable, "will_retry": error.retryable and not is_last, "event_type": "fetch_attempt_failed"},
            )
            if not error.retryable or is_last:
                logger.error(
                    f"{options.method} request to {url} failed after {len(attempts)} attempt(s)",
                    extra={**log_extra, "error_kind": error.kind.value, "attempts": [a._asdict() for a in attempts], "event_type": "fetch_failure"},
                )
                if error is e:
                    raise
                raise error from e
            delay_ms = backoff_delay_ms(attempt)
            logger.info(f"Retrying {url} in {delay_ms / 1000:.2f}s", extra={**log_extra, "delay_ms": round(delay_ms), "event_type": "retry_scheduled"})
            await asyncio.sleep(delay_ms / 1000.0)
            continue

        attempts.append(AttemptRecord(attempt, use_proxy, started_at, "success"))
        logger.info(
            f"{options.method} request to {url} successful (status {response.status})",
            extra={**log_extra, "status_code": response.status, "event_type": "fetch_success"},
        )
        return response

    # Unreachable: the loop either returns or raises on its last attempt.
    raise AcquisitionError(ErrorKind.INTERNAL, f"Retry loop for {url} exited without a result")


async def acquire(
    request: AcquisitionRequest,
    *,
    transport=None,
    proxy_config: Optional[ProxyConfig] = None,
) -> AcquisitionResult:
    """Static acquisition: always resolves to exactly one Success or Failure."""
    options = FetchOptions(
        method="GET",
        headers=dict(request.extra_headers),
        timeout_ms=request.timeout_ms,
        use_proxy=request.use_proxy,
        ignore_ssl_errors=request.ignore_ssl_errors,
    )
    try:
        response = await fetch_with_retry(
            request.url, options, request.max_retries, transport=transport, proxy_config=proxy_config
        )
    except AcquisitionError as e:
        return failure_from_error(e)
    return Success(type="success", status=response.status, headers=response.headers, body=response.text, url=response.url)
