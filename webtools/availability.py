"""
Lightweight existence check run before any full acquisition.

Uses a HEAD request with its own short timeout and retry budget so an
unreachable host fails fast instead of costing a browser launch.
"""
from typing import Dict, NamedTuple, Optional

from webtools.config import DEFAULT_PROBE_MAX_RETRIES, DEFAULT_PROBE_TIMEOUT_MS, ProxyConfig
from webtools.errors import AcquisitionError, ErrorKind, RECOMMENDATIONS
from webtools.fetch import FetchOptions, fetch_with_retry
from webtools.logging_utils import get_logger

logger = get_logger(__name__)


class ProbeResult(NamedTuple):
    available: bool
    status: Optional[int] = None
    error: Optional[str] = None
    recommendation: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    error_code: Optional[str] = None


async def probe(
    url: str,
    *,
    transport=None,
    proxy_config: Optional[ProxyConfig] = None,
    ignore_ssl_errors: bool = False,
    use_proxy: bool = False,
    headers: Optional[Dict[str, str]] = None,
    timeout_ms: int = DEFAULT_PROBE_TIMEOUT_MS,
    max_retries: int = DEFAULT_PROBE_MAX_RETRIES,
) -> ProbeResult:
    options = FetchOptions(
        method="HEAD",
        headers=dict(headers or {}),
        timeout_ms=timeout_ms,
        use_proxy=use_proxy,
        ignore_ssl_errors=ignore_ssl_errors,
    )
    try:
        response = await fetch_with_retry(url, options, max_retries, transport=transport, proxy_config=proxy_config)
    except AcquisitionError as e:
        logger.warning(
            f"Site unavailable: {url}",
            extra={"url": url, "error": e.message, "error_kind": e.kind.value, "event_type": "probe_unavailable"},
        )
        return ProbeResult(
            available=False,
            status=e.status,
            error=e.message,
            recommendation=RECOMMENDATIONS[ErrorKind.UNAVAILABLE],
            error_kind=e.kind,
            error_code=e.code,
        )
    logger.info(f"Site available: {url}", extra={"url": url, "status_code": response.status, "event_type": "probe_available"})
    return ProbeResult(available=True, status=response.status)
