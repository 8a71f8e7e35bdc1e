"""
Scoped headless-browser sessions.

Every tool call that needs rendering gets its own browser instance, context and
page; nothing is pooled or reused across calls, so cookies, service workers and
listeners cannot leak between requests. The instance is closed exactly once on
every exit path.
"""
import asyncio
import re
import uuid
from contextlib import asynccontextmanager
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from consts.devices import PREDEFINED_DEVICES
from consts.http_headers import BROWSER_MANAGED_HEADERS, DEFAULT_HEADERS, DEFAULT_USER_AGENT
from webtools.config import DEFAULT_NAVIGATION_TIMEOUT_MS, DEFAULT_SELECTOR_TIMEOUT_MS
from webtools.errors import AcquisitionError, ErrorKind
from webtools.logging_utils import get_logger

try:
    from playwright.async_api import async_playwright
    from playwright.async_api import Error as PlaywrightError
    from playwright.async_api import TimeoutError as PlaywrightTimeoutError
except ImportError:  # rendering is optional; the dispatcher reports capability_unavailable
    async_playwright = None
    PlaywrightError = None
    PlaywrightTimeoutError = None

logger = get_logger(__name__)

SANDBOX_FLAGS = ["--no-sandbox", "--disable-setuid-sandbox", "--disable-dev-shm-usage", "--disable-gpu"]


# --- Device emulation ---
class DeviceConfig(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    width: int = Field(default=1280, gt=0)
    height: int = Field(default=800, gt=0)
    device_scale_factor: float = Field(default=1, gt=0, alias="deviceScaleFactor")
    is_mobile: bool = Field(default=False, alias="isMobile")
    has_touch: bool = Field(default=False, alias="hasTouch")
    is_landscape: bool = Field(default=False, alias="isLandscape")
    user_agent: Optional[str] = Field(default=None, alias="userAgent")


def resolve_device(value: Union[None, str, Dict[str, Any], DeviceConfig]) -> DeviceConfig:
    """Accepts a predefined device name, a (partial) device dict, or None for the desktop default."""
    if value is None:
        return DeviceConfig()
    if isinstance(value, DeviceConfig):
        return value
    if isinstance(value, str):
        if value not in PREDEFINED_DEVICES:
            raise AcquisitionError(
                ErrorKind.INVALID_REQUEST,
                f"Unknown device {value!r}. Known devices: {', '.join(sorted(PREDEFINED_DEVICES))}",
            )
        return DeviceConfig.model_validate(PREDEFINED_DEVICES[value])
    base = dict(PREDEFINED_DEVICES.get(value.get("name"), {})) if value.get("name") else {}
    base.update({k: v for k, v in value.items() if k != "name"})
    return DeviceConfig.model_validate(base)


class BrowserConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    use_proxy: bool = False
    proxy_url: Optional[str] = None
    device: DeviceConfig = DeviceConfig()
    headers: Dict[str, str] = Field(default_factory=dict)
    ignore_ssl_errors: bool = False
    launch_timeout_ms: int = Field(default=DEFAULT_NAVIGATION_TIMEOUT_MS, gt=0)

    def launch_args(self) -> List[str]:
        args = list(SANDBOX_FLAGS)
        if self.ignore_ssl_errors:
            args.append("--ignore-certificate-errors")
        return args

    def proxy_settings(self) -> Optional[Dict[str, str]]:
        if self.use_proxy and self.proxy_url:
            return {"server": self.proxy_url}
        return None

    def context_options(self) -> Dict[str, Any]:
        width, height = self.device.width, self.device.height
        if self.device.is_landscape and height > width:
            width, height = height, width
        headers = {k: v for k, v in {**DEFAULT_HEADERS, **self.headers}.items() if k not in BROWSER_MANAGED_HEADERS}
        return {
            "viewport": {"width": width, "height": height},
            "device_scale_factor": self.device.device_scale_factor,
            "is_mobile": self.device.is_mobile,
            "has_touch": self.device.has_touch,
            "user_agent": self.device.user_agent or self.headers.get("User-Agent") or DEFAULT_USER_AGENT,
            "extra_http_headers": headers,
            "ignore_https_errors": self.ignore_ssl_errors,
        }


# --- Driver ---
class _PlaywrightInstance:
    def __init__(self, playwright, browser):
        self._playwright = playwright
        self._browser = browser

    async def new_context(self, **options):
        return await self._browser.new_context(**options)

    async def close(self):
        try:
            await self._browser.close()
        finally:
            await self._playwright.stop()


class PlaywrightDriver:
    """Launches headless Chromium through Playwright."""
    name = "playwright"

    async def launch(self, args: List[str], proxy: Optional[Dict[str, str]] = None, timeout_ms: int = DEFAULT_NAVIGATION_TIMEOUT_MS):
        playwright = await async_playwright().start()
        try:
            browser = await playwright.chromium.launch(headless=True, args=args, proxy=proxy, timeout=timeout_ms)
        except BaseException:
            await playwright.stop()
            raise
        return _PlaywrightInstance(playwright, browser)


def detect_browser_driver() -> Optional[PlaywrightDriver]:
    """Returns a driver when Playwright is importable, otherwise None."""
    if async_playwright is None:
        logger.warning("Playwright is not installed; dynamic rendering disabled", extra={"event_type": "browser_driver_missing"})
        return None
    return PlaywrightDriver()


# --- Error translation ---
_NET_ERROR_RE = re.compile(r"net::(ERR_[A-Z_]+)")

NET_ERROR_KINDS = {
    "ERR_CONNECTION_REFUSED": (ErrorKind.NETWORK, False, "connection_refused"),
    "ERR_PROXY_CONNECTION_FAILED": (ErrorKind.NETWORK, False, "proxy_connection_failed"),
    "ERR_TUNNEL_CONNECTION_FAILED": (ErrorKind.NETWORK, False, "proxy_connection_failed"),
    "ERR_TIMED_OUT": (ErrorKind.TIMEOUT, True, "timeout"),
    "ERR_CONNECTION_TIMED_OUT": (ErrorKind.TIMEOUT, True, "timeout"),
    "ERR_NAME_NOT_RESOLVED": (ErrorKind.NETWORK, True, "dns_failure"),
    "ERR_INTERNET_DISCONNECTED": (ErrorKind.NETWORK, True, "disconnected"),
    "ERR_CONNECTION_RESET": (ErrorKind.NETWORK, True, "connection_reset"),
    "ERR_CONNECTION_CLOSED": (ErrorKind.NETWORK, True, "connection_closed"),
    "ERR_EMPTY_RESPONSE": (ErrorKind.NETWORK, True, "empty_response"),
}


def _is_driver_timeout(exc: BaseException) -> bool:
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return True
    return PlaywrightTimeoutError is not None and isinstance(exc, PlaywrightTimeoutError)


def translate_driver_error(exc: BaseException, used_proxy: bool = False) -> AcquisitionError:
    """Converts a raw driver exception into a typed AcquisitionError."""
    if isinstance(exc, AcquisitionError):
        return exc
    message = str(exc).strip().splitlines()[0] if str(exc).strip() else type(exc).__name__
    if _is_driver_timeout(exc):
        return AcquisitionError(ErrorKind.TIMEOUT, message, code="timeout", used_proxy=used_proxy)
    match = _NET_ERROR_RE.search(str(exc))
    if match:
        code = match.group(1)
        if code.startswith("ERR_CERT_") or code.startswith("ERR_SSL_"):
            return AcquisitionError(ErrorKind.CERTIFICATE, message, retryable=False, code="certificate_invalid", used_proxy=used_proxy)
        kind, retryable, short_code = NET_ERROR_KINDS.get(code, (ErrorKind.NAVIGATION, True, code.lower()))
        return AcquisitionError(kind, message, retryable=retryable, code=short_code, used_proxy=used_proxy)
    if PlaywrightError is not None and isinstance(exc, PlaywrightError):
        return AcquisitionError(ErrorKind.NAVIGATION, message, code="navigation_failed", used_proxy=used_proxy)
    return AcquisitionError(ErrorKind.INTERNAL, f"{type(exc).__name__}: {message}", retryable=True, used_proxy=used_proxy)


# --- Session lifecycle ---
@asynccontextmanager
async def browser_session(config: BrowserConfig, driver):
    """Yields a fresh page; the browser instance is closed exactly once on exit."""
    session_id = uuid.uuid4().hex[:12]
    log_extra = {"session_id": session_id, "used_proxy": config.proxy_settings() is not None, "driver": getattr(driver, "name", type(driver).__name__)}
    logger.info("Launching browser session", extra={**log_extra, "launch_args": config.launch_args(), "event_type": "browser_launch"})
    try:
        instance = await driver.launch(config.launch_args(), proxy=config.proxy_settings(), timeout_ms=config.launch_timeout_ms)
    except Exception as e:
        error = translate_driver_error(e, used_proxy=config.use_proxy)
        logger.error(f"Browser launch failed: {error.message}", extra={**log_extra, "event_type": "browser_launch_failed"})
        kind = error.kind if error.kind == ErrorKind.TIMEOUT else ErrorKind.INTERNAL
        raise AcquisitionError(kind, f"Browser launch failed: {error.message}", retryable=True, code="launch_failed", used_proxy=config.use_proxy) from e

    try:
        context = await instance.new_context(**config.context_options())
        page = await context.new_page()
        yield page
    finally:
        try:
            await instance.close()
            logger.info("Browser session closed", extra={**log_extra, "event_type": "browser_teardown"})
        except Exception as e:
            logger.warning(f"Browser teardown raised: {e}", extra={**log_extra, "event_type": "browser_teardown_error"})


async def with_session(
    config: BrowserConfig,
    body: Callable[[Any], Awaitable[Any]],
    driver,
    timeout_ms: Optional[int] = None,
):
    """Runs ``body(page)`` inside a scoped session, optionally bounded by ``timeout_ms``."""
    async with browser_session(config, driver) as page:
        if timeout_ms is None:
            return await body(page)
        try:
            return await asyncio.wait_for(body(page), timeout_ms / 1000.0)
        except asyncio.TimeoutError as e:
            raise AcquisitionError(
                ErrorKind.TIMEOUT, f"Browser session exceeded {timeout_ms}ms", code="timeout", used_proxy=config.use_proxy
            ) from e


async def navigate(page, url: str, timeout_ms: int = DEFAULT_NAVIGATION_TIMEOUT_MS, wait_until: str = "networkidle", used_proxy: bool = False):
    try:
        response = await page.goto(url, wait_until=wait_until, timeout=timeout_ms)
    except Exception as e:
        error = translate_driver_error(e, used_proxy=used_proxy)
        logger.warning(f"Navigation to {url} failed: {error.message}", extra={"url": url, "error_kind": error.kind.value, "event_type": "browser_navigation_failed"})
        raise error from e
    status = response.status if response is not None else None
    logger.info(f"Navigated to {url}", extra={"url": url, "status_code": status, "event_type": "browser_navigation"})
    return response


async def wait_for_element(page, selector: str, timeout_ms: int = DEFAULT_SELECTOR_TIMEOUT_MS, visible: bool = True):
    """Waits for ``selector``; a missing element is fatal with its own message."""
    not_found = AcquisitionError(
        ErrorKind.NAVIGATION, f'Element with selector "{selector}" not found', retryable=False, code="element_not_found"
    )
    try:
        element = await page.wait_for_selector(selector, timeout=timeout_ms, state="visible" if visible else "attached")
    except Exception as e:
        if _is_driver_timeout(e):
            raise not_found from e
        raise translate_driver_error(e) from e
    if element is None:
        raise not_found
    return element
