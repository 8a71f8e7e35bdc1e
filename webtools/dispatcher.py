"""
Strategy dispatcher: one entry point for every webtool.

Per invocation:

    validate -> capability check -> availability probe -> select strategy
    -> acquire (HTTP | browser | external) -> post-process -> respond

Every invocation resolves to exactly one envelope. Failures become JSON error
payloads carrying ``suggestedSettings`` the caller can apply on its next call;
the dispatcher itself never retries with different settings.
"""
import asyncio
import shutil
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, NamedTuple, Optional, Union

from pydantic import ValidationError

from webtools import debug_tools, html_tools, lighthouse, performance, screenshot
from webtools.availability import probe
from webtools.backoff import backoff_delay_ms
from webtools.browser import BrowserConfig, detect_browser_driver, resolve_device, with_session
from webtools.config import ProxyConfig, Settings, load_settings
from webtools.envelope import failure_envelope, success_envelope
from webtools.errors import AcquisitionError, ErrorKind, classify
from webtools.fetch import AcquisitionRequest, Failure, HttpxTransport, acquire, failure_from_error
from webtools.logging_utils import get_logger

logger = get_logger(__name__)

ContentList = List[Dict[str, Any]]


class Strategy(str, Enum):
    HTTP = "http"
    BROWSER = "browser"
    EXTERNAL = "external"


class ToolSpec(NamedTuple):
    name: str
    description: str
    render_static: Optional[Callable[..., ContentList]] = None
    render_browser: Optional[Callable[..., Awaitable[ContentList]]] = None
    run_external: Optional[Callable[..., Awaitable[ContentList]]] = None
    external_binary: Optional[str] = None


TOOLS: Dict[str, ToolSpec] = {
    spec.name: spec
    for spec in [
        ToolSpec(
            "webtool_gethtml",
            "Get the HTML source of a webpage, optionally rendered with JavaScript.",
            render_static=html_tools.get_html_static,
            render_browser=html_tools.get_html_browser,
        ),
        ToolSpec(
            "webtool_readpage",
            "Get a webpage's readable content as markdown.",
            render_static=html_tools.read_page_static,
            render_browser=html_tools.read_page_browser,
        ),
        ToolSpec(
            "webtool_screenshot",
            "Take a PNG screenshot of a webpage or of one element on it.",
            render_browser=screenshot.take_screenshot,
        ),
        ToolSpec(
            "webtool_debug",
            "Capture console output, network traffic and JavaScript errors while a page loads.",
            render_browser=debug_tools.debug_page,
        ),
        ToolSpec(
            "webtool_web_vitals",
            "Measure Core Web Vitals (LCP, CLS, FCP, TTFB) for a webpage.",
            render_browser=performance.web_vitals,
        ),
        ToolSpec(
            "webtool_network_monitor",
            "Record and summarize the network requests a webpage makes while loading.",
            render_browser=performance.network_monitor,
        ),
        ToolSpec(
            "webtool_lighthouse",
            "Run a Lighthouse audit (performance, accessibility, best practices, SEO).",
            run_external=lighthouse.run_lighthouse,
            external_binary=lighthouse.LIGHTHOUSE_BINARY,
        ),
    ]
}


class RuntimeContext:
    """Collaborators shared read-only by all invocations in a process."""

    def __init__(
        self,
        settings: Settings,
        transport=None,
        browser_driver=None,
        which: Callable[[str], Optional[str]] = shutil.which,
        probe_before_acquire: bool = True,
    ):
        self.settings = settings
        self.transport = transport or HttpxTransport()
        self.browser_driver = browser_driver
        self.which = which
        self.probe_before_acquire = probe_before_acquire

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "RuntimeContext":
        settings = settings or load_settings()
        return cls(settings, browser_driver=detect_browser_driver())

    @property
    def proxy_config(self) -> ProxyConfig:
        return self.settings.proxy

    def browser_config(self, request: AcquisitionRequest, arguments: Dict[str, Any]) -> BrowserConfig:
        return BrowserConfig(
            use_proxy=request.use_proxy,
            proxy_url=self.proxy_config.url,
            device=resolve_device(arguments.get("deviceConfig") or arguments.get("device")),
            headers=dict(request.extra_headers),
            ignore_ssl_errors=request.ignore_ssl_errors,
            launch_timeout_ms=self.settings.navigation_timeout_ms,
        )


def list_tools() -> List[ToolSpec]:
    return list(TOOLS.values())


def build_request(arguments: Dict[str, Any], settings: Settings) -> AcquisitionRequest:
    data = {
        "timeoutMs": settings.request_timeout_ms,
        "maxRetries": settings.max_retries,
        "ignoreSSLErrors": settings.ignore_ssl_errors,
    }
    data.update({k: v for k, v in arguments.items() if v is not None})
    return AcquisitionRequest.model_validate(data)


def select_strategy(spec: ToolSpec, request: AcquisitionRequest, context: RuntimeContext) -> Strategy:
    """Decides the acquisition path; missing capabilities fail here, before any I/O."""
    if spec.run_external is not None:
        if context.which(spec.external_binary) is None:
            raise AcquisitionError(
                ErrorKind.CAPABILITY_UNAVAILABLE,
                f"{spec.name} requires the '{spec.external_binary}' executable, which was not found on PATH",
                code="external_binary_missing",
            )
        return Strategy.EXTERNAL

    needs_browser = spec.render_static is None or request.use_dynamic_rendering
    if not needs_browser:
        return Strategy.HTTP
    if context.browser_driver is None:
        if spec.render_static is None:
            message = f"{spec.name} requires a headless browser, but no browser driver is installed"
        else:
            message = "JavaScript execution requested but no browser driver is available"
        raise AcquisitionError(ErrorKind.CAPABILITY_UNAVAILABLE, message, code="browser_driver_missing")
    return Strategy.BROWSER


def suggest_settings(
    kind: ErrorKind, code: Optional[str], request: Optional[AcquisitionRequest], spec: Optional[ToolSpec]
) -> Dict[str, Any]:
    """Concrete parameter changes for the caller's next attempt."""
    if request is None or spec is None:
        return {}
    suggestions: Dict[str, Any] = {}
    can_render = spec.render_browser is not None and spec.render_static is not None
    if code == "proxy_connection_failed":
        suggestions["useProxy"] = False
    elif kind in (ErrorKind.BLOCKED, ErrorKind.RATE_LIMITED) and not request.use_proxy:
        suggestions["useProxy"] = True
    if kind == ErrorKind.TIMEOUT:
        suggestions["timeoutMs"] = request.timeout_ms * 2
    if kind == ErrorKind.CERTIFICATE and not request.ignore_ssl_errors:
        suggestions["ignoreSSLErrors"] = True
    if can_render and not request.use_dynamic_rendering and (
        kind == ErrorKind.EMPTY_CONTENT or code == "element_not_found"
    ):
        suggestions["useJavaScript"] = True
    if kind == ErrorKind.CAPABILITY_UNAVAILABLE and request.use_dynamic_rendering and spec.render_static is not None:
        suggestions["useJavaScript"] = False
    return suggestions


async def _acquire_with_browser(spec: ToolSpec, request: AcquisitionRequest, arguments: Dict[str, Any], context: RuntimeContext) -> ContentList:
    config = context.browser_config(request, arguments)
    budget_ms = context.settings.navigation_timeout_ms + request.timeout_ms

    async def body(page):
        return await spec.render_browser(page, request, arguments, context)

    for attempt in range(request.max_retries):
        try:
            # a fresh session per attempt; nothing carries over from a failed one
            return await with_session(config, body, context.browser_driver, timeout_ms=budget_ms)
        except AcquisitionError as e:
            if not e.retryable or attempt == request.max_retries - 1:
                raise
            delay_ms = backoff_delay_ms(attempt)
            logger.info(
                f"Retrying browser acquisition of {request.url} in {delay_ms / 1000:.2f}s",
                extra={"url": request.url, "tool": spec.name, "attempt": attempt + 1, "error_kind": e.kind.value, "delay_ms": round(delay_ms), "event_type": "browser_retry_scheduled"},
            )
            await asyncio.sleep(delay_ms / 1000.0)
    raise AcquisitionError(ErrorKind.INTERNAL, "Browser retry loop exited without a result")


async def _resolve(tool_name: str, arguments: Dict[str, Any], context: RuntimeContext) -> Union[ContentList, Failure]:
    spec = TOOLS.get(tool_name)
    if spec is None:
        return Failure(
            type="failure",
            kind=ErrorKind.INTERNAL,
            message=f"Unknown tool: {tool_name}",
            retryable=False,
            recommendation=f"Use one of: {', '.join(sorted(TOOLS))}",
        )

    try:
        request = build_request(arguments, context.settings)
    except ValidationError as e:
        return failure_from_error(AcquisitionError(ErrorKind.INVALID_REQUEST, _validation_details(e)))

    try:
        strategy = select_strategy(spec, request, context)

        if context.probe_before_acquire:
            availability = await probe(
                request.url,
                transport=context.transport,
                proxy_config=context.proxy_config,
                ignore_ssl_errors=request.ignore_ssl_errors,
                use_proxy=request.use_proxy,
                headers=dict(request.extra_headers),
                timeout_ms=context.settings.probe_timeout_ms,
                max_retries=context.settings.probe_max_retries,
            )
            if not availability.available:
                underlying = availability.error_kind or ErrorKind.NETWORK
                return Failure(
                    type="failure",
                    kind=ErrorKind.UNAVAILABLE,
                    message=availability.error or "Site unavailable",
                    retryable=True,
                    recommendation=availability.recommendation,
                    suggested_parameter_changes=suggest_settings(underlying, availability.error_code, request, spec),
                    status=availability.status,
                )

        logger.info(f"Acquiring {request.url} via {strategy.value}", extra={"url": request.url, "tool": tool_name, "strategy": strategy.value, "event_type": "strategy_selected"})
        if strategy == Strategy.EXTERNAL:
            return await spec.run_external(request, arguments, context)
        if strategy == Strategy.BROWSER:
            return await _acquire_with_browser(spec, request, arguments, context)

        result = await acquire(request, transport=context.transport, proxy_config=context.proxy_config)
        if isinstance(result, Failure):
            return result._replace(suggested_parameter_changes=suggest_settings(result.kind, result.code, request, spec))
        return spec.render_static(result, request, arguments, context)
    except AcquisitionError as e:
        return failure_from_error(e, suggest_settings(e.kind, e.code, request, spec))
    except ValidationError as e:
        # e.g. a malformed deviceConfig, only parsed once a browser is selected
        return failure_from_error(AcquisitionError(ErrorKind.INVALID_REQUEST, _validation_details(e)))


def _validation_details(error: ValidationError) -> str:
    return "; ".join(f"{'.'.join(str(p) for p in err['loc']) or 'arguments'}: {err['msg']}" for err in error.errors())


async def run_tool(tool_name: str, arguments: Optional[Dict[str, Any]], context: RuntimeContext) -> Dict[str, ContentList]:
    """Runs one tool invocation and returns the response envelope. Never raises for tool failures."""
    arguments = dict(arguments or {})
    url = arguments.get("url")
    logger.info("Tool execution started", extra={"tool": tool_name, "url": url, "argument_names": sorted(arguments), "event_type": "tool_start"})

    try:
        outcome = await _resolve(tool_name, arguments, context)
    except Exception as e:
        logger.exception(f"Unexpected error in {tool_name}", extra={"tool": tool_name, "url": url, "event_type": "tool_internal_error"})
        outcome = failure_from_error(classify(e))

    if isinstance(outcome, Failure):
        logger.error(
            f"Tool {tool_name} failed: {outcome.message}",
            extra={"tool": tool_name, "url": url, "error_kind": outcome.kind.value, "retryable": outcome.retryable, "event_type": "tool_failure"},
        )
        return failure_envelope(outcome, url)

    logger.info("Tool execution completed successfully", extra={"tool": tool_name, "url": url, "event_type": "tool_success"})
    return success_envelope(*outcome)
