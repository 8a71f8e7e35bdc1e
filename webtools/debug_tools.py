"""
Page debugging: console output, network traffic and JavaScript errors captured
while a page loads, rendered as a size-bounded markdown report.
"""
import datetime
from typing import Any, Dict, List

from webtools.browser import navigate
from webtools.envelope import text_content
from webtools.errors import AcquisitionError
from webtools.logging_utils import get_logger

logger = get_logger(__name__)

DEFAULT_TIMEOUT_MS = 15000
DEFAULT_COLLECT_MS = 2000
DEFAULT_LIMITS = {
    "maxConsoleEvents": 20,
    "maxNetworkEvents": 30,
    "maxErrorEvents": 10,
}


def _now() -> str:
    return datetime.datetime.now(datetime.timezone.utc).isoformat()


class DebugCollector:
    """Accumulates page events; attach before navigation so nothing is missed."""

    def __init__(self, capture_console=True, capture_network=True, capture_errors=True):
        self.capture_console = capture_console
        self.capture_network = capture_network
        self.capture_errors = capture_errors
        self.console: List[Dict[str, Any]] = []
        self.network: List[Dict[str, Any]] = []
        self.errors: List[Dict[str, Any]] = []

    def attach(self, page):
        if self.capture_console:
            page.on("console", self._on_console)
        if self.capture_network:
            page.on("request", self._on_request)
            page.on("response", self._on_response)
            page.on("requestfailed", self._on_request_failed)
        if self.capture_errors:
            page.on("pageerror", self._on_page_error)

    def _on_console(self, msg):
        self.console.append({"type": msg.type, "text": msg.text, "location": msg.location, "timestamp": _now()})

    def _on_request(self, request):
        self.network.append({
            "type": "request",
            "url": request.url,
            "method": request.method,
            "resourceType": request.resource_type,
            "timestamp": _now(),
        })

    def _on_response(self, response):
        self.network.append({"type": "response", "url": response.url, "status": response.status, "timestamp": _now()})

    def _on_request_failed(self, request):
        failure = request.failure
        self.errors.append({
            "type": "network",
            "message": f"{request.method} {request.url} failed: {failure or 'unknown error'}",
            "timestamp": _now(),
        })

    def _on_page_error(self, error):
        self.errors.append({"type": "javascript", "message": getattr(error, "message", str(error)), "timestamp": _now()})

    def record_navigation_error(self, error: AcquisitionError):
        self.errors.append({"type": "navigation", "message": error.message, "timestamp": _now()})


def _section(title: str, events: List[Dict[str, Any]], limit: int, render, summarize_only: bool) -> List[str]:
    lines = [f"## {title} ({len(events)})", ""]
    if summarize_only or not events:
        if not events:
            lines.append("_None captured._")
        lines.append("")
        return lines
    for event in events[:limit]:
        lines.append(f"- {render(event)}")
    if len(events) > limit:
        lines.append(f"- … {len(events) - limit} more omitted")
    lines.append("")
    return lines


def format_debug_report(url: str, collector: DebugCollector, arguments: Dict[str, Any]) -> str:
    limits = {key: int(arguments.get(key, default)) for key, default in DEFAULT_LIMITS.items()}
    summarize_only = bool(arguments.get("summarizeOnly", False))
    lines = [f"# Debug report for {url}", "", f"Captured at {_now()}", ""]

    if collector.capture_console:
        lines += _section(
            "Console", collector.console, limits["maxConsoleEvents"],
            lambda e: f"[{e['type']}] {e['text']}", summarize_only,
        )
    if collector.capture_network:
        lines += _section(
            "Network", collector.network, limits["maxNetworkEvents"],
            lambda e: f"{e['method']} {e['url']} ({e['resourceType']})" if e["type"] == "request" else f"{e['status']} {e['url']}",
            summarize_only,
        )
    if collector.capture_errors:
        lines += _section(
            "Errors", collector.errors, limits["maxErrorEvents"],
            lambda e: f"[{e['type']}] {e['message']}", summarize_only,
        )
    return "\n".join(lines).rstrip() + "\n"


async def debug_page(page, request, arguments, context) -> List[Dict[str, Any]]:
    collector = DebugCollector(
        capture_console=arguments.get("captureConsole", True),
        capture_network=arguments.get("captureNetwork", True),
        capture_errors=arguments.get("captureErrors", True),
    )
    collector.attach(page)

    try:
        await navigate(page, request.url, timeout_ms=arguments.get("timeoutMs") or DEFAULT_TIMEOUT_MS, used_proxy=request.use_proxy)
    except AcquisitionError as e:
        if not e.retryable:
            raise
        # partial data is still useful for debugging
        collector.record_navigation_error(e)
        logger.warning("Navigation error but continuing with partial data", extra={"url": request.url, "error": e.message, "event_type": "debug_partial_navigation"})

    await page.wait_for_timeout(arguments.get("collectMs", DEFAULT_COLLECT_MS))
    logger.info(
        f"Debug capture finished for {request.url}",
        extra={
            "url": request.url,
            "console_events": len(collector.console),
            "network_events": len(collector.network),
            "error_events": len(collector.errors),
            "event_type": "debug_capture_done",
        },
    )
    return [text_content(format_debug_report(request.url, collector, arguments))]
