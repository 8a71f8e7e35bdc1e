"""
Browser-side performance reports: Core Web Vitals and a network request monitor.
"""
from collections import defaultdict
from typing import Any, Dict, List, Optional

from webtools.browser import navigate
from webtools.envelope import text_content
from webtools.logging_utils import get_logger

logger = get_logger(__name__)

# (good, poor) boundaries; values at or below "good" are good, above "poor" are poor.
VITALS_THRESHOLDS = {
    "lcp": (2500, 4000),
    "fcp": (1800, 3000),
    "cls": (0.1, 0.25),
    "ttfb": (800, 1800),
}

VITALS_LABELS = {
    "lcp": ("Largest Contentful Paint", "ms"),
    "fcp": ("First Contentful Paint", "ms"),
    "cls": ("Cumulative Layout Shift", ""),
    "ttfb": ("Time to First Byte", "ms"),
}

COLLECT_VITALS_JS = """
async () => {
  const observe = (type, onEntries) => new Promise(resolve => {
    try {
      const po = new PerformanceObserver(list => onEntries(list.getEntries()));
      po.observe({ type, buffered: true });
      setTimeout(() => { po.disconnect(); resolve(true); }, 500);
    } catch (e) {
      resolve(false);
    }
  });
  let lcp = null;
  let cls = 0;
  const lcpSupported = await observe('largest-contentful-paint', entries => {
    if (entries.length) lcp = entries[entries.length - 1].startTime;
  });
  const clsSupported = await observe('layout-shift', entries => {
    for (const e of entries) { if (!e.hadRecentInput) cls += e.value; }
  });
  const nav = performance.getEntriesByType('navigation')[0];
  const fcp = performance.getEntriesByType('paint').find(p => p.name === 'first-contentful-paint');
  return {
    lcp: lcpSupported ? lcp : null,
    cls: clsSupported ? cls : null,
    fcp: fcp ? fcp.startTime : null,
    ttfb: nav ? nav.responseStart - nav.requestStart : null,
    domContentLoaded: nav ? nav.domContentLoadedEventEnd : null,
    load: nav ? nav.loadEventEnd : null,
  };
}
"""


def rate_metric(name: str, value: Optional[float]) -> str:
    if value is None:
        return "unavailable"
    good, poor = VITALS_THRESHOLDS[name]
    if value <= good:
        return "good"
    if value <= poor:
        return "needs-improvement"
    return "poor"


def format_vitals_report(url: str, metrics: Dict[str, Any]) -> str:
    lines = [f"# Core Web Vitals for {url}", "", "| Metric | Value | Rating |", "|---|---|---|"]
    for key, (label, unit) in VITALS_LABELS.items():
        value = metrics.get(key)
        if value is None:
            shown = "n/a"
        elif unit:
            shown = f"{value:.0f} {unit}"
        else:
            shown = f"{value:.3f}"
        lines.append(f"| {label} | {shown} | {rate_metric(key, value)} |")
    for key, label in (("domContentLoaded", "DOMContentLoaded"), ("load", "Load event")):
        if metrics.get(key) is not None:
            lines.append(f"\n{label}: {metrics[key]:.0f} ms")
    return "\n".join(lines) + "\n"


async def web_vitals(page, request, arguments, context) -> List[Dict[str, Any]]:
    await navigate(page, request.url, timeout_ms=context.settings.navigation_timeout_ms, used_proxy=request.use_proxy)
    await page.wait_for_timeout(arguments.get("settleMs", 1000))
    metrics = await page.evaluate(COLLECT_VITALS_JS)
    logger.info(f"Collected web vitals for {request.url}", extra={"url": request.url, "metrics": metrics, "event_type": "web_vitals_collected"})
    return [text_content(format_vitals_report(request.url, metrics))]


# --- Network monitor ---
class NetworkRecorder:
    def __init__(self):
        self.requests: List[Dict[str, Any]] = []
        self.failures: List[Dict[str, Any]] = []
        self._by_url: Dict[str, Dict[str, Any]] = {}

    def attach(self, page):
        page.on("request", self._on_request)
        page.on("response", self._on_response)
        page.on("requestfailed", self._on_failed)

    def _on_request(self, request):
        entry = {"url": request.url, "method": request.method, "resourceType": request.resource_type, "status": None, "bytes": 0}
        self.requests.append(entry)
        self._by_url[request.url] = entry

    def _on_response(self, response):
        entry = self._by_url.get(response.url)
        if entry is None:
            return
        entry["status"] = response.status
        length = (response.headers or {}).get("content-length")
        if length and length.isdigit():
            entry["bytes"] = int(length)

    def _on_failed(self, request):
        self.failures.append({"url": request.url, "method": request.method, "error": request.failure or "unknown error"})


def summarize_network(requests: List[Dict[str, Any]], failures: List[Dict[str, Any]]) -> Dict[str, Any]:
    by_type = defaultdict(lambda: {"count": 0, "bytes": 0})
    for entry in requests:
        bucket = by_type[entry.get("resourceType") or "other"]
        bucket["count"] += 1
        bucket["bytes"] += entry.get("bytes") or 0
    return {
        "totalRequests": len(requests),
        "totalBytes": sum(b["bytes"] for b in by_type.values()),
        "byType": dict(sorted(by_type.items(), key=lambda kv: -kv[1]["count"])),
        "httpErrors": [e for e in requests if (e.get("status") or 0) >= 400],
        "failures": list(failures),
    }


def format_network_report(url: str, summary: Dict[str, Any], max_items: int = 20) -> str:
    lines = [
        f"# Network activity for {url}",
        "",
        f"Requests: {summary['totalRequests']}  ",
        f"Transferred (declared): {summary['totalBytes'] / 1024:.1f} KB",
        "",
        "| Resource type | Requests | KB |",
        "|---|---|---|",
    ]
    for rtype, bucket in summary["byType"].items():
        lines.append(f"| {rtype} | {bucket['count']} | {bucket['bytes'] / 1024:.1f} |")
    if summary["httpErrors"]:
        lines += ["", "## HTTP errors", ""]
        lines += [f"- {e['status']} {e['method']} {e['url']}" for e in summary["httpErrors"][:max_items]]
    if summary["failures"]:
        lines += ["", "## Failed requests", ""]
        lines += [f"- {f['method']} {f['url']}: {f['error']}" for f in summary["failures"][:max_items]]
    return "\n".join(lines) + "\n"


async def network_monitor(page, request, arguments, context) -> List[Dict[str, Any]]:
    recorder = NetworkRecorder()
    recorder.attach(page)
    await navigate(page, request.url, timeout_ms=context.settings.navigation_timeout_ms, used_proxy=request.use_proxy)
    await page.wait_for_timeout(arguments.get("collectMs", 2000))
    summary = summarize_network(recorder.requests, recorder.failures)
    logger.info(
        f"Network capture finished for {request.url}",
        extra={"url": request.url, "requests": summary["totalRequests"], "failures": len(summary["failures"]), "event_type": "network_capture_done"},
    )
    return [text_content(format_network_report(request.url, summary, int(arguments.get("maxItems", 20))))]
