"""
Lighthouse audits through the external ``lighthouse`` CLI.

The audit engine is not part of this project; the dispatcher checks that the
binary exists before the call reaches this module.
"""
import asyncio
import json
from typing import Any, Dict, List

from webtools.envelope import text_content
from webtools.errors import AcquisitionError, ErrorKind
from webtools.logging_utils import get_logger

logger = get_logger(__name__)

LIGHTHOUSE_BINARY = "lighthouse"
DEFAULT_CATEGORIES = ["performance", "accessibility", "best-practices", "seo"]
DEFAULT_AUDIT_TIMEOUT_MS = 120000
MAX_FAILING_AUDITS = 5


def build_command(url: str, arguments: Dict[str, Any], proxy_url: str = None, ignore_ssl_errors: bool = False) -> List[str]:
    categories = arguments.get("categories") or DEFAULT_CATEGORIES
    chrome_flags = ["--headless=new", "--no-sandbox", "--disable-gpu", "--disable-dev-shm-usage"]
    if proxy_url:
        chrome_flags.append(f"--proxy-server={proxy_url}")
    if ignore_ssl_errors:
        chrome_flags.append("--ignore-certificate-errors")
    cmd = [
        LIGHTHOUSE_BINARY,
        url,
        "--output=json",
        "--output-path=stdout",
        "--quiet",
        f"--only-categories={','.join(categories)}",
        f"--chrome-flags={' '.join(chrome_flags)}",
    ]
    if arguments.get("device", "mobile") == "desktop":
        cmd.append("--preset=desktop")
    return cmd


def format_lighthouse_report(url: str, lhr: Dict[str, Any]) -> str:
    lines = [f"# Lighthouse report for {url}", ""]
    audits = lhr.get("audits", {})
    categories = lhr.get("categories", {})
    lines += ["| Category | Score |", "|---|---|"]
    for category in categories.values():
        score = category.get("score")
        shown = "n/a" if score is None else f"{round(score * 100)}"
        lines.append(f"| {category.get('title', category.get('id'))} | {shown} |")

    for category in categories.values():
        failing = []
        for ref in category.get("auditRefs", []):
            audit = audits.get(ref.get("id"), {})
            score = audit.get("score")
            if score is not None and score < 0.9 and ref.get("weight", 0) > 0:
                failing.append(audit)
        if not failing:
            continue
        failing.sort(key=lambda a: a.get("score", 0))
        lines += ["", f"## {category.get('title')}: top issues", ""]
        for audit in failing[:MAX_FAILING_AUDITS]:
            display = f" ({audit['displayValue']})" if audit.get("displayValue") else ""
            lines.append(f"- {audit.get('title')}{display}")
    version = lhr.get("lighthouseVersion")
    if version:
        lines += ["", f"_Lighthouse {version}_"]
    return "\n".join(lines) + "\n"


async def run_lighthouse(request, arguments, context) -> List[Dict[str, Any]]:
    proxy_url = context.proxy_config.url if request.use_proxy else None
    cmd = build_command(request.url, arguments, proxy_url=proxy_url, ignore_ssl_errors=request.ignore_ssl_errors)
    timeout_ms = int(arguments.get("auditTimeoutMs", DEFAULT_AUDIT_TIMEOUT_MS))
    logger.info(f"Running Lighthouse for {request.url}", extra={"url": request.url, "cmd": cmd, "event_type": "lighthouse_start"})

    process = await asyncio.create_subprocess_exec(*cmd, stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.PIPE)
    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout_ms / 1000.0)
    except asyncio.TimeoutError as e:
        process.kill()
        await process.wait()
        raise AcquisitionError(ErrorKind.TIMEOUT, f"Lighthouse audit exceeded {timeout_ms}ms", code="timeout") from e

    if process.returncode != 0:
        message = stderr.decode("utf-8", errors="replace").strip()[-500:] or f"exit status {process.returncode}"
        raise AcquisitionError(ErrorKind.INTERNAL, f"Lighthouse failed: {message}", code="lighthouse_failed")
    try:
        lhr = json.loads(stdout)
    except ValueError as e:
        raise AcquisitionError(ErrorKind.INTERNAL, f"Lighthouse produced invalid JSON: {e}", code="lighthouse_failed") from e

    runtime_error = lhr.get("runtimeError")
    if runtime_error and runtime_error.get("code") not in (None, "NO_ERROR"):
        raise AcquisitionError(ErrorKind.NAVIGATION, f"Lighthouse runtime error: {runtime_error.get('message')}", code=runtime_error.get("code"))

    logger.info(f"Lighthouse finished for {request.url}", extra={"url": request.url, "event_type": "lighthouse_done"})
    return [text_content(format_lighthouse_report(request.url, lhr))]
