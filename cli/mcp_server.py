"""
MCP stdio server exposing the webtools to agent clients.

Every tool forwards its arguments to the dispatcher and converts the response
envelope into MCP content items. Failures come back as a single JSON text
item, never as a protocol error.
"""
import argparse
import sys
from typing import Any, Dict, List, Optional

from mcp.server.fastmcp import FastMCP
from mcp.types import ImageContent, TextContent, ToolAnnotations
from pydantic import ValidationError

from webtools.config import load_settings
from webtools.dispatcher import TOOLS, RuntimeContext, run_tool
from webtools.logging_utils import get_logger, set_log_level

logger = get_logger("mcp_server")

mcp = FastMCP("webtools")

# Set once by main() before mcp.run(); tests may assign their own.
_context: Optional[RuntimeContext] = None

READ_ONLY = ToolAnnotations(readOnlyHint=True, openWorldHint=True)


def get_context() -> RuntimeContext:
    global _context
    if _context is None:
        _context = RuntimeContext.from_settings()
    return _context


def to_mcp_content(envelope: Dict[str, List[Dict[str, Any]]]) -> List[Any]:
    items = []
    for item in envelope.get("content", []):
        if item["type"] == "image":
            items.append(ImageContent(type="image", data=item["data"], mimeType=item["mimeType"]))
        else:
            items.append(TextContent(type="text", text=item["text"]))
    return items


async def _call(tool_name: str, arguments: Dict[str, Any]):
    envelope = await run_tool(tool_name, arguments, get_context())
    return to_mcp_content(envelope)


def _common(url, useJavaScript=None, useProxy=None, ignoreSSLErrors=None, timeoutMs=None, maxRetries=None, headers=None):
    return {
        "url": url,
        "useJavaScript": useJavaScript,
        "useProxy": useProxy,
        "ignoreSSLErrors": ignoreSSLErrors,
        "timeoutMs": timeoutMs,
        "maxRetries": maxRetries,
        "headers": headers,
    }


@mcp.tool(description=TOOLS["webtool_gethtml"].description, annotations=READ_ONLY)
async def webtool_gethtml(
    url: str,
    useJavaScript: bool = False,
    useProxy: bool = False,
    ignoreSSLErrors: Optional[bool] = None,
    timeoutMs: Optional[int] = None,
    maxRetries: Optional[int] = None,
    headers: Optional[Dict[str, str]] = None,
):
    return await _call("webtool_gethtml", _common(url, useJavaScript, useProxy, ignoreSSLErrors, timeoutMs, maxRetries, headers))


@mcp.tool(description=TOOLS["webtool_readpage"].description, annotations=READ_ONLY)
async def webtool_readpage(
    url: str,
    useJavaScript: bool = False,
    useProxy: bool = False,
    selector: Optional[str] = None,
    extractMainContent: bool = False,
    ignoreSSLErrors: Optional[bool] = None,
    timeoutMs: Optional[int] = None,
    maxRetries: Optional[int] = None,
    headers: Optional[Dict[str, str]] = None,
):
    arguments = _common(url, useJavaScript, useProxy, ignoreSSLErrors, timeoutMs, maxRetries, headers)
    arguments.update(selector=selector, extractMainContent=extractMainContent)
    return await _call("webtool_readpage", arguments)


@mcp.tool(description=TOOLS["webtool_screenshot"].description, annotations=READ_ONLY)
async def webtool_screenshot(
    url: str,
    selector: Optional[str] = None,
    useProxy: bool = False,
    device: Optional[str] = None,
    deviceConfig: Optional[Dict[str, Any]] = None,
    fullPage: bool = True,
    settleMs: Optional[int] = None,
    ignoreSSLErrors: Optional[bool] = None,
    timeoutMs: Optional[int] = None,
    maxRetries: Optional[int] = None,
):
    arguments = _common(url, None, useProxy, ignoreSSLErrors, timeoutMs, maxRetries)
    arguments.update(selector=selector, device=device, deviceConfig=deviceConfig, fullPage=fullPage)
    if settleMs is not None:
        arguments["settleMs"] = settleMs
    return await _call("webtool_screenshot", arguments)


@mcp.tool(description=TOOLS["webtool_debug"].description, annotations=READ_ONLY)
async def webtool_debug(
    url: str,
    captureConsole: bool = True,
    captureNetwork: bool = True,
    captureErrors: bool = True,
    collectMs: Optional[int] = None,
    maxConsoleEvents: Optional[int] = None,
    maxNetworkEvents: Optional[int] = None,
    maxErrorEvents: Optional[int] = None,
    summarizeOnly: bool = False,
    useProxy: bool = False,
    ignoreSSLErrors: Optional[bool] = None,
    timeoutMs: Optional[int] = None,
):
    arguments = _common(url, None, useProxy, ignoreSSLErrors, timeoutMs, None)
    arguments.update(
        captureConsole=captureConsole,
        captureNetwork=captureNetwork,
        captureErrors=captureErrors,
        summarizeOnly=summarizeOnly,
    )
    optional = {
        "collectMs": collectMs,
        "maxConsoleEvents": maxConsoleEvents,
        "maxNetworkEvents": maxNetworkEvents,
        "maxErrorEvents": maxErrorEvents,
    }
    arguments.update({k: v for k, v in optional.items() if v is not None})
    return await _call("webtool_debug", arguments)


@mcp.tool(description=TOOLS["webtool_web_vitals"].description, annotations=READ_ONLY)
async def webtool_web_vitals(
    url: str,
    useProxy: bool = False,
    device: Optional[str] = None,
    ignoreSSLErrors: Optional[bool] = None,
    timeoutMs: Optional[int] = None,
    maxRetries: Optional[int] = None,
):
    arguments = _common(url, None, useProxy, ignoreSSLErrors, timeoutMs, maxRetries)
    arguments["device"] = device
    return await _call("webtool_web_vitals", arguments)


@mcp.tool(description=TOOLS["webtool_network_monitor"].description, annotations=READ_ONLY)
async def webtool_network_monitor(
    url: str,
    useProxy: bool = False,
    collectMs: Optional[int] = None,
    maxItems: Optional[int] = None,
    ignoreSSLErrors: Optional[bool] = None,
    timeoutMs: Optional[int] = None,
    maxRetries: Optional[int] = None,
):
    arguments = _common(url, None, useProxy, ignoreSSLErrors, timeoutMs, maxRetries)
    if collectMs is not None:
        arguments["collectMs"] = collectMs
    if maxItems is not None:
        arguments["maxItems"] = maxItems
    return await _call("webtool_network_monitor", arguments)


@mcp.tool(description=TOOLS["webtool_lighthouse"].description, annotations=READ_ONLY)
async def webtool_lighthouse(
    url: str,
    categories: Optional[List[str]] = None,
    device: str = "mobile",
    useProxy: bool = False,
    auditTimeoutMs: Optional[int] = None,
    ignoreSSLErrors: Optional[bool] = None,
):
    arguments = _common(url, None, useProxy, ignoreSSLErrors)
    arguments.update(categories=categories, device=device)
    if auditTimeoutMs is not None:
        arguments["auditTimeoutMs"] = auditTimeoutMs
    return await _call("webtool_lighthouse", arguments)


def main(argv: Optional[List[str]] = None):
    global _context
    parser = argparse.ArgumentParser(description="Run the webtools MCP server over stdio.")
    parser.add_argument("--settings", help="Path to settings.yaml.")
    args = parser.parse_args(argv)

    try:
        settings = load_settings(args.settings)
    except ValidationError as e:
        logger.error("Invalid settings; exiting", extra={"error": str(e), "event_type": "startup_failure"})
        sys.exit(1)
    set_log_level(settings.log_level)
    _context = RuntimeContext.from_settings(settings)
    logger.info(
        "Starting MCP server",
        extra={
            "tools": sorted(TOOLS),
            "browser_available": _context.browser_driver is not None,
            "proxy_enabled": settings.proxy.enabled,
            "event_type": "server_start",
        },
    )
    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
