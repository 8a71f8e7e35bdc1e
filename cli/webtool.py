"""
One-shot command line runner for the webtools.

    webtool webtool_readpage https://example.com --js
    webtool webtool_screenshot https://example.com --device "iPhone 14" --out shot.png
"""
import argparse
import asyncio
import base64
import json
import sys
from pathlib import Path

from pydantic import ValidationError
from rich.console import Console
from rich.markdown import Markdown
from rich.syntax import Syntax
from rich.theme import Theme

from webtools.config import load_settings
from webtools.dispatcher import RuntimeContext, list_tools, run_tool
from webtools.envelope import is_error_envelope
from webtools.logging_utils import get_logger, set_log_level

logger = get_logger("cli")


def load_rich_theme(base_path: Path) -> Theme:
    theme_file_path = base_path / "config" / "rich_theme.json"
    if theme_file_path.exists():
        with open(theme_file_path, "r") as f:
            theme_config = json.load(f)
        return Theme(theme_config)
    return Theme({})


def build_parser() -> argparse.ArgumentParser:
    tool_names = [spec.name for spec in list_tools()]
    parser = argparse.ArgumentParser(description="Run a single webtool against a URL.")
    parser.add_argument("tool", choices=tool_names, help="Tool to run.")
    parser.add_argument("url", help="Page URL (http or https).")
    parser.add_argument("--js", action="store_true", help="Render the page with a headless browser.")
    parser.add_argument("--proxy", action="store_true", help="Route requests through the configured proxy.")
    parser.add_argument("--selector", help="CSS selector to scope reading or screenshots to.")
    parser.add_argument("--device", help="Predefined device name for browser emulation.")
    parser.add_argument("--timeout-ms", type=int, help="Per-attempt timeout in milliseconds.")
    parser.add_argument("--max-retries", type=int, help="Attempt budget for the acquisition.")
    parser.add_argument("--ignore-ssl-errors", action="store_true", default=None, help="Skip TLS certificate verification.")
    parser.add_argument("--settings", help="Path to settings.yaml.")
    parser.add_argument("--out", help="Write image output (screenshots) to this file.")
    parser.add_argument("--json", action="store_true", help="Print the raw response envelope as JSON.")
    return parser


def arguments_from_cli(args: argparse.Namespace) -> dict:
    return {
        "url": args.url,
        "useJavaScript": args.js or None,
        "useProxy": args.proxy or None,
        "selector": args.selector,
        "device": args.device,
        "timeoutMs": args.timeout_ms,
        "maxRetries": args.max_retries,
        "ignoreSSLErrors": args.ignore_ssl_errors,
    }


def render_envelope(envelope: dict, console: Console, out_path: str = None) -> None:
    for item in envelope.get("content", []):
        if item["type"] == "image":
            if out_path:
                Path(out_path).write_bytes(base64.b64decode(item["data"]))
                console.print(f"[success]Saved {item['mimeType']} to {out_path}[/success]")
            else:
                console.print(f"[muted]{item['mimeType']} image, {len(item['data'])} base64 chars (use --out to save)[/muted]")
        elif is_error_envelope(envelope):
            console.print("[error]Tool failed:[/error]")
            console.print(Syntax(item["text"], "json", word_wrap=True))
        elif item["text"].lstrip().startswith("<"):
            console.print(Syntax(item["text"], "html", word_wrap=True))
        else:
            console.print(Markdown(item["text"]))


async def main() -> int:
    parser = build_parser()
    args = parser.parse_args()
    console = Console(theme=load_rich_theme(Path(".").resolve()))

    try:
        settings = load_settings(args.settings)
    except ValidationError as e:
        console.print(f"[error]Invalid settings: {e}[/error]")
        logger.error("Invalid settings; exiting", extra={"error": str(e), "event_type": "startup_failure"})
        return 1
    set_log_level(settings.log_level)

    context = RuntimeContext.from_settings(settings)
    envelope = await run_tool(args.tool, arguments_from_cli(args), context)

    if args.json:
        sys.stdout.write(json.dumps(envelope, indent=2) + "\n")
    else:
        render_envelope(envelope, console, args.out)
    return 2 if is_error_envelope(envelope) else 0


def run() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
