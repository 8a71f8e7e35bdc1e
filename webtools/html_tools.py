"""
HTML retrieval and HTML-to-markdown reading tools.

Both tools work from either acquisition path: the static HTTP body or the
rendered DOM of a browser session.
"""
import re
from typing import Any, Dict, List, Optional

from bs4 import BeautifulSoup
from markdownify import markdownify
from readability import Document  # readability-lxml

from webtools.browser import navigate, wait_for_element
from webtools.envelope import text_content
from webtools.errors import AcquisitionError, ErrorKind
from webtools.logging_utils import get_logger

logger = get_logger(__name__)

DEFAULT_SELECTOR = "body"
REMOVED_TAGS = ["script", "style", "noscript", "nav", "footer"]
REMOVED_SELECTORS = [".navigation", "#navigation", ".footer", "#footer"]
MIN_MAIN_CONTENT_LENGTH = 200


def extract_title(html: str) -> str:
    soup = BeautifulSoup(html, "html.parser")
    if soup.title and soup.title.string and soup.title.string.strip():
        return soup.title.string.strip()
    return "Untitled Page"


def _element_not_found(selector: str) -> AcquisitionError:
    return AcquisitionError(
        ErrorKind.NAVIGATION, f'Element with selector "{selector}" not found', retryable=False, code="element_not_found"
    )


def cleanup_html(html: str, selector: str = DEFAULT_SELECTOR) -> str:
    """Strips scripts, styles and page chrome, and narrows to ``selector``."""
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(REMOVED_TAGS) + soup.select(", ".join(REMOVED_SELECTORS)):
        # nested matches are already gone with their ancestor
        if not tag.decomposed:
            tag.decompose()

    if selector and selector != DEFAULT_SELECTOR:
        node = soup.select_one(selector)
        if node is None:
            raise _element_not_found(selector)
    else:
        node = soup.body or soup
    return str(node)


def extract_main_content(html: str) -> Optional[str]:
    """Readability summary of the page, or None when it is too thin to trust."""
    try:
        summary = Document(html).summary(html_partial=True)
    except Exception as e:
        logger.warning(f"Readability failed: {e!s}", extra={"error": str(e), "event_type": "readability_failed"})
        return None
    text = BeautifulSoup(summary, "html.parser").get_text(strip=True)
    if len(text) < MIN_MAIN_CONTENT_LENGTH:
        return None
    return summary


def html_to_markdown(html: str) -> str:
    markdown = markdownify(html, heading_style="ATX", bullets="-")
    markdown = re.sub(r"[ \t]+\n", "\n", markdown)
    markdown = re.sub(r"\n{3,}", "\n\n", markdown)
    return markdown.strip()


def format_page(html: str, url: str, arguments: Dict[str, Any], title: Optional[str] = None) -> str:
    selector = arguments.get("selector") or DEFAULT_SELECTOR
    title = title or extract_title(html)
    source_html = html
    if arguments.get("extractMainContent"):
        source_html = extract_main_content(html) or html
    markdown = html_to_markdown(cleanup_html(source_html, selector))
    if not markdown:
        raise AcquisitionError(
            ErrorKind.EMPTY_CONTENT, "The page was reached but no content was found", code="empty_content"
        )
    return f"# {title}\n\nSource: {url}\n\n{markdown}"


# --- webtool_gethtml ---
def get_html_static(success, request, arguments, context) -> List[Dict[str, Any]]:
    return [text_content(success.body)]


async def get_html_browser(page, request, arguments, context) -> List[Dict[str, Any]]:
    await navigate(page, request.url, timeout_ms=context.settings.navigation_timeout_ms, used_proxy=request.use_proxy)
    return [text_content(await page.content())]


# --- webtool_readpage ---
def read_page_static(success, request, arguments, context) -> List[Dict[str, Any]]:
    return [text_content(format_page(success.body, request.url, arguments))]


async def read_page_browser(page, request, arguments, context) -> List[Dict[str, Any]]:
    await navigate(
        page, request.url, timeout_ms=context.settings.navigation_timeout_ms, used_proxy=request.use_proxy
    )
    selector = arguments.get("selector") or DEFAULT_SELECTOR
    if selector != DEFAULT_SELECTOR:
        await wait_for_element(page, selector, timeout_ms=context.settings.selector_timeout_ms, visible=False)
    html = await page.content()
    title = await page.title()
    return [text_content(format_page(html, request.url, arguments, title=title or None))]
