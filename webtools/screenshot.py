"""Full-page or element screenshots through a browser session."""
from typing import Any, Dict, List

from webtools.browser import navigate, wait_for_element
from webtools.envelope import image_content
from webtools.logging_utils import get_logger

logger = get_logger(__name__)

DEFAULT_SETTLE_MS = 2000


async def take_screenshot(page, request, arguments, context) -> List[Dict[str, Any]]:
    await navigate(page, request.url, timeout_ms=context.settings.navigation_timeout_ms, used_proxy=request.use_proxy)

    selector = arguments.get("selector")
    if selector:
        element = await wait_for_element(page, selector, timeout_ms=context.settings.selector_timeout_ms)
        png = await element.screenshot(type="png")
    else:
        # let late animations and lazy images settle before capturing
        await page.wait_for_timeout(arguments.get("settleMs", DEFAULT_SETTLE_MS))
        png = await page.screenshot(type="png", full_page=arguments.get("fullPage", True))

    logger.info(
        f"Captured screenshot of {request.url}",
        extra={"url": request.url, "selector": selector, "bytes": len(png), "event_type": "screenshot_captured"},
    )
    return [image_content(png, "image/png")]
