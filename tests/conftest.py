import asyncio
import sys
import os

import pytest

# Add the project root directory to sys.path
# This ensures that modules like 'consts' and 'webtools' can be imported directly
# when tests are run from any subdirectory or by various test runners.
project_root = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
if project_root not in sys.path:
    sys.path.insert(0, project_root)

from webtools.fetch import TransportResponse  # noqa: E402


class StubTransport:
    """Scripted stand-in for HttpxTransport.

    ``script`` items are TransportResponses, status ints, or exceptions to
    raise; the last item repeats once the script runs out.
    """

    def __init__(self, *script):
        self.script = list(script) or [200]
        self.calls = []

    async def send(self, url, *, method="GET", headers=None, timeout_ms=None, proxy=None, verify=True):
        self.calls.append({"url": url, "method": method, "headers": headers, "timeout_ms": timeout_ms, "proxy": proxy, "verify": verify})
        step = self.script[min(len(self.calls), len(self.script)) - 1]
        if isinstance(step, BaseException):
            raise step
        if isinstance(step, int):
            return TransportResponse(status=step, headers={}, text="" if method == "HEAD" else "<html></html>", url=url)
        return step

    def calls_for(self, method):
        return [c for c in self.calls if c["method"] == method]


class FakeElement:
    async def screenshot(self, type="png"):
        return b"\x89PNG-element"


class FakePage:
    def __init__(self, html="<html><head><title>Fake</title></head><body><p>Hello</p></body></html>", goto_error=None, selectors=None, evaluate_result=None):
        self.html = html
        self.goto_error = goto_error
        self.selectors = selectors
        self.evaluate_result = evaluate_result or {}
        self.goto_calls = []
        self.listeners = {}
        self.waited_ms = []

    def on(self, event, handler):
        self.listeners.setdefault(event, []).append(handler)

    def emit(self, event, payload):
        for handler in self.listeners.get(event, []):
            handler(payload)

    async def goto(self, url, wait_until=None, timeout=None):
        self.goto_calls.append({"url": url, "wait_until": wait_until, "timeout": timeout})
        if self.goto_error is not None:
            raise self.goto_error
        return type("Response", (), {"status": 200})()

    async def content(self):
        return self.html

    async def title(self):
        return "Fake"

    async def wait_for_selector(self, selector, timeout=None, state=None):
        if self.selectors is not None and selector not in self.selectors:
            raise asyncio.TimeoutError(f"Timeout {timeout}ms exceeded waiting for {selector}")
        return FakeElement()

    async def wait_for_timeout(self, ms):
        self.waited_ms.append(ms)

    async def screenshot(self, type="png", full_page=True):
        return b"\x89PNG-page"

    async def evaluate(self, script):
        return self.evaluate_result


class FakeContext:
    def __init__(self, page):
        self.page = page

    async def new_page(self):
        return self.page


class FakeInstance:
    def __init__(self, driver):
        self.driver = driver
        self.context_options = None

    async def new_context(self, **options):
        self.context_options = options
        return FakeContext(self.driver.page_factory())

    async def close(self):
        self.driver.close_count += 1
        if self.driver.close_error is not None:
            raise self.driver.close_error


class FakeDriver:
    """Browser driver double that counts launches and closes."""
    name = "fake"

    def __init__(self, page_factory=FakePage, launch_error=None, close_error=None):
        self.page_factory = page_factory
        self.launch_error = launch_error
        self.close_error = close_error
        self.launches = []
        self.instances = []
        self.close_count = 0

    async def launch(self, args, proxy=None, timeout_ms=None):
        self.launches.append({"args": args, "proxy": proxy, "timeout_ms": timeout_ms})
        if self.launch_error is not None:
            raise self.launch_error
        instance = FakeInstance(self)
        self.instances.append(instance)
        return instance


@pytest.fixture
def no_backoff(mocker):
    """Zero-length retry delays so retry tests run instantly."""
    mocker.patch("webtools.fetch.backoff_delay_ms", return_value=0)
    mocker.patch("webtools.dispatcher.backoff_delay_ms", return_value=0)
