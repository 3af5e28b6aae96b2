"""Shared test helpers for the arena bridge test suite.

Fixtures are in conftest.py. This module holds the fakes: a clock that
only moves when the page "waits", and a scripted page that answers
page.evaluate() by looking up the script constant it was given.
"""

from typing import Any, Callable, Optional
from unittest.mock import AsyncMock, MagicMock

from playwright.async_api import Error as PlaywrightError

from arena_gate import PROBE_SCRIPT


class FakeClock:
    """Monotonic clock in seconds, advanced by FakePage.wait_for_timeout."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def ready_probe(**overrides: Any) -> dict:
    """Raw PROBE_SCRIPT result for a fully rendered app page."""
    probe = {
        "readyState": "complete",
        "bodyChildren": 3,
        "hasTextInput": True,
        "hasCombobox": True,
        "hasButton": True,
        "hasForm": True,
        "text": "lmarena chat with any model",
        "challengeMarkup": False,
        "challengeHook": False,
    }
    probe.update(overrides)
    return probe


def challenge_probe(**overrides: Any) -> dict:
    probe = ready_probe(
        hasTextInput=False,
        hasCombobox=False,
        text="just a moment... performing security verification",
        challengeHook=True,
    )
    probe.update(overrides)
    return probe


def make_element(**evaluate_results: Any) -> MagicMock:
    """Element handle mock; evaluate() returns True unless told otherwise."""
    element = MagicMock()
    element.click = AsyncMock()
    element.focus = AsyncMock()
    element.scroll_into_view_if_needed = AsyncMock()
    element.set_input_files = AsyncMock()
    element.bounding_box = AsyncMock(return_value={"x": 0, "y": 0, "width": 10, "height": 10})
    element.evaluate = AsyncMock(return_value=evaluate_results.get("default", True))
    return element


class FakeKeyboard:
    def __init__(self, page: "FakePage") -> None:
        self.page = page
        self.typed = ""
        self.pressed: list[str] = []
        self.delays: list[float] = []

    async def type(self, text: str, delay: float = 0) -> None:
        self.typed += text
        self.delays.append(delay)
        if self.page.on_type is not None:
            self.page.on_type(text)

    async def press(self, key: str) -> None:
        self.pressed.append(key)
        if self.page.on_press is not None:
            self.page.on_press(key)


class FakeContext:
    def __init__(self, page_factory: Optional[Callable[["FakeContext"], "FakePage"]] = None) -> None:
        self.page_factory = page_factory
        self.added_cookies: list[dict] = []
        self.live_cookies: list[dict] = []
        self.pages: list = []
        self.init_scripts: list[str] = []
        self.closed = False
        self.add_cookies = AsyncMock(side_effect=self._add_cookies)
        self.grant_permissions = AsyncMock()
        self.set_default_navigation_timeout = MagicMock()

    async def _add_cookies(self, cookies: list[dict]) -> None:
        self.added_cookies.extend(cookies)
        self.live_cookies.extend(cookies)

    async def cookies(self) -> list[dict]:
        return list(self.live_cookies)

    async def add_init_script(self, script: str) -> None:
        self.init_scripts.append(script)

    async def new_page(self) -> "FakePage":
        page = self.page_factory(self) if self.page_factory else FakePage(context=self)
        self.pages.append(page)
        return page

    async def close(self) -> None:
        self.closed = True


class FakePage:
    """Scripted stand-in for a Playwright page.

    scripts maps a JS source string to either a constant or a callable
    taking the evaluate() argument. elements maps selectors to handles
    returned by wait_for_selector(); a missing selector times out.
    """

    def __init__(
        self,
        scripts: Optional[dict[str, Any]] = None,
        elements: Optional[dict[str, Any]] = None,
        clock: Optional[FakeClock] = None,
        context: Optional[FakeContext] = None,
        url: str = "about:blank",
    ) -> None:
        self.scripts: dict[str, Any] = {PROBE_SCRIPT: ready_probe()}
        self.scripts.update(scripts or {})
        self.elements: dict[str, Any] = dict(elements or {})
        self.all_elements: dict[str, list] = {}
        self.clock = clock or FakeClock()
        self.context = context or FakeContext()
        self.url = url
        self.keyboard = FakeKeyboard(self)
        self.on_type: Optional[Callable[[str], None]] = None
        self.on_press: Optional[Callable[[str], None]] = None
        self.closed = False
        self.waits: list[float] = []
        self.visited: list[str] = []
        self.evaluated: list[str] = []
        self.handlers: dict[str, list] = {}
        self.goto_error: Optional[Exception] = None

    async def evaluate(self, script: str, arg: Any = None) -> Any:
        self.evaluated.append(script)
        if self.closed:
            raise PlaywrightError("Target page, context or browser has been closed")
        result = self.scripts.get(script)
        if isinstance(result, Exception):
            raise result
        if callable(result):
            return result(arg)
        return result

    async def wait_for_timeout(self, ms: float) -> None:
        self.waits.append(ms)
        self.clock.advance(ms / 1000)

    async def goto(self, url: str, **kwargs: Any) -> None:
        self.visited.append(url)
        if self.goto_error is not None:
            raise self.goto_error
        self.url = url

    async def wait_for_function(self, script: str, timeout: float = 0) -> bool:
        return True

    async def wait_for_selector(self, selector: str, state: str = "visible", timeout: float = 0):
        element = self.elements.get(selector)
        if element is None:
            self.clock.advance(timeout / 1000)
            raise PlaywrightError(f"Timeout {timeout}ms exceeded.\nwaiting for {selector}")
        return element

    async def query_selector_all(self, selector: str) -> list:
        return list(self.all_elements.get(selector, []))

    async def screenshot(self, **kwargs: Any) -> bytes:
        return b"\xff\xd8fake-jpeg"

    async def content(self) -> str:
        return "<html><body>fake</body></html>"

    def is_closed(self) -> bool:
        return self.closed

    def on(self, event: str, callback: Callable) -> None:
        self.handlers.setdefault(event, []).append(callback)

    def emit(self, event: str) -> None:
        for callback in self.handlers.get(event, []):
            callback(self)


def sequence(*values: Any) -> Callable[[Any], Any]:
    """Script handler that returns successive values, repeating the last."""
    items = list(values)

    def handler(_arg: Any) -> Any:
        if len(items) > 1:
            return items.pop(0)
        return items[0]

    return handler


class FakePlaywright:
    """Playwright factory stand-in; every launch hands out a fresh context.

    page_factory(context) builds the pages that context.new_page() returns.
    """

    def __init__(
        self,
        existing_pages: int = 0,
        page_factory: Optional[Callable[[FakeContext], FakePage]] = None,
    ) -> None:
        self.contexts: list[FakeContext] = []
        self.browsers: list[MagicMock] = []
        self.existing_pages = existing_pages
        self.page_factory = page_factory
        self.starts = 0
        self.driver = MagicMock()
        self.driver.stop = AsyncMock()
        self.driver.chromium.launch = AsyncMock(side_effect=self._launch)
        self.driver.chromium.launch_persistent_context = AsyncMock(side_effect=self._launch_persistent)

    def __call__(self):
        factory = MagicMock()

        async def start():
            self.starts += 1
            return self.driver

        factory.start = start
        return factory

    def _new_context(self) -> FakeContext:
        context = FakeContext(page_factory=self.page_factory)
        self.contexts.append(context)
        return context

    async def _launch(self, **kwargs):
        browser = MagicMock()
        browser.new_context = AsyncMock(side_effect=lambda **kw: self._new_context())
        browser.close = AsyncMock()
        self.browsers.append(browser)
        return browser

    async def _launch_persistent(self, **kwargs):
        context = self._new_context()
        for _ in range(self.existing_pages):
            await context.new_page()
        return context
