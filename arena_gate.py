"""Page readiness gating: DOM probes, challenge handling, wait primitives.

Every heuristic is split in two: one in-page evaluation (PROBE_SCRIPT)
collects raw facts into a DomProbe, and pure functions decide what those
facts mean. The pure half is what the tests exercise.
"""

from __future__ import annotations

import enum
import logging
import time
from typing import Callable, Optional
from urllib.parse import urlparse

from playwright.async_api import Error as PlaywrightError
from pydantic import BaseModel, ConfigDict, Field

from arena_config import BridgeConfig
from arena_errors import NavigationError, SelectorNotFoundError

logger = logging.getLogger(__name__)

LOADING_PHRASES = ("loading...", "please wait", "checking your browser")
CHALLENGE_PHRASES = (
    "security verification",
    "please complete this quick security check",
    "checking your browser",
    "just a moment",
)
FRAME_NOT_READY_MARKERS = (
    "Requesting main frame too early",
    "Execution context was destroyed",
    "frame was detached",
)

RETRY_BACKOFF_MS = 3_000
FRAME_RETRY_BACKOFF_MS = 5_000
READY_STATE_TIMEOUT_MS = 30_000

PROBE_SCRIPT = """() => {
    const body = document.body;
    const text = body ? (body.innerText || body.textContent || '') : '';
    const html = body ? body.innerHTML.toLowerCase() : '';
    return {
        readyState: document.readyState,
        bodyChildren: body ? body.children.length : 0,
        hasTextInput: document.querySelector('textarea, [contenteditable="true"]') !== null,
        hasCombobox: document.querySelector('button[role="combobox"]') !== null,
        hasButton: document.querySelector('button') !== null,
        hasForm: document.querySelector('form') !== null,
        text: text.toLowerCase().slice(0, 20000),
        challengeMarkup: html.includes('cf-browser-verification') || html.includes('cf-challenge'),
        challengeHook: document.querySelector(
            '#challenge-form, .cf-browser-verification, [data-ray]'
        ) !== null,
    };
}"""

READY_STATE_SCRIPT = "() => document.readyState === 'complete'"
BODY_RENDERED_SCRIPT = "() => !!document.body && document.body.children.length > 0"


class ReadinessState(str, enum.Enum):
    UNKNOWN = "unknown"
    NAVIGATING = "navigating"
    CHALLENGE_PRESENT = "challenge_present"
    CHALLENGE_RESOLVING = "challenge_resolving"
    APP_READY = "app_ready"


class DomProbe(BaseModel):
    """Raw DOM facts from one PROBE_SCRIPT evaluation."""

    model_config = ConfigDict(populate_by_name=True)

    ready_state: str = Field(default="loading", alias="readyState")
    body_children: int = Field(default=0, alias="bodyChildren")
    has_text_input: bool = Field(default=False, alias="hasTextInput")
    has_combobox: bool = Field(default=False, alias="hasCombobox")
    has_button: bool = Field(default=False, alias="hasButton")
    has_form: bool = Field(default=False, alias="hasForm")
    text: str = ""
    challenge_markup: bool = Field(default=False, alias="challengeMarkup")
    challenge_hook: bool = Field(default=False, alias="challengeHook")


def assess_readiness(probe: DomProbe, brand_text: str) -> tuple[bool, str]:
    """Decide whether the app can accept input; returns (ready, reason)."""
    if probe.ready_state != "complete":
        return False, "document not complete"
    if probe.body_children == 0:
        return False, "no body content"
    if not (probe.has_text_input or probe.has_combobox or probe.has_button or probe.has_form):
        return False, "key elements not found"
    # the app's own copy can contain loading phrases; the brand text vouches for it
    loading = any(phrase in probe.text for phrase in LOADING_PHRASES)
    if loading and brand_text.lower() not in probe.text:
        return False, "still loading"
    return True, "ready"


def is_challenge(probe: DomProbe) -> bool:
    if probe.challenge_markup or probe.challenge_hook:
        return True
    return any(phrase in probe.text for phrase in CHALLENGE_PHRASES)


def has_app_content(probe: DomProbe, brand_text: str) -> bool:
    return brand_text.lower() in probe.text or probe.has_text_input or probe.has_combobox


def classify_readiness(probe: Optional[DomProbe], brand_text: str) -> ReadinessState:
    if probe is None:
        return ReadinessState.UNKNOWN
    if is_challenge(probe):
        return ReadinessState.CHALLENGE_PRESENT
    ready, _ = assess_readiness(probe, brand_text)
    return ReadinessState.APP_READY if ready else ReadinessState.NAVIGATING


def is_frame_not_ready(error: BaseException) -> bool:
    message = str(error)
    return any(marker in message for marker in FRAME_NOT_READY_MARKERS)


class PageGate:
    """Drives a page from "just navigated" to "ready to accept input"."""

    def __init__(self, config: BridgeConfig, clock: Callable[[], float] = time.monotonic) -> None:
        self.site = config.site
        self.timing = config.timing
        self.selectors = config.selectors
        self.navigation_timeout_ms = config.browser.navigation_timeout_ms
        self._clock = clock
        # ids of pages currently inside resolve_challenge()
        self._resolving: set[int] = set()

    def _elapsed_ms(self, start: float) -> float:
        return (self._clock() - start) * 1000

    async def probe(self, page) -> DomProbe:
        raw = await page.evaluate(PROBE_SCRIPT)
        return DomProbe.model_validate(raw or {})

    async def readiness(self, page) -> ReadinessState:
        try:
            probe = await self.probe(page)
        except PlaywrightError as e:
            logger.debug("Readiness probe failed: %s", e)
            return ReadinessState.UNKNOWN
        state = classify_readiness(probe, self.site.brand_text)
        if state is ReadinessState.CHALLENGE_PRESENT and id(page) in self._resolving:
            return ReadinessState.CHALLENGE_RESOLVING
        return state

    async def wait_until_dom_settled(
        self,
        page,
        timeout_ms: Optional[int] = None,
        url: Optional[str] = None,
    ) -> bool:
        """Poll until the app looks interactive. Never raises on timeout.

        Returns False when the deadline passes; callers carry on and let
        explicit element lookups fail loudly later.
        """
        timeout = self.timing.readiness_timeout_ms if timeout_ms is None else timeout_ms
        if url:
            try:
                await page.goto(url, wait_until="domcontentloaded", timeout=self.navigation_timeout_ms)
            except PlaywrightError as e:
                logger.warning("Navigation to %s failed before readiness wait: %s", url, e)

        logger.info("Waiting for page to be fully ready...")
        start = self._clock()
        last_logged = -1
        while self._elapsed_ms(start) < timeout:
            try:
                ready, reason = assess_readiness(await self.probe(page), self.site.brand_text)
            except PlaywrightError as e:
                ready, reason = False, f"probe failed: {e}"

            if ready:
                logger.info("Page is fully ready")
                await page.wait_for_timeout(2_000)
                return True

            elapsed = int(self._elapsed_ms(start) / 1000)
            if elapsed > 0 and elapsed % 5 == 0 and elapsed != last_logged:
                logger.info("  Waiting for page to be ready... (%ds) - %s", elapsed, reason)
                last_logged = elapsed
            await page.wait_for_timeout(self.timing.readiness_poll_ms)

        logger.warning("Page readiness check timed out, proceeding anyway...")
        return False

    async def detect_challenge(self, page) -> bool:
        try:
            return is_challenge(await self.probe(page))
        except PlaywrightError as e:
            logger.debug("Challenge probe failed: %s", e)
            return False

    async def resolve_challenge(self, page, max_wait_ms: Optional[int] = None) -> bool:
        """Wait out an anti-bot interstitial. Returns False on timeout, never raises."""
        if not await self.detect_challenge(page):
            return True

        max_wait = self.timing.challenge_max_wait_ms if max_wait_ms is None else max_wait_ms
        logger.warning("Security verification detected - waiting up to %ds...", max_wait // 1000)
        self._resolving.add(id(page))
        try:
            return await self._await_challenge_cleared(page, max_wait)
        finally:
            self._resolving.discard(id(page))

    async def _await_challenge_cleared(self, page, max_wait: int) -> bool:
        poll = self.timing.challenge_poll_ms
        start = self._clock()
        last_logged = -1
        while self._elapsed_ms(start) < max_wait:
            await page.wait_for_timeout(poll)
            try:
                if is_challenge(await self.probe(page)):
                    elapsed = int(self._elapsed_ms(start) / 1000)
                    if elapsed > 0 and elapsed % 15 == 0 and elapsed != last_logged:
                        logger.info(
                            "  Still waiting for verification... (%ds / %ds max)",
                            elapsed, max_wait // 1000,
                        )
                        last_logged = elapsed
                    continue

                # a blank frame between challenge and app is not success
                await page.wait_for_timeout(poll)
                confirm = await self.probe(page)
            except PlaywrightError as e:
                logger.debug("Challenge re-probe failed: %s", e)
                continue

            if not is_challenge(confirm) and has_app_content(confirm, self.site.brand_text):
                logger.info("Security verification completed")
                await page.wait_for_timeout(2_000)
                return True

        logger.warning("Security verification timed out - page may still be verifying")
        logger.warning("If this persists, cookies may be expired; consider a persistent profile")
        return False

    async def wait_for_selector(
        self,
        page,
        selector: str,
        timeout_ms: Optional[int] = None,
        visible: bool = True,
    ):
        timeout = self.timing.selector_timeout_ms if timeout_ms is None else timeout_ms
        try:
            handle = await page.wait_for_selector(
                selector, state="visible" if visible else "attached", timeout=timeout
            )
        except PlaywrightError as e:
            raise SelectorNotFoundError(selector, timeout, str(e).splitlines()[0]) from e
        if handle is None:
            raise SelectorNotFoundError(selector, timeout)
        return handle

    async def wait_for_xpath(
        self,
        page,
        xpath: str,
        timeout_ms: Optional[int] = None,
        visible: bool = True,
    ):
        return await self.wait_for_selector(page, f"xpath={xpath}", timeout_ms, visible)

    async def click_with_retry(
        self,
        page,
        target,
        retries: int = 3,
        delay_ms: int = 500,
        timeout_ms: int = 15_000,
    ) -> None:
        """Click a selector or element handle, backing off linearly between tries."""
        for attempt in range(retries + 1):
            try:
                if isinstance(target, str):
                    handle = await self.wait_for_selector(page, target, timeout_ms)
                else:
                    handle = target
                if not await handle.bounding_box():
                    await handle.scroll_into_view_if_needed()
                    await page.wait_for_timeout(300)
                await handle.click(delay=50)
                await page.wait_for_timeout(500)
                return
            except (PlaywrightError, SelectorNotFoundError) as e:
                if attempt >= retries:
                    raise
                logger.debug("Click attempt %d failed: %s", attempt + 1, e)
                await page.wait_for_timeout(delay_ms * (attempt + 1))

    async def goto_with_retries(self, page, url: str, max_retries: Optional[int] = None) -> bool:
        """Navigate and require rendered body content, retrying transient failures."""
        retries = self.timing.nav_retries if max_retries is None else max_retries
        last_error: Optional[Exception] = None
        for attempt in range(retries):
            try:
                logger.info("Navigation attempt %d/%d to %s", attempt + 1, retries, url)
                await page.wait_for_timeout(1_000)
                await page.goto(url, wait_until="domcontentloaded", timeout=self.navigation_timeout_ms)
                try:
                    await page.wait_for_function(READY_STATE_SCRIPT, timeout=READY_STATE_TIMEOUT_MS)
                except PlaywrightError:
                    logger.info("Page readyState check timed out, continuing...")
                await page.wait_for_timeout(2_000)
                if await page.evaluate(BODY_RENDERED_SCRIPT):
                    logger.info("Page navigation successful")
                    return True
                raise NavigationError("Page loaded but no content detected")
            except (PlaywrightError, NavigationError) as e:
                last_error = e
                if is_frame_not_ready(e):
                    logger.info("Page not ready, waiting longer...")
                    await page.wait_for_timeout(FRAME_RETRY_BACKOFF_MS)
                    continue
                if attempt < retries - 1:
                    logger.info("Navigation attempt %d failed: %s, retrying...", attempt + 1, e)
                    await page.wait_for_timeout(RETRY_BACKOFF_MS)

        raise last_error or NavigationError(f"Navigation to {url} was never attempted")

    async def dismiss_agreement(self, page) -> bool:
        """Click through a terms/consent dialog if one is showing."""
        try:
            buttons = await page.query_selector_all(f"xpath={self.selectors.agreement_xpath}")
            if not buttons:
                return False
            await self.click_with_retry(page, buttons[0])
            await page.wait_for_timeout(2_000)
            logger.info("Dismissed agreement dialog")
            return True
        except (PlaywrightError, SelectorNotFoundError) as e:
            logger.debug("Agreement dialog not dismissed: %s", e)
            return False

    async def prepare(self, page) -> None:
        """Launch-time sequence: navigate, settle, clear challenges, accept terms."""
        await self.goto_with_retries(page, self.site.chat_url)
        await self.wait_until_dom_settled(page, self.timing.readiness_timeout_ms)
        await page.wait_for_timeout(3_000)
        await self.resolve_challenge(page)
        await self.wait_until_dom_settled(page, self.timing.readiness_recheck_ms)
        await self.dismiss_agreement(page)

    async def ensure_ready(self, page) -> None:
        """Per-request check; re-navigates if the page wandered off the site."""
        host = urlparse(self.site.root_url).hostname or ""
        if host not in (page.url or ""):
            logger.info("Page not on %s, navigating...", host)
            await self.goto_with_retries(page, self.site.chat_url)
            await self.wait_until_dom_settled(page, self.timing.readiness_recheck_ms)
            await self.resolve_challenge(page)
        else:
            await self.resolve_challenge(page)
            await self.wait_until_dom_settled(page, self.timing.readiness_quick_ms)
