"""Browser/page lifecycle: one live page, launched once, healed on demand."""

from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import async_playwright

from arena_artifacts import ArtifactRecorder
from arena_config import BridgeConfig
from arena_errors import BridgeError, BrowserLaunchError
from arena_gate import PageGate
from arena_session import SessionStore

logger = logging.getLogger(__name__)

LAUNCH_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-blink-features=AutomationControlled",
    "--no-first-run",
    "--no-default-browser-check",
    "--window-size=1280,900",
    "--disable-background-timer-throttling",
    "--disable-backgrounding-occluded-windows",
    "--disable-renderer-backgrounding",
]
IGNORE_DEFAULT_ARGS = ["--enable-automation"]

EXTRA_HEADERS = {
    "Accept-Language": "en-US,en;q=0.9",
    "Upgrade-Insecure-Requests": "1",
}

STEALTH_SCRIPT = """
    Object.defineProperty(navigator, 'webdriver', { get: () => undefined });
    if (!window.chrome) window.chrome = { runtime: {} };
    Object.defineProperty(navigator, 'languages', { get: () => ['en-US', 'en'] });
    delete window.__playwright;
    delete window.__pw_manual;
"""

LIVENESS_SCRIPT = "() => 1"
LIVENESS_TIMEOUT_S = 5


class LifecycleState(str, enum.Enum):
    COLD = "cold"
    INITIALIZING = "initializing"
    READY = "ready"
    INVALIDATED = "invalidated"


@dataclass
class BrowserHandle:
    """Everything one launch created. browser is None for persistent profiles."""

    playwright: Any = None
    browser: Any = None
    context: Any = None
    page: Any = None
    persistent: bool = False
    crashed: bool = False

    async def is_alive(self) -> bool:
        if self.crashed or self.page is None:
            return False
        try:
            if self.page.is_closed():
                return False
            await asyncio.wait_for(self.page.evaluate(LIVENESS_SCRIPT), timeout=LIVENESS_TIMEOUT_S)
        except (PlaywrightError, asyncio.TimeoutError) as e:
            logger.debug("Liveness probe failed: %s", e)
            return False
        return True


class BrowserLifecycle:
    """Owns the single BrowserHandle.

    Concurrent acquire() calls during a launch all await the same task, so
    there is never more than one browser being started at a time.
    """

    def __init__(
        self,
        config: BridgeConfig,
        session_store: SessionStore,
        gate: PageGate,
        playwright_factory: Callable[[], Any] = async_playwright,
        artifacts: Optional[ArtifactRecorder] = None,
    ) -> None:
        self.config = config
        self.session_store = session_store
        self.gate = gate
        self.artifacts = artifacts
        self._playwright_factory = playwright_factory
        self._handle: Optional[BrowserHandle] = None
        self._task: Optional[asyncio.Task] = None
        self.state = LifecycleState.COLD
        self.launch_count = 0

    @property
    def handle(self) -> Optional[BrowserHandle]:
        return self._handle

    async def acquire(self) -> BrowserHandle:
        handle = self._handle
        if handle is not None and self.state is LifecycleState.READY:
            if await handle.is_alive():
                return handle
            logger.warning("Browser page is gone or unresponsive, relaunching...")
            await self.invalidate(handle)

        if self._task is None or self._task.done():
            self._task = asyncio.ensure_future(self._launch())
        task = self._task
        try:
            # shield: a cancelled caller must not abort the shared launch
            return await asyncio.shield(task)
        finally:
            if task.done() and self._task is task:
                self._task = None

    async def _launch(self) -> BrowserHandle:
        self.state = LifecycleState.INITIALIZING
        self.launch_count += 1
        handle = BrowserHandle()
        logger.info("Launching browser (launch #%d)...", self.launch_count)
        try:
            await self._open(handle)
            await self._restore_session(handle.page)
            await self.gate.prepare(handle.page)
            if self.config.session.export_on_launch:
                result = await self.session_store.export(handle.page)
                if not result.success:
                    logger.warning("Session export after launch failed: %s", result.error)
        except asyncio.CancelledError:
            await self._teardown(handle)
            self.state = LifecycleState.COLD
            raise
        except Exception as e:
            logger.error("Browser initialization failed: %s", e)
            if self.artifacts is not None and handle.page is not None:
                await self.artifacts.capture(handle.page, "launch_failure")
            await self._teardown(handle)
            self.state = LifecycleState.COLD
            if isinstance(e, BridgeError):
                raise
            raise BrowserLaunchError(f"Browser initialization failed: {e}") from e

        self._handle = handle
        self.state = LifecycleState.READY
        logger.info("Browser ready")
        return handle

    async def _open(self, handle: BrowserHandle) -> None:
        browser_cfg = self.config.browser
        handle.playwright = await self._playwright_factory().start()
        chromium = handle.playwright.chromium

        launch_options: dict[str, Any] = {
            "headless": browser_cfg.headless,
            "args": LAUNCH_ARGS,
            "ignore_default_args": IGNORE_DEFAULT_ARGS,
        }
        if browser_cfg.executable_path:
            launch_options["executable_path"] = browser_cfg.executable_path
        context_options: dict[str, Any] = {
            "viewport": {"width": browser_cfg.viewport_width, "height": browser_cfg.viewport_height},
            "user_agent": browser_cfg.user_agent,
            "locale": browser_cfg.locale,
            "extra_http_headers": EXTRA_HEADERS,
        }

        if browser_cfg.profile_dir is not None:
            logger.info("Using persistent profile at %s", browser_cfg.profile_dir)
            browser_cfg.profile_dir.mkdir(parents=True, exist_ok=True)
            handle.context = await chromium.launch_persistent_context(
                user_data_dir=str(browser_cfg.profile_dir),
                **launch_options,
                **context_options,
            )
            handle.persistent = True
            pages = handle.context.pages
            handle.page = pages[0] if pages else await handle.context.new_page()
        else:
            handle.browser = await chromium.launch(**launch_options)
            handle.context = await handle.browser.new_context(**context_options)
            handle.page = await handle.context.new_page()

        handle.context.set_default_navigation_timeout(browser_cfg.navigation_timeout_ms)
        try:
            await handle.context.grant_permissions(["notifications"], origin=self.config.site.root_url)
        except PlaywrightError as e:
            logger.debug("Could not grant notifications permission: %s", e)
        await handle.context.add_init_script(STEALTH_SCRIPT)

        def on_crash(_page) -> None:
            handle.crashed = True
            logger.error("Browser page crashed; it will be relaunched on next use")

        handle.page.on("crash", on_crash)

    async def _restore_session(self, page) -> None:
        snapshot = self.session_store.load()
        if snapshot is None:
            logger.info("No saved session; continuing unauthenticated")
            return
        report = await self.session_store.apply(snapshot, page)
        if not (report.cookies_ok and report.storage_ok):
            logger.warning("Session was only partially restored")

    async def invalidate(self, handle: Optional[BrowserHandle] = None) -> None:
        """Drop the current handle so the next acquire() relaunches.

        Passing a handle makes this a no-op if a newer handle has already
        replaced it.
        """
        current = self._handle
        if current is None or (handle is not None and handle is not current):
            return
        self._handle = None
        self.state = LifecycleState.INVALIDATED
        await self._teardown(current)

    async def close(self) -> None:
        task = self._task
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.debug("In-flight launch ended with: %s", e)
        self._task = None

        handle, self._handle = self._handle, None
        if handle is not None:
            await self._teardown(handle)
        self.state = LifecycleState.COLD
        logger.info("Browser closed")

    async def _teardown(self, handle: BrowserHandle) -> None:
        if handle.context is not None:
            try:
                await handle.context.close()
            except Exception as e:
                logger.debug("Error closing context: %s", e)
            handle.context = None
        if handle.browser is not None:
            try:
                await handle.browser.close()
            except Exception as e:
                logger.debug("Error closing browser: %s", e)
            handle.browser = None
        if handle.playwright is not None:
            try:
                await handle.playwright.stop()
            except Exception as e:
                logger.debug("Error stopping Playwright: %s", e)
            handle.playwright = None
        handle.page = None
