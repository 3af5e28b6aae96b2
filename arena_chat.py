"""Message exchange with the chat UI: pick a model, type, send, await reply.

Sending is verified, never assumed: after each click strategy the input
box is re-read, and only an emptied (or shrunken) input counts as sent.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import logging
import os
import random
import re
import tempfile
import time
from typing import Callable, Optional, Protocol, Union

from playwright.async_api import Error as PlaywrightError

from arena_config import BridgeConfig
from arena_errors import InputNotFoundError, MessageNotSentError, SelectorNotFoundError
from arena_gate import PageGate
from arena_history import extract_transcript, latest_assistant_turn_since

logger = logging.getLogger(__name__)

ImagePayload = Union[str, bytes]

OPEN_MODEL_DROPDOWN_SCRIPT = """(selector) => {
    const comboboxes = document.querySelectorAll(selector);
    if (comboboxes.length === 0) return false;
    const btn = comboboxes.length > 1 ? comboboxes[1] : comboboxes[0];
    btn.click();
    return true;
}"""

SELECT_OPTION_SCRIPT = """(selector) => {
    const el = document.querySelector(selector);
    if (!el) return false;
    ["mousedown", "mouseup", "click"].forEach(evt => {
        el.dispatchEvent(new MouseEvent(evt, { bubbles: true }));
    });
    return true;
}"""

CLEAR_VALUE_SCRIPT = """(el) => {
    if (el.tagName === 'TEXTAREA' || el.tagName === 'INPUT') {
        el.value = '';
    } else {
        el.textContent = '';
    }
}"""

FIRE_INPUT_EVENTS_SCRIPT = """() => {
    const el = document.activeElement;
    if (!el) return false;
    if (el.tagName === 'TEXTAREA' || el.tagName === 'INPUT') {
        el.dispatchEvent(new Event('input', { bubbles: true }));
        el.dispatchEvent(new Event('change', { bubbles: true }));
    } else if (el.isContentEditable) {
        el.dispatchEvent(new Event('input', { bubbles: true }));
    }
    return true;
}"""

INPUT_VALUE_SCRIPT = """() => {
    const el = document.querySelector('textarea, [contenteditable="true"]');
    if (!el) return null;
    return el.value || el.textContent || '';
}"""

ELEMENT_VALUE_SCRIPT = "(el) => el.value ?? el.textContent ?? ''"

CLICKABLE_SCRIPT = """(el) => {
    const style = window.getComputedStyle(el);
    const rect = el.getBoundingClientRect();
    return style.display !== 'none' &&
           style.visibility !== 'hidden' &&
           !el.disabled &&
           rect.width > 0 &&
           rect.height > 0;
}"""

BUTTON_LABEL_SCRIPT = """(el) => [
    el.textContent || '',
    el.getAttribute('aria-label') || '',
    el.getAttribute('title') || '',
].join(' ').toLowerCase()"""

JS_CLICK_SCRIPT = """(el) => {
    el.scrollIntoView({ behavior: 'smooth', block: 'center' });
    el.click();
}"""

DISPATCH_CLICK_SCRIPT = """(el) => {
    el.dispatchEvent(new MouseEvent('click', { view: window, bubbles: true, cancelable: true }));
}"""

STREAMING_SCRIPT = "(selector) => !!document.querySelector(selector)"


def _compact(text: str) -> str:
    return re.sub(r"\s+", "", text)


def send_confirmed(current: Optional[str], sent_text: str) -> bool:
    """The input was emptied or shrank below the sent message length.

    Whitespace is ignored on both sides: a contenteditable reports its
    text without the line breaks the typist inserted.
    """
    if not isinstance(current, str):
        return False
    value = _compact(current)
    return value == "" or len(value) < len(_compact(sent_text))


def xpath_literal(value: str) -> str:
    """Quote a string for use inside an XPath 1.0 expression."""
    if "'" not in value:
        return f"'{value}'"
    if '"' not in value:
        return f'"{value}"'
    return "concat(" + ", \"'\", ".join(f"'{part}'" for part in value.split("'")) + ")"


def decode_image_payload(image: ImagePayload) -> bytes:
    """Decode raw bytes, plain base64, or a data: URL into image bytes."""
    if isinstance(image, (bytes, bytearray)):
        data = bytes(image)
    else:
        encoded = image.split(",", 1)[1] if image.startswith("data:") else image
        data = base64.b64decode(encoded.strip())
    if not data:
        raise ValueError("Image payload is empty")
    return data


class Typist(Protocol):
    """Strategy that turns text into keystrokes on the focused element."""

    async def type(self, page, text: str) -> None: ...


class HumanTypist:
    """Types one character at a time with jittered, human-looking cadence."""

    def __init__(
        self,
        min_delay_ms: int = 20,
        max_delay_ms: int = 70,
        pause_every: int = 20,
        newline_key: str = "Shift+Enter",
        rng: Optional[random.Random] = None,
    ) -> None:
        self.min_delay_ms = min_delay_ms
        self.max_delay_ms = max_delay_ms
        self.pause_every = pause_every
        self.newline_key = newline_key
        self._rng = rng or random.Random()

    @classmethod
    def from_config(cls, config: BridgeConfig, rng: Optional[random.Random] = None) -> HumanTypist:
        return cls(
            min_delay_ms=config.timing.type_delay_min_ms,
            max_delay_ms=config.timing.type_delay_max_ms,
            pause_every=config.timing.type_pause_every,
            newline_key=config.selectors.newline_key,
            rng=rng,
        )

    def next_delay(self) -> float:
        return self._rng.uniform(self.min_delay_ms, self.max_delay_ms)

    async def type(self, page, text: str) -> None:
        for i, char in enumerate(text):
            if char == "\n":
                await page.keyboard.press(self.newline_key)
            else:
                await page.keyboard.type(char, delay=self.next_delay())
            if i > 0 and i % self.pause_every == 0:
                await page.wait_for_timeout(100 + self._rng.random() * 100)


class ConversationDriver:
    """Sends one message through the page and waits for the reply to settle."""

    def __init__(
        self,
        config: BridgeConfig,
        gate: PageGate,
        typist: Optional[Typist] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.timing = config.timing
        self.selectors = config.selectors
        self.gate = gate
        self.typist = typist or HumanTypist.from_config(config)
        self._clock = clock

    # --- model selection ---

    async def select_model(self, page, requested: Optional[str], default: Optional[str]) -> bool:
        """Switch the active model. Failure leaves the current model in place."""
        if not requested or requested == default:
            logger.info("Skipping model selection (using default %s)", default)
            return False

        logger.info("Opening model dropdown for %s...", requested)
        try:
            opened = await page.evaluate(OPEN_MODEL_DROPDOWN_SCRIPT, self.selectors.combobox)
        except PlaywrightError as e:
            logger.warning("Model dropdown failed, using default: %s", e)
            return False
        if not opened:
            logger.warning("Model dropdown not found, using default")
            return False

        await page.wait_for_timeout(2_000)
        safe_name = requested.replace('"', '\\"')
        try:
            selected = await page.evaluate(
                SELECT_OPTION_SCRIPT, self.selectors.option_by_value.format(model=safe_name)
            )
            if not selected:
                logger.info("Model option not found by value, trying visible text...")
                option = await self.gate.wait_for_xpath(
                    page,
                    self.selectors.option_by_text_xpath.format(model=xpath_literal(requested)),
                    timeout_ms=5_000,
                )
                await self.gate.click_with_retry(page, option)
            await page.wait_for_timeout(2_000)
            logger.info("Model selected: %s", requested)
            return True
        except (PlaywrightError, SelectorNotFoundError) as e:
            logger.warning("Model selection failed, using current model: %s", e)
            try:
                await page.keyboard.press("Escape")
                await page.wait_for_timeout(1_000)
            except PlaywrightError:
                pass
            return False

    # --- typing ---

    async def find_input(self, page):
        for selector in self.selectors.input_candidates:
            try:
                return await self.gate.wait_for_selector(
                    page, selector, timeout_ms=self.timing.input_timeout_ms
                )
            except SelectorNotFoundError:
                continue
        raise InputNotFoundError("Could not find message input")

    async def clear_input(self, page, element) -> None:
        try:
            await page.keyboard.press("Control+A")
            await page.wait_for_timeout(200)
            await page.keyboard.press("Backspace")
            await page.wait_for_timeout(300)
        except PlaywrightError:
            try:
                await asyncio.wait_for(element.evaluate(CLEAR_VALUE_SCRIPT), timeout=5)
            except (PlaywrightError, asyncio.TimeoutError):
                logger.warning("Could not clear input, continuing anyway")

    async def send_message(self, page, text: str, image: Optional[ImagePayload] = None):
        """Type text (and attach an optional image) into the chat input.

        Returns the input element so the send step can refocus it.
        """
        logger.info("Entering message...")
        element = await self.find_input(page)
        await element.click()
        await page.wait_for_timeout(500)
        await self.clear_input(page, element)

        logger.info("Typing message (%d chars)...", len(text))
        await self.typist.type(page, text)
        await page.wait_for_timeout(500)

        # some frameworks ignore synthetic keys without companion events
        try:
            await page.evaluate(FIRE_INPUT_EVENTS_SCRIPT)
        except PlaywrightError as e:
            logger.warning("Could not dispatch input events: %s", e)
        await page.wait_for_timeout(1_000)
        logger.info("Message typed")

        if image:
            await self.upload_image(page, image)
        return element

    async def upload_image(self, page, image: ImagePayload) -> bool:
        """Attach an image via the page's file input. Never raises."""
        logger.info("Handling image upload...")
        try:
            payload = decode_image_payload(image)
        except (ValueError, binascii.Error) as e:
            logger.warning("Image upload skipped, payload not decodable: %s", e)
            return False

        fd, temp_path = tempfile.mkstemp(prefix="upload_", suffix=".png")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(payload)
            for selector in self.selectors.file_input_candidates:
                try:
                    file_input = await self.gate.wait_for_selector(
                        page, selector, timeout_ms=5_000, visible=False
                    )
                except SelectorNotFoundError:
                    continue
                await file_input.set_input_files(temp_path)
                await page.wait_for_timeout(2_000)
                logger.info("Image uploaded (%d bytes)", len(payload))
                return True
            logger.warning("Image upload failed: no file input found")
            return False
        except PlaywrightError as e:
            logger.warning("Image upload failed: %s", e)
            return False
        finally:
            try:
                os.unlink(temp_path)
            except OSError:
                pass

    # --- sending ---

    async def read_input(self, page, input_element=None) -> Optional[str]:
        """Current text of the message input, None if it cannot be read.

        The element the message was typed into is preferred; the first
        input in the document is only a fallback.
        """
        if input_element is not None:
            try:
                return await input_element.evaluate(ELEMENT_VALUE_SCRIPT)
            except PlaywrightError as e:
                logger.debug("Could not read typed-into input, using document query: %s", e)
        try:
            return await page.evaluate(INPUT_VALUE_SCRIPT)
        except PlaywrightError as e:
            logger.debug("Could not read input value: %s", e)
            return None

    async def input_cleared(self, page, sent_text: str, input_element=None) -> bool:
        return send_confirmed(await self.read_input(page, input_element), sent_text)

    async def _is_clickable(self, button) -> bool:
        try:
            return bool(await button.evaluate(CLICKABLE_SCRIPT))
        except PlaywrightError:
            return False

    async def find_send_button(self, page):
        for selector in self.selectors.send_candidates:
            try:
                button = await self.gate.wait_for_selector(
                    page, selector, timeout_ms=self.timing.send_button_timeout_ms
                )
            except SelectorNotFoundError:
                continue
            if await self._is_clickable(button):
                logger.info("Found send button using selector: %s", selector)
                return button

        logger.info("Trying to find send button by text content...")
        try:
            for button in await page.query_selector_all("button"):
                label = await button.evaluate(BUTTON_LABEL_SCRIPT)
                if "send" in (label or "") and await self._is_clickable(button):
                    logger.info("Found send button by text content")
                    return button
        except PlaywrightError as e:
            logger.warning("Could not search all buttons: %s", e)
        return None

    async def _plain_click(self, page, button) -> None:
        await button.scroll_into_view_if_needed()
        await page.wait_for_timeout(500)
        await button.click(delay=100)

    async def _js_click(self, page, button) -> None:
        await button.evaluate(JS_CLICK_SCRIPT)

    async def _dispatch_click(self, page, button) -> None:
        await button.evaluate(DISPATCH_CLICK_SCRIPT)

    async def dispatch_send(self, page, sent_text: str, input_element=None) -> str:
        """Press send with escalating strategies; returns the one that worked.

        Raises MessageNotSentError if no strategy empties the input.
        """
        logger.info("Sending message...")
        button = await self.find_send_button(page)
        if button is not None:
            strategies = (
                ("click", self._plain_click),
                ("js-click", self._js_click),
                ("dispatch-event", self._dispatch_click),
            )
            for name, strategy in strategies:
                try:
                    await strategy(page, button)
                except PlaywrightError as e:
                    logger.warning("Send strategy %s raised: %s", name, e)
                    continue
                await page.wait_for_timeout(self.timing.send_confirm_wait_ms)
                if await self.input_cleared(page, sent_text, input_element):
                    logger.info("Message sent (%s)", name)
                    return name
                logger.info("Input not cleared after %s, escalating...", name)

        logger.info("Send button click failed, trying Enter key...")
        try:
            if input_element is not None:
                await input_element.focus()
            await page.keyboard.press("Enter")
            await page.wait_for_timeout(self.timing.send_confirm_wait_ms)
            if await self.input_cleared(page, sent_text, input_element):
                logger.info("Message sent (enter-key)")
                return "enter-key"
        except PlaywrightError as e:
            logger.warning("Enter key fallback raised: %s", e)

        raise MessageNotSentError("Failed to send message - send could not be confirmed")

    # --- reply ---

    async def is_streaming(self, page) -> bool:
        try:
            return bool(await page.evaluate(STREAMING_SCRIPT, self.selectors.streaming))
        except PlaywrightError as e:
            logger.debug("Error detecting streaming state: %s", e)
            return False

    async def await_stable_reply(
        self,
        page,
        timeout_ms: Optional[int] = None,
        after_turns: int = 0,
    ) -> list[str]:
        """Poll the transcript until the newest reply stops changing.

        Final means: non-empty, not streaming, and identical on
        reply_stable_polls consecutive polls. On timeout the last
        transcript is returned as-is.
        """
        timeout = self.timing.reply_timeout_ms if timeout_ms is None else timeout_ms
        start = self._clock()
        last: Optional[str] = None
        stable = 0
        polls = 0
        while (self._clock() - start) * 1000 < timeout:
            transcript = await extract_transcript(page, self.selectors.message)
            reply = latest_assistant_turn_since(transcript, after_turns)
            streaming = await self.is_streaming(page)
            polls += 1

            if reply and not streaming:
                if reply == last:
                    stable += 1
                else:
                    last = reply
                    stable = 1
                if stable >= self.timing.reply_stable_polls:
                    logger.info(
                        "Reply stable after %d polls (%d chars, %d messages)",
                        polls, len(reply), len(transcript),
                    )
                    return transcript
            else:
                last = None
                stable = 0

            await page.wait_for_timeout(self.timing.reply_poll_ms)

        logger.warning("Timed out after %ds waiting for a stable reply", timeout // 1000)
        return await extract_transcript(page, self.selectors.message)
