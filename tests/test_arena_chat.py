"""Tests for arena_chat: typing, sending, image upload, reply polling."""

import asyncio
import base64
import random
from pathlib import Path

import pytest
from playwright.async_api import Error as PlaywrightError

from arena_chat import (
    CLICKABLE_SCRIPT,
    ELEMENT_VALUE_SCRIPT,
    INPUT_VALUE_SCRIPT,
    JS_CLICK_SCRIPT,
    OPEN_MODEL_DROPDOWN_SCRIPT,
    SELECT_OPTION_SCRIPT,
    STREAMING_SCRIPT,
    ConversationDriver,
    HumanTypist,
    decode_image_payload,
    send_confirmed,
    xpath_literal,
)
from arena_config import BridgeConfig
from arena_errors import InputNotFoundError, MessageNotSentError
from arena_gate import PageGate
from arena_history import TRANSCRIPT_SCRIPT
from helpers import FakeClock, FakePage, make_element, sequence

PNG_BYTES = b"\x89PNG\r\n\x1a\nfake"


def driver_and_page(config: BridgeConfig, **page_kwargs):
    clock = FakeClock()
    gate = PageGate(config, clock=clock)
    driver = ConversationDriver(config, gate, typist=HumanTypist(rng=random.Random(3)), clock=clock)
    return driver, FakePage(clock=clock, **page_kwargs)


class TestPureHelpers:
    def test_send_confirmed(self) -> None:
        assert send_confirmed("", "hello")
        assert send_confirmed("   ", "hello")
        assert send_confirmed("hel", "hello")
        assert not send_confirmed("hello", "hello")
        assert not send_confirmed(None, "hello")

    def test_trailing_whitespace_still_in_input(self) -> None:
        assert not send_confirmed("hello\n", "hello\n")
        assert not send_confirmed("hello  ", "hello  ")
        assert send_confirmed("\n", "hello\n")

    def test_contenteditable_drops_line_breaks(self) -> None:
        assert not send_confirmed("line1line2", "line1\nline2")
        assert send_confirmed("line1", "line1\nline2")

    def test_xpath_literal(self) -> None:
        assert xpath_literal("gpt-5") == "'gpt-5'"
        assert xpath_literal("o'brien") == '"o\'brien"'
        assert xpath_literal("it's \"x\"") == "concat('it', \"'\", 's \"x\"')"

    def test_decode_data_url(self) -> None:
        url = "data:image/png;base64," + base64.b64encode(PNG_BYTES).decode()
        assert decode_image_payload(url) == PNG_BYTES

    def test_decode_plain_base64_and_bytes(self) -> None:
        assert decode_image_payload(base64.b64encode(PNG_BYTES).decode()) == PNG_BYTES
        assert decode_image_payload(PNG_BYTES) == PNG_BYTES

    def test_decode_empty(self) -> None:
        with pytest.raises(ValueError):
            decode_image_payload(b"")


class TestHumanTypist:
    def test_cadence(self) -> None:
        page = FakePage()
        typist = HumanTypist(rng=random.Random(1))
        text = "x" * 30 + "\n" + "y" * 14
        asyncio.run(typist.type(page, text))

        assert page.keyboard.typed == "x" * 30 + "y" * 14
        assert page.keyboard.pressed == ["Shift+Enter"]
        assert all(20 <= d <= 70 for d in page.keyboard.delays)
        # pauses after characters 20 and 40
        assert len(page.waits) == 2
        assert all(100 <= w <= 200 for w in page.waits)

    def test_from_config(self, config: BridgeConfig) -> None:
        typist = HumanTypist.from_config(config)
        assert (typist.min_delay_ms, typist.max_delay_ms) == (20, 70)
        assert typist.pause_every == 20
        assert typist.newline_key == "Shift+Enter"


class TestSelectModel:
    def test_default_is_noop(self, config: BridgeConfig) -> None:
        driver, page = driver_and_page(config)
        assert asyncio.run(driver.select_model(page, "gemini-2.5-pro", "gemini-2.5-pro")) is False
        assert asyncio.run(driver.select_model(page, None, "gemini-2.5-pro")) is False
        assert page.evaluated == []

    def test_select_by_value(self, config: BridgeConfig) -> None:
        seen = []
        driver, page = driver_and_page(config, scripts={
            OPEN_MODEL_DROPDOWN_SCRIPT: True,
            SELECT_OPTION_SCRIPT: lambda sel: seen.append(sel) or True,
        })
        assert asyncio.run(driver.select_model(page, "claude-opus-4", "gemini-2.5-pro")) is True
        assert seen == ['div[role="option"][data-value="claude-opus-4"]']

    def test_fallback_to_visible_text(self, config: BridgeConfig) -> None:
        option = make_element()
        xpath = config.selectors.option_by_text_xpath.format(model="'gpt-5'")
        driver, page = driver_and_page(
            config,
            scripts={OPEN_MODEL_DROPDOWN_SCRIPT: True, SELECT_OPTION_SCRIPT: False},
            elements={f"xpath={xpath}": option},
        )
        assert asyncio.run(driver.select_model(page, "gpt-5", "gemini-2.5-pro")) is True
        option.click.assert_awaited()

    def test_visible_text_with_quote(self, config: BridgeConfig) -> None:
        option = make_element()
        xpath = config.selectors.option_by_text_xpath.format(model='"llama\'s-70b"')
        driver, page = driver_and_page(
            config,
            scripts={OPEN_MODEL_DROPDOWN_SCRIPT: True, SELECT_OPTION_SCRIPT: False},
            elements={f"xpath={xpath}": option},
        )
        assert asyncio.run(driver.select_model(page, "llama's-70b", "gemini-2.5-pro")) is True
        assert "Escape" not in page.keyboard.pressed

    def test_failure_presses_escape(self, config: BridgeConfig) -> None:
        driver, page = driver_and_page(
            config, scripts={OPEN_MODEL_DROPDOWN_SCRIPT: True, SELECT_OPTION_SCRIPT: False}
        )
        assert asyncio.run(driver.select_model(page, "gpt-5", "gemini-2.5-pro")) is False
        assert page.keyboard.pressed == ["Escape"]

    def test_missing_dropdown(self, config: BridgeConfig) -> None:
        driver, page = driver_and_page(config, scripts={OPEN_MODEL_DROPDOWN_SCRIPT: False})
        assert asyncio.run(driver.select_model(page, "gpt-5", "gemini-2.5-pro")) is False


class TestSendMessage:
    def test_types_into_first_found_input(self, config: BridgeConfig) -> None:
        box = make_element()
        driver, page = driver_and_page(config, elements={"textarea": box})
        element = asyncio.run(driver.send_message(page, "hi\nthere"))

        assert element is box
        box.click.assert_awaited()
        assert page.keyboard.pressed[:2] == ["Control+A", "Backspace"]
        assert "Shift+Enter" in page.keyboard.pressed
        assert page.keyboard.typed == "hithere"

    def test_no_input(self, config: BridgeConfig) -> None:
        driver, page = driver_and_page(config)
        with pytest.raises(InputNotFoundError):
            asyncio.run(driver.send_message(page, "hi"))

    def test_with_image_uploads(self, config: BridgeConfig) -> None:
        box, file_input = make_element(), make_element()
        driver, page = driver_and_page(
            config, elements={"textarea": box, 'input[type="file"]': file_input}
        )
        asyncio.run(driver.send_message(page, "look", PNG_BYTES))
        file_input.set_input_files.assert_awaited_once()


class TestUploadImage:
    def test_temp_file_removed_after_success(self, config: BridgeConfig) -> None:
        paths = []
        file_input = make_element()
        file_input.set_input_files.side_effect = lambda p: paths.append(Path(p))
        driver, page = driver_and_page(config, elements={'input[type="file"]': file_input})

        assert asyncio.run(driver.upload_image(page, PNG_BYTES)) is True
        assert paths[0].name.startswith("upload_") and paths[0].suffix == ".png"
        assert not paths[0].exists()

    def test_temp_file_removed_after_failure(self, config: BridgeConfig) -> None:
        paths = []

        def fail(p):
            paths.append(Path(p))
            assert Path(p).read_bytes() == PNG_BYTES
            raise PlaywrightError("input detached")

        file_input = make_element()
        file_input.set_input_files.side_effect = fail
        driver, page = driver_and_page(config, elements={'input[type="file"]': file_input})

        assert asyncio.run(driver.upload_image(page, PNG_BYTES)) is False
        assert not paths[0].exists()

    def test_no_file_input(self, config: BridgeConfig) -> None:
        driver, page = driver_and_page(config)
        assert asyncio.run(driver.upload_image(page, PNG_BYTES)) is False

    def test_undecodable_payload(self, config: BridgeConfig) -> None:
        driver, page = driver_and_page(config)
        assert asyncio.run(driver.upload_image(page, "data:image/png;base64,@@@")) is False


class TestDispatchSend:
    def setup_page(self, config: BridgeConfig, button):
        state = {"value": "hello"}
        driver, page = driver_and_page(
            config,
            scripts={INPUT_VALUE_SCRIPT: lambda _: state["value"]},
            elements={'button[type="submit"]': button} if button is not None else {},
        )
        return driver, page, state

    def test_plain_click(self, config: BridgeConfig) -> None:
        button = make_element()
        driver, page, state = self.setup_page(config, button)
        button.click.side_effect = lambda **kw: state.update(value="")
        assert asyncio.run(driver.dispatch_send(page, "hello")) == "click"

    def test_escalates_to_js_click(self, config: BridgeConfig) -> None:
        button = make_element()
        driver, page, state = self.setup_page(config, button)

        def evaluate(script, *args):
            if script == JS_CLICK_SCRIPT:
                state["value"] = ""
            return True

        button.evaluate.side_effect = evaluate
        assert asyncio.run(driver.dispatch_send(page, "hello")) == "js-click"
        button.click.assert_awaited_once()

    def test_enter_key_fallback(self, config: BridgeConfig) -> None:
        driver, page, state = self.setup_page(config, None)
        box = make_element()
        box.evaluate.side_effect = lambda script, *a: state["value"]
        page.on_press = lambda key: state.update(value="") if key == "Enter" else None
        assert asyncio.run(driver.dispatch_send(page, "hello", box)) == "enter-key"
        box.focus.assert_awaited_once()

    def test_trailing_newline_left_in_input_is_not_sent(self, config: BridgeConfig) -> None:
        driver, page, state = self.setup_page(config, make_element())
        state["value"] = "hello\n"
        with pytest.raises(MessageNotSentError):
            asyncio.run(driver.dispatch_send(page, "hello\n"))

    def test_multiline_contenteditable_left_in_input_is_not_sent(self, config: BridgeConfig) -> None:
        driver, page, state = self.setup_page(config, make_element())
        state["value"] = "line1line2"
        with pytest.raises(MessageNotSentError):
            asyncio.run(driver.dispatch_send(page, "line1\nline2"))

    def test_reads_the_typed_into_input(self, config: BridgeConfig) -> None:
        # an empty hidden textarea earlier in the document must not confirm
        driver, page, _ = self.setup_page(config, make_element())
        page.scripts[INPUT_VALUE_SCRIPT] = ""
        box = make_element()
        box.evaluate.side_effect = lambda script, *a: "hello" if script == ELEMENT_VALUE_SCRIPT else True
        with pytest.raises(MessageNotSentError):
            asyncio.run(driver.dispatch_send(page, "hello", box))

    def test_detached_input_falls_back_to_document(self, config: BridgeConfig) -> None:
        button = make_element()
        driver, page, state = self.setup_page(config, button)
        button.click.side_effect = lambda **kw: state.update(value="")
        box = make_element()
        box.evaluate.side_effect = PlaywrightError("Element is not attached to the DOM")
        assert asyncio.run(driver.dispatch_send(page, "hello", box)) == "click"

    def test_nothing_works(self, config: BridgeConfig) -> None:
        driver, page, _ = self.setup_page(config, make_element())
        with pytest.raises(MessageNotSentError) as exc:
            asyncio.run(driver.dispatch_send(page, "hello"))
        assert exc.value.step == "send"
        assert page.keyboard.pressed == ["Enter"]

    def test_unclickable_button_skipped_for_text_scan(self, config: BridgeConfig) -> None:
        hidden = make_element()
        hidden.evaluate.return_value = False
        labelled = make_element()
        labelled.evaluate.side_effect = lambda script, *a: True if script == CLICKABLE_SCRIPT else "send message"
        driver, page, state = self.setup_page(config, hidden)
        page.all_elements["button"] = [labelled]
        labelled.click.side_effect = lambda **kw: state.update(value="")

        assert asyncio.run(driver.find_send_button(page)) is labelled
        assert asyncio.run(driver.dispatch_send(page, "hello")) == "click"


class TestAwaitStableReply:
    def test_two_identical_polls(self, config: BridgeConfig) -> None:
        driver, page = driver_and_page(config, scripts={
            TRANSCRIPT_SCRIPT: ["u1", "the answer"],
            STREAMING_SCRIPT: False,
        })
        transcript = asyncio.run(driver.await_stable_reply(page, timeout_ms=10_000))
        assert transcript == ["u1", "the answer"]
        assert page.evaluated.count(TRANSCRIPT_SCRIPT) == 2

    def test_changing_reply_never_settles(self, config: BridgeConfig) -> None:
        counter = iter(range(10_000))
        driver, page = driver_and_page(config, scripts={
            TRANSCRIPT_SCRIPT: lambda _: ["u1", f"partial {next(counter)}"],
            STREAMING_SCRIPT: False,
        })
        asyncio.run(driver.await_stable_reply(page, timeout_ms=5_000))
        assert page.clock.now - 1000.0 >= 5

    def test_streaming_resets_count(self, config: BridgeConfig) -> None:
        driver, page = driver_and_page(config, scripts={
            TRANSCRIPT_SCRIPT: ["u1", "done"],
            STREAMING_SCRIPT: sequence(False, True, False, False),
        })
        asyncio.run(driver.await_stable_reply(page, timeout_ms=10_000))
        assert page.evaluated.count(TRANSCRIPT_SCRIPT) == 4

    def test_empty_reply_not_final(self, config: BridgeConfig) -> None:
        driver, page = driver_and_page(config, scripts={
            TRANSCRIPT_SCRIPT: ["u1", ""],
            STREAMING_SCRIPT: False,
        })
        asyncio.run(driver.await_stable_reply(page, timeout_ms=3_000))
        assert page.clock.now - 1000.0 >= 3

    def test_baseline_skips_previous_reply(self, config: BridgeConfig) -> None:
        old = ["u1", "a1", "u2"]
        new = ["u1", "a1", "u2", "a2"]
        driver, page = driver_and_page(config, scripts={
            TRANSCRIPT_SCRIPT: sequence(old, old, old, new),
            STREAMING_SCRIPT: False,
        })
        transcript = asyncio.run(driver.await_stable_reply(page, timeout_ms=10_000, after_turns=2))
        assert transcript == new

    def test_streaming_error_counts_as_idle(self, config: BridgeConfig) -> None:
        driver, page = driver_and_page(config, scripts={STREAMING_SCRIPT: PlaywrightError("gone")})
        assert asyncio.run(driver.is_streaming(page)) is False
