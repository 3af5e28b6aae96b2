"""Facade and command line for the arena session bridge.

Usage:
    arena-bridge "Explain monads briefly" --model claude-sonnet-4
    arena-bridge --save-session my-backup.json --headful
    arena-bridge --validate

Logs go to stderr; the JSON result is the only thing written to stdout.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
import time
from pathlib import Path
from typing import Any, Callable, Mapping, Optional, Sequence, Union

from playwright.async_api import Error as PlaywrightError
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from arena_artifacts import ArtifactRecorder
from arena_browser import BrowserHandle, BrowserLifecycle
from arena_chat import ConversationDriver
from arena_config import BridgeConfig, apply_env, load_config, load_selectors, print_validation
from arena_errors import BridgeError, PageUnavailableError, ReplyTooShortError
from arena_gate import PageGate
from arena_history import (
    extract_transcript,
    latest_assistant_turn_since,
    nth_assistant_turn,
    user_turn_count,
)
from arena_session import SessionFileResult, SessionStore
from log_redactor import RedactingFilter

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"


class ConversationRequest(BaseModel):
    """One chat turn. Accepts the short wire names (model, message, image)."""

    model_config = ConfigDict(populate_by_name=True)

    target_model: Optional[str] = Field(default=None, alias="model")
    message_text: str = Field(alias="message", min_length=1)
    image: Optional[Union[bytes, str]] = None

    @field_validator("message_text")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("message must not be blank")
        return value


class ConversationResult(BaseModel):
    reply_text: str
    transcript_length: int
    nth_reply_text: Optional[str] = None
    model: Optional[str] = None
    execution_time_ms: int = 0

    def to_response(self) -> dict[str, Any]:
        return {
            "response": self.reply_text,
            "latest_response": self.reply_text,
            "nth_response": self.nth_reply_text,
            "total_messages": self.transcript_length,
            "model": self.model,
            "execution_time_ms": self.execution_time_ms,
        }


class ArenaBridge:
    """Wires the components together and serializes conversations."""

    def __init__(
        self,
        config: BridgeConfig,
        session_store: Optional[SessionStore] = None,
        gate: Optional[PageGate] = None,
        driver: Optional[ConversationDriver] = None,
        lifecycle: Optional[BrowserLifecycle] = None,
        artifacts: Optional[ArtifactRecorder] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self.session_store = session_store or SessionStore(config)
        self.gate = gate or PageGate(config)
        self.artifacts = artifacts or ArtifactRecorder(config.artifacts)
        self.driver = driver or ConversationDriver(config, self.gate)
        self.lifecycle = lifecycle or BrowserLifecycle(
            config, self.session_store, self.gate, artifacts=self.artifacts
        )
        self._clock = clock
        self._lock = asyncio.Lock()

    async def acquire_handle(self) -> BrowserHandle:
        return await self.lifecycle.acquire()

    async def run_conversation(self, page, request: ConversationRequest) -> ConversationResult:
        """Send one message and return the settled reply.

        Raises BridgeError subclasses; the caller decides how to report them.
        """
        async with self._lock:
            start = self._clock()
            site = self.config.site

            await self.gate.ensure_ready(page)
            selected = await self.driver.select_model(page, request.target_model, site.default_model)
            model = request.target_model if selected else site.default_model

            baseline = len(await extract_transcript(page, self.config.selectors.message))
            element = await self.driver.send_message(page, request.message_text, request.image)
            await self.driver.dispatch_send(page, request.message_text, element)
            await page.wait_for_timeout(2_000)

            await self.gate.resolve_challenge(page)
            logger.info("Waiting for AI response...")
            transcript = await self.driver.await_stable_reply(page, after_turns=baseline)
            reply = latest_assistant_turn_since(transcript, baseline)
            if not reply or len(reply) < self.config.timing.min_reply_length:
                raise ReplyTooShortError("Timed out waiting for response or response too short")

            elapsed = int((self._clock() - start) * 1000)
            logger.info("Response received (%d chars, %d messages, %.1fs)",
                        len(reply), len(transcript), elapsed / 1000)
            return ConversationResult(
                reply_text=reply,
                transcript_length=len(transcript),
                nth_reply_text=nth_assistant_turn(transcript, user_turn_count(transcript)),
                model=model,
                execution_time_ms=elapsed,
            )

    async def chat(self, request: Union[ConversationRequest, Mapping[str, Any]]) -> dict[str, Any]:
        """Full pipeline that never raises: returns a response dict or {error, step}."""
        start = self._clock()
        try:
            if not isinstance(request, ConversationRequest):
                request = ConversationRequest.model_validate(request)
        except ValidationError as e:
            return {"error": f"Invalid request: {e.errors()[0]['msg']}", "step": "request"}

        self.artifacts.start_run(request.message_text)
        handle: Optional[BrowserHandle] = None
        try:
            handle = await self.acquire_handle()
            result = await self.run_conversation(handle.page, request)
            return result.to_response()
        except BridgeError as e:
            logger.error("Chat failed at step '%s': %s", e.step, e)
            step, message = e.step, str(e)
        except PlaywrightError as e:
            logger.error("Browser error during chat: %s", e)
            step, message = "browser", str(e)
        except Exception as e:
            logger.exception("Unexpected error during chat")
            step, message = "unknown", str(e) or type(e).__name__

        if handle is not None:
            if handle.page is not None:
                await self.artifacts.capture(handle.page, f"{step}_failure")
            if not await handle.is_alive():
                await self.lifecycle.invalidate(handle)
        return {
            "error": message,
            "step": step,
            "execution_time_ms": int((self._clock() - start) * 1000),
        }

    async def _live_page(self):
        handle = await self.acquire_handle()
        if handle.page is None or handle.page.is_closed():
            raise PageUnavailableError("Browser page is closed")
        return handle.page

    async def load_session(self) -> SessionFileResult:
        """Re-apply the canonical session file to the live page."""
        snapshot = self.session_store.load()
        if snapshot is None:
            return SessionFileResult(success=False, error="No usable session file found")
        try:
            page = await self._live_page()
            report = await self.session_store.apply(snapshot, page)
        except (BridgeError, PlaywrightError) as e:
            logger.error("Could not load session: %s", e)
            return SessionFileResult(success=False, error=str(e))
        await self.gate.wait_until_dom_settled(
            page, self.config.timing.readiness_quick_ms, url=self.config.site.chat_url
        )
        return SessionFileResult(
            success=report.cookies_ok,
            file_name=self.session_store.session_path.name,
            file_path=str(self.session_store.session_path),
            cookie_count=report.applied,
            storage_count=report.storage_applied,
            error=None if report.cookies_ok else "Cookies could not be installed",
        )

    async def save_session(self, name: Optional[str] = None) -> SessionFileResult:
        try:
            page = await self._live_page()
        except (BridgeError, PlaywrightError) as e:
            return SessionFileResult(success=False, error=str(e))
        return await self.session_store.backup(page, name)

    async def export_session(self) -> SessionFileResult:
        try:
            page = await self._live_page()
        except (BridgeError, PlaywrightError) as e:
            return SessionFileResult(success=False, error=str(e))
        return await self.session_store.export(page)

    async def close(self) -> None:
        await self.lifecycle.close()


class JsonFormatter(logging.Formatter):
    """Structured JSON log formatter for machine-readable output."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload)


def setup_logging(
    verbose: bool = False,
    json_logs: bool = False,
    redact_patterns: Sequence[str] = (),
) -> logging.Handler:
    """Route all logging to stderr with secrets redacted."""
    handler = logging.StreamHandler(sys.stderr)
    if json_logs:
        handler.setFormatter(JsonFormatter(datefmt=LOG_DATEFMT))
    else:
        handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT))
    handler.addFilter(RedactingFilter(redact_patterns))
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        handlers=[handler],
        force=True,
    )
    return handler


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Drive a browser chat session as a request/response endpoint")
    parser.add_argument("message", nargs="?", help="Message to send")
    parser.add_argument("--model", default=None, help="Model to select before sending")
    parser.add_argument("--image", default=None, help="Image file to attach")
    parser.add_argument("--config", default=None, help="Path to a JSON config file")
    parser.add_argument("--headful", action="store_true", help="Run with a visible browser")
    parser.add_argument("--save-session", nargs="?", const="", default=None, metavar="NAME",
                        help="Write a session backup (optionally with this file name)")
    parser.add_argument("--export-session", action="store_true", help="Overwrite the canonical session file")
    parser.add_argument("--load-session", action="store_true", help="Re-apply the canonical session file")
    parser.add_argument("--validate", action="store_true", help="Check prerequisites and exit")
    parser.add_argument("--json-logs", action="store_true", help="Output structured JSON logs")
    parser.add_argument("--verbose", action="store_true", help="Enable verbose logging")
    return parser


def resolve_config(args: argparse.Namespace) -> BridgeConfig:
    result = load_config(args.config)
    if not result.success:
        raise SystemExit(f"Config error ({result.error_code}): {result.error}")
    config = load_selectors(apply_env(result.data))
    if args.headful:
        config = config.model_copy(
            update={"browser": config.browser.model_copy(update={"headless": False})}
        )
    return config


async def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    config = resolve_config(args)
    setup_logging(args.verbose, args.json_logs or config.logging.json_logs, config.logging.redact_patterns)

    if args.validate:
        return 0 if print_validation(config) else 1

    wants_session_op = args.load_session or args.export_session or args.save_session is not None
    if not args.message and not wants_session_op:
        parser.error("A message is required unless a session option is given")

    image: Optional[bytes] = None
    if args.image:
        try:
            image = Path(args.image).expanduser().read_bytes()
        except OSError as e:
            parser.error(f"Cannot read image {args.image}: {e}")

    bridge = ArenaBridge(config)
    output: dict[str, Any] = {}
    try:
        if args.load_session:
            output["load_session"] = (await bridge.load_session()).to_response()
        if args.message:
            output.update(await bridge.chat({"model": args.model, "message": args.message, "image": image}))
        if args.save_session is not None:
            output["save_session"] = (await bridge.save_session(args.save_session or None)).to_response()
        if args.export_session:
            output["export_session"] = (await bridge.export_session()).to_response()
    finally:
        await bridge.close()

    print(json.dumps(output, indent=2, default=str))
    failed = "error" in output or any(
        isinstance(v, dict) and v.get("success") is False for v in output.values()
    )
    return 1 if failed else 0


def cli() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    cli()
