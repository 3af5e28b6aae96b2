"""Configuration for the arena session bridge.

Defaults live in the pydantic models below. A JSON config file can override
any section, and a handful of environment variables are layered on top:

    PERSISTENT_PROFILE_DIR      path of a persistent Chrome profile
    ENABLE_PERSISTENT_PROFILE   "1" to use DEFAULT_PROFILE_DIR
    CHROME_EXECUTABLE_PATH      explicit browser binary
    ARENA_BRIDGE_HEADLESS       "0" / "1"
"""

from __future__ import annotations

import json
import logging
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Generic, Mapping, Optional, TypeVar

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

T = TypeVar("T")

# --- Directories ---
BRIDGE_HOME = Path.home() / ".arena-bridge"
DEFAULT_SESSION_PATH = BRIDGE_HOME / "cookies.json"
DEFAULT_PROFILE_DIR = BRIDGE_HOME / "chrome-profile"
DEFAULT_ARTIFACT_DIR = BRIDGE_HOME / "runs"
DEFAULT_SELECTORS_PATH = BRIDGE_HOME / "arena-selectors.json"

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/128.0.0.0 Safari/537.36"
)


@dataclass
class Result(Generic[T]):
    """Type-safe result wrapper for operations that can fail."""

    success: bool
    data: Optional[T] = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    @classmethod
    def ok(cls, data: T) -> Result[T]:
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: str, code: str = "UNKNOWN") -> Result[T]:
        return cls(success=False, error=error, error_code=code)


class SiteConfig(BaseModel):
    """Target site coordinates."""

    root_url: str = Field(default="https://lmarena.ai")
    chat_url: str = Field(default="https://lmarena.ai/?mode=direct")
    brand_text: str = Field(
        default="lmarena",
        description="Lowercase text that only the real app renders",
    )
    default_model: str = Field(default="gemini-2.5-pro")


class BrowserConfig(BaseModel):
    """Browser launch settings."""

    headless: bool = Field(default=True)
    executable_path: Optional[str] = None
    profile_dir: Optional[Path] = Field(
        default=None,
        description="Persistent profile directory; None launches an ephemeral context",
    )
    viewport_width: int = Field(default=1280, ge=320)
    viewport_height: int = Field(default=900, ge=240)
    user_agent: str = Field(default=DEFAULT_USER_AGENT)
    locale: str = Field(default="en-US")
    navigation_timeout_ms: int = Field(default=120_000, ge=1_000)


class TimingConfig(BaseModel):
    """Poll intervals and timeouts, all in milliseconds."""

    readiness_timeout_ms: int = Field(default=90_000, ge=0)
    readiness_recheck_ms: int = Field(default=30_000, ge=0)
    readiness_quick_ms: int = Field(default=10_000, ge=0)
    readiness_poll_ms: int = Field(default=2_000, gt=0)
    challenge_max_wait_ms: int = Field(default=120_000, ge=0)
    challenge_poll_ms: int = Field(default=3_000, gt=0)
    selector_timeout_ms: int = Field(default=30_000, gt=0)
    input_timeout_ms: int = Field(default=15_000, gt=0)
    send_button_timeout_ms: int = Field(default=5_000, gt=0)
    send_confirm_wait_ms: int = Field(default=2_000, ge=0)
    nav_retries: int = Field(default=3, ge=1, le=10)
    reply_timeout_ms: int = Field(default=300_000, gt=0)
    reply_poll_ms: int = Field(default=500, gt=0)
    reply_stable_polls: int = Field(default=2, ge=1)
    min_reply_length: int = Field(default=5, ge=0)
    type_delay_min_ms: int = Field(default=20, ge=0)
    type_delay_max_ms: int = Field(default=70, ge=0)
    type_pause_every: int = Field(default=20, ge=1)


class SelectorsConfig(BaseModel):
    """DOM hooks for the target chat UI."""

    message: str = Field(default="ol div.prose.prose-sm")
    streaming: str = Field(default=".cursor-blink, [data-state='streaming']")
    combobox: str = Field(default='button[role="combobox"]')
    option_by_value: str = Field(default='div[role="option"][data-value="{model}"]')
    option_by_text_xpath: str = Field(
        default="//*[contains(@role, 'option') or contains(@class, 'option')]"
        "//*[normalize-space(text())={model}]"
    )
    agreement_xpath: str = Field(
        default="//button[contains(., 'Agree') or contains(., 'I agree') or contains(., 'Accept')]"
    )
    input_candidates: list[str] = Field(
        default_factory=lambda: [
            'textarea[name="message"]',
            "textarea",
            '[contenteditable="true"]',
            "form textarea",
            'div[contenteditable="true"]',
        ]
    )
    send_candidates: list[str] = Field(
        default_factory=lambda: [
            'button[type="submit"]',
            'button[aria-label*="send" i]',
            'button[title*="send" i]',
            'button[data-testid*="send" i]',
            'form button[type="submit"]',
            "button:has(svg)",
            'button[class*="send" i]',
            'button[class*="submit" i]',
        ]
    )
    file_input_candidates: list[str] = Field(
        default_factory=lambda: [
            'input[type="file"]',
            'input[accept*="image"]',
            'input[accept*="image/*"]',
        ]
    )
    newline_key: str = Field(
        default="Shift+Enter",
        description="Key chord that inserts a line break without submitting",
    )


class SessionConfig(BaseModel):
    """Session file locations."""

    session_path: Path = Field(default=DEFAULT_SESSION_PATH)
    backup_dir: Optional[Path] = Field(
        default=None,
        description="Where backups go; defaults to the session file's directory",
    )
    export_on_launch: bool = Field(default=True)


class ArtifactsConfig(BaseModel):
    """Forensic screenshot/HTML capture on failures."""

    enabled: bool = Field(default=False)
    directory: Path = Field(default=DEFAULT_ARTIFACT_DIR)
    max_per_run: int = Field(default=10, ge=0, le=100)
    jpeg_quality: int = Field(default=80, ge=10, le=100)


class LoggingConfig(BaseModel):
    """Logging output and redaction settings."""

    json_logs: bool = Field(default=False)
    redact_patterns: list[str] = Field(
        default_factory=lambda: [
            r"eyJ[\w-]+\.[\w-]+\.[\w-]+",
            r"cf_clearance=[\w.\-]+",
            r"session[-_]?token[\"']?\s*[:=]\s*[\"']?[\w.\-%]+",
        ]
    )


class BridgeConfig(BaseModel):
    """Root configuration model."""

    site: SiteConfig = Field(default_factory=SiteConfig)
    browser: BrowserConfig = Field(default_factory=BrowserConfig)
    timing: TimingConfig = Field(default_factory=TimingConfig)
    selectors: SelectorsConfig = Field(default_factory=SelectorsConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    artifacts: ArtifactsConfig = Field(default_factory=ArtifactsConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    selectors_path: Optional[Path] = Field(default=None)


def load_config(config_path: str | Path | None = None) -> Result[BridgeConfig]:
    """Load and validate bridge config from a JSON file."""
    if config_path is None:
        return Result.ok(BridgeConfig())

    path = Path(config_path)
    if not path.exists():
        logger.info("Config not found at %s, using defaults", path)
        return Result.ok(BridgeConfig())

    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
        config = BridgeConfig.model_validate(raw)
        return Result.ok(config)
    except json.JSONDecodeError as e:
        return Result.fail(f"Invalid JSON in {path}: {e}", "JSON_ERROR")
    except Exception as e:
        return Result.fail(f"Config validation failed: {e}", "VALIDATION_ERROR")


def resolve_profile_dir(environ: Mapping[str, str]) -> Optional[Path]:
    """Pick the persistent profile directory from the environment, if any.

    An explicit PERSISTENT_PROFILE_DIR wins; the ENABLE_PERSISTENT_PROFILE
    flag alone falls back to DEFAULT_PROFILE_DIR.
    """
    explicit = (environ.get("PERSISTENT_PROFILE_DIR") or "").strip()
    if explicit:
        return Path(explicit).expanduser().resolve()
    if environ.get("ENABLE_PERSISTENT_PROFILE") == "1":
        return DEFAULT_PROFILE_DIR
    return None


def apply_env(config: BridgeConfig, environ: Mapping[str, str] | None = None) -> BridgeConfig:
    """Return a copy of config with environment overrides applied."""
    env = os.environ if environ is None else environ
    browser_updates: dict = {}

    profile_dir = resolve_profile_dir(env)
    if profile_dir is not None:
        browser_updates["profile_dir"] = profile_dir

    executable = (env.get("CHROME_EXECUTABLE_PATH") or "").strip()
    if executable:
        browser_updates["executable_path"] = executable

    headless = env.get("ARENA_BRIDGE_HEADLESS")
    if headless in ("0", "1"):
        browser_updates["headless"] = headless == "1"

    if not browser_updates:
        return config
    browser = config.browser.model_copy(update=browser_updates)
    return config.model_copy(update={"browser": browser})


def load_selectors(config: BridgeConfig) -> BridgeConfig:
    """Merge selector overrides from the selectors JSON file, if present."""
    path = config.selectors_path or DEFAULT_SELECTORS_PATH
    if not path.exists():
        return config
    try:
        overrides = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        logger.warning("Ignoring unreadable selectors file %s: %s", path, e)
        return config
    if not isinstance(overrides, dict):
        logger.warning("Ignoring selectors file %s: expected a JSON object", path)
        return config

    merged = config.selectors.model_dump()
    merged.update({k: v for k, v in overrides.items() if k in merged})
    try:
        selectors = SelectorsConfig.model_validate(merged)
    except Exception as e:
        logger.warning("Ignoring invalid selectors file %s: %s", path, e)
        return config
    logger.info("Loaded %d selector overrides from %s", len(overrides), path.name)
    return config.model_copy(update={"selectors": selectors})


def validate_config(config: BridgeConfig) -> tuple[list[str], list[str]]:
    """Validate runtime prerequisites for the given config.

    Returns (errors, warnings). Errors are fatal, warnings are informational.
    """
    errors: list[str] = []
    warnings: list[str] = []

    try:
        from playwright.async_api import async_playwright  # noqa: F401
    except ImportError:
        errors.append("Playwright not installed: pip install playwright && playwright install chromium")

    if not config.session.session_path.exists():
        warnings.append(
            f"No session file: {config.session.session_path}. "
            "The browser will start unauthenticated."
        )

    dirs = [config.session.session_path.parent]
    if config.browser.profile_dir is not None:
        dirs.append(config.browser.profile_dir)
    if config.artifacts.enabled:
        dirs.append(config.artifacts.directory)
    for d in dirs:
        if not d.exists():
            try:
                d.mkdir(parents=True, exist_ok=True)
            except Exception as e:
                errors.append(f"Cannot create directory {d}: {e}")

    if config.timing.type_delay_max_ms < config.timing.type_delay_min_ms:
        errors.append("timing.type_delay_max_ms must be >= timing.type_delay_min_ms")

    return errors, warnings


def print_validation(config: BridgeConfig) -> bool:
    """Run validation and print results. Returns True if no fatal errors."""
    errors, warnings = validate_config(config)
    for w in warnings:
        print(f"  WARNING: {w}", file=sys.stderr)
    for e in errors:
        print(f"  ERROR: {e}", file=sys.stderr)
    if errors:
        print("  Startup validation failed", file=sys.stderr)
        return False
    return True
