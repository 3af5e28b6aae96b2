"""Persistent session state: cookies + localStorage snapshots on disk.

The canonical session file comes in two shapes, both accepted on load:

  1. a bare array of cookie objects: [{"name": ..., "value": ...}, ...]
  2. a full snapshot: {"cookies": [...], "localStorage": {...},
                       "savedAt": "...", "url": "..."}

Exports always write shape 2.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Literal, Optional
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from arena_config import BridgeConfig
from arena_errors import PageUnavailableError

logger = logging.getLogger(__name__)

SessionFileShape = Literal["cookie-array", "snapshot"]

SAME_SITE_VALUES = {"strict": "Strict", "lax": "Lax", "none": "None"}
AUTH_COOKIE_HINTS = ("session", "auth", "token")

STORAGE_READ_SCRIPT = """() => {
    const items = {};
    for (let i = 0; i < localStorage.length; i++) {
        const key = localStorage.key(i);
        items[key] = localStorage.getItem(key);
    }
    return items;
}"""

STORAGE_WRITE_SCRIPT = """(items) => {
    let written = 0;
    for (const [key, value] of Object.entries(items)) {
        window.localStorage.setItem(key, value);
        written++;
    }
    return written;
}"""


class Cookie(BaseModel):
    """One browser cookie as exported by Playwright or Puppeteer."""

    model_config = ConfigDict(extra="allow", populate_by_name=True, frozen=True)

    name: str
    value: str = ""
    domain: Optional[str] = None
    path: str = "/"
    expires: Optional[float] = None
    http_only: Optional[bool] = Field(default=None, alias="httpOnly")
    secure: Optional[bool] = None
    same_site: Optional[str] = Field(default=None, alias="sameSite")
    partition_key: Optional[Any] = Field(default=None, alias="partitionKey")

    @property
    def partitioned(self) -> bool:
        return bool(self.partition_key)

    def is_expired(self, now: float) -> bool:
        # expires <= 0 is how browsers mark a session cookie
        return self.expires is not None and 0 < self.expires < now

    def to_playwright(self, host: str, root_url: str) -> dict[str, Any]:
        """Build the dict shape accepted by BrowserContext.add_cookies()."""
        cookie: dict[str, Any] = {"name": self.name, "value": self.value}
        if self.name.startswith("__Host-"):
            # host-only cookies must not carry a Domain attribute
            cookie["url"] = root_url
        else:
            cookie["domain"] = normalize_domain(self.domain, host)
            cookie["path"] = self.path or "/"
        if self.expires is not None and self.expires > 0:
            cookie["expires"] = self.expires
        if self.http_only is not None:
            cookie["httpOnly"] = self.http_only
        if self.secure is not None:
            cookie["secure"] = self.secure
        same_site = SAME_SITE_VALUES.get(str(self.same_site or "").lower())
        if same_site:
            cookie["sameSite"] = same_site
        return cookie


class SessionSnapshot(BaseModel):
    """Point-in-time capture of authentication state."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    cookies: tuple[Cookie, ...] = ()
    local_storage: dict[str, str] = Field(default_factory=dict, alias="localStorage")
    saved_at: Optional[str] = Field(default=None, alias="savedAt")
    url: Optional[str] = None

    @field_validator("local_storage", mode="before")
    @classmethod
    def _stringify_storage(cls, value: Any) -> Any:
        if value is None:
            return {}
        if isinstance(value, dict):
            return {
                str(k): v if isinstance(v, str) else json.dumps(v)
                for k, v in value.items()
            }
        return value

    @property
    def is_empty(self) -> bool:
        return not self.cookies and not self.local_storage

    def to_file_dict(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


class SessionFileResult(BaseModel):
    """Outcome of a session file operation, camelCased on the wire."""

    model_config = ConfigDict(populate_by_name=True)

    success: bool
    file_name: Optional[str] = Field(default=None, alias="fileName")
    file_path: Optional[str] = Field(default=None, alias="filePath")
    cookie_count: Optional[int] = Field(default=None, alias="cookieCount")
    storage_count: Optional[int] = Field(default=None, alias="storageCount")
    error: Optional[str] = None

    def to_response(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


@dataclass
class ApplyReport:
    """What SessionStore.apply() actually installed."""

    applied: int = 0
    expired: list[str] = field(default_factory=list)
    partitioned: int = 0
    storage_applied: int = 0
    cookies_ok: bool = True
    storage_ok: bool = True


def normalize_domain(domain: Optional[str], host: str) -> str:
    """Leading-dot form for the site's own domain so subdomains match."""
    if not domain:
        return "." + host
    bare = domain.lstrip(".")
    if host in bare and not domain.startswith("."):
        return "." + bare
    return domain


def detect_shape(data: Any) -> Optional[SessionFileShape]:
    if isinstance(data, list):
        return "cookie-array"
    if isinstance(data, dict) and isinstance(data.get("cookies"), list):
        return "snapshot"
    return None


def parse_session_data(data: Any) -> Optional[SessionSnapshot]:
    """Normalize either session file shape into a SessionSnapshot."""
    shape = detect_shape(data)
    if shape is None:
        logger.warning("Unknown session file format (%s)", type(data).__name__)
        return None

    source = {"cookies": data} if shape == "cookie-array" else data
    try:
        snapshot = SessionSnapshot.model_validate(source)
    except ValidationError as e:
        logger.warning("Session file has the %s shape but failed validation: %s", shape, e)
        return None

    logger.info("Detected %s format (%d cookies)", shape, len(snapshot.cookies))
    return snapshot


class SessionStore:
    """Reads, applies, extracts and writes session snapshots."""

    def __init__(
        self,
        config: BridgeConfig,
        now: Callable[[], datetime] | None = None,
    ) -> None:
        self.site = config.site
        self.session_path = config.session.session_path
        self.backup_dir = config.session.backup_dir or self.session_path.parent
        self._now = now or (lambda: datetime.now(timezone.utc))

    @property
    def host(self) -> str:
        return urlparse(self.site.root_url).hostname or self.site.root_url

    def read_raw(self) -> Optional[Any]:
        """Parsed JSON of the canonical file, or None if unreadable."""
        if not self.session_path.exists():
            return None
        try:
            return json.loads(self.session_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Could not read session file %s: %s", self.session_path, e)
            return None

    def load(self) -> Optional[SessionSnapshot]:
        if not self.session_path.exists():
            logger.info("No saved session found at %s", self.session_path)
            return None
        data = self.read_raw()
        if data is None:
            return None
        snapshot = parse_session_data(data)
        if snapshot is not None:
            self.describe(snapshot)
        return snapshot

    def describe(self, snapshot: SessionSnapshot) -> None:
        """Log key session details without leaking values."""
        auth = [
            c.name for c in snapshot.cookies
            if any(hint in c.name.lower() for hint in AUTH_COOKIE_HINTS)
        ]
        logger.info(
            "Session: %d cookies, %d localStorage items, saved at %s",
            len(snapshot.cookies),
            len(snapshot.local_storage),
            snapshot.saved_at or "unknown",
        )
        if auth:
            logger.info("Auth-looking cookies present: %s", ", ".join(auth))
        else:
            logger.info("No auth-looking cookie found; expect an anonymous session")

    async def apply(self, snapshot: SessionSnapshot, page) -> ApplyReport:
        """Install snapshot cookies and localStorage into the page's context.

        Partitioned cookies are left for the browser to set natively and
        expired ones are skipped; each half is best-effort on its own.
        """
        report = ApplyReport()
        if snapshot.is_empty:
            logger.info("Session snapshot is empty; continuing unauthenticated")
            return report

        try:
            logger.info("Navigating to %s to attach session...", self.site.root_url)
            await page.goto(self.site.root_url, wait_until="domcontentloaded", timeout=30_000)
            await page.wait_for_timeout(2_000)
        except Exception as e:
            logger.warning("Could not open %s before applying session: %s", self.site.root_url, e)

        now = time.time()
        settable = [c for c in snapshot.cookies if not c.partitioned]
        report.partitioned = len(snapshot.cookies) - len(settable)
        valid: list[Cookie] = []
        for cookie in settable:
            if cookie.is_expired(now):
                report.expired.append(cookie.name)
            else:
                valid.append(cookie)

        if report.expired:
            logger.warning(
                "%d cookies are expired and will not be loaded: %s",
                len(report.expired),
                ", ".join(report.expired),
            )

        if valid:
            try:
                await page.context.add_cookies(
                    [c.to_playwright(self.host, self.site.root_url) for c in valid]
                )
                report.applied = len(valid)
                logger.info("Loaded %d valid cookies from session", report.applied)
                if report.partitioned:
                    logger.info(
                        "Skipped %d partitioned cookies; the browser sets those itself",
                        report.partitioned,
                    )
                await page.wait_for_timeout(1_000)
            except Exception as e:
                report.cookies_ok = False
                logger.warning("Could not load cookies: %s", e)
        elif snapshot.cookies:
            logger.warning("All cookies are expired or partitioned; a challenge may be required")

        if snapshot.local_storage:
            try:
                report.storage_applied = int(
                    await page.evaluate(STORAGE_WRITE_SCRIPT, dict(snapshot.local_storage)) or 0
                )
                logger.info("Loaded %d localStorage items", report.storage_applied)
            except Exception as e:
                report.storage_ok = False
                logger.warning("Could not load localStorage (cookies are enough): %s", e)

        if snapshot.saved_at:
            logger.info("Session loaded (saved at: %s)", snapshot.saved_at)
        return report

    async def extract(self, page) -> SessionSnapshot:
        if page is None or page.is_closed():
            raise PageUnavailableError("Page is not available or closed")

        try:
            cookies = await page.context.cookies()
        except Exception as e:
            raise PageUnavailableError(f"Failed to extract session: {e}") from e

        try:
            storage = await page.evaluate(STORAGE_READ_SCRIPT) or {}
        except Exception as e:
            logger.warning("Could not access localStorage: %s", e)
            storage = {}

        return SessionSnapshot(
            cookies=tuple(Cookie.model_validate(c) for c in cookies),
            local_storage=storage,
            saved_at=self._now().isoformat(),
            url=page.url,
        )

    async def export(self, page) -> SessionFileResult:
        """Overwrite the canonical session file with the live session."""
        return await self._persist(page, self.session_path)

    async def backup(self, page, name: Optional[str] = None) -> SessionFileResult:
        """Write the live session to a separate (timestamped) backup file."""
        if name:
            file_name = Path(name).name
        else:
            file_name = f"session-backup-{self._now().strftime('%Y-%m-%dT%H-%M-%S')}.json"
        return await self._persist(page, self.backup_dir / file_name)

    async def _persist(self, page, path: Path) -> SessionFileResult:
        try:
            snapshot = await self.extract(page)
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(
                json.dumps(snapshot.to_file_dict(), indent=2, default=str),
                encoding="utf-8",
            )
        except Exception as e:
            logger.error("Error saving session to %s: %s", path, e)
            return SessionFileResult(success=False, error=str(e))

        logger.info(
            "Session saved to %s (%d cookies, %d localStorage items)",
            path.name,
            len(snapshot.cookies),
            len(snapshot.local_storage),
        )
        return SessionFileResult(
            success=True,
            file_name=path.name,
            file_path=str(path),
            cookie_count=len(snapshot.cookies),
            storage_count=len(snapshot.local_storage),
        )
