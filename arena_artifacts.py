"""Forensic screenshot + HTML capture for failed runs."""

from __future__ import annotations

import logging
import re
import time
from pathlib import Path
from typing import Optional

from arena_config import ArtifactsConfig

logger = logging.getLogger(__name__)


def run_slug(text: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", text[:40].lower()).strip("-") or "run"
    return slug[:30]


class ArtifactRecorder:
    """Saves page captures under <directory>/<timestamp>_<slug>/. Never raises."""

    def __init__(self, config: ArtifactsConfig) -> None:
        self.config = config
        self.run_dir: Optional[Path] = None
        self.count = 0

    def start_run(self, label: str) -> Optional[Path]:
        """Open a fresh run directory and reset the capture cap."""
        self.count = 0
        if not self.config.enabled:
            self.run_dir = None
            return None
        run_id = f"{time.strftime('%Y%m%d_%H%M%S')}_{run_slug(label)}"
        run_dir = self.config.directory.expanduser() / run_id
        try:
            run_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.warning("Artifact directory unavailable (%s): %s", run_dir, e)
            self.run_dir = None
            return None
        self.run_dir = run_dir
        return run_dir

    async def capture(self, page, label: str) -> Optional[Path]:
        if not self.config.enabled:
            return None
        if self.run_dir is None and self.start_run(label) is None:
            return None
        if self.count >= self.config.max_per_run:
            return None
        self.count += 1
        try:
            jpg_path = self.run_dir / f"{label}.jpg"
            jpg_path.write_bytes(await page.screenshot(type="jpeg", quality=self.config.jpeg_quality))
            html_path = self.run_dir / f"{label}.html"
            html_path.write_text(await page.content(), encoding="utf-8")
        except Exception as e:
            logger.warning("Failed to save artifact '%s': %s", label, e)
            return None
        logger.info("Artifact saved: %s/%s (screenshot + html)", self.run_dir.name, label)
        return jpg_path
