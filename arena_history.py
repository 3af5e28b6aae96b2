"""Transcript helpers over the rendered chat.

The target UI exposes no per-message role, so speakers are inferred from
position: index 0, 2, 4, ... are user turns and 1, 3, 5, ... are assistant
turns. That holds only while the page renders strict alternation.
"""

from __future__ import annotations

import logging
from typing import Optional, Sequence

logger = logging.getLogger(__name__)

TRANSCRIPT_SCRIPT = """(selector) => {
    return [...document.querySelectorAll(selector)].map(el =>
        (el.innerText || "").trim()
    );
}"""


async def extract_transcript(page, selector: str) -> list[str]:
    """Return the trimmed text of every message node, in DOM order."""
    try:
        messages = await page.evaluate(TRANSCRIPT_SCRIPT, selector)
    except Exception as e:
        logger.warning("Error getting all messages: %s", e)
        return []
    return [str(m).strip() for m in messages or []]


def latest_assistant_index(transcript: Sequence[str]) -> Optional[int]:
    for i in range(len(transcript) - 1, -1, -1):
        if i % 2 == 1:
            return i
    return None


def latest_assistant_turn(transcript: Sequence[str]) -> Optional[str]:
    """Most recent assistant entry, or None when there is none."""
    index = latest_assistant_index(transcript)
    return None if index is None else transcript[index]


def latest_assistant_turn_since(transcript: Sequence[str], after_turns: int) -> Optional[str]:
    """Latest assistant entry, ignoring the first after_turns entries."""
    index = latest_assistant_index(transcript)
    if index is None or index < after_turns:
        return None
    return transcript[index]


def nth_assistant_turn(transcript: Sequence[str], n: int) -> Optional[str]:
    """Assistant reply paired with the n-th (1-based) user turn."""
    index = 2 * n - 1
    if index < 0 or index >= len(transcript):
        return None
    return transcript[index]


def user_turn_count(transcript: Sequence[str]) -> int:
    """Number of user turns rendered so far: ceil(len / 2)."""
    return (len(transcript) + 1) // 2
