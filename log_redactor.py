"""Log redaction: keeps session cookies and tokens out of log output."""

from __future__ import annotations

import logging
import re
from typing import Pattern, Sequence, Union

PatternLike = Union[str, Pattern[str]]

REDACTED = "[REDACTED]"


def compile_patterns(patterns: Sequence[PatternLike]) -> list[Pattern[str]]:
    """Compile patterns, dropping any that are not valid regexes."""
    compiled = []
    for pattern in patterns:
        if isinstance(pattern, re.Pattern):
            compiled.append(pattern)
            continue
        try:
            compiled.append(re.compile(pattern))
        except re.error:
            pass
    return compiled


def redact_string(text: str, patterns: Sequence[PatternLike]) -> str:
    """Replace all matches of the given regex patterns with [REDACTED]."""
    for pattern in compile_patterns(patterns):
        text = pattern.sub(REDACTED, text)
    return text


class RedactingFilter(logging.Filter):
    """Logging filter that redacts session secrets from log records."""

    def __init__(self, patterns: Sequence[PatternLike], name: str = "") -> None:
        super().__init__(name)
        self._patterns = compile_patterns(patterns)

    def filter(self, record: logging.LogRecord) -> bool:
        if not self._patterns:
            return True
        record.msg = redact_string(str(record.msg), self._patterns)
        if isinstance(record.args, dict):
            record.args = {
                k: redact_string(v, self._patterns) if isinstance(v, str) else v
                for k, v in record.args.items()
            }
        elif record.args:
            record.args = tuple(
                redact_string(a, self._patterns) if isinstance(a, str) else a
                for a in record.args
            )
        return True
