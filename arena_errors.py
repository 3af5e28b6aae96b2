"""Exception taxonomy for the arena session bridge."""

from __future__ import annotations


class BridgeError(Exception):
    """Base class for every error the bridge raises on purpose."""

    step = "unknown"


class SelectorNotFoundError(BridgeError):
    """A selector or XPath did not appear before its timeout."""

    step = "locate"

    def __init__(self, target: str, timeout_ms: int, detail: str = "") -> None:
        self.target = target
        self.timeout_ms = timeout_ms
        message = f"Selector not found: {target} (timeout {timeout_ms}ms)"
        if detail:
            message = f"{message} - {detail}"
        super().__init__(message)


class NavigationError(BridgeError):
    """Navigation finished but the page never rendered content."""

    step = "navigate"


class PageUnavailableError(BridgeError):
    """The page handle is closed, crashed, or otherwise unusable."""

    step = "page"


class BrowserLaunchError(BridgeError):
    """The browser could not be launched or initialized."""

    step = "launch"


class InputNotFoundError(BridgeError):
    """No message input surface could be located on the page."""

    step = "input"


class MessageNotSentError(BridgeError):
    """No send strategy could confirm that the message left the input."""

    step = "send"


class ReplyTooShortError(BridgeError):
    """The reply never grew past the minimum usable length."""

    step = "reply"
