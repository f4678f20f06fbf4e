"""
Error taxonomy for the acquisition engine.

Navigation-level failures are retried inside the navigation controller and
surface to callers as a boolean; session lifecycle failures propagate to the
owning job. Teardown failures are logged and swallowed by the session manager.
"""

from typing import Union


# Fragments of Playwright/CDP error messages that indicate a browser process
# that is still starting up or was torn down under us.
TRANSIENT_BROWSER_ERRORS = [
    "target.createtarget timed out",
    "protocol error",
    "target closed",
    "target page, context or browser has been closed",
    "browser has been closed",
    "session closed",
    "requesting main frame too early",
    "not yet ready",
]


class ListingSyncError(Exception):
    """Base class for engine errors."""


class TransientNavigationError(ListingSyncError):
    """Network or timeout failure while loading a page."""

    def __init__(self, url: str, message: str = ""):
        self.url = url
        super().__init__(f"Navigation to {url} failed: {message}" if message else f"Navigation to {url} failed")


class SessionLifecycleError(ListingSyncError):
    """A browser process or page could not be created."""


class CaptchaSessionNotFound(ListingSyncError):
    """Unknown, expired or detached CAPTCHA relay session."""

    def __init__(self, session_id: str, reason: str = "not found or expired"):
        self.session_id = session_id
        self.reason = reason
        super().__init__(f"CAPTCHA session {session_id} {reason}")


class IncompleteCrawlError(ListingSyncError):
    """The listing index could not be walked completely."""


def is_transient_browser_error(error: Union[BaseException, str]) -> bool:
    """Check whether a browser error is worth retrying."""
    message = str(error).lower()
    return any(fragment in message for fragment in TRANSIENT_BROWSER_ERRORS)
