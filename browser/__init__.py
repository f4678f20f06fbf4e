"""
Browser Automation Module - Playwright sessions, navigation and CAPTCHA handling.

New code should import from the submodules:
    from browser.session_manager import BrowserSessionManager
    from browser.navigation import NavigationController

Environment Variables Used:
    HEADLESS - Launch browsers headless (default true)
    PROXY_LIST - Comma-separated proxy URLs
    CAPSOLVER_API_KEY / TWOCAPTCHA_API_KEY - Automated CAPTCHA solving
    TELEGRAM_BOT_TOKEN / TELEGRAM_CHAT_ID - Manual CAPTCHA relay notifications
"""

from browser.detection import CaptchaType, PageInspector, PageSignals
from browser.profiles import ProfileEntry, ProfilePool
from browser.proxy_config import ProxyConfig, parse_proxy
from browser.session_manager import BrowserSession, BrowserSessionManager
from browser.navigation import NavigationController
from browser.remote_assist import CaptchaSessionStore, RemoteAssistRelay, get_relay
from browser.captcha_manager import CaptchaResolver

__all__ = [
    "CaptchaType",
    "PageInspector",
    "PageSignals",
    "ProfileEntry",
    "ProfilePool",
    "ProxyConfig",
    "parse_proxy",
    "BrowserSession",
    "BrowserSessionManager",
    "NavigationController",
    "CaptchaSessionStore",
    "RemoteAssistRelay",
    "get_relay",
    "CaptchaResolver",
]
