"""
Anti-detection profiles: proxy + user-agent pairs and the matching
fingerprint patches applied to every browser context.
"""

import json
import random
import re
import threading
from dataclasses import dataclass
from typing import Optional, Dict, List, Sequence

from browser.proxy_config import ProxyConfig

# Chromium-family user agents only; the engine drives Chromium so the
# transport identity has to stay plausible for its TLS/JS fingerprint.
USER_AGENTS = [
    # Chrome 131 on Windows 11
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36",
    # Chrome 130 on Windows 11
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/130.0.0.0 Safari/537.36",
    # Chrome 131 on macOS
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 14_0) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36",
    # Edge 131 on Windows
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36 Edg/131.0.0.0",
    # Chrome on Linux
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36",
]

# Viewport sizes for randomization
VIEWPORTS = [
    {"width": 1920, "height": 1080},
    {"width": 1680, "height": 1050},
    {"width": 1536, "height": 864},
    {"width": 1440, "height": 900},
    {"width": 1366, "height": 768},
    {"width": 1280, "height": 800},
]

DEFAULT_LANGUAGES = ["ru-RU", "ru", "en-US", "en"]


def platform_for_user_agent(user_agent: str) -> str:
    """The ``navigator.platform`` value a real browser with this UA reports."""
    if "Windows" in user_agent:
        return "Win32"
    if "Macintosh" in user_agent:
        return "MacIntel"
    return "Linux x86_64"


def client_hint_platform(user_agent: str) -> str:
    if "Windows" in user_agent:
        return "Windows"
    if "Macintosh" in user_agent:
        return "macOS"
    return "Linux"


def client_hint_brands(user_agent: str) -> Optional[str]:
    """Build ``sec-ch-ua`` for a Chromium user agent, None for other engines."""
    chrome = re.search(r"Chrome/(\d+)", user_agent)
    if not chrome:
        return None
    version = chrome.group(1)
    edge = re.search(r"Edg/(\d+)", user_agent)
    if edge:
        brand = f'"Microsoft Edge";v="{edge.group(1)}"'
    else:
        brand = f'"Google Chrome";v="{version}"'
    return f'{brand}, "Chromium";v="{version}", "Not_A Brand";v="24"'


def accept_language(languages: Sequence[str]) -> str:
    parts = []
    for index, language in enumerate(languages):
        if index == 0:
            parts.append(language)
        else:
            parts.append(f"{language};q={max(0.1, 1 - index * 0.1):.1f}")
    return ",".join(parts)


@dataclass(frozen=True)
class ProfileEntry:
    """One identity: an optional proxy plus a user agent."""
    user_agent: str
    proxy: Optional[ProxyConfig] = None
    languages: tuple = tuple(DEFAULT_LANGUAGES)

    @property
    def platform(self) -> str:
        return platform_for_user_agent(self.user_agent)

    def extra_headers(self) -> Dict[str, str]:
        """HTTP headers that agree with the user agent."""
        headers = {
            "accept-language": accept_language(self.languages),
            "accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/avif,image/webp,*/*;q=0.8",
            "upgrade-insecure-requests": "1",
        }
        brands = client_hint_brands(self.user_agent)
        if brands:
            headers["sec-ch-ua"] = brands
            headers["sec-ch-ua-mobile"] = "?0"
            headers["sec-ch-ua-platform"] = f'"{client_hint_platform(self.user_agent)}"'
        return headers

    def stealth_script(self) -> str:
        """JavaScript fingerprint patches, consistent with this profile."""
        return STEALTH_SCRIPT_TEMPLATE % {
            "user_agent": json.dumps(self.user_agent),
            "platform": json.dumps(self.platform),
            "languages": json.dumps(list(self.languages)),
        }


STEALTH_SCRIPT_TEMPLATE = """
    // Identity must match the HTTP user agent
    Object.defineProperty(navigator, 'userAgent', {
        get: () => %(user_agent)s
    });
    Object.defineProperty(navigator, 'platform', {
        get: () => %(platform)s
    });
    Object.defineProperty(navigator, 'languages', {
        get: () => %(languages)s
    });

    // Hide webdriver property
    Object.defineProperty(navigator, 'webdriver', {
        get: () => undefined
    });

    // Mock realistic plugins array
    Object.defineProperty(navigator, 'plugins', {
        get: () => {
            const plugins = [
                { name: 'Chrome PDF Plugin', filename: 'internal-pdf-viewer' },
                { name: 'Chrome PDF Viewer', filename: 'mhjfbmdgcfjbbpaeojofohoefgiehjai' },
                { name: 'Native Client', filename: 'internal-nacl-plugin' }
            ];
            plugins.length = 3;
            return plugins;
        }
    });

    Object.defineProperty(navigator, 'hardwareConcurrency', {
        get: () => 8
    });

    window.chrome = {
        runtime: {},
        loadTimes: function() {},
        csi: function() {},
        app: {}
    };

    const originalQuery = window.navigator.permissions.query;
    window.navigator.permissions.query = (parameters) => (
        parameters.name === 'notifications' ?
            Promise.resolve({ state: Notification.permission }) :
            originalQuery(parameters)
    );
"""


class ProfilePool:
    """
    Read-only pool of identity profiles, built once at startup.

    Without proxies the pool holds one direct-connection entry per user
    agent. With proxies each proxy is paired with a user agent so that a
    given exit IP keeps a stable browser identity.
    """

    def __init__(
        self,
        proxies: Optional[List[ProxyConfig]] = None,
        user_agents: Optional[List[str]] = None,
        selection: str = "round_robin",
        languages: Optional[List[str]] = None,
    ):
        agents = list(USER_AGENTS if user_agents is None else user_agents)
        if not agents:
            raise ValueError("ProfilePool needs at least one user agent")
        if selection not in ("round_robin", "random"):
            raise ValueError(f"Unknown profile selection strategy: {selection}")

        langs = tuple(languages or DEFAULT_LANGUAGES)
        if proxies:
            self._entries = tuple(
                ProfileEntry(user_agent=agents[index % len(agents)], proxy=proxy, languages=langs)
                for index, proxy in enumerate(proxies)
            )
        else:
            self._entries = tuple(ProfileEntry(user_agent=agent, languages=langs) for agent in agents)

        self.selection = selection
        self._cursor = 0
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, app_config) -> "ProfilePool":
        from browser.proxy_config import load_proxy_list

        language = app_config.LOCALE
        languages = [language, language.split("-")[0], "en-US", "en"]
        return cls(
            proxies=load_proxy_list(app_config.PROXY_LIST),
            selection=app_config.PROFILE_SELECTION,
            languages=list(dict.fromkeys(languages)),
        )

    @property
    def entries(self) -> tuple:
        return self._entries

    @property
    def has_proxies(self) -> bool:
        return any(entry.proxy for entry in self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def next_entry(self) -> ProfileEntry:
        """Round-robin pick."""
        with self._lock:
            entry = self._entries[self._cursor]
            self._cursor = (self._cursor + 1) % len(self._entries)
        return entry

    def random_entry(self) -> ProfileEntry:
        return random.choice(self._entries)

    def select(self) -> ProfileEntry:
        if self.selection == "random":
            return self.random_entry()
        return self.next_entry()

    def random_viewport(self) -> Dict[str, int]:
        return dict(random.choice(VIEWPORTS))
