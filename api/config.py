"""
Unified Configuration Module for the Listing Sync Engine

All configuration settings are centralized here.
Import from this module: from api.config import config
"""

import os
from typing import List, Optional, Dict, Any
from dataclasses import dataclass, field


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


def _env_list(name: str, default: str = "") -> List[str]:
    return [item.strip() for item in os.getenv(name, default).split(",") if item.strip()]


@dataclass
class NavigationConfig:
    """Tunables for navigation with retry."""
    max_attempts: int = 3
    timeout_ms: int = 60000
    wait_until: str = "load"
    retry_delay_seconds: float = 5.0
    blocked_backoff_seconds: float = 10.0
    jitter_seconds: float = 2.0
    settle_min_seconds: float = 2.0
    settle_max_seconds: float = 4.0
    recheck_delay_seconds: float = 3.0


@dataclass
class RelayConfig:
    """Tunables for CAPTCHA resolution and the manual relay."""
    solve_timeout_seconds: float = 120.0
    manual_timeout_seconds: float = 300.0
    poll_interval_seconds: float = 2.0
    session_ttl_seconds: float = 600.0
    post_solve_wait_seconds: float = 3.0


@dataclass
class CrawlConfig:
    """Tunables for crawl passes and status sweeps."""
    item_delay_min_seconds: float = 2.0
    item_delay_max_seconds: float = 5.0
    check_delay_min_seconds: float = 3.0
    check_delay_max_seconds: float = 8.0
    max_index_pages: int = 50
    sweep_limit: int = 50
    stale_after_days: int = 7
    unknown_recheck_days: int = 3
    content_wait_ms: int = 10000


@dataclass
class AppConfig:
    """Unified application configuration."""

    # === Server Settings ===
    HOST: str = os.getenv("HOST", "0.0.0.0")
    PORT: int = int(os.getenv("PORT", "3000"))
    DEBUG: bool = _env_bool("DEBUG")
    APP_URL: str = os.getenv("APP_URL", "http://localhost:3000")

    # === Paths ===
    DATABASE_PATH: str = os.getenv("DATABASE_PATH", "./data/listings.db")
    LOG_DIR: str = os.getenv("LOG_DIR", "./logs")
    SOURCES_FILE: Optional[str] = os.getenv("SOURCES_FILE")

    # === Browser / Anti-detection ===
    HEADLESS: bool = _env_bool("HEADLESS", "true")
    PROXY_LIST: List[str] = field(default_factory=lambda: _env_list("PROXY_LIST") or _env_list("PROXY"))
    PROFILE_SELECTION: str = os.getenv("PROFILE_SELECTION", "round_robin")
    LOCALE: str = os.getenv("BROWSER_LOCALE", "ru-RU")
    PAGE_CREATE_RETRIES: int = int(os.getenv("PAGE_CREATE_RETRIES", "3"))
    PAGE_CREATE_BACKOFF_SECONDS: float = float(
        os.getenv("PAGE_CREATE_BACKOFF_SECONDS", "5" if os.path.exists("/.dockerenv") else "2")
    )

    # === Navigation ===
    NAV_MAX_ATTEMPTS: int = int(os.getenv("NAV_MAX_ATTEMPTS", "3"))
    NAV_TIMEOUT_MS: int = int(os.getenv("NAV_TIMEOUT_MS", "60000"))
    NAV_WAIT_UNTIL: str = os.getenv("NAV_WAIT_UNTIL", "load")
    NAV_RETRY_DELAY_SECONDS: float = float(os.getenv("NAV_RETRY_DELAY_SECONDS", "5"))
    NAV_BLOCKED_BACKOFF_SECONDS: float = float(os.getenv("NAV_BLOCKED_BACKOFF_SECONDS", "10"))
    NAV_SETTLE_MIN_SECONDS: float = float(os.getenv("NAV_SETTLE_MIN_SECONDS", "2"))
    NAV_SETTLE_MAX_SECONDS: float = float(os.getenv("NAV_SETTLE_MAX_SECONDS", "4"))

    # === CAPTCHA ===
    CAPTCHA_PROVIDER: str = os.getenv("CAPTCHA_PROVIDER", "capsolver")
    CAPSOLVER_API_KEY: Optional[str] = os.getenv("CAPSOLVER_API_KEY")
    TWOCAPTCHA_API_KEY: Optional[str] = os.getenv("TWOCAPTCHA_API_KEY")
    CAPTCHA_SOLVE_TIMEOUT_SECONDS: float = float(os.getenv("CAPTCHA_SOLVE_TIMEOUT_SECONDS", "120"))
    CAPTCHA_MANUAL_TIMEOUT_SECONDS: float = float(os.getenv("CAPTCHA_MANUAL_TIMEOUT_SECONDS", "300"))
    CAPTCHA_POLL_INTERVAL_SECONDS: float = float(os.getenv("CAPTCHA_POLL_INTERVAL_SECONDS", "2"))
    CAPTCHA_SESSION_TTL_SECONDS: float = float(os.getenv("CAPTCHA_SESSION_TTL_SECONDS", "600"))

    # === Telegram (manual relay notifications) ===
    TELEGRAM_BOT_TOKEN: Optional[str] = os.getenv("TELEGRAM_BOT_TOKEN")
    TELEGRAM_CHAT_ID: Optional[str] = os.getenv("TELEGRAM_CHAT_ID")

    # === Crawl pacing ===
    CRAWL_DELAY_MIN_SECONDS: float = float(os.getenv("CRAWL_DELAY_MIN_SECONDS", "2"))
    CRAWL_DELAY_MAX_SECONDS: float = float(os.getenv("CRAWL_DELAY_MAX_SECONDS", "5"))
    CHECK_DELAY_MIN_SECONDS: float = float(os.getenv("CHECK_DELAY_MIN_SECONDS", "3"))
    CHECK_DELAY_MAX_SECONDS: float = float(os.getenv("CHECK_DELAY_MAX_SECONDS", "8"))
    MAX_INDEX_PAGES: int = int(os.getenv("MAX_INDEX_PAGES", "50"))
    STATUS_CHECK_DAYS: int = int(os.getenv("STATUS_CHECK_DAYS", "7"))
    STATUS_CHECK_LIMIT: int = int(os.getenv("STATUS_CHECK_LIMIT", "50"))

    # === Scheduler ===
    SCHEDULER_ENABLED: bool = _env_bool("SCHEDULER_ENABLED", "true")
    CRON_STATUS_SWEEP: str = os.getenv("CRON_STATUS_SWEEP", "0 0 6 * * *")
    DEFAULT_SOURCE_CRON: str = os.getenv("DEFAULT_SOURCE_CRON", "0 0 3 * * *")

    @property
    def navigation(self) -> NavigationConfig:
        return NavigationConfig(
            max_attempts=self.NAV_MAX_ATTEMPTS,
            timeout_ms=self.NAV_TIMEOUT_MS,
            wait_until=self.NAV_WAIT_UNTIL,
            retry_delay_seconds=self.NAV_RETRY_DELAY_SECONDS,
            blocked_backoff_seconds=self.NAV_BLOCKED_BACKOFF_SECONDS,
            settle_min_seconds=self.NAV_SETTLE_MIN_SECONDS,
            settle_max_seconds=self.NAV_SETTLE_MAX_SECONDS,
        )

    @property
    def relay(self) -> RelayConfig:
        return RelayConfig(
            solve_timeout_seconds=self.CAPTCHA_SOLVE_TIMEOUT_SECONDS,
            manual_timeout_seconds=self.CAPTCHA_MANUAL_TIMEOUT_SECONDS,
            poll_interval_seconds=self.CAPTCHA_POLL_INTERVAL_SECONDS,
            session_ttl_seconds=self.CAPTCHA_SESSION_TTL_SECONDS,
        )

    @property
    def crawl(self) -> CrawlConfig:
        return CrawlConfig(
            item_delay_min_seconds=self.CRAWL_DELAY_MIN_SECONDS,
            item_delay_max_seconds=self.CRAWL_DELAY_MAX_SECONDS,
            check_delay_min_seconds=self.CHECK_DELAY_MIN_SECONDS,
            check_delay_max_seconds=self.CHECK_DELAY_MAX_SECONDS,
            max_index_pages=self.MAX_INDEX_PAGES,
            sweep_limit=self.STATUS_CHECK_LIMIT,
            stale_after_days=self.STATUS_CHECK_DAYS,
        )

    @property
    def captcha_api_key(self) -> Optional[str]:
        if self.CAPTCHA_PROVIDER.lower() == "2captcha":
            return self.TWOCAPTCHA_API_KEY
        return self.CAPSOLVER_API_KEY

    @property
    def telegram_enabled(self) -> bool:
        return bool(self.TELEGRAM_BOT_TOKEN and self.TELEGRAM_CHAT_ID)

    def load_sources(self) -> List[Dict[str, Any]]:
        """Read selector-driven source definitions from SOURCES_FILE."""
        if not self.SOURCES_FILE:
            return []

        import yaml

        with open(self.SOURCES_FILE) as f:
            data = yaml.safe_load(f) or {}
        return list(data.get("sources", []))

    def validate(self) -> List[str]:
        """Validate configuration and return a list of problems."""
        problems = []

        if bool(self.TELEGRAM_BOT_TOKEN) != bool(self.TELEGRAM_CHAT_ID):
            problems.append("TELEGRAM_BOT_TOKEN and TELEGRAM_CHAT_ID must be set together")

        if self.CAPTCHA_PROVIDER.lower() not in ("capsolver", "2captcha"):
            problems.append(f"CAPTCHA_PROVIDER must be 'capsolver' or '2captcha', got {self.CAPTCHA_PROVIDER!r}")

        if self.PROFILE_SELECTION not in ("round_robin", "random"):
            problems.append(f"PROFILE_SELECTION must be 'round_robin' or 'random', got {self.PROFILE_SELECTION!r}")

        if self.NAV_MAX_ATTEMPTS < 1:
            problems.append("NAV_MAX_ATTEMPTS must be at least 1")

        if self.SOURCES_FILE and not os.path.exists(self.SOURCES_FILE):
            problems.append(f"SOURCES_FILE {self.SOURCES_FILE} does not exist")

        return problems


# Global config instance
config = AppConfig()


def get_config() -> AppConfig:
    """Get the application configuration."""
    return config
