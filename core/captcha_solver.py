"""
CAPTCHA Solver - CapSolver / 2captcha integration
Automated path of CAPTCHA resolution: submit the site key, poll for a token.
"""

import asyncio
import logging
import time
from typing import Optional, Dict, Any

import aiohttp

from browser.detection import CaptchaType

logger = logging.getLogger(__name__)

CAPSOLVER_API_URL = "https://api.capsolver.com"
TWOCAPTCHA_API_URL = "https://2captcha.com"

CAPSOLVER_TASK_TYPES = {
    CaptchaType.RECAPTCHA_CHECKBOX: "ReCaptchaV2TaskProxyLess",
    CaptchaType.RECAPTCHA_INVISIBLE: "ReCaptchaV3TaskProxyLess",
    CaptchaType.HCAPTCHA: "HCaptchaTaskProxyLess",
    CaptchaType.TURNSTILE: "AntiTurnstileTaskProxyLess",
}

TWOCAPTCHA_METHODS = {
    CaptchaType.RECAPTCHA_CHECKBOX: "userrecaptcha",
    CaptchaType.RECAPTCHA_INVISIBLE: "userrecaptcha",
    CaptchaType.HCAPTCHA: "hcaptcha",
    CaptchaType.TURNSTILE: "turnstile",
    CaptchaType.SMARTCAPTCHA_REDIRECT: "yandex",
}


class CaptchaSolver:
    """
    Token-based CAPTCHA solving service.

    Usage:
        solver = CaptchaSolver(provider="capsolver", api_key="...")
        token = await solver.solve(CaptchaType.RECAPTCHA_CHECKBOX, page_url, site_key)
    """

    def __init__(
        self,
        provider: str = "capsolver",
        api_key: Optional[str] = None,
        poll_interval: float = 3.0,
        timeout: float = 120.0,
    ):
        self.provider = provider.lower()
        self.api_key = api_key
        self.poll_interval = poll_interval
        self.timeout = timeout
        self.stats = {"submitted": 0, "solved": 0, "failed": 0}

    @classmethod
    def from_config(cls, app_config) -> "CaptchaSolver":
        return cls(
            provider=app_config.CAPTCHA_PROVIDER,
            api_key=app_config.captcha_api_key,
            timeout=app_config.CAPTCHA_SOLVE_TIMEOUT_SECONDS,
        )

    def is_configured(self) -> bool:
        """Check if API key is configured."""
        return bool(self.api_key)

    def supports(self, captcha_type: CaptchaType) -> bool:
        if self.provider == "2captcha":
            return captcha_type in TWOCAPTCHA_METHODS
        return captcha_type in CAPSOLVER_TASK_TYPES

    async def solve(self, captcha_type: CaptchaType, page_url: str, site_key: str) -> Optional[str]:
        """
        Solve a token CAPTCHA.

        Returns:
            The response token, or None if the provider could not solve it
        """
        if not self.api_key:
            logger.warning("[Solver] API key not configured")
            return None
        if not site_key:
            logger.warning(f"[Solver] No site key for {captcha_type.value} on {page_url}")
            return None
        if not self.supports(captcha_type):
            logger.info(f"[Solver] {self.provider} does not handle {captcha_type.value}")
            return None

        self.stats["submitted"] += 1
        start_time = time.time()
        try:
            timeout = aiohttp.ClientTimeout(total=30)
            async with aiohttp.ClientSession(timeout=timeout) as session:
                if self.provider == "2captcha":
                    token = await self._solve_2captcha(session, captcha_type, page_url, site_key)
                else:
                    token = await self._solve_capsolver(session, captcha_type, page_url, site_key)
        except (aiohttp.ClientError, asyncio.TimeoutError, KeyError, ValueError) as e:
            logger.error(f"[Solver] Error solving {captcha_type.value}: {e}")
            token = None

        if token:
            self.stats["solved"] += 1
            logger.info(f"[Solver] {captcha_type.value} solved in {time.time() - start_time:.1f}s")
        else:
            self.stats["failed"] += 1
        return token

    async def _solve_capsolver(
        self,
        session: aiohttp.ClientSession,
        captcha_type: CaptchaType,
        page_url: str,
        site_key: str,
    ) -> Optional[str]:
        task: Dict[str, Any] = {
            "type": CAPSOLVER_TASK_TYPES[captcha_type],
            "websiteKey": site_key,
            "websiteURL": page_url,
        }
        if captcha_type == CaptchaType.RECAPTCHA_INVISIBLE:
            task["pageAction"] = "verify"

        logger.info(f"[Capsolver] Creating {task['type']} task for {page_url}")
        async with session.post(
            f"{CAPSOLVER_API_URL}/createTask",
            json={"clientKey": self.api_key, "task": task},
        ) as resp:
            data = await resp.json()

        if data.get("errorId") != 0:
            logger.error(f"[Capsolver] Create task failed: {data.get('errorDescription') or data}")
            return None

        task_id = data["taskId"]
        deadline = time.monotonic() + self.timeout
        while time.monotonic() < deadline:
            await asyncio.sleep(self.poll_interval)

            async with session.post(
                f"{CAPSOLVER_API_URL}/getTaskResult",
                json={"clientKey": self.api_key, "taskId": task_id},
            ) as resp:
                result = await resp.json()

            if result.get("errorId") != 0:
                logger.error(f"[Capsolver] Get result failed: {result.get('errorDescription') or result}")
                return None

            status = result.get("status")
            if status == "ready":
                solution = result.get("solution", {})
                return solution.get("gRecaptchaResponse") or solution.get("token")
            if status != "processing":
                logger.error(f"[Capsolver] Unexpected status: {status}")
                return None

        logger.error("[Capsolver] Timeout waiting for solution")
        return None

    async def _solve_2captcha(
        self,
        session: aiohttp.ClientSession,
        captcha_type: CaptchaType,
        page_url: str,
        site_key: str,
    ) -> Optional[str]:
        method = TWOCAPTCHA_METHODS[captcha_type]
        data: Dict[str, Any] = {
            "key": self.api_key,
            "method": method,
            "pageurl": page_url,
            "json": 1,
        }
        if method == "userrecaptcha":
            data["googlekey"] = site_key
            if captcha_type == CaptchaType.RECAPTCHA_INVISIBLE:
                data["version"] = "v3"
                data["action"] = "verify"
        else:
            data["sitekey"] = site_key

        async with session.post(f"{TWOCAPTCHA_API_URL}/in.php", data=data) as resp:
            result = await resp.json(content_type=None)

        if result.get("status") != 1:
            logger.error(f"[2captcha] Submit error: {result.get('request')}")
            return None

        captcha_id = result["request"]
        params = {"key": self.api_key, "action": "get", "id": captcha_id, "json": 1}
        deadline = time.monotonic() + self.timeout
        while time.monotonic() < deadline:
            await asyncio.sleep(self.poll_interval)

            async with session.get(f"{TWOCAPTCHA_API_URL}/res.php", params=params) as resp:
                result = await resp.json(content_type=None)

            if result.get("status") == 1:
                return result["request"]
            if result.get("request") != "CAPCHA_NOT_READY":
                logger.error(f"[2captcha] Solve error: {result.get('request')}")
                return None

        logger.error("[2captcha] Timeout waiting for solution")
        return None

