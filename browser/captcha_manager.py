"""
CAPTCHA Manager
Resolves a CAPTCHA on a live page: automated token solving first (when a
solver is configured), then the manual remote-assist relay as a fallback.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional, Dict, Any, List

from playwright.async_api import Page, Error as PlaywrightError

from browser.detection import (
    CaptchaType,
    PageInspector,
    PageSignals,
    detect_captcha_type,
    extract_site_key,
    has_captcha,
    is_blocked,
)
from core.error_handler import CaptchaSessionNotFound, SessionLifecycleError

logger = logging.getLogger(__name__)

# Form fields each provider reads its response token from
TOKEN_FIELDS = {
    CaptchaType.RECAPTCHA_CHECKBOX: ["g-recaptcha-response"],
    CaptchaType.RECAPTCHA_INVISIBLE: ["g-recaptcha-response"],
    CaptchaType.HCAPTCHA: ["h-captcha-response", "g-recaptcha-response"],
    CaptchaType.TURNSTILE: ["cf-turnstile-response"],
    CaptchaType.SMARTCAPTCHA_REDIRECT: ["smart-token"],
}

INJECT_TOKEN_SCRIPT = """
({ token, fields, callbacks }) => {
    let injected = 0;
    for (const name of fields) {
        let targets = Array.from(document.querySelectorAll(`[name="${name}"]`));
        const byId = document.getElementById(name);
        if (byId && !targets.includes(byId)) targets.push(byId);
        if (targets.length === 0) {
            const holder = document.querySelector('form') || document.body;
            const input = document.createElement('textarea');
            input.name = name;
            input.style.display = 'none';
            holder.appendChild(input);
            targets = [input];
        }
        for (const el of targets) {
            el.value = token;
            el.innerHTML = token;
            injected += 1;
        }
    }
    let called = 0;
    for (const name of callbacks) {
        const fn = name.split('.').reduce((obj, key) => (obj ? obj[key] : undefined), window);
        if (typeof fn === 'function') {
            try { fn(token); called += 1; } catch (e) {}
        }
    }
    return { injected, called };
}
"""


@dataclass
class CaptchaResult:
    """Result of a CAPTCHA resolution attempt."""
    success: bool
    captcha_type: Optional[CaptchaType] = None
    method: Optional[str] = None
    error: Optional[str] = None


class CaptchaResolver:
    """
    Two-path CAPTCHA resolution.

    The automated path runs only when a solver with an API key is wired in.
    The manual path runs only when both a relay and an enabled notifier are
    wired in. Failures on either path are logged; ``resolve`` never raises.
    """

    def __init__(
        self,
        solver=None,
        relay=None,
        notifier=None,
        inspector: Optional[PageInspector] = None,
        solve_timeout: float = 120.0,
        manual_timeout: float = 300.0,
        post_solve_wait: float = 3.0,
    ):
        self.solver = solver
        self.relay = relay
        self.notifier = notifier
        self.inspector = inspector or PageInspector()
        self.solve_timeout = solve_timeout
        self.manual_timeout = manual_timeout
        self.post_solve_wait = post_solve_wait
        self.last_result: Optional[CaptchaResult] = None
        self.stats = {"solver_solved": 0, "solver_failed": 0, "manual_solved": 0, "manual_failed": 0}

    @classmethod
    def from_config(cls, app_config, solver=None, relay=None, notifier=None) -> "CaptchaResolver":
        relay_config = app_config.relay
        return cls(
            solver=solver,
            relay=relay,
            notifier=notifier,
            solve_timeout=relay_config.solve_timeout_seconds,
            manual_timeout=relay_config.manual_timeout_seconds,
            post_solve_wait=relay_config.post_solve_wait_seconds,
        )

    @property
    def automated_available(self) -> bool:
        return self.solver is not None and self.solver.is_configured()

    @property
    def manual_available(self) -> bool:
        return self.relay is not None and self.notifier is not None and self.notifier.enabled()

    async def resolve(self, page: Page, expected: Optional[List[str]] = None) -> bool:
        """
        Try to clear the CAPTCHA on the page. Returns True once it is gone.

        ``expected`` selectors confirm the document the caller was loading.
        """
        result = await self._resolve(page, expected)
        self.last_result = result
        if result.success:
            logger.info(f"[Captcha] Resolved {self._type_name(result.captcha_type)} via {result.method}")
        else:
            logger.warning(f"[Captcha] Unresolved {self._type_name(result.captcha_type)}: {result.error}")
        return result.success

    async def _resolve(self, page: Page, expected: Optional[List[str]]) -> CaptchaResult:
        if page.is_closed():
            return CaptchaResult(success=False, error="page is closed")

        try:
            signals = await self.inspector.inspect(page, expected)
        except PlaywrightError as e:
            return CaptchaResult(success=False, error=f"inspection failed: {e}")

        captcha_type = detect_captcha_type(signals, self.inspector.markers)
        if captcha_type is None:
            blocked = is_blocked(signals, self.inspector.markers)
            return CaptchaResult(success=not blocked, method="none", error="blocked without CAPTCHA" if blocked else None)

        logger.info(f"[Captcha] Detected {captcha_type.value} on {page.url}")
        errors: List[str] = []

        if self.automated_available:
            error = await self._solve_automatically(page, signals, captcha_type, expected)
            if error is None:
                self.stats["solver_solved"] += 1
                return CaptchaResult(success=True, captcha_type=captcha_type, method="solver")
            self.stats["solver_failed"] += 1
            errors.append(error)

        if self.manual_available:
            error = await self._solve_manually(page, expected)
            if error is None:
                self.stats["manual_solved"] += 1
                return CaptchaResult(success=True, captcha_type=captcha_type, method="manual")
            self.stats["manual_failed"] += 1
            errors.append(error)

        if not errors:
            errors.append("no solver or manual relay configured")
        return CaptchaResult(success=False, captcha_type=captcha_type, error="; ".join(errors))

    async def _solve_automatically(
        self,
        page: Page,
        signals: PageSignals,
        captcha_type: CaptchaType,
        expected: Optional[List[str]] = None,
    ) -> Optional[str]:
        """Returns None on success, otherwise the reason it failed."""
        fields = TOKEN_FIELDS.get(captcha_type)
        site_key = extract_site_key(signals, captcha_type)
        if not fields or not site_key:
            return f"solver cannot handle {captcha_type.value} without a site key"

        try:
            token = await asyncio.wait_for(
                self.solver.solve(captcha_type, page.url, site_key),
                timeout=self.solve_timeout,
            )
        except asyncio.TimeoutError:
            return f"solver timed out after {self.solve_timeout:.0f}s"
        except Exception as e:
            logger.error(f"[Captcha] Solver error: {e}")
            return f"solver error: {e}"

        if not token:
            return "solver returned no token"

        try:
            injected = await page.evaluate(INJECT_TOKEN_SCRIPT, {
                "token": token,
                "fields": fields,
                "callbacks": signals.callbacks,
            })
            logger.debug(f"[Captcha] Token injected: {injected}")
            await asyncio.sleep(self.post_solve_wait)
            after = await self.inspector.inspect(page, expected)
        except PlaywrightError as e:
            return f"token injection failed: {e}"

        if has_captcha(after, self.inspector.markers) and is_blocked(after, self.inspector.markers):
            return "CAPTCHA still present after token injection"
        return None

    async def _solve_manually(self, page: Page, expected: Optional[List[str]] = None) -> Optional[str]:
        """Returns None on success, otherwise the reason it failed."""
        try:
            session_id = await self.relay.begin_session(page)
        except SessionLifecycleError as e:
            return str(e)

        try:
            screenshot = await self.relay.screenshot(session_id)
            if not await self.notifier.deliver(session_id, screenshot):
                return "notification could not be delivered"

            logger.info(f"[Captcha] Waiting up to {self.manual_timeout:.0f}s for manual solve ({session_id})")
            if await self.relay.wait_for_resolution(page, session_id, self.manual_timeout, expected):
                return None
            return "manual relay timed out"
        except (CaptchaSessionNotFound, PlaywrightError) as e:
            return f"manual relay failed: {e}"
        finally:
            await self.relay.close_session(session_id)

    @staticmethod
    def _type_name(captcha_type: Optional[CaptchaType]) -> str:
        return captcha_type.value if captcha_type else "CAPTCHA"

    def get_stats(self) -> Dict[str, Any]:
        """Get CAPTCHA resolution statistics."""
        return {
            **self.stats,
            "automated_available": self.automated_available,
            "manual_available": self.manual_available,
        }
