from __future__ import annotations

import enum
import logging
import os
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from urllib.parse import urljoin, urlsplit, urlunsplit

from playwright.async_api import Browser, BrowserType, Error as PlaywrightError, Page

from service_checks.config import CookieConfig, MonitorSettings, ServiceCheckConfig
from service_checks.errors import BrowserLaunchError, BrowserSessionError


LOGGER = logging.getLogger("service-monitoring")


class FailureKind(str, enum.Enum):
    ACCESS_URL_ERROR = "access_url_error"
    COOKIE_ERROR = "cookie_error"
    FIND_SELECTOR_ERROR = "find_selector_error"

    def message(self, language: str = "ja") -> str:
        catalog = FAILURE_MESSAGES.get(language) or FAILURE_MESSAGES["ja"]
        return catalog[self]


FAILURE_MESSAGES: dict[str, dict[FailureKind, str]] = {
    "ja": {
        FailureKind.ACCESS_URL_ERROR: "指定したURLにアクセスできませんでした。",
        FailureKind.COOKIE_ERROR: "不正なCookieが指定されています。",
        FailureKind.FIND_SELECTOR_ERROR: "指定したセレクタが見つかりませんでした。",
    },
    "en": {
        FailureKind.ACCESS_URL_ERROR: "Could not access the configured URL.",
        FailureKind.COOKIE_ERROR: "The configured cookie was not accepted.",
        FailureKind.FIND_SELECTOR_ERROR: "The configured selector was not found.",
    },
}


@dataclass(frozen=True)
class CheckOutcome:
    service: str
    url: str
    kind: FailureKind | None = None
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.kind is None


def _is_browser_infra_error(exc: Exception) -> bool:
    name = type(exc).__name__
    msg = str(exc or "").lower()

    if name == "TargetClosedError":
        return True
    if "target page, context or browser has been closed" in msg:
        return True
    if "browser has been closed" in msg:
        return True

    # Renderer crashes point at resource pressure on the monitoring host, not the site.
    if "page crashed" in msg:
        return True
    if "target crashed" in msg:
        return True

    if "connection closed while reading from the driver" in msg:
        return True
    if "connection closed while writing to the driver" in msg:
        return True
    if "pipe closed by peer" in msg:
        return True

    return False


def _safe_url(url: str) -> str:
    """
    Strip query strings and fragments so tokens in URLs stay out of logs.
    """
    s = (url or "").strip()
    if not s:
        return s
    try:
        parts = urlsplit(s)
        return urlunsplit((parts.scheme, parts.netloc, parts.path, "", ""))
    except ValueError:
        return s[:500]


def _error_text(exc: Exception) -> str:
    first_line = str(exc).strip().splitlines()[0] if str(exc).strip() else ""
    return f"{type(exc).__name__}: {first_line}"


def build_cookie_param(cookie: CookieConfig, access_url: str) -> dict[str, Any]:
    """
    Playwright needs either a url or a domain/path pair to scope a cookie.
    """
    param: dict[str, Any] = {"name": cookie.name, "value": cookie.value}
    if cookie.domain:
        param["domain"] = cookie.domain
        param["path"] = cookie.path or "/"
    elif cookie.path:
        param["url"] = urljoin(access_url, cookie.path)
    else:
        param["url"] = access_url
    if cookie.secure is not None:
        param["secure"] = cookie.secure
    if cookie.http_only is not None:
        param["httpOnly"] = cookie.http_only
    return param


def _has_cookie(cookies: list[dict[str, Any]], cookie: CookieConfig) -> bool:
    return any(c.get("name") == cookie.name and c.get("value") == cookie.value for c in cookies)


def find_chromium_executable() -> str | None:
    env_path = os.getenv("CHROMIUM_PATH")
    if env_path and Path(env_path).exists():
        return env_path

    candidates = [
        "/usr/bin/chromium",
        "/usr/bin/chromium-browser",
        "/usr/bin/google-chrome",
        "/usr/bin/google-chrome-stable",
        "/Applications/Google Chrome.app/Contents/MacOS/Google Chrome",
    ]
    for path in candidates:
        if Path(path).exists():
            return path
    return None


async def launch_browser(
    browser_type: BrowserType, settings: MonitorSettings, *, chromium_path: str | None = None
) -> Browser:
    launch_kwargs: dict[str, Any] = {"headless": settings.headless, "args": list(settings.browser_args)}
    if chromium_path:
        launch_kwargs["executable_path"] = chromium_path
    try:
        return await browser_type.launch(**launch_kwargs)
    except PlaywrightError as e:
        raise BrowserLaunchError(f"browser_launch_error: {_error_text(e)}") from e


async def _navigate(page: Page, url: str, timeout_ms: int) -> dict[str, Any]:
    response = await page.goto(url, wait_until="load", timeout=timeout_ms)
    return {
        "http_status": response.status if response else None,
        "final_url": _safe_url(page.url),
    }


async def _verify_cookie(page: Page, config: ServiceCheckConfig, cookie: CookieConfig, timeout_ms: int) -> bool:
    await page.context.add_cookies([build_cookie_param(cookie, config.access_url)])
    await page.reload(wait_until="load", timeout=timeout_ms)
    return _has_cookie(await page.context.cookies(), cookie)


async def run_check(
    config: ServiceCheckConfig,
    browser_type: BrowserType,
    settings: MonitorSettings,
    *,
    chromium_path: str | None = None,
) -> CheckOutcome:
    """
    Open the service page in a private browser and classify the first failing step.

    Steps: navigate to access_url, then (when a cookie is configured) inject it,
    reload and confirm the browser still holds it, then wait for find_selector.
    Each step runs once; the browser is closed on every path.

    Raises BrowserSessionError when the browser itself fails, since that says
    nothing about the service.
    """
    started = time.perf_counter()
    nav_timeout_ms = int((config.navigation_timeout_seconds or settings.navigation_timeout_seconds) * 1000)
    selector_timeout_ms = int((config.selector_timeout_seconds or settings.selector_timeout_seconds) * 1000)

    def _outcome(kind: FailureKind | None, **details: Any) -> CheckOutcome:
        elapsed_ms = (time.perf_counter() - started) * 1000.0
        return CheckOutcome(
            service=config.name,
            url=config.access_url,
            kind=kind,
            details={**details, "elapsed_ms": round(elapsed_ms, 3)},
        )

    def _infra_guard(step: str, exc: PlaywrightError) -> None:
        if _is_browser_infra_error(exc) or not browser.is_connected():
            raise BrowserSessionError(f"browser_{step}_error: {_error_text(exc)}") from exc

    browser = await launch_browser(browser_type, settings, chromium_path=chromium_path)
    try:
        try:
            context = await browser.new_context()
            page = await context.new_page()
        except PlaywrightError as e:
            raise BrowserSessionError(f"browser_context_error: {_error_text(e)}") from e

        try:
            nav = await _navigate(page, config.access_url, nav_timeout_ms)
        except PlaywrightError as e:
            _infra_guard("goto", e)
            return _outcome(FailureKind.ACCESS_URL_ERROR, step="navigate", error=_error_text(e))

        if config.cookie is not None:
            try:
                cookie_ok = await _verify_cookie(page, config, config.cookie, nav_timeout_ms)
            except PlaywrightError as e:
                _infra_guard("cookie", e)
                return _outcome(FailureKind.COOKIE_ERROR, step="cookie", error=_error_text(e), **nav)
            if not cookie_ok:
                return _outcome(
                    FailureKind.COOKIE_ERROR,
                    step="cookie",
                    error=f"cookie {config.cookie.name!r} missing after reload",
                    **nav,
                )

        try:
            await page.wait_for_selector(config.find_selector, state=config.selector_state, timeout=selector_timeout_ms)
        except PlaywrightError as e:
            _infra_guard("selector", e)
            return _outcome(
                FailureKind.FIND_SELECTOR_ERROR,
                step="find_selector",
                error=_error_text(e),
                selector=config.find_selector,
                **nav,
            )

        return _outcome(None, step="done", **nav)
    finally:
        try:
            await browser.close()
        except PlaywrightError as e:
            LOGGER.debug("Browser close failed service=%s error=%s", config.name, _error_text(e))
