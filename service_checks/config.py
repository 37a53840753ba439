from __future__ import annotations

import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import httpx
import yaml

from service_checks.errors import ConfigError, ServiceConfigError


SERVICE_CONFIG_SUFFIX = ".toml"
SELECTOR_STATES = ("attached", "detached", "visible", "hidden")
ALERT_LANGUAGES = ("ja", "en")
ALERT_STYLES = ("detailed", "simple")


@dataclass(frozen=True)
class CookieConfig:
    name: str
    value: str
    domain: str | None = None
    path: str | None = None
    secure: bool | None = None
    http_only: bool | None = None


@dataclass(frozen=True)
class ServiceCheckConfig:
    name: str
    access_url: str
    find_selector: str
    cookie: CookieConfig | None = None
    selector_state: str = "attached"  # playwright: 'attached'|'detached'|'visible'|'hidden'
    navigation_timeout_seconds: float | None = None
    selector_timeout_seconds: float | None = None
    source_path: Path | None = None


@dataclass(frozen=True)
class WebhookConfig:
    webhook_url: str
    alert_message: str = ""


@dataclass(frozen=True)
class MonitorSettings:
    browser_concurrency: int = 2
    navigation_timeout_seconds: float = 30.0
    selector_timeout_seconds: float = 10.0
    webhook_timeout_seconds: float = 15.0
    headless: bool = True
    alert_language: str = "ja"
    alert_style: str = "detailed"
    browser_args: list[str] = field(default_factory=lambda: ["--no-sandbox", "--disable-gpu"])


def _read_toml(path: Path) -> dict[str, Any]:
    try:
        with open(path, "rb") as f:
            return tomllib.load(f)
    except FileNotFoundError as exc:
        raise ConfigError(f"Config file not found: {path}") from exc
    except OSError as exc:
        raise ConfigError(f"Cannot read config file {path}: {exc}") from exc
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {path}: {exc}") from exc


def _optional_str(cfg: dict[str, Any], key: str, path: Path | None) -> str | None:
    value = cfg.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ServiceConfigError(f"{key} must be a string", path=path)
    return value


def _optional_bool(cfg: dict[str, Any], key: str, path: Path | None) -> bool | None:
    value = cfg.get(key)
    if value is None:
        return None
    if not isinstance(value, bool):
        raise ServiceConfigError(f"{key} must be a boolean", path=path)
    return value


def _optional_positive_float(cfg: dict[str, Any], key: str, path: Path | None) -> float | None:
    value = cfg.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise ServiceConfigError(f"{key} must be a positive number", path=path)
    return float(value)


def _parse_cookie(raw: Any, path: Path | None) -> CookieConfig | None:
    if raw is None:
        return None
    if not isinstance(raw, dict):
        raise ServiceConfigError(ServiceConfigError.INVALID_COOKIE, path=path)

    name = raw.get("name")
    value = raw.get("value")
    if not isinstance(name, str) or not name or not isinstance(value, str):
        raise ServiceConfigError(ServiceConfigError.INVALID_COOKIE, path=path)

    return CookieConfig(
        name=name,
        value=value,
        domain=_optional_str(raw, "domain", path),
        path=_optional_str(raw, "path", path),
        secure=_optional_bool(raw, "secure", path),
        http_only=_optional_bool(raw, "http_only", path),
    )


def parse_service_config(data: dict[str, Any], *, name: str, path: Path | None = None) -> ServiceCheckConfig:
    access_url = data.get("access_url")
    if not isinstance(access_url, str) or not access_url.strip():
        raise ServiceConfigError(ServiceConfigError.ACCESS_URL_NOT_DEFINED, path=path)

    find_selector = data.get("find_selector")
    if not isinstance(find_selector, str) or not find_selector.strip():
        raise ServiceConfigError(ServiceConfigError.FIND_SELECTOR_NOT_DEFINED, path=path)

    selector_state = str(data.get("selector_state") or "attached").strip().lower()
    if selector_state not in SELECTOR_STATES:
        raise ServiceConfigError(
            f"selector_state must be one of {', '.join(SELECTOR_STATES)}, got {selector_state!r}",
            path=path,
        )

    return ServiceCheckConfig(
        name=str(data.get("name") or name),
        access_url=access_url.strip(),
        find_selector=find_selector.strip(),
        cookie=_parse_cookie(data.get("cookie"), path),
        selector_state=selector_state,
        navigation_timeout_seconds=_optional_positive_float(data, "navigation_timeout_seconds", path),
        selector_timeout_seconds=_optional_positive_float(data, "selector_timeout_seconds", path),
        source_path=path,
    )


def load_service_config(path: Path) -> ServiceCheckConfig:
    """
    Load one service definition, e.g.:

        access_url = "https://example.com"
        find_selector = "#selector"
        [cookie]
        name = "cookie_name"
        value = "cookie_value"

    The [cookie] section is optional.
    """
    data = _read_toml(path)
    return parse_service_config(data, name=path.stem, path=path)


def discover_service_files(service_dir: Path) -> list[Path]:
    if not service_dir.is_dir():
        raise ConfigError(f"Service config directory not found: {service_dir}")
    return sorted(
        p for p in service_dir.iterdir() if p.is_file() and p.suffix == SERVICE_CONFIG_SUFFIX
    )


def load_webhook_config(path: Path) -> WebhookConfig:
    data = _read_toml(path)
    webhook_url = data.get("webhook_url")
    if not isinstance(webhook_url, str) or not webhook_url.strip():
        raise ConfigError(f"{path}: webhook_url is required")
    if not webhook_url.strip().startswith(("http://", "https://")):
        raise ConfigError(f"{path}: webhook_url must be an http(s) URL")
    try:
        httpx.URL(webhook_url.strip())
    except httpx.InvalidURL as exc:
        raise ConfigError(f"{path}: webhook_url is not a valid URL: {exc}") from exc

    alert_message = data.get("alert_message", "")
    if not isinstance(alert_message, str):
        raise ConfigError(f"{path}: alert_message must be a string")
    return WebhookConfig(webhook_url=webhook_url.strip(), alert_message=alert_message)


def load_monitor_settings(path: Path | None) -> MonitorSettings:
    if path is None:
        return MonitorSettings()
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError as exc:
        raise ConfigError(f"Settings file not found: {path}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError("Settings YAML must be a mapping")
    return parse_monitor_settings(data)


def parse_monitor_settings(data: dict[str, Any]) -> MonitorSettings:
    defaults = MonitorSettings()
    browser_concurrency = data.get("browser_concurrency", defaults.browser_concurrency)
    if isinstance(browser_concurrency, bool) or not isinstance(browser_concurrency, int) or browser_concurrency < 1:
        raise ConfigError(f"browser_concurrency must be an integer >= 1, got {browser_concurrency!r}")

    headless = data.get("headless", defaults.headless)
    if not isinstance(headless, bool):
        raise ConfigError(f"headless must be a boolean, got {headless!r}")

    try:
        navigation_timeout = float(data.get("navigation_timeout_seconds", defaults.navigation_timeout_seconds))
        selector_timeout = float(data.get("selector_timeout_seconds", defaults.selector_timeout_seconds))
        webhook_timeout = float(data.get("webhook_timeout_seconds", defaults.webhook_timeout_seconds))
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid numeric setting: {exc}") from exc
    if navigation_timeout <= 0 or selector_timeout <= 0 or webhook_timeout <= 0:
        raise ConfigError("Timeouts must be positive")

    alert_language = str(data.get("alert_language") or defaults.alert_language).strip().lower()
    if alert_language not in ALERT_LANGUAGES:
        raise ConfigError(f"alert_language must be one of {', '.join(ALERT_LANGUAGES)}")

    alert_style = str(data.get("alert_style") or defaults.alert_style).strip().lower()
    if alert_style not in ALERT_STYLES:
        raise ConfigError(f"alert_style must be one of {', '.join(ALERT_STYLES)}")

    browser_args_raw = data.get("browser_args")
    if browser_args_raw is None:
        browser_args = list(defaults.browser_args)
    elif isinstance(browser_args_raw, list):
        browser_args = [str(a) for a in browser_args_raw if str(a or "").strip()]
    else:
        raise ConfigError("browser_args must be a list of strings")

    return MonitorSettings(
        browser_concurrency=browser_concurrency,
        navigation_timeout_seconds=navigation_timeout,
        selector_timeout_seconds=selector_timeout,
        webhook_timeout_seconds=webhook_timeout,
        headless=headless,
        alert_language=alert_language,
        alert_style=alert_style,
        browser_args=browser_args,
    )
