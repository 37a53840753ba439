from __future__ import annotations

import argparse
import asyncio
import logging
import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Awaitable, Callable

import httpx
from playwright.async_api import async_playwright

from service_checks.common_check import CheckOutcome, FailureKind, find_chromium_executable, run_check
from service_checks.config import (
    MonitorSettings,
    ServiceCheckConfig,
    WebhookConfig,
    discover_service_files,
    load_monitor_settings,
    load_service_config,
    load_webhook_config,
)
from service_checks.errors import ConfigError, MonitorError
from service_checks.webhook import send_webhook_alert


LOGGER = logging.getLogger("service-monitoring")

CheckFn = Callable[[ServiceCheckConfig], Awaitable[CheckOutcome]]

EXIT_OK = 0
EXIT_CONFIG_ERROR = 2


@dataclass(frozen=True)
class ServiceRunResult:
    path: Path
    outcome: CheckOutcome | None = None
    error: str | None = None
    notified: bool | None = None  # None: no alert attempted


@dataclass(frozen=True)
class CycleSummary:
    checked: int
    ok: int
    failed: int
    errored: int
    notified: int
    notify_failed: int

    @classmethod
    def from_results(cls, results: list[ServiceRunResult]) -> "CycleSummary":
        outcomes = [r.outcome for r in results if r.outcome is not None]
        return cls(
            checked=len(results),
            ok=sum(1 for o in outcomes if o.ok),
            failed=sum(1 for o in outcomes if not o.ok),
            errored=sum(1 for r in results if r.error is not None),
            notified=sum(1 for r in results if r.notified is True),
            notify_failed=sum(1 for r in results if r.notified is False),
        )


@dataclass(frozen=True)
class MonitorPaths:
    service_dir: Path
    webhook_config: Path
    settings_file: Path | None


def resolve_paths(
    base_dir: Path,
    *,
    service_dir: str | None = None,
    webhook_config: str | None = None,
    settings_file: str | None = None,
) -> MonitorPaths:
    default_settings = base_dir / "conf" / "monitor.yaml"
    if settings_file:
        settings_path: Path | None = Path(settings_file)
    elif default_settings.is_file():
        settings_path = default_settings
    else:
        settings_path = None
    return MonitorPaths(
        service_dir=Path(service_dir) if service_dir else base_dir / "conf" / "service",
        webhook_config=Path(webhook_config) if webhook_config else base_dir / "conf" / "webhook" / "google_chat.toml",
        settings_file=settings_path,
    )


async def notify_failure(
    outcome: CheckOutcome,
    kind: FailureKind,
    http_client: httpx.AsyncClient,
    webhook: WebhookConfig,
    settings: MonitorSettings,
) -> bool:
    ok, info = await send_webhook_alert(
        http_client,
        webhook,
        outcome.url,
        kind,
        language=settings.alert_language,
        style=settings.alert_style,
        timeout_seconds=settings.webhook_timeout_seconds,
    )
    if ok:
        LOGGER.info("Alert sent service=%s kind=%s", outcome.service, kind.value)
    else:
        LOGGER.error(
            "Alert failed service=%s kind=%s status=%s error=%s",
            outcome.service,
            kind.value,
            info.get("status_code"),
            info.get("error"),
        )
    return ok


async def check_one_service(
    path: Path,
    check_fn: CheckFn,
    *,
    browser_semaphore: asyncio.Semaphore,
    http_client: httpx.AsyncClient,
    webhook: WebhookConfig,
    settings: MonitorSettings,
    dry_run: bool = False,
) -> ServiceRunResult:
    try:
        config = load_service_config(path)
        async with browser_semaphore:
            outcome = await check_fn(config)
    except MonitorError as exc:
        LOGGER.error("Service check aborted path=%s error=%s", path, exc)
        return ServiceRunResult(path=path, error=f"{type(exc).__name__}: {exc}")
    except Exception as exc:
        err = f"{type(exc).__name__}: {exc}"
        LOGGER.exception("Service check crashed path=%s error=%s", path, err)
        return ServiceRunResult(path=path, error=err)

    kind = outcome.kind
    if kind is None:
        LOGGER.info(
            "Service OK service=%s url=%s elapsed_ms=%s",
            outcome.service,
            outcome.url,
            outcome.details.get("elapsed_ms"),
        )
        return ServiceRunResult(path=path, outcome=outcome)

    LOGGER.warning(
        "Service FAILED service=%s url=%s kind=%s error=%s",
        outcome.service,
        outcome.url,
        kind.value,
        outcome.details.get("error"),
    )
    if dry_run:
        return ServiceRunResult(path=path, outcome=outcome)

    notified = await notify_failure(outcome, kind, http_client, webhook, settings)
    return ServiceRunResult(path=path, outcome=outcome, notified=notified)


async def run_cycle(
    service_files: list[Path],
    check_fn: CheckFn,
    *,
    http_client: httpx.AsyncClient,
    webhook: WebhookConfig,
    settings: MonitorSettings,
    dry_run: bool = False,
) -> CycleSummary:
    browser_semaphore = asyncio.Semaphore(settings.browser_concurrency)
    results = await asyncio.gather(
        *[
            check_one_service(
                path,
                check_fn,
                browser_semaphore=browser_semaphore,
                http_client=http_client,
                webhook=webhook,
                settings=settings,
                dry_run=dry_run,
            )
            for path in service_files
        ]
    )
    return CycleSummary.from_results(list(results))


async def run_once(
    paths: MonitorPaths,
    settings: MonitorSettings,
    webhook: WebhookConfig,
    *,
    dry_run: bool = False,
) -> CycleSummary:
    service_files = discover_service_files(paths.service_dir)
    chromium_path = find_chromium_executable()
    LOGGER.info(
        "Starting service checks services=%d service_dir=%s browser_concurrency=%d chromium_path=%s dry_run=%s",
        len(service_files),
        paths.service_dir,
        settings.browser_concurrency,
        chromium_path or "<playwright bundled>",
        dry_run,
    )
    if not service_files:
        LOGGER.warning("No service configs found in %s", paths.service_dir)
        return CycleSummary.from_results([])

    async with httpx.AsyncClient(headers={"User-Agent": "Service Page Monitor"}) as http_client:
        async with async_playwright() as p:

            async def _check(config: ServiceCheckConfig) -> CheckOutcome:
                return await run_check(config, p.chromium, settings, chromium_path=chromium_path)

            return await run_cycle(
                service_files,
                _check,
                http_client=http_client,
                webhook=webhook,
                settings=settings,
                dry_run=dry_run,
            )


def _positive_int(value: str) -> int:
    try:
        n = int(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"expected an integer, got {value!r}") from exc
    if n < 1:
        raise argparse.ArgumentTypeError(f"must be >= 1, got {n}")
    return n


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Service page monitor (headless browser + chat webhook)")
    parser.add_argument(
        "--base-dir",
        default=os.getenv("SERVICE_MONITOR_HOME") or os.getcwd(),
        help="Directory containing conf/service and conf/webhook",
    )
    parser.add_argument("--service-dir", default=None, help="Directory of per-service TOML files")
    parser.add_argument("--webhook-config", default=None, help="Path to the webhook TOML file")
    parser.add_argument("--config", default=None, help="Path to YAML monitor settings")
    parser.add_argument("--concurrency", type=_positive_int, default=None, help="Max browsers running at once")
    parser.add_argument("--dry-run", action="store_true", help="Run checks without sending alerts")
    parser.add_argument(
        "--log-level",
        default=os.getenv("LOG_LEVEL", "INFO"),
        help="Logging level (INFO, WARNING, ...)",
    )
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    # The webhook key lives in the URL query string.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    paths = resolve_paths(
        Path(args.base_dir),
        service_dir=args.service_dir,
        webhook_config=args.webhook_config,
        settings_file=args.config,
    )
    try:
        settings = load_monitor_settings(paths.settings_file)
        if args.concurrency is not None:
            settings = replace(settings, browser_concurrency=args.concurrency)
        webhook = load_webhook_config(paths.webhook_config)
        summary = asyncio.run(run_once(paths, settings, webhook, dry_run=bool(args.dry_run)))
    except ConfigError as exc:
        LOGGER.error("Configuration error: %s", exc)
        return EXIT_CONFIG_ERROR

    LOGGER.info(
        "Service checks finished checked=%d ok=%d failed=%d errored=%d notified=%d notify_failed=%d",
        summary.checked,
        summary.ok,
        summary.failed,
        summary.errored,
        summary.notified,
        summary.notify_failed,
    )
    return EXIT_OK


if __name__ == "__main__":
    raise SystemExit(main())
