from __future__ import annotations

import asyncio
import json
from pathlib import Path

import httpx
import pytest

import service_checks.main as monitor
from service_checks.common_check import CheckOutcome, FailureKind
from service_checks.config import MonitorSettings, ServiceCheckConfig, WebhookConfig
from service_checks.errors import BrowserLaunchError


WEBHOOK = WebhookConfig(webhook_url="https://chat.example.test/hook?key=k")
SELECTOR_MESSAGE = FailureKind.FIND_SELECTOR_ERROR.message("ja")
COOKIE_MESSAGE = FailureKind.COOKIE_ERROR.message("ja")


def _write_service(directory: Path, name: str, body: str) -> Path:
    path = directory / f"{name}.toml"
    path.write_text(body, encoding="utf-8")
    return path


async def _fake_check(config: ServiceCheckConfig) -> CheckOutcome:
    # Stands in for a page that has #present and never keeps cookies.
    if config.cookie is not None:
        return CheckOutcome(service=config.name, url=config.access_url, kind=FailureKind.COOKIE_ERROR)
    if config.find_selector != "#present":
        return CheckOutcome(service=config.name, url=config.access_url, kind=FailureKind.FIND_SELECTOR_ERROR)
    return CheckOutcome(service=config.name, url=config.access_url)


class _WebhookRecorder:
    def __init__(self, status_code: int = 200) -> None:
        self.status_code = status_code
        self.payloads: list[dict] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        assert str(request.url) == WEBHOOK.webhook_url
        self.payloads.append(json.loads(request.content))
        return httpx.Response(self.status_code, json={})


async def _run(paths: list[Path], recorder, check_fn=_fake_check, **kwargs) -> monitor.CycleSummary:
    settings = kwargs.pop("settings", MonitorSettings())
    webhook = kwargs.pop("webhook", WEBHOOK)
    async with httpx.AsyncClient(transport=httpx.MockTransport(recorder)) as client:
        return await monitor.run_cycle(
            paths,
            check_fn,
            http_client=client,
            webhook=webhook,
            settings=settings,
            **kwargs,
        )


@pytest.mark.asyncio
async def test_scenario_a_success_sends_nothing(tmp_path: Path) -> None:
    path = _write_service(tmp_path, "ok", 'access_url = "https://ok.example/"\nfind_selector = "#present"\n')
    recorder = _WebhookRecorder()

    summary = await _run([path], recorder)

    assert summary == monitor.CycleSummary(checked=1, ok=1, failed=0, errored=0, notified=0, notify_failed=0)
    assert recorder.payloads == []


@pytest.mark.asyncio
async def test_scenario_b_missing_selector_alerts(tmp_path: Path) -> None:
    path = _write_service(tmp_path, "missing", 'access_url = "https://ok.example/"\nfind_selector = "#missing"\n')
    recorder = _WebhookRecorder()

    summary = await _run([path], recorder)

    assert summary.failed == 1
    assert summary.notified == 1
    assert recorder.payloads == [{"text": f"https://ok.example/\n{SELECTOR_MESSAGE}"}]


@pytest.mark.asyncio
async def test_scenario_c_cookie_not_kept_alerts(tmp_path: Path) -> None:
    path = _write_service(
        tmp_path,
        "cookie",
        'access_url = "https://auth.example/"\nfind_selector = "#present"\n[cookie]\nname = "sess"\nvalue = "abc"\n',
    )
    recorder = _WebhookRecorder()

    summary = await _run([path], recorder)

    assert summary.failed == 1
    assert recorder.payloads == [{"text": f"https://auth.example/\n{COOKIE_MESSAGE}"}]


@pytest.mark.asyncio
async def test_broken_service_file_does_not_stop_others(tmp_path: Path) -> None:
    broken = _write_service(tmp_path, "broken", 'access_url = "https://broken.example/"\n')
    good = _write_service(tmp_path, "good", 'access_url = "https://ok.example/"\nfind_selector = "#present"\n')
    bad = _write_service(tmp_path, "bad", 'access_url = "https://bad.example/"\nfind_selector = "#gone"\n')
    recorder = _WebhookRecorder()

    summary = await _run([broken, good, bad], recorder)

    assert summary.checked == 3
    assert summary.errored == 1
    assert summary.ok == 1
    assert summary.failed == 1
    assert recorder.payloads == [{"text": f"https://bad.example/\n{SELECTOR_MESSAGE}"}]


@pytest.mark.asyncio
async def test_browser_launch_failure_is_logged_not_alerted(tmp_path: Path) -> None:
    path = _write_service(tmp_path, "svc", 'access_url = "https://ok.example/"\nfind_selector = "#present"\n')
    recorder = _WebhookRecorder()

    async def failing_check(config: ServiceCheckConfig) -> CheckOutcome:
        raise BrowserLaunchError("browser_launch_error: Executable doesn't exist")

    summary = await _run([path], recorder, check_fn=failing_check)

    assert summary.errored == 1
    assert summary.checked == 1
    assert recorder.payloads == []


@pytest.mark.asyncio
async def test_unexpected_check_crash_is_contained(tmp_path: Path) -> None:
    crash = _write_service(tmp_path, "crash", 'access_url = "https://crash.example/"\nfind_selector = "#present"\n')
    good = _write_service(tmp_path, "good", 'access_url = "https://ok.example/"\nfind_selector = "#present"\n')

    async def check(config: ServiceCheckConfig) -> CheckOutcome:
        if config.name == "crash":
            raise RuntimeError("boom")
        return await _fake_check(config)

    summary = await _run([crash, good], _WebhookRecorder(), check_fn=check)

    assert summary.errored == 1
    assert summary.ok == 1


@pytest.mark.asyncio
async def test_failed_notification_is_counted(tmp_path: Path) -> None:
    path = _write_service(tmp_path, "missing", 'access_url = "https://ok.example/"\nfind_selector = "#missing"\n')
    recorder = _WebhookRecorder(status_code=500)

    summary = await _run([path], recorder)

    assert summary.failed == 1
    assert summary.notified == 0
    assert summary.notify_failed == 1


@pytest.mark.asyncio
async def test_dry_run_sends_nothing(tmp_path: Path) -> None:
    path = _write_service(tmp_path, "missing", 'access_url = "https://ok.example/"\nfind_selector = "#missing"\n')
    recorder = _WebhookRecorder()

    summary = await _run([path], recorder, dry_run=True)

    assert summary.failed == 1
    assert summary.notified == 0
    assert recorder.payloads == []


@pytest.mark.asyncio
async def test_repeated_failures_are_not_deduplicated(tmp_path: Path) -> None:
    path = _write_service(tmp_path, "missing", 'access_url = "https://ok.example/"\nfind_selector = "#missing"\n')
    recorder = _WebhookRecorder()

    await _run([path], recorder)
    await _run([path], recorder)

    assert len(recorder.payloads) == 2


@pytest.mark.asyncio
async def test_browser_concurrency_is_bounded(tmp_path: Path) -> None:
    paths = [
        _write_service(tmp_path, f"svc{i}", f'access_url = "https://s{i}.example/"\nfind_selector = "#present"\n')
        for i in range(6)
    ]
    running = 0
    peak = 0

    async def slow_check(config: ServiceCheckConfig) -> CheckOutcome:
        nonlocal running, peak
        running += 1
        peak = max(peak, running)
        await asyncio.sleep(0.01)
        running -= 1
        return await _fake_check(config)

    summary = await _run(paths, _WebhookRecorder(), check_fn=slow_check, settings=MonitorSettings(browser_concurrency=2))

    assert summary.ok == 6
    assert peak == 2

@pytest.mark.asyncio
async def test_malformed_webhook_url_is_counted_not_raised(tmp_path: Path) -> None:
    first = _write_service(tmp_path, "first", 'access_url = "https://a.example/"\nfind_selector = "#missing"\n')
    second = _write_service(tmp_path, "second", 'access_url = "https://b.example/"\nfind_selector = "#present"\n')
    recorder = _WebhookRecorder()

    summary = await _run(
        [first, second],
        recorder,
        webhook=WebhookConfig(webhook_url="http://[::1/hook"),
    )

    assert summary.failed == 1
    assert summary.ok == 1
    assert summary.notify_failed == 1
    assert recorder.payloads == []


def test_resolve_paths_defaults(tmp_path: Path) -> None:
    paths = monitor.resolve_paths(tmp_path)
    assert paths.service_dir == tmp_path / "conf" / "service"
    assert paths.webhook_config == tmp_path / "conf" / "webhook" / "google_chat.toml"
    assert paths.settings_file is None

    (tmp_path / "conf").mkdir()
    (tmp_path / "conf" / "monitor.yaml").write_text("browser_concurrency: 1\n", encoding="utf-8")
    assert monitor.resolve_paths(tmp_path).settings_file == tmp_path / "conf" / "monitor.yaml"


def test_main_missing_webhook_config_exits_with_config_error(tmp_path: Path) -> None:
    (tmp_path / "conf" / "service").mkdir(parents=True)
    assert monitor.main(["--base-dir", str(tmp_path)]) == monitor.EXIT_CONFIG_ERROR


def test_main_empty_service_dir_completes(tmp_path: Path) -> None:
    (tmp_path / "conf" / "service").mkdir(parents=True)
    (tmp_path / "conf" / "webhook").mkdir(parents=True)
    (tmp_path / "conf" / "webhook" / "google_chat.toml").write_text(
        'webhook_url = "https://chat.example.test/hook"\nalert_message = "down"\n', encoding="utf-8"
    )
    assert monitor.main(["--base-dir", str(tmp_path), "--concurrency", "3"]) == monitor.EXIT_OK


@pytest.mark.parametrize("value", ["0", "-2", "two"])
def test_main_rejects_invalid_concurrency(tmp_path: Path, value: str) -> None:
    with pytest.raises(SystemExit) as exc_info:
        monitor.main(["--base-dir", str(tmp_path), "--concurrency", value])
    assert exc_info.value.code == 2
