from __future__ import annotations

from typing import Any

import httpx

from service_checks.common_check import FailureKind, _safe_url
from service_checks.config import WebhookConfig


JSON_HEADERS = {"Content-Type": "application/json"}


def format_alert_text(
    service_url: str,
    kind: FailureKind,
    *,
    language: str = "ja",
    style: str = "detailed",
    alert_message: str = "",
) -> str:
    if style == "simple":
        return f"{service_url} {alert_message}"
    return f"{service_url}\n{kind.message(language)}"


def build_alert_payload(text: str) -> dict[str, str]:
    return {"text": text}


def _redact(msg: str, webhook_url: str) -> str:
    # Chat webhook URLs carry their key/token in the query string.
    if webhook_url:
        msg = msg.replace(webhook_url, _safe_url(webhook_url) + "?<redacted>")
    return msg


async def send_webhook_message(
    client: httpx.AsyncClient,
    config: WebhookConfig,
    text: str,
    *,
    timeout_seconds: float = 15.0,
) -> tuple[bool, dict[str, Any]]:
    try:
        resp = await client.post(
            config.webhook_url,
            json=build_alert_payload(text),
            headers=JSON_HEADERS,
            timeout=timeout_seconds,
        )
    except (httpx.HTTPError, httpx.InvalidURL) as e:
        return False, {"ok": False, "error": _redact(f"{type(e).__name__}: {e}", config.webhook_url)}

    ok = 200 <= resp.status_code < 300
    info: dict[str, Any] = {"ok": ok, "status_code": resp.status_code}
    if not ok:
        info["error"] = (resp.text or "")[:300]
    return ok, info


async def send_webhook_alert(
    client: httpx.AsyncClient,
    config: WebhookConfig,
    service_url: str,
    kind: FailureKind,
    *,
    language: str = "ja",
    style: str = "detailed",
    timeout_seconds: float = 15.0,
) -> tuple[bool, dict[str, Any]]:
    text = format_alert_text(
        service_url,
        kind,
        language=language,
        style=style,
        alert_message=config.alert_message,
    )
    return await send_webhook_message(client, config, text, timeout_seconds=timeout_seconds)
