from __future__ import annotations

import os
from typing import Any

import httpx

POSTMARK_URL = "https://api.postmarkapp.com/email"
WEBHOOK_TIMEOUT_S = float(os.getenv("NOTIFY_WEBHOOK_TIMEOUT_S", "10"))
EMAIL_TIMEOUT_S = 30


class ChannelError(RuntimeError):
    def __init__(self, message: str, code: str = "SEND_FAILED") -> None:
        super().__init__(message)
        self.code = code


class ChannelAdapter:
    def send(self, payload: dict, config: dict) -> dict:
        """Deliver ``payload``; returns ``{"provider_message_id": ...}`` or raises ChannelError."""
        raise NotImplementedError


class InAppChannel(ChannelAdapter):
    def __init__(self, store: Any) -> None:
        self.store = store

    def send(self, payload: dict, config: dict) -> dict:
        event_id = payload.get("event_id")
        existing = self.store.find_in_app_by_event(event_id) if event_id else None
        if existing:
            return {"provider_message_id": existing["id"], "deduped": True}
        item = self.store.create_in_app(
            {
                "event_id": event_id,
                "title": payload.get("title"),
                "body": payload.get("message"),
                "severity": payload.get("severity"),
                "action_url": payload.get("action_url"),
            }
        )
        return {"provider_message_id": item["id"]}


class WebhookChannel(ChannelAdapter):
    def send(self, payload: dict, config: dict) -> dict:
        url = (config or {}).get("url")
        if not url:
            raise ChannelError("Missing webhook url", code="CONFIG_INVALID")
        headers = {"Content-Type": "application/json"}
        headers.update((config or {}).get("headers") or {})
        try:
            resp = httpx.post(url, json=payload, headers=headers, timeout=WEBHOOK_TIMEOUT_S)
        except httpx.HTTPError as exc:
            raise ChannelError(f"Webhook request failed: {exc}") from exc
        if resp.status_code >= 400:
            raise ChannelError(f"HTTP {resp.status_code}: {resp.text[:200]}", code="HTTP_ERROR")
        return {"provider_message_id": resp.headers.get("x-request-id")}


class EmailChannel(ChannelAdapter):
    """Postmark delivery; the token comes from POSTMARK_API_TOKEN."""

    def send(self, payload: dict, config: dict) -> dict:
        api_token = os.getenv("POSTMARK_API_TOKEN")
        if not api_token:
            raise ChannelError("POSTMARK_API_TOKEN not set", code="CONFIG_INVALID")
        config = config or {}
        from_email = config.get("from_email") or os.getenv("NOTIFY_FROM_EMAIL")
        to = config.get("to") or []
        if isinstance(to, str):
            to = [to]
        if not from_email:
            raise ChannelError("Missing from_email", code="CONFIG_INVALID")
        if not to:
            raise ChannelError("Missing recipients", code="CONFIG_INVALID")
        from_name = config.get("from_name")
        sender = f"{from_name} <{from_email}>" if from_name else from_email
        body = payload.get("message") or ""
        if payload.get("action_url"):
            body = f"{body}\n\n{payload['action_url']}"
        message = {
            "From": sender,
            "To": ",".join(to),
            "Subject": f"[{payload.get('severity', 'info')}] {payload.get('title') or ''}".strip(),
            "TextBody": body,
            "MessageStream": config.get("message_stream") or "outbound",
        }
        headers = {"X-Postmark-Server-Token": api_token, "Accept": "application/json"}
        try:
            resp = httpx.post(POSTMARK_URL, json=message, headers=headers, timeout=EMAIL_TIMEOUT_S)
        except httpx.HTTPError as exc:
            raise ChannelError(f"Postmark request failed: {exc}") from exc
        if resp.status_code >= 400:
            raise ChannelError(f"HTTP {resp.status_code}: Postmark error {resp.text[:200]}", code="HTTP_ERROR")
        data = resp.json()
        return {"provider_message_id": data.get("MessageID")}


def get_adapter_for_channel_type(channel_type: str, store: Any = None) -> ChannelAdapter | None:
    if channel_type == "in_app":
        return InAppChannel(store) if store is not None else None
    if channel_type == "webhook":
        return WebhookChannel()
    if channel_type == "email":
        return EmailChannel()
    return None
