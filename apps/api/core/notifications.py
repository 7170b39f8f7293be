from __future__ import annotations

import hashlib
import hmac
import json
import time
import urllib.error
import urllib.request
from typing import Any, Iterable, Protocol

from core.config import Settings, get_settings
from core.contract_types import NotificationRequest
from core.logging_utils import log_structured, log_structured_warning
from core.observability import METRIC_NOTIFICATION_FAILED, increment_metric


class NotificationSink(Protocol):
    def notify(self, recipient: str, message: str, payload: dict[str, Any]) -> None: ...


class NotificationDeliveryError(Exception):
    pass


class LoggingNotificationSink:
    """Default sink when no delivery endpoint is configured."""

    def notify(self, recipient: str, message: str, payload: dict[str, Any]) -> None:
        log_structured(
            "notification.logged",
            recipient=recipient,
            contract_id=payload.get("contract_id"),
            rule_id=payload.get("rule_id"),
        )


def canonical_json(payload: dict[str, Any]) -> str:
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)


def compute_signature(secret: str, timestamp: int, body_text: str) -> str:
    signing_payload = f"{timestamp}.{body_text}".encode("utf-8")
    return hmac.new(secret.encode("utf-8"), signing_payload, hashlib.sha256).hexdigest()


def build_headers(timestamp: int, signature: str) -> dict[str, str]:
    return {
        "Content-Type": "application/json",
        "X-Webhook-Timestamp": str(timestamp),
        "X-Webhook-Signature": signature,
    }


class WebhookNotificationSink:
    """Posts signed notification requests to the hospital notification service."""

    def __init__(self, url: str, secret: str, timeout: int = 5) -> None:
        self.url = url
        self.secret = secret
        self.timeout = timeout

    def build_request(self, recipient: str, message: str, payload: dict[str, Any]) -> urllib.request.Request:
        body_text = canonical_json({"recipient": recipient, "message": message, "payload": payload})
        timestamp = int(time.time())
        signature = compute_signature(self.secret, timestamp, body_text)
        return urllib.request.Request(
            url=self.url,
            data=body_text.encode("utf-8"),
            method="POST",
            headers=build_headers(timestamp, signature),
        )

    def notify(self, recipient: str, message: str, payload: dict[str, Any]) -> None:
        request = self.build_request(recipient, message, payload)
        try:
            with urllib.request.urlopen(request, timeout=self.timeout) as response:  # noqa: S310
                status_code = int(response.status)
        except urllib.error.HTTPError as exc:
            status_code = int(exc.code)
        except (urllib.error.URLError, TimeoutError, OSError) as exc:
            raise NotificationDeliveryError(str(exc)) from exc
        if not 200 <= status_code < 300:
            raise NotificationDeliveryError(f"notification endpoint returned {status_code}")


def build_notification_sink(settings: Settings | None = None) -> NotificationSink:
    settings = settings or get_settings()
    if settings.notification_webhook_url:
        return WebhookNotificationSink(
            settings.notification_webhook_url,
            settings.notification_signing_secret,
            timeout=settings.notification_timeout_seconds,
        )
    return LoggingNotificationSink()


def deliver_notifications(sink: NotificationSink, requests: Iterable[NotificationRequest]) -> int:
    """Fire-and-forget delivery. Returns the number delivered; failures are logged and counted."""
    delivered = 0
    for request in requests:
        try:
            sink.notify(
                request.recipient,
                request.message,
                {"contract_id": request.contract_id, "rule_id": request.rule_id},
            )
            delivered += 1
        except Exception as exc:
            increment_metric(METRIC_NOTIFICATION_FAILED, reason=exc.__class__.__name__)
            log_structured_warning(
                "notification.delivery_failed",
                recipient=request.recipient,
                contract_id=request.contract_id,
                rule_id=request.rule_id,
                error_class=exc.__class__.__name__,
            )
    return delivered
