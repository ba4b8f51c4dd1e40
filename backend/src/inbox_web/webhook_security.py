from __future__ import annotations

import hashlib
import hmac
from dataclasses import dataclass
from typing import Literal, Mapping

from .config import Settings

SIGNATURE_HEADER = "X-Hub-Signature-256"


@dataclass(frozen=True)
class WebhookSignatureVerification:
    verified: bool
    reason: str | None = None


def _normalize_header_value(headers: Mapping[str, str], key: str) -> str | None:
    value = headers.get(key)
    if value is None:
        lowered_key = key.lower()
        for header_key, header_value in headers.items():
            if header_key.lower() == lowered_key:
                value = header_value
                break
    if value is None:
        return None
    normalized = value.strip()
    return normalized or None


def _normalize_signature(value: str) -> str:
    normalized = value.strip()
    if normalized.lower().startswith("sha256="):
        normalized = normalized.split("=", 1)[1]
    return normalized.strip().lower()


def sign_webhook_body(secret: str, body: bytes) -> str:
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def verify_whatsapp_signature(
    *,
    settings: Settings,
    body: bytes,
    headers: Mapping[str, str],
) -> WebhookSignatureVerification:
    if settings.webhook_signature_mode == "off":
        return WebhookSignatureVerification(verified=True)

    secret = settings.whatsapp_app_secret.strip()
    if not secret:
        return WebhookSignatureVerification(verified=False, reason="app_secret_missing")

    provided = _normalize_header_value(headers, SIGNATURE_HEADER)
    if provided is None:
        return WebhookSignatureVerification(verified=False, reason="signature_missing")

    expected = sign_webhook_body(secret, body).removeprefix("sha256=")
    if not hmac.compare_digest(expected.encode("utf-8"), _normalize_signature(provided).encode("utf-8")):
        return WebhookSignatureVerification(verified=False, reason="signature_mismatch")

    return WebhookSignatureVerification(verified=True)


def check_subscription_handshake(
    *,
    settings: Settings,
    mode: str | None,
    token: str | None,
) -> Literal["verified", "forbidden", "bad_request"]:
    if not mode or not token:
        return "bad_request"
    configured = settings.whatsapp_verify_token.strip()
    if mode == "subscribe" and configured and hmac.compare_digest(token.encode("utf-8"), configured.encode("utf-8")):
        return "verified"
    return "forbidden"
