from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from itertools import count
from typing import Any, Literal, Protocol

import httpx

from .models import OutboundContentType

logger = logging.getLogger(__name__)

ChannelResultStatus = Literal["sent", "failed"]
ChannelErrorType = Literal["configuration", "channel", "transport", "validation"]


@dataclass(frozen=True)
class OutboundMessage:
    to: str
    content_type: OutboundContentType
    text: str | None = None
    link: str | None = None
    media_id: str | None = None
    caption: str | None = None


@dataclass(frozen=True)
class ChannelSendResult:
    status: ChannelResultStatus
    attempted_at: datetime
    provider_message_id: str | None = None
    raw_response: dict[str, Any] | None = None
    error_code: str | None = None
    error_type: ChannelErrorType | None = None
    error_message: str | None = None


@dataclass(frozen=True)
class MediaUploadResult:
    status: ChannelResultStatus
    media_id: str | None = None
    error_code: str | None = None
    error_type: ChannelErrorType | None = None
    error_message: str | None = None


class ChannelSender(Protocol):
    def send_message(self, message: OutboundMessage) -> ChannelSendResult: ...

    def upload_media(self, *, content: bytes, mime_type: str, filename: str) -> MediaUploadResult: ...


def normalize_wa_id(value: str) -> str:
    return "".join(ch for ch in value.strip() if ch.isdigit())


def normalize_recipient(value: str) -> str:
    normalized = value.strip().replace(" ", "")
    if not normalized.startswith("+"):
        normalized = f"+{normalized}"
    return normalized


def validate_outbound_message(message: OutboundMessage) -> str | None:
    if not normalize_wa_id(message.to):
        return "recipient must contain digits"
    if message.content_type == "text":
        if not (message.text or "").strip():
            return "text body is required for text messages"
    elif message.content_type in {"image", "audio"}:
        if not (message.link or message.media_id):
            return f"link or media_id is required for {message.content_type} messages"
    else:
        return f"unsupported message type: {message.content_type}"
    return None


def build_message_payload(message: OutboundMessage) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "messaging_product": "whatsapp",
        "recipient_type": "individual",
        "to": normalize_recipient(message.to),
        "type": message.content_type,
    }
    if message.content_type == "text":
        payload["text"] = {"preview_url": False, "body": message.text}
        return payload

    media: dict[str, Any] = {"id": message.media_id} if message.media_id else {"link": message.link}
    if message.content_type == "image" and message.caption:
        media["caption"] = message.caption
    payload[message.content_type] = media
    return payload


class StubChannelSender:
    def __init__(self, *, enabled: bool = True) -> None:
        self._enabled = enabled
        self._counter = count(1)
        self.sent: list[OutboundMessage] = []
        self.uploads: list[tuple[str, str, int]] = []
        self.fail_uploads = False

    def send_message(self, message: OutboundMessage) -> ChannelSendResult:
        attempted_at = datetime.now(timezone.utc)

        if not self._enabled:
            return ChannelSendResult(
                status="failed",
                attempted_at=attempted_at,
                error_code="sender_disabled",
                error_type="configuration",
                error_message="WhatsApp live delivery is disabled",
            )

        if "fail" in message.to.lower():
            return ChannelSendResult(
                status="failed",
                attempted_at=attempted_at,
                error_code="131026",
                error_type="channel",
                error_message="Stub sender forced failure for recipient",
            )

        self.sent.append(message)
        message_id = f"wamid.stub-{next(self._counter)}"
        return ChannelSendResult(
            status="sent",
            attempted_at=attempted_at,
            provider_message_id=message_id,
            raw_response={
                "messaging_product": "whatsapp",
                "contacts": [{"input": normalize_recipient(message.to), "wa_id": normalize_wa_id(message.to)}],
                "messages": [{"id": message_id}],
            },
        )

    def upload_media(self, *, content: bytes, mime_type: str, filename: str) -> MediaUploadResult:
        if self.fail_uploads:
            return MediaUploadResult(
                status="failed",
                error_code="upload_failed",
                error_type="channel",
                error_message="Stub sender forced upload failure",
            )
        self.uploads.append((filename, mime_type, len(content)))
        return MediaUploadResult(status="sent", media_id=f"media-stub-{next(self._counter)}")


class UnconfiguredChannelSender:
    """Selected when WHATSAPP_SENDER_TYPE=http but credentials are missing."""

    def __init__(self, *, missing: str) -> None:
        self._missing = missing

    def send_message(self, message: OutboundMessage) -> ChannelSendResult:
        return ChannelSendResult(
            status="failed",
            attempted_at=datetime.now(timezone.utc),
            error_code="whatsapp_not_configured",
            error_type="configuration",
            error_message=f"WhatsApp sender is not configured: {self._missing}",
        )

    def upload_media(self, *, content: bytes, mime_type: str, filename: str) -> MediaUploadResult:
        return MediaUploadResult(
            status="failed",
            error_code="whatsapp_not_configured",
            error_type="configuration",
            error_message=f"WhatsApp sender is not configured: {self._missing}",
        )


class _ChannelSendError(Exception):
    """Internal error raised when a Graph API request fails."""

    def __init__(self, error_code: str, error_type: ChannelErrorType, message: str) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.error_type = error_type
        self.message = message


class HttpChannelSender:
    """Sends messages through the WhatsApp Cloud API (Graph API)."""

    def __init__(
        self,
        *,
        access_token: str,
        phone_number_id: str,
        api_version: str = "v24.0",
        base_url: str = "https://graph.facebook.com",
        timeout_seconds: float = 15.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        stripped_token = access_token.strip()
        stripped_phone_id = phone_number_id.strip()
        if not stripped_token:
            raise ValueError("access_token must not be empty")
        if not stripped_phone_id:
            raise ValueError("phone_number_id must not be empty")
        self._phone_number_id = stripped_phone_id
        self._client = httpx.Client(
            base_url=f"{base_url.strip().rstrip('/')}/{api_version.strip().strip('/')}",
            headers={"Authorization": f"Bearer {stripped_token}"},
            timeout=timeout_seconds,
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def send_message(self, message: OutboundMessage) -> ChannelSendResult:
        attempted_at = datetime.now(timezone.utc)
        problem = validate_outbound_message(message)
        if problem is not None:
            return ChannelSendResult(
                status="failed",
                attempted_at=attempted_at,
                error_code="invalid_payload",
                error_type="validation",
                error_message=problem,
            )

        try:
            response_data = self._post(f"/{self._phone_number_id}/messages", json=build_message_payload(message))
        except _ChannelSendError as exc:
            masked = mask_contact_target(message.to)
            logger.warning("whatsapp send failed recipient=%s code=%s: %s", masked, exc.error_code, exc.message)
            return ChannelSendResult(
                status="failed",
                attempted_at=attempted_at,
                error_code=exc.error_code,
                error_type=exc.error_type,
                error_message=f"{exc.message} (recipient: {masked})",
            )

        messages = response_data.get("messages")
        message_id = None
        if isinstance(messages, list) and messages and isinstance(messages[0], dict):
            message_id = messages[0].get("id")
        if not message_id:
            return ChannelSendResult(
                status="failed",
                attempted_at=attempted_at,
                raw_response=response_data,
                error_code="invalid_response",
                error_type="channel",
                error_message="Graph API response did not include messages[0].id",
            )
        return ChannelSendResult(
            status="sent",
            attempted_at=attempted_at,
            provider_message_id=str(message_id),
            raw_response=response_data,
        )

    def upload_media(self, *, content: bytes, mime_type: str, filename: str) -> MediaUploadResult:
        try:
            response_data = self._post(
                f"/{self._phone_number_id}/media",
                data={"messaging_product": "whatsapp", "type": mime_type},
                files={"file": (filename, content, mime_type)},
            )
        except _ChannelSendError as exc:
            logger.warning("whatsapp media upload failed code=%s: %s", exc.error_code, exc.message)
            return MediaUploadResult(
                status="failed",
                error_code=exc.error_code,
                error_type=exc.error_type,
                error_message=exc.message,
            )
        media_id = response_data.get("id")
        if not media_id:
            return MediaUploadResult(
                status="failed",
                error_code="invalid_response",
                error_type="channel",
                error_message="Graph API media response did not include id",
            )
        return MediaUploadResult(status="sent", media_id=str(media_id))

    def _post(self, path: str, **kwargs: Any) -> dict[str, Any]:
        try:
            response = self._client.post(path, **kwargs)
        except httpx.TimeoutException as exc:
            raise _ChannelSendError("timeout", "transport", f"Request timed out: {exc}") from exc
        except httpx.HTTPError as exc:
            raise _ChannelSendError("connection_error", "transport", f"Connection error: {exc}") from exc

        if response.is_error:
            raise _graph_error(response)
        try:
            body = response.json()
        except ValueError as exc:
            raise _ChannelSendError("invalid_response", "channel", "Graph API returned a non-JSON body") from exc
        if not isinstance(body, dict):
            raise _ChannelSendError("invalid_response", "channel", "Graph API returned an unexpected body")
        return body


def _graph_error(response: httpx.Response) -> _ChannelSendError:
    code = f"http_{response.status_code}"
    message = f"HTTP {response.status_code}"
    try:
        body = response.json()
    except ValueError:
        body = None
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict):
        if error.get("code") is not None:
            code = str(error["code"])
        if error.get("message"):
            message = f"HTTP {response.status_code}: {error['message']}"
    return _ChannelSendError(code, "channel", message)


def mask_contact_target(contact_target: str) -> str:
    normalized = contact_target.strip()
    if not normalized:
        return "***"

    digits = "".join(ch for ch in normalized if ch.isdigit())
    if len(digits) >= 4:
        return f"***{digits[-4:]}"

    if len(normalized) <= 4:
        return "*" * len(normalized)

    return f"{normalized[:2]}***{normalized[-2:]}"
