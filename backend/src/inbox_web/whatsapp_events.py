from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Mapping

from .models import ContentType, DeliveryStatus

logger = logging.getLogger(__name__)

WHATSAPP_OBJECT = "whatsapp_business_account"

_CONTENT_TYPES: dict[str, ContentType] = {
    "text": "text",
    "image": "image",
    "audio": "audio",
    "voice": "audio",
    "location": "location",
}
_PROVIDER_STATUSES: dict[str, DeliveryStatus] = {
    "sent": "sent",
    "delivered": "delivered",
    "read": "read",
    "failed": "failed",
}


class WebhookPayloadError(ValueError):
    pass


@dataclass(frozen=True)
class InboundMessageEvent:
    wa_message_id: str
    wa_id: str
    contact_name: str | None
    provider_type: str
    content_type: ContentType
    body: str | None
    media_id: str | None
    mime_type: str | None
    external_timestamp: str | None
    raw_payload: dict[str, Any]

    def summary_text(self) -> str:
        if self.content_type == "text" and self.body:
            return self.body
        return f"[{self.provider_type}]"


@dataclass(frozen=True)
class StatusEvent:
    wa_message_id: str
    status: DeliveryStatus
    recipient_id: str | None
    external_timestamp: str | None
    error_code: str | None = None
    error_message: str | None = None


@dataclass(frozen=True)
class ParsedWebhookBatch:
    messages: list[InboundMessageEvent] = field(default_factory=list)
    statuses: list[StatusEvent] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)


def _as_clean_str(value: Any) -> str | None:
    if value is None:
        return None
    normalized = str(value).strip()
    return normalized or None


def _contact_names(value: Mapping[str, Any]) -> tuple[dict[str, str], str | None]:
    names: dict[str, str] = {}
    first_name: str | None = None
    contacts = value.get("contacts") or []
    if not isinstance(contacts, list):
        return names, None
    for contact in contacts:
        if not isinstance(contact, Mapping):
            continue
        profile = contact.get("profile")
        name = _as_clean_str(profile.get("name")) if isinstance(profile, Mapping) else None
        if name is None:
            continue
        if first_name is None:
            first_name = name
        wa_id = _as_clean_str(contact.get("wa_id"))
        if wa_id:
            names[wa_id] = name
    return names, first_name


def parse_inbound_message(
    message: Any,
    *,
    contact_names: Mapping[str, str],
    fallback_name: str | None,
) -> InboundMessageEvent:
    if not isinstance(message, Mapping):
        raise WebhookPayloadError("message notification must be an object")
    wa_message_id = _as_clean_str(message.get("id"))
    wa_id = _as_clean_str(message.get("from"))
    if wa_message_id is None:
        raise WebhookPayloadError("message notification is missing id")
    if wa_id is None:
        raise WebhookPayloadError("message notification is missing from")

    provider_type = _as_clean_str(message.get("type")) or "unknown"
    content_type = _CONTENT_TYPES.get(provider_type, "other")
    content = message.get(provider_type)
    content = content if isinstance(content, Mapping) else {}

    body: str | None = None
    media_id: str | None = None
    mime_type: str | None = None
    if content_type == "text":
        body = _as_clean_str(content.get("body"))
        if body is None:
            raise WebhookPayloadError("text notification is missing text.body")
    elif content_type in {"image", "audio"}:
        media_id = _as_clean_str(content.get("id"))
        mime_type = _as_clean_str(content.get("mime_type"))
        body = _as_clean_str(content.get("caption"))
    elif content_type == "location":
        latitude = content.get("latitude")
        longitude = content.get("longitude")
        if latitude is not None and longitude is not None:
            body = f"{latitude},{longitude}"

    return InboundMessageEvent(
        wa_message_id=wa_message_id,
        wa_id=wa_id,
        contact_name=contact_names.get(wa_id) or fallback_name,
        provider_type=provider_type,
        content_type=content_type,
        body=body,
        media_id=media_id,
        mime_type=mime_type,
        external_timestamp=_as_clean_str(message.get("timestamp")),
        raw_payload=dict(message),
    )


def parse_status(status: Any) -> StatusEvent:
    if not isinstance(status, Mapping):
        raise WebhookPayloadError("status notification must be an object")
    wa_message_id = _as_clean_str(status.get("id"))
    if wa_message_id is None:
        raise WebhookPayloadError("status notification is missing id")
    provider_status = (_as_clean_str(status.get("status")) or "").lower()
    mapped = _PROVIDER_STATUSES.get(provider_status)
    if mapped is None:
        raise WebhookPayloadError(f"unsupported status value: {provider_status or 'missing'}")

    error_code: str | None = None
    error_message: str | None = None
    errors = status.get("errors")
    if isinstance(errors, list) and errors and isinstance(errors[0], Mapping):
        error_code = _as_clean_str(errors[0].get("code"))
        error_message = _as_clean_str(errors[0].get("title") or errors[0].get("message"))

    return StatusEvent(
        wa_message_id=wa_message_id,
        status=mapped,
        recipient_id=_as_clean_str(status.get("recipient_id")),
        external_timestamp=_as_clean_str(status.get("timestamp")),
        error_code=error_code,
        error_message=error_message,
    )


def parse_webhook_payload(payload: Any) -> ParsedWebhookBatch:
    if not isinstance(payload, Mapping):
        raise WebhookPayloadError("webhook body must be a JSON object")
    if payload.get("object") != WHATSAPP_OBJECT:
        raise WebhookPayloadError(f"unsupported webhook object: {payload.get('object')!r}")

    batch = ParsedWebhookBatch()
    entries = payload.get("entry") or []
    if not isinstance(entries, list):
        raise WebhookPayloadError("webhook entry must be a list")

    for entry in entries:
        changes = entry.get("changes") if isinstance(entry, Mapping) else None
        if not isinstance(changes, list):
            batch.skipped.append("entry_without_changes")
            continue
        for change in changes:
            value = change.get("value") if isinstance(change, Mapping) else None
            if not isinstance(value, Mapping):
                batch.skipped.append("change_without_value")
                continue

            messages = value.get("messages") or []
            if not isinstance(messages, list):
                logger.warning("skipping change whose messages field is not a list")
                batch.skipped.append("messages_not_a_list")
                messages = []
            statuses = value.get("statuses") or []
            if not isinstance(statuses, list):
                logger.warning("skipping change whose statuses field is not a list")
                batch.skipped.append("statuses_not_a_list")
                statuses = []

            names, first_name = _contact_names(value)
            for message in messages:
                try:
                    batch.messages.append(
                        parse_inbound_message(message, contact_names=names, fallback_name=first_name)
                    )
                except WebhookPayloadError as exc:
                    logger.warning("skipping malformed message notification: %s", exc)
                    batch.skipped.append(str(exc))

            for status in statuses:
                try:
                    batch.statuses.append(parse_status(status))
                except WebhookPayloadError as exc:
                    logger.warning("skipping malformed status notification: %s", exc)
                    batch.skipped.append(str(exc))

    return batch
