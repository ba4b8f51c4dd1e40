from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Literal

from .config import Settings
from .conversation_policy import kanban_column_changes, kanban_column_for, summarize_message_content
from .inbox_store import (
    ConversationNotFoundError,
    ConversationRecord,
    InboxRepository,
    LearnedRuleNotFoundError,
    LearnedRuleRecord,
    MessageRecord,
    OperatorNotFoundError,
    OperatorRecord,
)
from .models import (
    AutomationLogItem,
    AutomationLogListResponse,
    AutomationSettingsItem,
    ConversationDetailResponse,
    ConversationItem,
    ConversationListResponse,
    DeliveryStatus,
    KanbanColumn,
    LearnedRuleItem,
    LearnedRuleListResponse,
    MessageItem,
    OperatorItem,
    OperatorListResponse,
    OperatorStatsItem,
    OperatorStatsResponse,
    OrderStatus,
    SenderType,
    StatusUpdateMode,
)
from .operator_balancer import select_operator
from .whatsapp import ChannelErrorType, ChannelSender, OutboundMessage, mask_contact_target, normalize_wa_id, validate_outbound_message
from .whatsapp_events import InboundMessageEvent, StatusEvent, WebhookPayloadError, parse_webhook_payload

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReplyOutcome:
    status: Literal["sent", "skipped", "failed"]
    reason: str
    message_id: int | None = None
    tokens_used: int = 0


ReplyHandler = Callable[[ConversationRecord, MessageRecord], ReplyOutcome]


@dataclass(frozen=True)
class IngestOutcome:
    status: Literal["stored", "duplicate", "skipped"]
    wa_message_id: str | None
    conversation_id: int | None = None
    message_id: int | None = None
    conversation_created: bool = False
    reply: ReplyOutcome | None = None
    reason: str | None = None


@dataclass(frozen=True)
class StatusOutcome:
    status: Literal["applied", "ignored", "unknown_message"]
    wa_message_id: str
    current_status: DeliveryStatus | None = None


@dataclass(frozen=True)
class BatchOutcome:
    messages: list[IngestOutcome] = field(default_factory=list)
    statuses: list[StatusOutcome] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class DispatchResult:
    status: Literal["sent", "failed"]
    conversation_id: int | None = None
    message_id: int | None = None
    wa_message_id: str | None = None
    error_code: str | None = None
    error_type: ChannelErrorType | None = None
    error_message: str | None = None


class ConversationService:
    def __init__(self, *, repository: InboxRepository, sender: ChannelSender, settings: Settings) -> None:
        self._repository = repository
        self._sender = sender
        self._settings = settings

    @property
    def repository(self) -> InboxRepository:
        return self._repository

    @property
    def sender(self) -> ChannelSender:
        return self._sender

    def reset(self) -> None:
        self._repository.reset()

    # -- ingestion ----------------------------------------------------------

    def ingest_batch(self, payload: Any, *, reply_handler: ReplyHandler | None = None) -> BatchOutcome:
        try:
            parsed = parse_webhook_payload(payload)
        except WebhookPayloadError as exc:
            logger.warning("ignoring webhook payload: %s", exc)
            return BatchOutcome(skipped=[str(exc)])

        outcome = BatchOutcome(skipped=list(parsed.skipped))
        for event in parsed.messages:
            try:
                outcome.messages.append(self.ingest_message(event, reply_handler=reply_handler))
            except Exception:
                logger.exception(
                    "inbound processing failed wa_message_id=%s from=%s",
                    event.wa_message_id,
                    mask_contact_target(event.wa_id),
                )
                outcome.messages.append(
                    IngestOutcome(status="skipped", wa_message_id=event.wa_message_id, reason="processing_error")
                )
        for status_event in parsed.statuses:
            try:
                outcome.statuses.append(self.apply_status(status_event))
            except Exception:
                logger.exception("status processing failed wa_message_id=%s", status_event.wa_message_id)
                outcome.skipped.append(f"status_error:{status_event.wa_message_id}")
        return outcome

    def ingest_message(self, event: InboundMessageEvent, *, reply_handler: ReplyHandler | None = None) -> IngestOutcome:
        conversation, created = self._repository.get_or_create_conversation(
            wa_id=event.wa_id,
            contact_name=event.contact_name or event.wa_id,
        )
        if created:
            conversation = self._assign_operator(conversation)

        stored = self._repository.insert_message(
            conversation_id=conversation.id,
            wa_message_id=event.wa_message_id,
            direction="in",
            sender_type="contact",
            content_type=event.content_type,
            body=event.body,
            media_id=event.media_id,
            media_url=None,
            mime_type=event.mime_type,
            status="received",
            external_timestamp=event.external_timestamp,
            raw_payload=event.raw_payload,
        )
        if stored is None:
            logger.info("duplicate inbound message ignored wa_message_id=%s", event.wa_message_id)
            return IngestOutcome(
                status="duplicate",
                wa_message_id=event.wa_message_id,
                conversation_id=conversation.id,
                conversation_created=created,
            )

        changes: dict[str, Any] = {
            "last_message": event.summary_text(),
            "last_message_at": stored.created_at,
        }
        if event.contact_name and event.contact_name != conversation.contact_name:
            changes["contact_name"] = event.contact_name
        conversation = self._repository.update_conversation(conversation.id, **changes)

        reply = reply_handler(conversation, stored) if reply_handler is not None else None
        return IngestOutcome(
            status="stored",
            wa_message_id=event.wa_message_id,
            conversation_id=conversation.id,
            message_id=stored.id,
            conversation_created=created,
            reply=reply,
        )

    def apply_status(self, event: StatusEvent) -> StatusOutcome:
        message, applied = self._repository.apply_message_status(
            wa_message_id=event.wa_message_id,
            status=event.status,
            mode=self._status_mode(),
        )
        if message is None:
            logger.debug("status for unknown message dropped wa_message_id=%s", event.wa_message_id)
            return StatusOutcome(status="unknown_message", wa_message_id=event.wa_message_id)
        if event.status == "failed" and applied:
            logger.warning(
                "outbound message failed wa_message_id=%s code=%s: %s",
                event.wa_message_id,
                event.error_code,
                event.error_message,
            )
        return StatusOutcome(
            status="applied" if applied else "ignored",
            wa_message_id=event.wa_message_id,
            current_status=message.status,
        )

    def _status_mode(self) -> StatusUpdateMode:
        return "overwrite" if self._settings.status_update_mode == "overwrite" else "monotonic"

    def _assign_operator(self, conversation: ConversationRecord) -> ConversationRecord:
        operator = select_operator(
            self._repository.list_operators(active_only=True),
            self._repository.assignment_counts(),
        )
        if operator is None:
            logger.info("no active operator for conversation_id=%s", conversation.id)
            return conversation
        logger.info("conversation_id=%s assigned to operator_id=%s", conversation.id, operator.id)
        return self._repository.update_conversation(conversation.id, assigned_operator_id=operator.id)

    # -- outbound -----------------------------------------------------------

    def dispatch(
        self,
        message: OutboundMessage,
        *,
        sender_type: SenderType = "operator",
        contact_name: str | None = None,
    ) -> DispatchResult:
        problem = validate_outbound_message(message)
        if problem is not None:
            return DispatchResult(
                status="failed",
                error_code="invalid_payload",
                error_type="validation",
                error_message=problem,
            )

        result = self._sender.send_message(message)
        if result.status != "sent" or not result.provider_message_id:
            logger.warning(
                "dispatch rejected recipient=%s code=%s type=%s",
                mask_contact_target(message.to),
                result.error_code,
                result.error_type,
            )
            return DispatchResult(
                status="failed",
                error_code=result.error_code or "send_failed",
                error_type=result.error_type or "channel",
                error_message=result.error_message or "WhatsApp did not accept the message",
            )

        wa_id = normalize_wa_id(message.to)
        conversation, created = self._repository.get_or_create_conversation(
            wa_id=wa_id,
            contact_name=contact_name or wa_id,
        )
        if created:
            conversation = self._assign_operator(conversation)

        body = message.text if message.content_type == "text" else message.caption
        stored = self._repository.insert_message(
            conversation_id=conversation.id,
            wa_message_id=result.provider_message_id,
            direction="out",
            sender_type=sender_type,
            content_type=message.content_type,
            body=body,
            media_id=message.media_id,
            media_url=message.link,
            mime_type=None,
            status="sent",
            external_timestamp=str(int(result.attempted_at.timestamp())),
            raw_payload=result.raw_response,
        )
        if stored is None:
            stored = self._repository.find_message_by_wa_id(result.provider_message_id)
            if stored is None:
                raise RuntimeError(f"outbound message vanished: {result.provider_message_id}")

        self._repository.update_conversation(
            conversation.id,
            last_message=summarize_message_content(message.content_type, body),
            last_message_at=stored.created_at,
        )
        return DispatchResult(
            status="sent",
            conversation_id=conversation.id,
            message_id=stored.id,
            wa_message_id=result.provider_message_id,
        )

    # -- operator state transitions ----------------------------------------

    def list_conversations(self, *, limit: int = 200) -> ConversationListResponse:
        records = self._repository.list_conversations(limit=limit)
        return ConversationListResponse(items=[self.to_conversation_item(value) for value in records])

    def get_conversation_detail(self, conversation_id: int) -> ConversationDetailResponse:
        conversation = self._require_conversation(conversation_id)
        messages = self._repository.list_messages(conversation_id)
        return ConversationDetailResponse(
            conversation=self.to_conversation_item(conversation),
            messages=[self._to_message_item(value) for value in messages],
        )

    def delete_conversation(self, conversation_id: int) -> None:
        if not self._repository.delete_conversation(conversation_id):
            raise ConversationNotFoundError(conversation_id)
        logger.info("conversation_id=%s deleted", conversation_id)

    def update_flags(self, conversation_id: int, **changes: Any) -> ConversationItem:
        return self.to_conversation_item(self._repository.update_conversation(conversation_id, **changes))

    def set_order_status(self, conversation_id: int, order_status: OrderStatus) -> ConversationItem:
        return self.update_flags(conversation_id, order_status=order_status)

    def set_assignee(self, conversation_id: int, operator_id: int | None) -> ConversationItem:
        if operator_id is not None and self._repository.get_operator(operator_id) is None:
            raise OperatorNotFoundError(operator_id)
        return self.update_flags(conversation_id, assigned_operator_id=operator_id)

    def set_kanban_column(self, conversation_id: int, column: KanbanColumn) -> ConversationItem:
        return self.update_flags(conversation_id, **kanban_column_changes(column))

    def clear_attention(self, conversation_id: int) -> ConversationItem:
        return self.update_flags(conversation_id, needs_human_attention=False)

    def _require_conversation(self, conversation_id: int) -> ConversationRecord:
        conversation = self._repository.get_conversation(conversation_id)
        if conversation is None:
            raise ConversationNotFoundError(conversation_id)
        return conversation

    # -- operators ----------------------------------------------------------

    def list_operators(self) -> OperatorListResponse:
        return OperatorListResponse(items=[self._to_operator_item(value) for value in self._repository.list_operators()])

    def create_operator(self, *, username: str, display_name: str, password: str, weight: int, is_active: bool) -> OperatorItem:
        record = self._repository.create_operator(
            username=username,
            display_name=display_name,
            password=password,
            weight=weight,
            is_active=is_active,
        )
        logger.info("operator created operator_id=%s username=%s", record.id, record.username)
        return self._to_operator_item(record)

    def update_operator(self, operator_id: int, changes: dict[str, Any]) -> OperatorItem:
        return self._to_operator_item(self._repository.update_operator(operator_id, **changes))

    def delete_operator(self, operator_id: int) -> int:
        cleared = self._repository.delete_operator(operator_id)
        logger.info("operator_id=%s deleted, %d conversations unassigned", operator_id, cleared)
        return cleared

    def operator_stats(self) -> OperatorStatsResponse:
        counts = self._repository.assignment_counts()
        return OperatorStatsResponse(
            items=[
                OperatorStatsItem(
                    operator_id=value.id,
                    display_name=value.display_name,
                    is_active=value.is_active,
                    weight=value.weight,
                    assigned_conversations=counts.get(value.id, 0),
                )
                for value in self._repository.list_operators()
            ],
            unassigned_conversations=self._repository.count_unassigned(),
        )

    # -- automation settings, logs and rules --------------------------------

    def get_automation_settings(self) -> AutomationSettingsItem:
        return self._to_settings_item()

    def update_automation_settings(self, changes: dict[str, Any]) -> AutomationSettingsItem:
        if changes:
            self._repository.update_automation_settings(**changes)
            logger.info("automation settings updated fields=%s", ",".join(sorted(changes)))
        return self._to_settings_item()

    def list_automation_logs(self, *, limit: int = 100) -> AutomationLogListResponse:
        return AutomationLogListResponse(
            items=[
                AutomationLogItem(
                    id=value.id,
                    conversation_id=value.conversation_id,
                    kind=value.kind,
                    inbound_text=value.inbound_text,
                    reply_text=value.reply_text,
                    tokens_used=value.tokens_used,
                    success=value.success,
                    error=value.error,
                    created_at=value.created_at,
                )
                for value in self._repository.list_automation_logs(limit=limit)
            ]
        )

    def list_learned_rules(self) -> LearnedRuleListResponse:
        return LearnedRuleListResponse(items=[self._to_rule_item(value) for value in self._repository.list_learned_rules()])

    def create_learned_rule(self, *, rule_text: str, source_conversation_id: int | None, is_active: bool) -> LearnedRuleItem:
        record = self._repository.create_learned_rule(
            rule_text=rule_text,
            source_conversation_id=source_conversation_id,
            is_active=is_active,
        )
        return self._to_rule_item(record)

    def update_learned_rule(self, rule_id: int, changes: dict[str, Any]) -> LearnedRuleItem:
        return self._to_rule_item(self._repository.update_learned_rule(rule_id, **changes))

    def delete_learned_rule(self, rule_id: int) -> None:
        if not self._repository.delete_learned_rule(rule_id):
            raise LearnedRuleNotFoundError(rule_id)

    # -- serialization -----------------------------------------------------

    def _to_settings_item(self) -> AutomationSettingsItem:
        record = self._repository.get_automation_settings()
        return AutomationSettingsItem(
            enabled=record.enabled,
            instructions=record.instructions,
            knowledge=record.knowledge,
            model=record.model,
            max_output_tokens=record.max_output_tokens,
            temperature=record.temperature,
            history_depth=record.history_depth,
            audio_replies_enabled=record.audio_replies_enabled,
            voice=record.voice,
            speech_speed=record.speech_speed,
            learning_enabled=record.learning_enabled,
            follow_up_enabled=record.follow_up_enabled,
            follow_up_minutes=record.follow_up_minutes,
            instruction_char_budget=self._settings.automation_instruction_char_budget,
            updated_at=record.updated_at,
        )

    @staticmethod
    def to_conversation_item(record: ConversationRecord) -> ConversationItem:
        return ConversationItem(
            id=record.id,
            wa_id=record.wa_id,
            contact_name=record.contact_name,
            is_pinned=record.is_pinned,
            label_id=record.label_id,
            order_status=record.order_status,
            automation_disabled=record.automation_disabled,
            needs_human_attention=record.needs_human_attention,
            should_call=record.should_call,
            assigned_operator_id=record.assigned_operator_id,
            kanban_column=kanban_column_for(
                order_status=record.order_status,
                should_call=record.should_call,
                needs_human_attention=record.needs_human_attention,
            ),
            last_message=record.last_message,
            last_message_at=record.last_message_at,
            last_follow_up_at=record.last_follow_up_at,
            created_at=record.created_at,
            updated_at=record.updated_at,
        )

    @staticmethod
    def _to_message_item(record: MessageRecord) -> MessageItem:
        return MessageItem(
            id=record.id,
            conversation_id=record.conversation_id,
            wa_message_id=record.wa_message_id,
            direction=record.direction,
            sender_type=record.sender_type,
            content_type=record.content_type,
            body=record.body,
            media_id=record.media_id,
            media_url=record.media_url,
            mime_type=record.mime_type,
            status=record.status,
            external_timestamp=record.external_timestamp,
            created_at=record.created_at,
        )

    @staticmethod
    def _to_operator_item(record: OperatorRecord) -> OperatorItem:
        return OperatorItem(
            id=record.id,
            username=record.username,
            display_name=record.display_name,
            is_active=record.is_active,
            weight=record.weight,
            created_at=record.created_at,
        )

    @staticmethod
    def _to_rule_item(record: LearnedRuleRecord) -> LearnedRuleItem:
        return LearnedRuleItem(
            id=record.id,
            rule_text=record.rule_text,
            is_active=record.is_active,
            source_conversation_id=record.source_conversation_id,
            created_at=record.created_at,
        )
