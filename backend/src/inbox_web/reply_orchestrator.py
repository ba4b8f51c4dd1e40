from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Literal

from .config import Settings
from .conversation_policy import (
    ANALYSIS_INSTRUCTION,
    FOLLOW_UP_BATCH_LIMIT,
    FOLLOW_UP_WINDOW_HOURS,
    SupplementaryContextClassifier,
    build_reply_context,
    evaluate_reply_eligibility,
    extract_image_directive,
    follow_up_instruction,
    summarize_message_content,
)
from .conversations import ConversationService, DispatchResult, ReplyOutcome
from .inbox_store import (
    AutomationSettingsRecord,
    ConversationNotFoundError,
    ConversationRecord,
    InboxRepository,
    MessageRecord,
)
from .model_client import SPEECH_MIME_TYPE, ModelClient, ModelClientError, ModelResponseError, ModelTimeoutError
from .models import AutomationLogKind, PurchaseProbability
from .whatsapp import OutboundMessage

logger = logging.getLogger(__name__)

FOLLOW_UP_HISTORY_DEPTH = 10
ANALYSIS_HISTORY_DEPTH = 20
_PROBABILITIES: frozenset[str] = frozenset({"ALTA", "MEDIA", "BAJA"})


@dataclass(frozen=True)
class FollowUpSuggestion:
    conversation_id: int
    message: str
    tokens_used: int


@dataclass(frozen=True)
class ConversationAnalysis:
    conversation_id: int
    probability: PurchaseProbability
    should_call: bool
    summary: str
    tokens_used: int


@dataclass(frozen=True)
class FollowUpRunEntry:
    conversation_id: int
    status: Literal["sent", "skipped", "failed"]
    reason: str
    message_id: int | None = None


@dataclass(frozen=True)
class FollowUpRunResult:
    processed_count: int = 0
    sent_count: int = 0
    items: list[FollowUpRunEntry] = field(default_factory=list)


def _failure_reason(exc: ModelClientError) -> str:
    if isinstance(exc, ModelTimeoutError):
        return "model_timeout"
    return "model_error"


def parse_analysis_verdict(content: str) -> tuple[PurchaseProbability, bool, str]:
    text = content.strip()
    if text.startswith("```"):
        text = text.strip("`")
        if text.lower().startswith("json"):
            text = text[4:]
    start = text.find("{")
    end = text.rfind("}")
    if start < 0 or end <= start:
        raise ModelResponseError("analysis reply did not contain a JSON object")
    try:
        verdict = json.loads(text[start : end + 1])
    except ValueError as exc:
        raise ModelResponseError(f"analysis reply is not valid JSON: {exc}") from exc
    if not isinstance(verdict, dict):
        raise ModelResponseError("analysis reply must be a JSON object")

    probability = str(verdict.get("probability", "")).strip().upper()
    if probability not in _PROBABILITIES:
        raise ModelResponseError(f"analysis probability is invalid: {probability or 'missing'}")
    should_call = verdict.get("should_call")
    if isinstance(should_call, str):
        should_call = should_call.strip().lower() in {"true", "si", "sí", "yes"}
    summary = str(verdict.get("summary") or "").strip()
    return probability, bool(should_call), summary  # type: ignore[return-value]


class ReplyOrchestrator:
    def __init__(
        self,
        *,
        conversations: ConversationService,
        model_client: ModelClient,
        settings: Settings,
        classifier: SupplementaryContextClassifier | None = None,
    ) -> None:
        self._conversations = conversations
        self._model_client = model_client
        self._settings = settings
        self._classifier = classifier

    @property
    def _repository(self) -> InboxRepository:
        return self._conversations.repository

    # -- automatic replies --------------------------------------------------

    def handle_inbound(self, conversation: ConversationRecord, message: MessageRecord) -> ReplyOutcome:
        try:
            return self._handle_inbound(conversation, message)
        except Exception as exc:
            logger.exception("reply orchestration failed conversation_id=%s", conversation.id)
            return self._fail(
                conversation.id,
                kind="reply",
                inbound_text=summarize_message_content(message.content_type, message.body),
                reason="unexpected_error",
                error=str(exc) or exc.__class__.__name__,
            )

    def _handle_inbound(self, conversation: ConversationRecord, message: MessageRecord) -> ReplyOutcome:
        settings = self._repository.get_automation_settings()
        current = self._repository.get_conversation(conversation.id) or conversation
        decision = evaluate_reply_eligibility(
            direction=message.direction,
            automation_enabled=settings.enabled,
            conversation_automation_disabled=current.automation_disabled,
            needs_human_attention=current.needs_human_attention,
        )
        if not decision.eligible:
            logger.debug("reply skipped conversation_id=%s reason=%s", current.id, decision.reason)
            return ReplyOutcome(status="skipped", reason=decision.reason)

        trigger_text = summarize_message_content(message.content_type, message.body)
        history = self._repository.list_messages_before(
            current.id,
            before_message_id=message.id,
            limit=settings.history_depth,
        )
        try:
            reply_text, tokens_used = self._generate(settings, trigger_text=trigger_text, history=history)
        except ModelClientError as exc:
            logger.warning("model call failed conversation_id=%s: %s", current.id, exc)
            return self._fail(
                current.id,
                kind="reply",
                inbound_text=trigger_text,
                reason=_failure_reason(exc),
                error=str(exc),
            )

        text, image_url = extract_image_directive(reply_text)
        if not text and not image_url:
            return self._fail(
                current.id,
                kind="reply",
                inbound_text=trigger_text,
                reason="empty_reply",
                error="model returned an empty reply",
                tokens_used=tokens_used,
            )

        first: DispatchResult | None = None
        if text:
            first = self._conversations.dispatch(
                OutboundMessage(to=current.wa_id, content_type="text", text=text),
                sender_type="automation",
            )
            if first.status != "sent":
                return self._fail(
                    current.id,
                    kind="reply",
                    inbound_text=trigger_text,
                    reason="dispatch_failed",
                    error=f"{first.error_code}: {first.error_message}",
                    tokens_used=tokens_used,
                    reply_text=reply_text,
                )

        if image_url:
            image = self._conversations.dispatch(
                OutboundMessage(to=current.wa_id, content_type="image", link=image_url),
                sender_type="automation",
            )
            if image.status != "sent":
                if first is None:
                    return self._fail(
                        current.id,
                        kind="reply",
                        inbound_text=trigger_text,
                        reason="dispatch_failed",
                        error=f"{image.error_code}: {image.error_message}",
                        tokens_used=tokens_used,
                        reply_text=reply_text,
                    )
                logger.warning("reply image not sent conversation_id=%s code=%s", current.id, image.error_code)
            elif first is None:
                first = image

        if text and settings.audio_replies_enabled and message.content_type == "audio":
            self._send_audio_reply(current, text, settings)

        self._repository.append_automation_log(
            conversation_id=current.id,
            kind="reply",
            inbound_text=trigger_text,
            reply_text=reply_text,
            tokens_used=tokens_used,
            success=True,
            error=None,
        )
        return ReplyOutcome(
            status="sent",
            reason="replied",
            message_id=first.message_id if first is not None else None,
            tokens_used=tokens_used,
        )

    def _generate(
        self,
        settings: AutomationSettingsRecord,
        *,
        trigger_text: str,
        history: list[MessageRecord],
    ) -> tuple[str, int]:
        learned_rules = (
            [rule.rule_text for rule in self._repository.list_learned_rules(active_only=True)]
            if settings.learning_enabled
            else []
        )
        context = build_reply_context(
            settings=settings,
            instruction_char_budget=self._settings.automation_instruction_char_budget,
            trigger_text=trigger_text,
            history=history,
            learned_rules=learned_rules,
            classifier=self._classifier,
        )
        result = self._model_client.chat(
            context.messages,
            model=settings.model,
            max_tokens=settings.max_output_tokens,
            temperature=settings.temperature,
        )
        return result.content.strip(), result.tokens_used

    def _send_audio_reply(self, conversation: ConversationRecord, text: str, settings: AutomationSettingsRecord) -> None:
        try:
            audio = self._model_client.synthesize_speech(text, voice=settings.voice, speed=settings.speech_speed)
        except ModelClientError as exc:
            logger.warning("speech synthesis failed conversation_id=%s, replying with text only: %s", conversation.id, exc)
            return

        upload = self._conversations.sender.upload_media(
            content=audio,
            mime_type=SPEECH_MIME_TYPE,
            filename="reply.ogg",
        )
        if upload.status != "sent" or not upload.media_id:
            logger.warning(
                "audio upload failed conversation_id=%s code=%s, replying with text only",
                conversation.id,
                upload.error_code,
            )
            return

        result = self._conversations.dispatch(
            OutboundMessage(to=conversation.wa_id, content_type="audio", media_id=upload.media_id),
            sender_type="automation",
        )
        if result.status != "sent":
            logger.warning("audio reply not sent conversation_id=%s code=%s", conversation.id, result.error_code)

    def _fail(
        self,
        conversation_id: int,
        *,
        kind: AutomationLogKind,
        inbound_text: str | None,
        reason: str,
        error: str,
        tokens_used: int = 0,
        reply_text: str | None = None,
    ) -> ReplyOutcome:
        self._repository.append_automation_log(
            conversation_id=conversation_id,
            kind=kind,
            inbound_text=inbound_text,
            reply_text=reply_text,
            tokens_used=tokens_used,
            success=False,
            error=error,
        )
        try:
            self._repository.update_conversation(conversation_id, needs_human_attention=True)
        except ConversationNotFoundError:
            logger.warning("conversation_id=%s vanished before handoff", conversation_id)
        return ReplyOutcome(status="failed", reason=reason, tokens_used=tokens_used)

    # -- manual passes ------------------------------------------------------

    def generate_follow_up(self, conversation_id: int) -> FollowUpSuggestion:
        conversation = self._require_conversation(conversation_id)
        settings = self._repository.get_automation_settings()
        instruction = follow_up_instruction(settings.follow_up_minutes)
        history = self._repository.list_messages(conversation.id, limit=FOLLOW_UP_HISTORY_DEPTH)
        try:
            text, tokens_used = self._generate(settings, trigger_text=instruction, history=history)
            text, _ = extract_image_directive(text)
            if not text:
                raise ModelResponseError("model returned an empty follow-up")
        except ModelClientError as exc:
            self._log(conversation.id, "follow_up", instruction, None, 0, success=False, error=str(exc))
            raise
        self._log(conversation.id, "follow_up", instruction, text, tokens_used, success=True)
        return FollowUpSuggestion(conversation_id=conversation.id, message=text, tokens_used=tokens_used)

    def analyze_conversation(self, conversation_id: int) -> ConversationAnalysis:
        conversation = self._require_conversation(conversation_id)
        settings = self._repository.get_automation_settings()
        history = self._repository.list_messages(conversation.id, limit=ANALYSIS_HISTORY_DEPTH)
        transcript = "\n".join(
            f"{'Cliente' if item.direction == 'in' else 'Negocio'}: {summarize_message_content(item.content_type, item.body)}"
            for item in history
        )
        messages = [
            {"role": "system", "content": ANALYSIS_INSTRUCTION},
            {"role": "user", "content": transcript or "(sin mensajes)"},
        ]
        try:
            result = self._model_client.chat(
                messages,
                model=settings.model,
                max_tokens=max(settings.max_output_tokens, 200),
                temperature=0.2,
            )
            probability, should_call, summary = parse_analysis_verdict(result.content)
        except ModelClientError as exc:
            self._log(conversation.id, "analysis", None, None, 0, success=False, error=str(exc))
            raise

        self._log(conversation.id, "analysis", None, result.content, result.tokens_used, success=True)
        if should_call and not conversation.should_call:
            self._repository.update_conversation(conversation.id, should_call=True)
        return ConversationAnalysis(
            conversation_id=conversation.id,
            probability=probability,
            should_call=should_call,
            summary=summary,
            tokens_used=result.tokens_used,
        )

    def run_follow_ups(self, now: datetime | None = None) -> FollowUpRunResult:
        settings = self._repository.get_automation_settings()
        if not (settings.enabled and settings.follow_up_enabled):
            return FollowUpRunResult()

        current_time = now or datetime.now(timezone.utc)
        window_start = current_time - timedelta(hours=FOLLOW_UP_WINDOW_HOURS)
        candidates = self._repository.list_follow_up_candidates(
            idle_before=current_time - timedelta(minutes=settings.follow_up_minutes),
            window_start=window_start,
            limit=FOLLOW_UP_BATCH_LIMIT,
        )

        items: list[FollowUpRunEntry] = []
        for conversation in candidates:
            try:
                items.append(self._follow_up_one(conversation, settings, window_start=window_start, now=current_time))
            except Exception:
                logger.exception("follow-up failed conversation_id=%s", conversation.id)
                items.append(FollowUpRunEntry(conversation_id=conversation.id, status="failed", reason="unexpected_error"))
        sent_count = sum(1 for item in items if item.status == "sent")
        logger.info("follow-up pass processed=%d sent=%d", len(candidates), sent_count)
        return FollowUpRunResult(processed_count=len(candidates), sent_count=sent_count, items=items)

    def _follow_up_one(
        self,
        conversation: ConversationRecord,
        settings: AutomationSettingsRecord,
        *,
        window_start: datetime,
        now: datetime,
    ) -> FollowUpRunEntry:
        messages = self._repository.list_messages(conversation.id)
        if not messages or messages[-1].direction != "out":
            return FollowUpRunEntry(conversation_id=conversation.id, status="skipped", reason="last_message_not_outbound")
        last_inbound = next((item for item in reversed(messages) if item.direction == "in"), None)
        if last_inbound is None or last_inbound.created_at < window_start:
            return FollowUpRunEntry(conversation_id=conversation.id, status="skipped", reason="outside_customer_window")

        instruction = follow_up_instruction(settings.follow_up_minutes)
        try:
            text, tokens_used = self._generate(
                settings,
                trigger_text=instruction,
                history=messages[-FOLLOW_UP_HISTORY_DEPTH:],
            )
        except ModelClientError as exc:
            logger.warning("follow-up generation failed conversation_id=%s: %s", conversation.id, exc)
            self._log(conversation.id, "follow_up", instruction, None, 0, success=False, error=str(exc))
            return FollowUpRunEntry(conversation_id=conversation.id, status="failed", reason=_failure_reason(exc))

        text, _ = extract_image_directive(text)
        if not text:
            self._log(conversation.id, "follow_up", instruction, None, tokens_used, success=False, error="empty follow-up")
            return FollowUpRunEntry(conversation_id=conversation.id, status="failed", reason="empty_reply")

        dispatched = self._conversations.dispatch(
            OutboundMessage(to=conversation.wa_id, content_type="text", text=text),
            sender_type="automation",
        )
        if dispatched.status != "sent":
            self._log(
                conversation.id,
                "follow_up",
                instruction,
                text,
                tokens_used,
                success=False,
                error=f"{dispatched.error_code}: {dispatched.error_message}",
            )
            return FollowUpRunEntry(conversation_id=conversation.id, status="failed", reason="dispatch_failed")

        self._repository.update_conversation(conversation.id, last_follow_up_at=now)
        self._log(conversation.id, "follow_up", instruction, text, tokens_used, success=True)
        return FollowUpRunEntry(
            conversation_id=conversation.id,
            status="sent",
            reason="follow_up_sent",
            message_id=dispatched.message_id,
        )

    def _log(
        self,
        conversation_id: int,
        kind: AutomationLogKind,
        inbound_text: str | None,
        reply_text: str | None,
        tokens_used: int,
        *,
        success: bool,
        error: str | None = None,
    ) -> None:
        self._repository.append_automation_log(
            conversation_id=conversation_id,
            kind=kind,
            inbound_text=inbound_text,
            reply_text=reply_text,
            tokens_used=tokens_used,
            success=success,
            error=error,
        )

    def _require_conversation(self, conversation_id: int) -> ConversationRecord:
        conversation = self._repository.get_conversation(conversation_id)
        if conversation is None:
            raise ConversationNotFoundError(conversation_id)
        return conversation
