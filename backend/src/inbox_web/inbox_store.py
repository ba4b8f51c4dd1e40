from __future__ import annotations

import hashlib
import json
import secrets
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from itertools import count
from threading import Lock
from typing import Any, Protocol

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    create_engine,
    delete,
    func,
    select,
    update,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from .conversation_policy import should_apply_status
from .models import (
    AutomationLogKind,
    ContentType,
    DeliveryStatus,
    MessageDirection,
    OrderStatus,
    SenderType,
    StatusUpdateMode,
)

PASSWORD_HASH_ITERATIONS = 240_000
SETTINGS_ROW_ID = 1

CONVERSATION_MUTABLE_FIELDS = frozenset(
    {
        "contact_name",
        "is_pinned",
        "label_id",
        "order_status",
        "automation_disabled",
        "needs_human_attention",
        "should_call",
        "assigned_operator_id",
        "last_message",
        "last_message_at",
        "last_follow_up_at",
    }
)
OPERATOR_MUTABLE_FIELDS = frozenset({"display_name", "password", "weight", "is_active"})
SETTINGS_MUTABLE_FIELDS = frozenset(
    {
        "enabled",
        "instructions",
        "knowledge",
        "model",
        "max_output_tokens",
        "temperature",
        "history_depth",
        "audio_replies_enabled",
        "voice",
        "speech_speed",
        "learning_enabled",
        "follow_up_enabled",
        "follow_up_minutes",
    }
)


class ConversationNotFoundError(KeyError):
    pass


class OperatorNotFoundError(KeyError):
    pass


class LearnedRuleNotFoundError(KeyError):
    pass


class DuplicateUsernameError(ValueError):
    pass


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def hash_password(raw_password: str, *, salt: str | None = None) -> str:
    salt_value = salt or secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac(
        "sha256",
        raw_password.encode("utf-8"),
        salt_value.encode("utf-8"),
        PASSWORD_HASH_ITERATIONS,
    )
    return f"pbkdf2_sha256${PASSWORD_HASH_ITERATIONS}${salt_value}${digest.hex()}"


def verify_password(raw_password: str, password_hash: str) -> bool:
    try:
        _, iterations, salt_value, expected = password_hash.split("$", 3)
    except ValueError:
        return False
    digest = hashlib.pbkdf2_hmac(
        "sha256",
        raw_password.encode("utf-8"),
        salt_value.encode("utf-8"),
        int(iterations),
    )
    return secrets.compare_digest(digest.hex(), expected)


def _reject_unknown_fields(changes: dict[str, Any], allowed: frozenset[str]) -> None:
    unknown = set(changes) - allowed
    if unknown:
        raise ValueError(f"unsupported fields: {', '.join(sorted(unknown))}")


@dataclass(frozen=True)
class ConversationRecord:
    id: int
    wa_id: str
    contact_name: str | None
    is_pinned: bool
    label_id: int | None
    order_status: OrderStatus
    automation_disabled: bool
    needs_human_attention: bool
    should_call: bool
    assigned_operator_id: int | None
    last_message: str | None
    last_message_at: datetime | None
    last_follow_up_at: datetime | None
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class MessageRecord:
    id: int
    conversation_id: int
    wa_message_id: str | None
    direction: MessageDirection
    sender_type: SenderType
    content_type: ContentType
    body: str | None
    media_id: str | None
    media_url: str | None
    mime_type: str | None
    status: DeliveryStatus
    external_timestamp: str | None
    raw_payload: dict[str, Any] | None
    created_at: datetime


@dataclass(frozen=True)
class OperatorRecord:
    id: int
    username: str
    display_name: str
    password_hash: str
    is_active: bool
    weight: int
    created_at: datetime


@dataclass(frozen=True)
class AutomationSettingsRecord:
    enabled: bool = False
    instructions: str = ""
    knowledge: str = ""
    model: str = "gpt-4o-mini"
    max_output_tokens: int = 120
    temperature: float = 0.7
    history_depth: int = 3
    audio_replies_enabled: bool = False
    voice: str = "alloy"
    speech_speed: float = 1.0
    learning_enabled: bool = False
    follow_up_enabled: bool = False
    follow_up_minutes: int = 20
    updated_at: datetime | None = None


@dataclass(frozen=True)
class AutomationLogRecord:
    id: int
    conversation_id: int | None
    kind: AutomationLogKind
    inbound_text: str | None
    reply_text: str | None
    tokens_used: int
    success: bool
    error: str | None
    created_at: datetime


@dataclass(frozen=True)
class LearnedRuleRecord:
    id: int
    rule_text: str
    is_active: bool
    source_conversation_id: int | None
    created_at: datetime


class InboxRepository(Protocol):
    def reset(self) -> None: ...

    # Conversations
    def get_or_create_conversation(self, *, wa_id: str, contact_name: str | None) -> tuple[ConversationRecord, bool]: ...

    def get_conversation(self, conversation_id: int) -> ConversationRecord | None: ...

    def get_conversation_by_wa_id(self, wa_id: str) -> ConversationRecord | None: ...

    def list_conversations(self, *, limit: int) -> list[ConversationRecord]: ...

    def count_conversations(self) -> int: ...

    def update_conversation(self, conversation_id: int, **changes: Any) -> ConversationRecord: ...

    def delete_conversation(self, conversation_id: int) -> bool: ...

    def list_follow_up_candidates(
        self,
        *,
        idle_before: datetime,
        window_start: datetime,
        limit: int,
    ) -> list[ConversationRecord]: ...

    # Messages
    def insert_message(
        self,
        *,
        conversation_id: int,
        wa_message_id: str | None,
        direction: MessageDirection,
        sender_type: SenderType,
        content_type: ContentType,
        body: str | None,
        media_id: str | None,
        media_url: str | None,
        mime_type: str | None,
        status: DeliveryStatus,
        external_timestamp: str | None,
        raw_payload: dict[str, Any] | None,
    ) -> MessageRecord | None: ...

    def find_message_by_wa_id(self, wa_message_id: str) -> MessageRecord | None: ...

    def list_messages(self, conversation_id: int, *, limit: int | None = None) -> list[MessageRecord]: ...

    def list_messages_before(self, conversation_id: int, *, before_message_id: int, limit: int) -> list[MessageRecord]: ...

    def apply_message_status(
        self,
        *,
        wa_message_id: str,
        status: DeliveryStatus,
        mode: StatusUpdateMode,
    ) -> tuple[MessageRecord | None, bool]: ...

    # Operators
    def create_operator(
        self,
        *,
        username: str,
        display_name: str,
        password: str,
        weight: int,
        is_active: bool,
    ) -> OperatorRecord: ...

    def update_operator(self, operator_id: int, **changes: Any) -> OperatorRecord: ...

    def delete_operator(self, operator_id: int) -> int: ...

    def get_operator(self, operator_id: int) -> OperatorRecord | None: ...

    def list_operators(self, *, active_only: bool = False) -> list[OperatorRecord]: ...

    def assignment_counts(self) -> dict[int, int]: ...

    def count_unassigned(self) -> int: ...

    # Automation
    def get_automation_settings(self) -> AutomationSettingsRecord: ...

    def update_automation_settings(self, **changes: Any) -> AutomationSettingsRecord: ...

    def append_automation_log(
        self,
        *,
        conversation_id: int | None,
        kind: AutomationLogKind,
        inbound_text: str | None,
        reply_text: str | None,
        tokens_used: int,
        success: bool,
        error: str | None,
    ) -> AutomationLogRecord: ...

    def list_automation_logs(self, *, limit: int) -> list[AutomationLogRecord]: ...

    def create_learned_rule(
        self,
        *,
        rule_text: str,
        source_conversation_id: int | None,
        is_active: bool,
    ) -> LearnedRuleRecord: ...

    def update_learned_rule(self, rule_id: int, **changes: Any) -> LearnedRuleRecord: ...

    def delete_learned_rule(self, rule_id: int) -> bool: ...

    def list_learned_rules(self, *, active_only: bool = False) -> list[LearnedRuleRecord]: ...


def _conversation_sort_key(record: ConversationRecord) -> tuple[bool, datetime, int]:
    return (not record.is_pinned, -record.updated_at.timestamp(), -record.id)  # type: ignore[return-value]


class InMemoryInboxRepository:
    def __init__(self) -> None:
        self._lock = Lock()
        self._init_state()

    def _init_state(self) -> None:
        self._conversation_counter = count(1)
        self._message_counter = count(1)
        self._operator_counter = count(1)
        self._log_counter = count(1)
        self._rule_counter = count(1)
        self._conversations: dict[int, ConversationRecord] = {}
        self._conversation_by_wa_id: dict[str, int] = {}
        self._messages: dict[int, MessageRecord] = {}
        self._message_by_wa_id: dict[str, int] = {}
        self._operators: dict[int, OperatorRecord] = {}
        self._settings = AutomationSettingsRecord(updated_at=_now_utc())
        self._logs: list[AutomationLogRecord] = []
        self._rules: dict[int, LearnedRuleRecord] = {}

    def reset(self) -> None:
        with self._lock:
            self._init_state()

    def get_or_create_conversation(self, *, wa_id: str, contact_name: str | None) -> tuple[ConversationRecord, bool]:
        with self._lock:
            existing_id = self._conversation_by_wa_id.get(wa_id)
            if existing_id is not None:
                return self._conversations[existing_id], False
            now = _now_utc()
            record = ConversationRecord(
                id=next(self._conversation_counter),
                wa_id=wa_id,
                contact_name=contact_name,
                is_pinned=False,
                label_id=None,
                order_status="none",
                automation_disabled=False,
                needs_human_attention=False,
                should_call=False,
                assigned_operator_id=None,
                last_message=None,
                last_message_at=None,
                last_follow_up_at=None,
                created_at=now,
                updated_at=now,
            )
            self._conversations[record.id] = record
            self._conversation_by_wa_id[wa_id] = record.id
            return record, True

    def get_conversation(self, conversation_id: int) -> ConversationRecord | None:
        with self._lock:
            return self._conversations.get(conversation_id)

    def get_conversation_by_wa_id(self, wa_id: str) -> ConversationRecord | None:
        with self._lock:
            conversation_id = self._conversation_by_wa_id.get(wa_id)
            return self._conversations.get(conversation_id) if conversation_id is not None else None

    def list_conversations(self, *, limit: int) -> list[ConversationRecord]:
        with self._lock:
            ordered = sorted(self._conversations.values(), key=_conversation_sort_key)
            return ordered[:limit]

    def count_conversations(self) -> int:
        with self._lock:
            return len(self._conversations)

    def update_conversation(self, conversation_id: int, **changes: Any) -> ConversationRecord:
        _reject_unknown_fields(changes, CONVERSATION_MUTABLE_FIELDS)
        with self._lock:
            current = self._conversations.get(conversation_id)
            if current is None:
                raise ConversationNotFoundError(conversation_id)
            updated = replace(current, **changes, updated_at=_now_utc())
            self._conversations[conversation_id] = updated
            return updated

    def delete_conversation(self, conversation_id: int) -> bool:
        with self._lock:
            record = self._conversations.pop(conversation_id, None)
            if record is None:
                return False
            self._conversation_by_wa_id.pop(record.wa_id, None)
            for message_id in [key for key, value in self._messages.items() if value.conversation_id == conversation_id]:
                message = self._messages.pop(message_id)
                if message.wa_message_id:
                    self._message_by_wa_id.pop(message.wa_message_id, None)
            self._logs = [item for item in self._logs if item.conversation_id != conversation_id]
            return True

    def list_follow_up_candidates(
        self,
        *,
        idle_before: datetime,
        window_start: datetime,
        limit: int,
    ) -> list[ConversationRecord]:
        with self._lock:
            candidates = [
                record
                for record in self._conversations.values()
                if record.last_follow_up_at is None
                and not record.automation_disabled
                and not record.needs_human_attention
                and record.order_status != "delivered"
                and record.last_message_at is not None
                and window_start <= record.last_message_at <= idle_before
            ]
            candidates.sort(key=lambda item: item.last_message_at, reverse=True)  # type: ignore[arg-type,return-value]
            return candidates[:limit]

    def insert_message(
        self,
        *,
        conversation_id: int,
        wa_message_id: str | None,
        direction: MessageDirection,
        sender_type: SenderType,
        content_type: ContentType,
        body: str | None,
        media_id: str | None,
        media_url: str | None,
        mime_type: str | None,
        status: DeliveryStatus,
        external_timestamp: str | None,
        raw_payload: dict[str, Any] | None,
    ) -> MessageRecord | None:
        with self._lock:
            if conversation_id not in self._conversations:
                raise ConversationNotFoundError(conversation_id)
            if wa_message_id and wa_message_id in self._message_by_wa_id:
                return None
            record = MessageRecord(
                id=next(self._message_counter),
                conversation_id=conversation_id,
                wa_message_id=wa_message_id,
                direction=direction,
                sender_type=sender_type,
                content_type=content_type,
                body=body,
                media_id=media_id,
                media_url=media_url,
                mime_type=mime_type,
                status=status,
                external_timestamp=external_timestamp,
                raw_payload=raw_payload,
                created_at=_now_utc(),
            )
            self._messages[record.id] = record
            if wa_message_id:
                self._message_by_wa_id[wa_message_id] = record.id
            return record

    def find_message_by_wa_id(self, wa_message_id: str) -> MessageRecord | None:
        with self._lock:
            message_id = self._message_by_wa_id.get(wa_message_id)
            return self._messages.get(message_id) if message_id is not None else None

    def list_messages(self, conversation_id: int, *, limit: int | None = None) -> list[MessageRecord]:
        with self._lock:
            messages = sorted(
                (item for item in self._messages.values() if item.conversation_id == conversation_id),
                key=lambda item: item.id,
            )
            return messages[-limit:] if limit is not None else messages

    def list_messages_before(self, conversation_id: int, *, before_message_id: int, limit: int) -> list[MessageRecord]:
        if limit <= 0:
            return []
        with self._lock:
            earlier = sorted(
                (
                    item
                    for item in self._messages.values()
                    if item.conversation_id == conversation_id and item.id < before_message_id
                ),
                key=lambda item: item.id,
            )
            return earlier[-limit:]

    def apply_message_status(
        self,
        *,
        wa_message_id: str,
        status: DeliveryStatus,
        mode: StatusUpdateMode,
    ) -> tuple[MessageRecord | None, bool]:
        with self._lock:
            message_id = self._message_by_wa_id.get(wa_message_id)
            if message_id is None:
                return None, False
            current = self._messages[message_id]
            if not should_apply_status(current.status, status, mode=mode):
                return current, False
            updated = replace(current, status=status)
            self._messages[message_id] = updated
            return updated, True

    def create_operator(
        self,
        *,
        username: str,
        display_name: str,
        password: str,
        weight: int,
        is_active: bool,
    ) -> OperatorRecord:
        with self._lock:
            if any(item.username == username for item in self._operators.values()):
                raise DuplicateUsernameError(username)
            record = OperatorRecord(
                id=next(self._operator_counter),
                username=username,
                display_name=display_name,
                password_hash=hash_password(password),
                is_active=is_active,
                weight=max(1, weight),
                created_at=_now_utc(),
            )
            self._operators[record.id] = record
            return record

    def update_operator(self, operator_id: int, **changes: Any) -> OperatorRecord:
        _reject_unknown_fields(changes, OPERATOR_MUTABLE_FIELDS)
        with self._lock:
            current = self._operators.get(operator_id)
            if current is None:
                raise OperatorNotFoundError(operator_id)
            values = dict(changes)
            password = values.pop("password", None)
            if password is not None:
                values["password_hash"] = hash_password(password)
            if "weight" in values:
                values["weight"] = max(1, int(values["weight"]))
            updated = replace(current, **values)
            self._operators[operator_id] = updated
            return updated

    def delete_operator(self, operator_id: int) -> int:
        with self._lock:
            if self._operators.pop(operator_id, None) is None:
                raise OperatorNotFoundError(operator_id)
            cleared = 0
            now = _now_utc()
            for conversation_id, record in list(self._conversations.items()):
                if record.assigned_operator_id == operator_id:
                    self._conversations[conversation_id] = replace(record, assigned_operator_id=None, updated_at=now)
                    cleared += 1
            return cleared

    def get_operator(self, operator_id: int) -> OperatorRecord | None:
        with self._lock:
            return self._operators.get(operator_id)

    def list_operators(self, *, active_only: bool = False) -> list[OperatorRecord]:
        with self._lock:
            operators = sorted(self._operators.values(), key=lambda item: (item.created_at, item.id))
            if active_only:
                return [item for item in operators if item.is_active]
            return operators

    def assignment_counts(self) -> dict[int, int]:
        with self._lock:
            counts: dict[int, int] = {}
            for record in self._conversations.values():
                if record.assigned_operator_id is not None:
                    counts[record.assigned_operator_id] = counts.get(record.assigned_operator_id, 0) + 1
            return counts

    def count_unassigned(self) -> int:
        with self._lock:
            return sum(1 for record in self._conversations.values() if record.assigned_operator_id is None)

    def get_automation_settings(self) -> AutomationSettingsRecord:
        with self._lock:
            return self._settings

    def update_automation_settings(self, **changes: Any) -> AutomationSettingsRecord:
        _reject_unknown_fields(changes, SETTINGS_MUTABLE_FIELDS)
        with self._lock:
            self._settings = replace(self._settings, **changes, updated_at=_now_utc())
            return self._settings

    def append_automation_log(
        self,
        *,
        conversation_id: int | None,
        kind: AutomationLogKind,
        inbound_text: str | None,
        reply_text: str | None,
        tokens_used: int,
        success: bool,
        error: str | None,
    ) -> AutomationLogRecord:
        with self._lock:
            record = AutomationLogRecord(
                id=next(self._log_counter),
                conversation_id=conversation_id,
                kind=kind,
                inbound_text=inbound_text,
                reply_text=reply_text,
                tokens_used=tokens_used,
                success=success,
                error=error,
                created_at=_now_utc(),
            )
            self._logs.append(record)
            return record

    def list_automation_logs(self, *, limit: int) -> list[AutomationLogRecord]:
        with self._lock:
            return list(reversed(self._logs))[:limit]

    def create_learned_rule(
        self,
        *,
        rule_text: str,
        source_conversation_id: int | None,
        is_active: bool,
    ) -> LearnedRuleRecord:
        with self._lock:
            record = LearnedRuleRecord(
                id=next(self._rule_counter),
                rule_text=rule_text,
                is_active=is_active,
                source_conversation_id=source_conversation_id,
                created_at=_now_utc(),
            )
            self._rules[record.id] = record
            return record

    def update_learned_rule(self, rule_id: int, **changes: Any) -> LearnedRuleRecord:
        _reject_unknown_fields(changes, frozenset({"rule_text", "is_active"}))
        with self._lock:
            current = self._rules.get(rule_id)
            if current is None:
                raise LearnedRuleNotFoundError(rule_id)
            updated = replace(current, **changes)
            self._rules[rule_id] = updated
            return updated

    def delete_learned_rule(self, rule_id: int) -> bool:
        with self._lock:
            return self._rules.pop(rule_id, None) is not None

    def list_learned_rules(self, *, active_only: bool = False) -> list[LearnedRuleRecord]:
        with self._lock:
            rules = sorted(self._rules.values(), key=lambda item: item.id)
            if active_only:
                return [item for item in rules if item.is_active]
            return rules


_BIGINT = BigInteger().with_variant(Integer(), "sqlite")


class InboxBase(DeclarativeBase):
    pass


class _OperatorRow(InboxBase):
    __tablename__ = "operators"

    id: Mapped[int] = mapped_column(_BIGINT, primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    display_name: Mapped[str] = mapped_column(String(128), nullable=False)
    password_hash: Mapped[str] = mapped_column(String(256), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    weight: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class _ConversationRow(InboxBase):
    __tablename__ = "conversations"

    id: Mapped[int] = mapped_column(_BIGINT, primary_key=True, autoincrement=True)
    wa_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    contact_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_pinned: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    label_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    order_status: Mapped[str] = mapped_column(String(16), nullable=False, default="none")
    automation_disabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    needs_human_attention: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, index=True)
    should_call: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    assigned_operator_id: Mapped[int | None] = mapped_column(
        _BIGINT, ForeignKey("operators.id", ondelete="SET NULL"), nullable=True, index=True
    )
    last_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_message_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
    last_follow_up_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)


class _MessageRow(InboxBase):
    __tablename__ = "messages"

    id: Mapped[int] = mapped_column(_BIGINT, primary_key=True, autoincrement=True)
    conversation_id: Mapped[int] = mapped_column(
        _BIGINT, ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    wa_message_id: Mapped[str | None] = mapped_column(String(256), nullable=True, unique=True)
    direction: Mapped[str] = mapped_column(String(8), nullable=False)
    sender_type: Mapped[str] = mapped_column(String(16), nullable=False)
    content_type: Mapped[str] = mapped_column(String(16), nullable=False)
    body: Mapped[str | None] = mapped_column(Text, nullable=True)
    media_id: Mapped[str | None] = mapped_column(String(256), nullable=True)
    media_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    mime_type: Mapped[str | None] = mapped_column(String(128), nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="received")
    external_timestamp: Mapped[str | None] = mapped_column(String(32), nullable=True)
    raw_payload_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)


class _AutomationSettingsRow(InboxBase):
    __tablename__ = "automation_settings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    instructions: Mapped[str] = mapped_column(Text, nullable=False, default="")
    knowledge: Mapped[str] = mapped_column(Text, nullable=False, default="")
    model: Mapped[str] = mapped_column(String(128), nullable=False, default="gpt-4o-mini")
    max_output_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=120)
    temperature: Mapped[float] = mapped_column(Float, nullable=False, default=0.7)
    history_depth: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    audio_replies_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    voice: Mapped[str] = mapped_column(String(64), nullable=False, default="alloy")
    speech_speed: Mapped[float] = mapped_column(Float, nullable=False, default=1.0)
    learning_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    follow_up_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    follow_up_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=20)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class _AutomationLogRow(InboxBase):
    __tablename__ = "automation_logs"

    id: Mapped[int] = mapped_column(_BIGINT, primary_key=True, autoincrement=True)
    conversation_id: Mapped[int | None] = mapped_column(
        _BIGINT, ForeignKey("conversations.id", ondelete="CASCADE"), nullable=True, index=True
    )
    kind: Mapped[str] = mapped_column(String(16), nullable=False, default="reply")
    inbound_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    reply_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    tokens_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)


class _LearnedRuleRow(InboxBase):
    __tablename__ = "learned_rules"

    id: Mapped[int] = mapped_column(_BIGINT, primary_key=True, autoincrement=True)
    rule_text: Mapped[str] = mapped_column(Text, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    source_conversation_id: Mapped[int | None] = mapped_column(_BIGINT, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class SqlAlchemyInboxRepository:
    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for INBOX_STORE_BACKEND=postgres")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        # SQLite is used in tests. Production Postgres should rely on migrations.
        if database_url.startswith("sqlite"):
            InboxBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.execute(delete(_AutomationLogRow))
                session.execute(delete(_MessageRow))
                session.execute(delete(_ConversationRow))
                session.execute(delete(_OperatorRow))
                session.execute(delete(_LearnedRuleRow))
                session.execute(delete(_AutomationSettingsRow))

    # -- conversations ------------------------------------------------------

    def get_or_create_conversation(self, *, wa_id: str, contact_name: str | None) -> tuple[ConversationRecord, bool]:
        existing = self.get_conversation_by_wa_id(wa_id)
        if existing is not None:
            return existing, False
        now = _now_utc()
        try:
            with self._session() as session:
                with session.begin():
                    row = _ConversationRow(
                        wa_id=wa_id,
                        contact_name=contact_name,
                        is_pinned=False,
                        label_id=None,
                        order_status="none",
                        automation_disabled=False,
                        needs_human_attention=False,
                        should_call=False,
                        assigned_operator_id=None,
                        last_message=None,
                        last_message_at=None,
                        last_follow_up_at=None,
                        created_at=now,
                        updated_at=now,
                    )
                    session.add(row)
                    session.flush()
                    created = self._conversation_record(row)
            return created, True
        except IntegrityError:
            winner = self.get_conversation_by_wa_id(wa_id)
            if winner is None:
                raise
            return winner, False

    def get_conversation(self, conversation_id: int) -> ConversationRecord | None:
        with self._session() as session:
            row = session.get(_ConversationRow, conversation_id)
            return self._conversation_record(row) if row is not None else None

    def get_conversation_by_wa_id(self, wa_id: str) -> ConversationRecord | None:
        with self._session() as session:
            row = session.scalar(select(_ConversationRow).where(_ConversationRow.wa_id == wa_id))
            return self._conversation_record(row) if row is not None else None

    def list_conversations(self, *, limit: int) -> list[ConversationRecord]:
        with self._session() as session:
            rows = session.scalars(
                select(_ConversationRow)
                .order_by(
                    _ConversationRow.is_pinned.desc(),
                    _ConversationRow.updated_at.desc(),
                    _ConversationRow.id.desc(),
                )
                .limit(limit)
            ).all()
            return [self._conversation_record(row) for row in rows]

    def count_conversations(self) -> int:
        with self._session() as session:
            return int(session.scalar(select(func.count()).select_from(_ConversationRow)) or 0)

    def update_conversation(self, conversation_id: int, **changes: Any) -> ConversationRecord:
        _reject_unknown_fields(changes, CONVERSATION_MUTABLE_FIELDS)
        with self._session() as session:
            with session.begin():
                row = session.get(_ConversationRow, conversation_id)
                if row is None:
                    raise ConversationNotFoundError(conversation_id)
                for key, value in changes.items():
                    setattr(row, key, value)
                row.updated_at = _now_utc()
                session.flush()
                return self._conversation_record(row)

    def delete_conversation(self, conversation_id: int) -> bool:
        with self._session() as session:
            with session.begin():
                row = session.get(_ConversationRow, conversation_id)
                if row is None:
                    return False
                session.execute(delete(_AutomationLogRow).where(_AutomationLogRow.conversation_id == conversation_id))
                session.execute(delete(_MessageRow).where(_MessageRow.conversation_id == conversation_id))
                session.delete(row)
                return True

    def list_follow_up_candidates(
        self,
        *,
        idle_before: datetime,
        window_start: datetime,
        limit: int,
    ) -> list[ConversationRecord]:
        with self._session() as session:
            rows = session.scalars(
                select(_ConversationRow)
                .where(
                    _ConversationRow.last_follow_up_at.is_(None),
                    _ConversationRow.automation_disabled.is_(False),
                    _ConversationRow.needs_human_attention.is_(False),
                    _ConversationRow.order_status != "delivered",
                    _ConversationRow.last_message_at >= window_start,
                    _ConversationRow.last_message_at <= idle_before,
                )
                .order_by(_ConversationRow.last_message_at.desc())
                .limit(limit)
            ).all()
            return [self._conversation_record(row) for row in rows]

    # -- messages -----------------------------------------------------------

    def insert_message(
        self,
        *,
        conversation_id: int,
        wa_message_id: str | None,
        direction: MessageDirection,
        sender_type: SenderType,
        content_type: ContentType,
        body: str | None,
        media_id: str | None,
        media_url: str | None,
        mime_type: str | None,
        status: DeliveryStatus,
        external_timestamp: str | None,
        raw_payload: dict[str, Any] | None,
    ) -> MessageRecord | None:
        try:
            with self._session() as session:
                with session.begin():
                    if session.get(_ConversationRow, conversation_id) is None:
                        raise ConversationNotFoundError(conversation_id)
                    row = _MessageRow(
                        conversation_id=conversation_id,
                        wa_message_id=wa_message_id,
                        direction=direction,
                        sender_type=sender_type,
                        content_type=content_type,
                        body=body,
                        media_id=media_id,
                        media_url=media_url,
                        mime_type=mime_type,
                        status=status,
                        external_timestamp=external_timestamp,
                        raw_payload_json=json.dumps(raw_payload, sort_keys=True) if raw_payload is not None else None,
                        created_at=_now_utc(),
                    )
                    session.add(row)
                    session.flush()
                    record = self._message_record(row)
            return record
        except IntegrityError:
            if wa_message_id and self.find_message_by_wa_id(wa_message_id) is not None:
                return None
            raise

    def find_message_by_wa_id(self, wa_message_id: str) -> MessageRecord | None:
        with self._session() as session:
            row = session.scalar(select(_MessageRow).where(_MessageRow.wa_message_id == wa_message_id))
            return self._message_record(row) if row is not None else None

    def list_messages(self, conversation_id: int, *, limit: int | None = None) -> list[MessageRecord]:
        with self._session() as session:
            query = (
                select(_MessageRow)
                .where(_MessageRow.conversation_id == conversation_id)
                .order_by(_MessageRow.id.desc())
            )
            if limit is not None:
                query = query.limit(limit)
            rows = session.scalars(query).all()
            return [self._message_record(row) for row in reversed(rows)]

    def list_messages_before(self, conversation_id: int, *, before_message_id: int, limit: int) -> list[MessageRecord]:
        if limit <= 0:
            return []
        with self._session() as session:
            rows = session.scalars(
                select(_MessageRow)
                .where(
                    _MessageRow.conversation_id == conversation_id,
                    _MessageRow.id < before_message_id,
                )
                .order_by(_MessageRow.id.desc())
                .limit(limit)
            ).all()
            return [self._message_record(row) for row in reversed(rows)]

    def apply_message_status(
        self,
        *,
        wa_message_id: str,
        status: DeliveryStatus,
        mode: StatusUpdateMode,
    ) -> tuple[MessageRecord | None, bool]:
        with self._session() as session:
            with session.begin():
                row = session.scalar(
                    select(_MessageRow).where(_MessageRow.wa_message_id == wa_message_id).with_for_update()
                )
                if row is None:
                    return None, False
                if not should_apply_status(row.status, status, mode=mode):  # type: ignore[arg-type]
                    return self._message_record(row), False
                row.status = status
                session.flush()
                return self._message_record(row), True

    # -- operators ----------------------------------------------------------

    def create_operator(
        self,
        *,
        username: str,
        display_name: str,
        password: str,
        weight: int,
        is_active: bool,
    ) -> OperatorRecord:
        try:
            with self._session() as session:
                with session.begin():
                    row = _OperatorRow(
                        username=username,
                        display_name=display_name,
                        password_hash=hash_password(password),
                        is_active=is_active,
                        weight=max(1, weight),
                        created_at=_now_utc(),
                    )
                    session.add(row)
                    session.flush()
                    record = self._operator_record(row)
            return record
        except IntegrityError as exc:
            raise DuplicateUsernameError(username) from exc

    def update_operator(self, operator_id: int, **changes: Any) -> OperatorRecord:
        _reject_unknown_fields(changes, OPERATOR_MUTABLE_FIELDS)
        with self._session() as session:
            with session.begin():
                row = session.get(_OperatorRow, operator_id)
                if row is None:
                    raise OperatorNotFoundError(operator_id)
                for key, value in changes.items():
                    if key == "password":
                        row.password_hash = hash_password(value)
                    elif key == "weight":
                        row.weight = max(1, int(value))
                    else:
                        setattr(row, key, value)
                session.flush()
                return self._operator_record(row)

    def delete_operator(self, operator_id: int) -> int:
        with self._session() as session:
            with session.begin():
                row = session.get(_OperatorRow, operator_id)
                if row is None:
                    raise OperatorNotFoundError(operator_id)
                result = session.execute(
                    update(_ConversationRow)
                    .where(_ConversationRow.assigned_operator_id == operator_id)
                    .values(assigned_operator_id=None, updated_at=_now_utc())
                )
                session.delete(row)
                return int(result.rowcount or 0)

    def get_operator(self, operator_id: int) -> OperatorRecord | None:
        with self._session() as session:
            row = session.get(_OperatorRow, operator_id)
            return self._operator_record(row) if row is not None else None

    def list_operators(self, *, active_only: bool = False) -> list[OperatorRecord]:
        with self._session() as session:
            query = select(_OperatorRow).order_by(_OperatorRow.created_at.asc(), _OperatorRow.id.asc())
            if active_only:
                query = query.where(_OperatorRow.is_active.is_(True))
            return [self._operator_record(row) for row in session.scalars(query).all()]

    def assignment_counts(self) -> dict[int, int]:
        with self._session() as session:
            rows = session.execute(
                select(_ConversationRow.assigned_operator_id, func.count())
                .where(_ConversationRow.assigned_operator_id.is_not(None))
                .group_by(_ConversationRow.assigned_operator_id)
            ).all()
            return {int(operator_id): int(total) for operator_id, total in rows}

    def count_unassigned(self) -> int:
        with self._session() as session:
            return int(
                session.scalar(
                    select(func.count())
                    .select_from(_ConversationRow)
                    .where(_ConversationRow.assigned_operator_id.is_(None))
                )
                or 0
            )

    # -- automation ---------------------------------------------------------

    def get_automation_settings(self) -> AutomationSettingsRecord:
        with self._session() as session:
            row = session.get(_AutomationSettingsRow, SETTINGS_ROW_ID)
            if row is None:
                return AutomationSettingsRecord(updated_at=_now_utc())
            return self._settings_record(row)

    def update_automation_settings(self, **changes: Any) -> AutomationSettingsRecord:
        _reject_unknown_fields(changes, SETTINGS_MUTABLE_FIELDS)
        with self._session() as session:
            with session.begin():
                row = session.get(_AutomationSettingsRow, SETTINGS_ROW_ID)
                if row is None:
                    defaults = AutomationSettingsRecord()
                    row = _AutomationSettingsRow(
                        id=SETTINGS_ROW_ID,
                        **{key: getattr(defaults, key) for key in SETTINGS_MUTABLE_FIELDS},
                        updated_at=_now_utc(),
                    )
                    session.add(row)
                for key, value in changes.items():
                    setattr(row, key, value)
                row.updated_at = _now_utc()
                session.flush()
                return self._settings_record(row)

    def append_automation_log(
        self,
        *,
        conversation_id: int | None,
        kind: AutomationLogKind,
        inbound_text: str | None,
        reply_text: str | None,
        tokens_used: int,
        success: bool,
        error: str | None,
    ) -> AutomationLogRecord:
        with self._session() as session:
            with session.begin():
                row = _AutomationLogRow(
                    conversation_id=conversation_id,
                    kind=kind,
                    inbound_text=inbound_text,
                    reply_text=reply_text,
                    tokens_used=tokens_used,
                    success=success,
                    error=error,
                    created_at=_now_utc(),
                )
                session.add(row)
                session.flush()
                return self._log_record(row)

    def list_automation_logs(self, *, limit: int) -> list[AutomationLogRecord]:
        with self._session() as session:
            rows = session.scalars(
                select(_AutomationLogRow).order_by(_AutomationLogRow.id.desc()).limit(limit)
            ).all()
            return [self._log_record(row) for row in rows]

    def create_learned_rule(
        self,
        *,
        rule_text: str,
        source_conversation_id: int | None,
        is_active: bool,
    ) -> LearnedRuleRecord:
        with self._session() as session:
            with session.begin():
                row = _LearnedRuleRow(
                    rule_text=rule_text,
                    is_active=is_active,
                    source_conversation_id=source_conversation_id,
                    created_at=_now_utc(),
                )
                session.add(row)
                session.flush()
                return self._rule_record(row)

    def update_learned_rule(self, rule_id: int, **changes: Any) -> LearnedRuleRecord:
        _reject_unknown_fields(changes, frozenset({"rule_text", "is_active"}))
        with self._session() as session:
            with session.begin():
                row = session.get(_LearnedRuleRow, rule_id)
                if row is None:
                    raise LearnedRuleNotFoundError(rule_id)
                for key, value in changes.items():
                    setattr(row, key, value)
                session.flush()
                return self._rule_record(row)

    def delete_learned_rule(self, rule_id: int) -> bool:
        with self._session() as session:
            with session.begin():
                row = session.get(_LearnedRuleRow, rule_id)
                if row is None:
                    return False
                session.delete(row)
                return True

    def list_learned_rules(self, *, active_only: bool = False) -> list[LearnedRuleRecord]:
        with self._session() as session:
            query = select(_LearnedRuleRow).order_by(_LearnedRuleRow.id.asc())
            if active_only:
                query = query.where(_LearnedRuleRow.is_active.is_(True))
            return [self._rule_record(row) for row in session.scalars(query).all()]

    # -- row mapping --------------------------------------------------------

    @staticmethod
    def _conversation_record(row: _ConversationRow) -> ConversationRecord:
        return ConversationRecord(
            id=row.id,
            wa_id=row.wa_id,
            contact_name=row.contact_name,
            is_pinned=bool(row.is_pinned),
            label_id=row.label_id,
            order_status=row.order_status,  # type: ignore[arg-type]
            automation_disabled=bool(row.automation_disabled),
            needs_human_attention=bool(row.needs_human_attention),
            should_call=bool(row.should_call),
            assigned_operator_id=row.assigned_operator_id,
            last_message=row.last_message,
            last_message_at=_coerce_utc(row.last_message_at),
            last_follow_up_at=_coerce_utc(row.last_follow_up_at),
            created_at=_coerce_utc(row.created_at),  # type: ignore[arg-type]
            updated_at=_coerce_utc(row.updated_at),  # type: ignore[arg-type]
        )

    @staticmethod
    def _message_record(row: _MessageRow) -> MessageRecord:
        return MessageRecord(
            id=row.id,
            conversation_id=row.conversation_id,
            wa_message_id=row.wa_message_id,
            direction=row.direction,  # type: ignore[arg-type]
            sender_type=row.sender_type,  # type: ignore[arg-type]
            content_type=row.content_type,  # type: ignore[arg-type]
            body=row.body,
            media_id=row.media_id,
            media_url=row.media_url,
            mime_type=row.mime_type,
            status=row.status,  # type: ignore[arg-type]
            external_timestamp=row.external_timestamp,
            raw_payload=json.loads(row.raw_payload_json) if row.raw_payload_json else None,
            created_at=_coerce_utc(row.created_at),  # type: ignore[arg-type]
        )

    @staticmethod
    def _operator_record(row: _OperatorRow) -> OperatorRecord:
        return OperatorRecord(
            id=row.id,
            username=row.username,
            display_name=row.display_name,
            password_hash=row.password_hash,
            is_active=bool(row.is_active),
            weight=row.weight,
            created_at=_coerce_utc(row.created_at),  # type: ignore[arg-type]
        )

    @staticmethod
    def _settings_record(row: _AutomationSettingsRow) -> AutomationSettingsRecord:
        return AutomationSettingsRecord(
            enabled=bool(row.enabled),
            instructions=row.instructions,
            knowledge=row.knowledge,
            model=row.model,
            max_output_tokens=row.max_output_tokens,
            temperature=row.temperature,
            history_depth=row.history_depth,
            audio_replies_enabled=bool(row.audio_replies_enabled),
            voice=row.voice,
            speech_speed=row.speech_speed,
            learning_enabled=bool(row.learning_enabled),
            follow_up_enabled=bool(row.follow_up_enabled),
            follow_up_minutes=row.follow_up_minutes,
            updated_at=_coerce_utc(row.updated_at),
        )

    @staticmethod
    def _log_record(row: _AutomationLogRow) -> AutomationLogRecord:
        return AutomationLogRecord(
            id=row.id,
            conversation_id=row.conversation_id,
            kind=row.kind,  # type: ignore[arg-type]
            inbound_text=row.inbound_text,
            reply_text=row.reply_text,
            tokens_used=row.tokens_used,
            success=bool(row.success),
            error=row.error,
            created_at=_coerce_utc(row.created_at),  # type: ignore[arg-type]
        )

    @staticmethod
    def _rule_record(row: _LearnedRuleRow) -> LearnedRuleRecord:
        return LearnedRuleRecord(
            id=row.id,
            rule_text=row.rule_text,
            is_active=bool(row.is_active),
            source_conversation_id=row.source_conversation_id,
            created_at=_coerce_utc(row.created_at),  # type: ignore[arg-type]
        )


def create_inbox_repository(*, backend: str, database_url: str) -> InboxRepository:
    normalized = backend.strip().lower()
    if normalized in {"postgres", "sqlite"}:
        return SqlAlchemyInboxRepository(database_url)
    if normalized == "inmemory":
        return InMemoryInboxRepository()
    raise RuntimeError(f"unsupported INBOX_STORE_BACKEND: {backend}")
