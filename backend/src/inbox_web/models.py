from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator, model_validator

MessageDirection = Literal["in", "out"]
ContentType = Literal["text", "image", "audio", "location", "other"]
OutboundContentType = Literal["text", "image", "audio"]
DeliveryStatus = Literal["received", "sent", "delivered", "read", "failed"]
SenderType = Literal["contact", "operator", "automation"]
OrderStatus = Literal["none", "pending", "ready", "delivered"]
KanbanColumn = Literal["nuevo", "llamar", "proceso", "listo", "entregado", "humano"]
AutomationLogKind = Literal["reply", "follow_up", "analysis"]
PurchaseProbability = Literal["ALTA", "MEDIA", "BAJA"]
StatusUpdateMode = Literal["monotonic", "overwrite"]


def _strip_or_none(value: str | None) -> str | None:
    if value is None:
        return None
    normalized = value.strip()
    return normalized or None


# ---------------------------------------------------------------------------
# Conversations and messages
# ---------------------------------------------------------------------------


class ConversationItem(BaseModel):
    id: int
    wa_id: str
    contact_name: str | None = None
    is_pinned: bool
    label_id: int | None = None
    order_status: OrderStatus
    automation_disabled: bool
    needs_human_attention: bool
    should_call: bool
    assigned_operator_id: int | None = None
    kanban_column: KanbanColumn
    last_message: str | None = None
    last_message_at: datetime | None = None
    last_follow_up_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class ConversationListResponse(BaseModel):
    items: list[ConversationItem]


class MessageItem(BaseModel):
    id: int
    conversation_id: int
    wa_message_id: str | None = None
    direction: MessageDirection
    sender_type: SenderType
    content_type: ContentType
    body: str | None = None
    media_id: str | None = None
    media_url: str | None = None
    mime_type: str | None = None
    status: DeliveryStatus
    external_timestamp: str | None = None
    created_at: datetime


class ConversationDetailResponse(BaseModel):
    conversation: ConversationItem
    messages: list[MessageItem]


class SendMessageRequest(BaseModel):
    to: str = Field(min_length=5, max_length=32)
    type: OutboundContentType = "text"
    text: str | None = Field(default=None, max_length=4096)
    image_url: str | None = Field(default=None, max_length=2048)
    media_id: str | None = Field(default=None, max_length=256)
    caption: str | None = Field(default=None, max_length=1024)

    @field_validator("to")
    @classmethod
    def _normalize_to(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("to cannot be blank")
        return normalized

    @field_validator("text", "image_url", "media_id", "caption")
    @classmethod
    def _normalize_optional(cls, value: str | None) -> str | None:
        return _strip_or_none(value)

    @model_validator(mode="after")
    def _validate_payload(self) -> SendMessageRequest:
        if self.type == "text" and not self.text:
            raise ValueError("text is required for text messages")
        if self.type in {"image", "audio"} and not (self.image_url or self.media_id):
            raise ValueError("image_url or media_id is required for media messages")
        return self


class SendMessageResponse(BaseModel):
    success: bool
    conversation_id: int
    message_id: int
    wa_message_id: str


class DispatchErrorDetail(BaseModel):
    code: str
    type: str
    details: str


class DispatchErrorResponse(BaseModel):
    message: str
    error: DispatchErrorDetail


class AutomationToggleRequest(BaseModel):
    automation_disabled: bool


class ShouldCallRequest(BaseModel):
    should_call: bool


class PinRequest(BaseModel):
    is_pinned: bool


class LabelRequest(BaseModel):
    label_id: int | None = Field(default=None, ge=1)


class OrderStatusRequest(BaseModel):
    order_status: OrderStatus


class AssigneeRequest(BaseModel):
    operator_id: int | None = Field(default=None, ge=1)


class KanbanStatusRequest(BaseModel):
    column: KanbanColumn


class ConversationDeleteResponse(BaseModel):
    conversation_id: int
    deleted: bool


# ---------------------------------------------------------------------------
# Operators
# ---------------------------------------------------------------------------


class OperatorCreateRequest(BaseModel):
    username: str = Field(min_length=3, max_length=64)
    display_name: str = Field(min_length=1, max_length=128)
    password: str = Field(min_length=8, max_length=256)
    weight: int = Field(default=1, ge=1, le=100)
    is_active: bool = True

    @field_validator("username")
    @classmethod
    def _normalize_username(cls, value: str) -> str:
        normalized = value.strip().lower()
        if not normalized:
            raise ValueError("username cannot be blank")
        return normalized

    @field_validator("display_name")
    @classmethod
    def _normalize_display_name(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("display_name cannot be blank")
        return normalized


class OperatorUpdateRequest(BaseModel):
    display_name: str | None = Field(default=None, min_length=1, max_length=128)
    password: str | None = Field(default=None, min_length=8, max_length=256)
    weight: int | None = Field(default=None, ge=1, le=100)
    is_active: bool | None = None

    @field_validator("display_name")
    @classmethod
    def _normalize_display_name(cls, value: str | None) -> str | None:
        return _strip_or_none(value)


class OperatorItem(BaseModel):
    id: int
    username: str
    display_name: str
    is_active: bool
    weight: int
    created_at: datetime


class OperatorListResponse(BaseModel):
    items: list[OperatorItem]


class OperatorStatsItem(BaseModel):
    operator_id: int
    display_name: str
    is_active: bool
    weight: int
    assigned_conversations: int


class OperatorStatsResponse(BaseModel):
    items: list[OperatorStatsItem]
    unassigned_conversations: int


class OperatorDeleteResponse(BaseModel):
    operator_id: int
    deleted: bool
    unassigned_conversations: int


# ---------------------------------------------------------------------------
# Automation
# ---------------------------------------------------------------------------


class AutomationSettingsItem(BaseModel):
    enabled: bool
    instructions: str
    knowledge: str
    model: str
    max_output_tokens: int
    temperature: float
    history_depth: int
    audio_replies_enabled: bool
    voice: str
    speech_speed: float
    learning_enabled: bool
    follow_up_enabled: bool
    follow_up_minutes: int
    instruction_char_budget: int
    updated_at: datetime


class AutomationSettingsUpdateRequest(BaseModel):
    enabled: bool | None = None
    instructions: str | None = Field(default=None, max_length=50_000)
    knowledge: str | None = Field(default=None, max_length=200_000)
    model: str | None = Field(default=None, min_length=1, max_length=128)
    max_output_tokens: int | None = Field(default=None, ge=16, le=4096)
    temperature: float | None = Field(default=None, ge=0.0, le=2.0)
    history_depth: int | None = Field(default=None, ge=0, le=50)
    audio_replies_enabled: bool | None = None
    voice: str | None = Field(default=None, min_length=1, max_length=64)
    speech_speed: float | None = Field(default=None, ge=0.25, le=4.0)
    learning_enabled: bool | None = None
    follow_up_enabled: bool | None = None
    follow_up_minutes: int | None = Field(default=None, ge=1, le=1440)

    def changes(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


class AutomationLogItem(BaseModel):
    id: int
    conversation_id: int | None = None
    kind: AutomationLogKind
    inbound_text: str | None = None
    reply_text: str | None = None
    tokens_used: int
    success: bool
    error: str | None = None
    created_at: datetime


class AutomationLogListResponse(BaseModel):
    items: list[AutomationLogItem]


class LearnedRuleCreateRequest(BaseModel):
    rule_text: str = Field(min_length=1, max_length=2000)
    source_conversation_id: int | None = Field(default=None, ge=1)
    is_active: bool = True

    @field_validator("rule_text")
    @classmethod
    def _normalize_rule_text(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("rule_text cannot be blank")
        return normalized


class LearnedRuleUpdateRequest(BaseModel):
    rule_text: str | None = Field(default=None, min_length=1, max_length=2000)
    is_active: bool | None = None

    @field_validator("rule_text")
    @classmethod
    def _normalize_rule_text(cls, value: str | None) -> str | None:
        return _strip_or_none(value)


class LearnedRuleItem(BaseModel):
    id: int
    rule_text: str
    is_active: bool
    source_conversation_id: int | None = None
    created_at: datetime


class LearnedRuleListResponse(BaseModel):
    items: list[LearnedRuleItem]


class AnalysisResponse(BaseModel):
    conversation_id: int
    probability: PurchaseProbability
    should_call: bool
    summary: str
    tokens_used: int


class FollowUpSuggestionResponse(BaseModel):
    conversation_id: int
    message: str
    tokens_used: int


class FollowUpRunItem(BaseModel):
    conversation_id: int
    status: Literal["sent", "skipped", "failed"]
    reason: str
    message_id: int | None = None


class FollowUpRunResponse(BaseModel):
    processed_count: int
    sent_count: int
    items: list[FollowUpRunItem]


# ---------------------------------------------------------------------------
# Webhook and runtime
# ---------------------------------------------------------------------------


class WebhookAckResponse(BaseModel):
    status: Literal["ok"] = "ok"


class RuntimeStatusResponse(BaseModel):
    whatsapp_sender_type: str
    has_whatsapp_access_token: bool
    has_whatsapp_phone_number_id: bool
    has_whatsapp_verify_token: bool
    has_whatsapp_app_secret: bool
    webhook_signature_mode: str
    model_provider_type: str
    has_model_api_key: bool
    inbox_store_backend: str
    status_update_mode: StatusUpdateMode
    conversation_count: int
    secret_issues: list[str]
    checked_at: datetime
