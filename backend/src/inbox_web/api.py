from __future__ import annotations

import hmac
import json
import logging
from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, BackgroundTasks, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse, PlainTextResponse

from .config import Settings, get_settings, runtime_secret_issues
from .conversations import ConversationService, DispatchResult
from .inbox_store import (
    ConversationNotFoundError,
    DuplicateUsernameError,
    InboxRepository,
    LearnedRuleNotFoundError,
    OperatorNotFoundError,
    create_inbox_repository,
)
from .model_client import HttpModelClient, ModelClient, ModelClientError, StubModelClient, UnconfiguredModelClient
from .models import (
    AnalysisResponse,
    AssigneeRequest,
    AutomationLogListResponse,
    AutomationSettingsItem,
    AutomationSettingsUpdateRequest,
    AutomationToggleRequest,
    ConversationDeleteResponse,
    ConversationDetailResponse,
    ConversationItem,
    ConversationListResponse,
    DispatchErrorDetail,
    DispatchErrorResponse,
    FollowUpRunItem,
    FollowUpRunResponse,
    FollowUpSuggestionResponse,
    KanbanStatusRequest,
    LabelRequest,
    LearnedRuleCreateRequest,
    LearnedRuleItem,
    LearnedRuleListResponse,
    LearnedRuleUpdateRequest,
    OperatorCreateRequest,
    OperatorDeleteResponse,
    OperatorItem,
    OperatorListResponse,
    OperatorStatsResponse,
    OperatorUpdateRequest,
    OrderStatusRequest,
    PinRequest,
    RuntimeStatusResponse,
    SendMessageRequest,
    SendMessageResponse,
    ShouldCallRequest,
    WebhookAckResponse,
)
from .reply_orchestrator import ReplyOrchestrator
from .webhook_security import check_subscription_handshake, verify_whatsapp_signature
from .whatsapp import ChannelSender, HttpChannelSender, OutboundMessage, StubChannelSender, UnconfiguredChannelSender

logger = logging.getLogger(__name__)

_settings = get_settings()
router = APIRouter(prefix=_settings.api_prefix, tags=["inbox"])
webhook_router = APIRouter(tags=["webhook"])


def _create_sender(settings: Settings) -> ChannelSender:
    if settings.whatsapp_sender_type == "http":
        if not settings.whatsapp_configured():
            return UnconfiguredChannelSender(missing="WHATSAPP_ACCESS_TOKEN and WHATSAPP_PHONE_NUMBER_ID")
        return HttpChannelSender(
            access_token=settings.whatsapp_access_token,
            phone_number_id=settings.whatsapp_phone_number_id,
            api_version=settings.whatsapp_api_version,
            base_url=settings.whatsapp_api_base_url,
            timeout_seconds=settings.whatsapp_timeout_seconds,
        )
    return StubChannelSender(enabled=True)


def _create_model_client(settings: Settings) -> ModelClient:
    if settings.model_provider_type == "http":
        if not settings.model_configured():
            return UnconfiguredModelClient(missing="MODEL_API_KEY")
        return HttpModelClient(
            base_url=settings.model_api_base_url,
            api_key=settings.model_api_key,
            timeout_seconds=settings.model_timeout_seconds,
        )
    return StubModelClient()


inbox_repo: InboxRepository = create_inbox_repository(
    backend=_settings.inbox_store_backend,
    database_url=_settings.database_url,
)
channel_sender: ChannelSender = _create_sender(_settings)
model_client: ModelClient = _create_model_client(_settings)
conversation_service = ConversationService(repository=inbox_repo, sender=channel_sender, settings=_settings)
reply_orchestrator = ReplyOrchestrator(
    conversations=conversation_service,
    model_client=model_client,
    settings=_settings,
)


def reset_runtime_state_for_tests() -> None:
    conversation_service.reset()


def _require_admin(request: Request) -> None:
    token = request.headers.get("Authorization", "").removeprefix("Bearer ").strip()
    if not token:
        raise HTTPException(401, "admin token required")
    expected = _settings.admin_api_token.strip()
    if not expected or not hmac.compare_digest(token.encode("utf-8"), expected.encode("utf-8")):
        raise HTTPException(401, "invalid admin token")


def _dispatch_error_response(result: DispatchResult) -> JSONResponse:
    status_code = status.HTTP_400_BAD_REQUEST if result.error_type == "validation" else status.HTTP_502_BAD_GATEWAY
    body = DispatchErrorResponse(
        message="Failed to send message",
        error=DispatchErrorDetail(
            code=result.error_code or "unknown",
            type=result.error_type or "channel",
            details=result.error_message or "Unknown error",
        ),
    )
    return JSONResponse(status_code=status_code, content=body.model_dump())


# ---------------------------------------------------------------------------
# Provider webhook
# ---------------------------------------------------------------------------


def _process_webhook_payload(payload: Any) -> None:
    try:
        outcome = conversation_service.ingest_batch(payload, reply_handler=reply_orchestrator.handle_inbound)
    except Exception:
        logger.exception("webhook batch processing failed")
        return
    logger.info(
        "webhook batch processed messages=%d statuses=%d skipped=%d",
        len(outcome.messages),
        len(outcome.statuses),
        len(outcome.skipped),
    )


@webhook_router.get("/webhook")
def verify_webhook_subscription(request: Request) -> PlainTextResponse:
    params = request.query_params
    outcome = check_subscription_handshake(
        settings=_settings,
        mode=params.get("hub.mode"),
        token=params.get("hub.verify_token"),
    )
    if outcome == "bad_request":
        raise HTTPException(400, "hub.mode and hub.verify_token are required")
    if outcome == "forbidden":
        logger.warning("webhook verification rejected")
        raise HTTPException(403, "verification token mismatch")
    logger.info("webhook verified")
    return PlainTextResponse(params.get("hub.challenge", ""))


@webhook_router.post("/webhook", response_model=WebhookAckResponse)
async def receive_webhook(request: Request, background_tasks: BackgroundTasks) -> WebhookAckResponse:
    body = await request.body()
    verification = verify_whatsapp_signature(settings=_settings, body=body, headers=request.headers)
    if not verification.verified:
        if _settings.webhook_signature_mode == "enforce":
            logger.warning("webhook rejected reason=%s", verification.reason)
            raise HTTPException(401, "invalid webhook signature")
        logger.warning("webhook signature not verified reason=%s", verification.reason)

    try:
        payload = json.loads(body)
    except ValueError:
        logger.warning("webhook body is not valid JSON, acknowledging without processing")
        return WebhookAckResponse()

    background_tasks.add_task(_process_webhook_payload, payload)
    return WebhookAckResponse()


# ---------------------------------------------------------------------------
# Conversations
# ---------------------------------------------------------------------------


@router.get("/conversations", response_model=ConversationListResponse)
def list_conversations(request: Request, limit: int = Query(default=200, ge=1, le=1000)) -> ConversationListResponse:
    _require_admin(request)
    return conversation_service.list_conversations(limit=limit)


@router.get("/conversations/{conversation_id}", response_model=ConversationDetailResponse)
def get_conversation(conversation_id: int, request: Request) -> ConversationDetailResponse:
    _require_admin(request)
    try:
        return conversation_service.get_conversation_detail(conversation_id)
    except ConversationNotFoundError as exc:
        raise HTTPException(404, f"conversation not found: {conversation_id}") from exc


@router.delete("/conversations/{conversation_id}", response_model=ConversationDeleteResponse)
def delete_conversation(conversation_id: int, request: Request) -> ConversationDeleteResponse:
    _require_admin(request)
    try:
        conversation_service.delete_conversation(conversation_id)
    except ConversationNotFoundError as exc:
        raise HTTPException(404, f"conversation not found: {conversation_id}") from exc
    return ConversationDeleteResponse(conversation_id=conversation_id, deleted=True)


def _update_conversation(conversation_id: int, **changes: Any) -> ConversationItem:
    try:
        return conversation_service.update_flags(conversation_id, **changes)
    except ConversationNotFoundError as exc:
        raise HTTPException(404, f"conversation not found: {conversation_id}") from exc


@router.patch("/conversations/{conversation_id}/automation", response_model=ConversationItem)
def set_conversation_automation(conversation_id: int, payload: AutomationToggleRequest, request: Request) -> ConversationItem:
    _require_admin(request)
    return _update_conversation(conversation_id, automation_disabled=payload.automation_disabled)


@router.patch("/conversations/{conversation_id}/should-call", response_model=ConversationItem)
def set_conversation_should_call(conversation_id: int, payload: ShouldCallRequest, request: Request) -> ConversationItem:
    _require_admin(request)
    return _update_conversation(conversation_id, should_call=payload.should_call)


@router.patch("/conversations/{conversation_id}/pin", response_model=ConversationItem)
def set_conversation_pin(conversation_id: int, payload: PinRequest, request: Request) -> ConversationItem:
    _require_admin(request)
    return _update_conversation(conversation_id, is_pinned=payload.is_pinned)


@router.patch("/conversations/{conversation_id}/label", response_model=ConversationItem)
def set_conversation_label(conversation_id: int, payload: LabelRequest, request: Request) -> ConversationItem:
    _require_admin(request)
    return _update_conversation(conversation_id, label_id=payload.label_id)


@router.patch("/conversations/{conversation_id}/order-status", response_model=ConversationItem)
def set_conversation_order_status(conversation_id: int, payload: OrderStatusRequest, request: Request) -> ConversationItem:
    _require_admin(request)
    try:
        return conversation_service.set_order_status(conversation_id, payload.order_status)
    except ConversationNotFoundError as exc:
        raise HTTPException(404, f"conversation not found: {conversation_id}") from exc


@router.patch("/conversations/{conversation_id}/assignee", response_model=ConversationItem)
def set_conversation_assignee(conversation_id: int, payload: AssigneeRequest, request: Request) -> ConversationItem:
    _require_admin(request)
    try:
        return conversation_service.set_assignee(conversation_id, payload.operator_id)
    except ConversationNotFoundError as exc:
        raise HTTPException(404, f"conversation not found: {conversation_id}") from exc
    except OperatorNotFoundError as exc:
        raise HTTPException(404, f"operator not found: {payload.operator_id}") from exc


@router.patch("/conversations/{conversation_id}/kanban-status", response_model=ConversationItem)
def set_conversation_kanban_status(conversation_id: int, payload: KanbanStatusRequest, request: Request) -> ConversationItem:
    _require_admin(request)
    try:
        return conversation_service.set_kanban_column(conversation_id, payload.column)
    except ConversationNotFoundError as exc:
        raise HTTPException(404, f"conversation not found: {conversation_id}") from exc


@router.post("/conversations/{conversation_id}/clear-attention", response_model=ConversationItem)
def clear_conversation_attention(conversation_id: int, request: Request) -> ConversationItem:
    _require_admin(request)
    try:
        return conversation_service.clear_attention(conversation_id)
    except ConversationNotFoundError as exc:
        raise HTTPException(404, f"conversation not found: {conversation_id}") from exc


@router.post("/conversations/{conversation_id}/analyze", response_model=AnalysisResponse)
def analyze_conversation(conversation_id: int, request: Request) -> AnalysisResponse:
    _require_admin(request)
    try:
        analysis = reply_orchestrator.analyze_conversation(conversation_id)
    except ConversationNotFoundError as exc:
        raise HTTPException(404, f"conversation not found: {conversation_id}") from exc
    except ModelClientError as exc:
        raise HTTPException(502, f"analysis failed: {exc}") from exc
    return AnalysisResponse(
        conversation_id=analysis.conversation_id,
        probability=analysis.probability,
        should_call=analysis.should_call,
        summary=analysis.summary,
        tokens_used=analysis.tokens_used,
    )


@router.post("/conversations/{conversation_id}/generate-follow-up", response_model=FollowUpSuggestionResponse)
def generate_follow_up(conversation_id: int, request: Request) -> FollowUpSuggestionResponse:
    _require_admin(request)
    try:
        suggestion = reply_orchestrator.generate_follow_up(conversation_id)
    except ConversationNotFoundError as exc:
        raise HTTPException(404, f"conversation not found: {conversation_id}") from exc
    except ModelClientError as exc:
        raise HTTPException(502, f"follow-up generation failed: {exc}") from exc
    return FollowUpSuggestionResponse(
        conversation_id=suggestion.conversation_id,
        message=suggestion.message,
        tokens_used=suggestion.tokens_used,
    )


@router.post("/follow-ups/run/once", response_model=FollowUpRunResponse)
def run_follow_ups_once(request: Request) -> FollowUpRunResponse:
    _require_admin(request)
    result = reply_orchestrator.run_follow_ups()
    return FollowUpRunResponse(
        processed_count=result.processed_count,
        sent_count=result.sent_count,
        items=[
            FollowUpRunItem(
                conversation_id=item.conversation_id,
                status=item.status,
                reason=item.reason,
                message_id=item.message_id,
            )
            for item in result.items
        ],
    )


@router.post("/send", response_model=SendMessageResponse)
def send_message(payload: SendMessageRequest, request: Request) -> SendMessageResponse | JSONResponse:
    _require_admin(request)
    result = conversation_service.dispatch(
        OutboundMessage(
            to=payload.to,
            content_type=payload.type,
            text=payload.text,
            link=payload.image_url,
            media_id=payload.media_id,
            caption=payload.caption,
        ),
        sender_type="operator",
    )
    if result.status != "sent":
        return _dispatch_error_response(result)
    return SendMessageResponse(
        success=True,
        conversation_id=result.conversation_id,  # type: ignore[arg-type]
        message_id=result.message_id,  # type: ignore[arg-type]
        wa_message_id=result.wa_message_id,  # type: ignore[arg-type]
    )


# ---------------------------------------------------------------------------
# Operators
# ---------------------------------------------------------------------------


@router.get("/operators", response_model=OperatorListResponse)
def list_operators(request: Request) -> OperatorListResponse:
    _require_admin(request)
    return conversation_service.list_operators()


@router.get("/operators/stats", response_model=OperatorStatsResponse)
def operator_stats(request: Request) -> OperatorStatsResponse:
    _require_admin(request)
    return conversation_service.operator_stats()


@router.post("/operators", response_model=OperatorItem, status_code=status.HTTP_201_CREATED)
def create_operator(payload: OperatorCreateRequest, request: Request) -> OperatorItem:
    _require_admin(request)
    try:
        return conversation_service.create_operator(
            username=payload.username,
            display_name=payload.display_name,
            password=payload.password,
            weight=payload.weight,
            is_active=payload.is_active,
        )
    except DuplicateUsernameError as exc:
        raise HTTPException(409, f"username already exists: {payload.username}") from exc


@router.patch("/operators/{operator_id}", response_model=OperatorItem)
def update_operator(operator_id: int, payload: OperatorUpdateRequest, request: Request) -> OperatorItem:
    _require_admin(request)
    try:
        return conversation_service.update_operator(operator_id, payload.model_dump(exclude_none=True))
    except OperatorNotFoundError as exc:
        raise HTTPException(404, f"operator not found: {operator_id}") from exc


@router.delete("/operators/{operator_id}", response_model=OperatorDeleteResponse)
def delete_operator(operator_id: int, request: Request) -> OperatorDeleteResponse:
    _require_admin(request)
    try:
        cleared = conversation_service.delete_operator(operator_id)
    except OperatorNotFoundError as exc:
        raise HTTPException(404, f"operator not found: {operator_id}") from exc
    return OperatorDeleteResponse(operator_id=operator_id, deleted=True, unassigned_conversations=cleared)


# ---------------------------------------------------------------------------
# Automation settings, logs and learned rules
# ---------------------------------------------------------------------------


@router.get("/automation/settings", response_model=AutomationSettingsItem)
def get_automation_settings(request: Request) -> AutomationSettingsItem:
    _require_admin(request)
    return conversation_service.get_automation_settings()


@router.patch("/automation/settings", response_model=AutomationSettingsItem)
def update_automation_settings(payload: AutomationSettingsUpdateRequest, request: Request) -> AutomationSettingsItem:
    _require_admin(request)
    return conversation_service.update_automation_settings(payload.changes())


@router.get("/automation/logs", response_model=AutomationLogListResponse)
def list_automation_logs(request: Request, limit: int = Query(default=100, ge=1, le=500)) -> AutomationLogListResponse:
    _require_admin(request)
    return conversation_service.list_automation_logs(limit=limit)


@router.get("/automation/rules", response_model=LearnedRuleListResponse)
def list_learned_rules(request: Request) -> LearnedRuleListResponse:
    _require_admin(request)
    return conversation_service.list_learned_rules()


@router.post("/automation/rules", response_model=LearnedRuleItem, status_code=status.HTTP_201_CREATED)
def create_learned_rule(payload: LearnedRuleCreateRequest, request: Request) -> LearnedRuleItem:
    _require_admin(request)
    return conversation_service.create_learned_rule(
        rule_text=payload.rule_text,
        source_conversation_id=payload.source_conversation_id,
        is_active=payload.is_active,
    )


@router.patch("/automation/rules/{rule_id}", response_model=LearnedRuleItem)
def update_learned_rule(rule_id: int, payload: LearnedRuleUpdateRequest, request: Request) -> LearnedRuleItem:
    _require_admin(request)
    try:
        return conversation_service.update_learned_rule(rule_id, payload.model_dump(exclude_none=True))
    except LearnedRuleNotFoundError as exc:
        raise HTTPException(404, f"rule not found: {rule_id}") from exc


@router.delete("/automation/rules/{rule_id}")
def delete_learned_rule(rule_id: int, request: Request) -> dict:
    _require_admin(request)
    try:
        conversation_service.delete_learned_rule(rule_id)
    except LearnedRuleNotFoundError as exc:
        raise HTTPException(404, f"rule not found: {rule_id}") from exc
    return {"rule_id": rule_id, "deleted": True}


# ---------------------------------------------------------------------------
# Runtime status
# ---------------------------------------------------------------------------


@router.get("/runtime/status", response_model=RuntimeStatusResponse)
def runtime_status(request: Request) -> RuntimeStatusResponse:
    _require_admin(request)
    return RuntimeStatusResponse(
        whatsapp_sender_type=_settings.whatsapp_sender_type,
        has_whatsapp_access_token=bool(_settings.whatsapp_access_token.strip()),
        has_whatsapp_phone_number_id=bool(_settings.whatsapp_phone_number_id.strip()),
        has_whatsapp_verify_token=bool(_settings.whatsapp_verify_token.strip()),
        has_whatsapp_app_secret=bool(_settings.whatsapp_app_secret.strip()),
        webhook_signature_mode=_settings.webhook_signature_mode,
        model_provider_type=_settings.model_provider_type,
        has_model_api_key=bool(_settings.model_api_key.strip()),
        inbox_store_backend=_settings.inbox_store_backend,
        status_update_mode="overwrite" if _settings.status_update_mode == "overwrite" else "monotonic",
        conversation_count=conversation_service.repository.count_conversations(),
        secret_issues=list(runtime_secret_issues(_settings)),
        checked_at=datetime.now(timezone.utc),
    )
