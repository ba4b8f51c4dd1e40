from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from inbox_web.config import Settings
from inbox_web.conversations import ConversationService
from inbox_web.inbox_store import InMemoryInboxRepository
from inbox_web.model_client import ModelResponseError, ModelTimeoutError, StubModelClient
from inbox_web.reply_orchestrator import ReplyOrchestrator, parse_analysis_verdict
from inbox_web.whatsapp import OutboundMessage, StubChannelSender
from inbox_web.whatsapp_events import InboundMessageEvent


def _build(**settings_overrides: object) -> tuple[ConversationService, ReplyOrchestrator, StubChannelSender, StubModelClient]:
    repository = InMemoryInboxRepository()
    sender = StubChannelSender()
    model = StubModelClient()
    settings = Settings(**settings_overrides)  # type: ignore[arg-type]
    service = ConversationService(repository=repository, sender=sender, settings=settings)
    orchestrator = ReplyOrchestrator(conversations=service, model_client=model, settings=settings)
    return service, orchestrator, sender, model


def _inbound(
    wa_message_id: str,
    *,
    body: str | None = "hola",
    content_type: str = "text",
    wa_id: str = "5215550001",
) -> InboundMessageEvent:
    return InboundMessageEvent(
        wa_message_id=wa_message_id,
        wa_id=wa_id,
        contact_name="Ana",
        provider_type=content_type,
        content_type=content_type,  # type: ignore[arg-type]
        body=body,
        media_id="media-in" if content_type != "text" else None,
        mime_type="audio/ogg" if content_type == "audio" else None,
        external_timestamp="1760870000",
        raw_payload={"id": wa_message_id},
    )


def test_reply_carries_history_window_before_trigger() -> None:
    service, orchestrator, _, model = _build()
    service.repository.update_automation_settings(enabled=True, history_depth=2)
    for index in range(3):
        service.ingest_message(_inbound(f"wamid.H{index}", body=f"mensaje {index}"))

    outcome = service.ingest_message(_inbound("wamid.TRIGGER", body="ultimo"), reply_handler=orchestrator.handle_inbound)

    assert outcome.reply is not None and outcome.reply.status == "sent"
    contents = [item["content"] for item in model.calls[0]["messages"][1:]]
    assert contents == ["mensaje 1", "mensaje 2", "ultimo"]


def test_image_directive_sends_text_then_image() -> None:
    service, orchestrator, sender, model = _build()
    service.repository.update_automation_settings(enabled=True)
    model.queue_reply("Aquí está la foto [IMAGEN: https://cdn.example.com/berberina.jpg]")

    outcome = service.ingest_message(_inbound("wamid.IMG"), reply_handler=orchestrator.handle_inbound)

    assert outcome.reply is not None and outcome.reply.status == "sent"
    assert [(item.content_type, item.text, item.link) for item in sender.sent] == [
        ("text", "Aquí está la foto", None),
        ("image", None, "https://cdn.example.com/berberina.jpg"),
    ]
    messages = service.repository.list_messages(outcome.conversation_id)  # type: ignore[arg-type]
    assert [item.content_type for item in messages] == ["text", "text", "image"]


def test_empty_reply_hands_off_to_human() -> None:
    service, orchestrator, sender, model = _build()
    service.repository.update_automation_settings(enabled=True)
    model.queue_reply("   ")

    outcome = service.ingest_message(_inbound("wamid.EMPTY"), reply_handler=orchestrator.handle_inbound)

    assert outcome.reply is not None
    assert outcome.reply.status == "failed"
    assert outcome.reply.reason == "empty_reply"
    assert sender.sent == []
    conversation = service.repository.get_conversation(outcome.conversation_id)  # type: ignore[arg-type]
    assert conversation is not None and conversation.needs_human_attention is True


def test_dispatch_failure_is_logged_and_flags_conversation() -> None:
    service, orchestrator, _, _ = _build()
    service.repository.update_automation_settings(enabled=True)

    outcome = service.ingest_message(_inbound("wamid.FAIL", wa_id="fail-5215550009"), reply_handler=orchestrator.handle_inbound)

    assert outcome.reply is not None and outcome.reply.reason == "dispatch_failed"
    logs = service.repository.list_automation_logs(limit=5)
    assert logs[0].success is False
    assert logs[0].error is not None and logs[0].error.startswith("131026")


def test_audio_trigger_gets_voice_reply_when_enabled() -> None:
    service, orchestrator, sender, model = _build()
    service.repository.update_automation_settings(enabled=True, audio_replies_enabled=True, voice="nova")

    outcome = service.ingest_message(_inbound("wamid.VOICE", body=None, content_type="audio"), reply_handler=orchestrator.handle_inbound)

    assert outcome.reply is not None and outcome.reply.status == "sent"
    assert model.calls[0]["messages"][-1]["content"] == "[audio]"
    assert model.speech_calls[0]["voice"] == "nova"
    assert sender.uploads == [("reply.ogg", "audio/ogg", len(b"OggS" + model.default_reply.encode("utf-8")))]
    assert [item.content_type for item in sender.sent] == ["text", "audio"]
    assert sender.sent[1].media_id is not None and sender.sent[1].media_id.startswith("media-stub-")


def test_audio_synthesis_failure_degrades_to_text_only() -> None:
    service, orchestrator, sender, model = _build()
    service.repository.update_automation_settings(enabled=True, audio_replies_enabled=True)
    model.speech_error = ModelTimeoutError("speech timed out")

    outcome = service.ingest_message(_inbound("wamid.VOICE2", body=None, content_type="audio"), reply_handler=orchestrator.handle_inbound)

    assert outcome.reply is not None and outcome.reply.status == "sent"
    assert [item.content_type for item in sender.sent] == ["text"]
    conversation = service.repository.get_conversation(outcome.conversation_id)  # type: ignore[arg-type]
    assert conversation is not None and conversation.needs_human_attention is False


def test_audio_upload_failure_degrades_to_text_only() -> None:
    service, orchestrator, sender, _ = _build()
    service.repository.update_automation_settings(enabled=True, audio_replies_enabled=True)
    sender.fail_uploads = True

    outcome = service.ingest_message(_inbound("wamid.VOICE3", body=None, content_type="audio"), reply_handler=orchestrator.handle_inbound)

    assert outcome.reply is not None and outcome.reply.status == "sent"
    assert [item.content_type for item in sender.sent] == ["text"]


def test_learned_rules_reach_prompt_when_learning_enabled() -> None:
    service, orchestrator, _, model = _build()
    service.repository.update_automation_settings(enabled=True, learning_enabled=True)
    service.repository.create_learned_rule(rule_text="Ofrecer envío gratis arriba de $500", source_conversation_id=None, is_active=True)
    service.repository.create_learned_rule(rule_text="Regla desactivada", source_conversation_id=None, is_active=False)

    service.ingest_message(_inbound("wamid.RULES"), reply_handler=orchestrator.handle_inbound)

    system_prompt = model.calls[0]["messages"][0]["content"]
    assert "- Ofrecer envío gratis arriba de $500" in system_prompt
    assert "Regla desactivada" not in system_prompt


def test_instruction_budget_comes_from_settings() -> None:
    service, orchestrator, _, model = _build(automation_instruction_char_budget=10)
    service.repository.update_automation_settings(enabled=True, instructions="abcdefghijklmnopqrstuvwxyz")

    service.ingest_message(_inbound("wamid.BUDGET"), reply_handler=orchestrator.handle_inbound)

    assert model.calls[0]["messages"][0]["content"].startswith("abcdefghij\n\n=== REGLAS ===")


def test_run_follow_ups_nudges_idle_conversations_once() -> None:
    service, orchestrator, sender, model = _build()
    service.repository.update_automation_settings(enabled=True, follow_up_enabled=True, follow_up_minutes=20)
    stored = service.ingest_message(_inbound("wamid.FU1", body="¿tienen envío?"), reply_handler=orchestrator.handle_inbound)
    assert stored.reply is not None and stored.reply.status == "sent"
    model.queue_reply("¿Pudiste revisar la información?")

    later = datetime.now(timezone.utc) + timedelta(minutes=30)
    result = orchestrator.run_follow_ups(now=later)

    assert result.processed_count == 1
    assert result.sent_count == 1
    assert result.items[0].reason == "follow_up_sent"
    assert sender.sent[-1].text == "¿Pudiste revisar la información?"
    assert "[SISTEMA:" in model.calls[-1]["messages"][-1]["content"]
    conversation = service.repository.get_conversation(stored.conversation_id)  # type: ignore[arg-type]
    assert conversation is not None and conversation.last_follow_up_at == later

    again = orchestrator.run_follow_ups(now=later + timedelta(minutes=30))
    assert again.processed_count == 0


def test_run_follow_ups_skips_when_customer_spoke_last_or_disabled() -> None:
    service, orchestrator, _, _ = _build()
    service.repository.update_automation_settings(enabled=True, follow_up_enabled=True)
    service.ingest_message(_inbound("wamid.FU2"))
    later = datetime.now(timezone.utc) + timedelta(minutes=30)

    result = orchestrator.run_follow_ups(now=later)
    assert result.items[0].status == "skipped"
    assert result.items[0].reason == "last_message_not_outbound"

    service.repository.update_automation_settings(follow_up_enabled=False)
    assert orchestrator.run_follow_ups(now=later).processed_count == 0


def test_run_follow_ups_leaves_conversations_waiting_for_an_operator() -> None:
    service, orchestrator, sender, model = _build()
    service.repository.update_automation_settings(enabled=True, follow_up_enabled=True, follow_up_minutes=20)
    stored = service.ingest_message(_inbound("wamid.FU3"), reply_handler=orchestrator.handle_inbound)
    assert stored.reply is not None and stored.reply.status == "sent"
    service.repository.update_conversation(stored.conversation_id, needs_human_attention=True)  # type: ignore[arg-type]
    sends_before = len(sender.sent)
    calls_before = len(model.calls)

    result = orchestrator.run_follow_ups(now=datetime.now(timezone.utc) + timedelta(minutes=30))

    assert result.processed_count == 0
    assert len(sender.sent) == sends_before
    assert len(model.calls) == calls_before


def test_generate_follow_up_returns_suggestion_without_sending() -> None:
    service, orchestrator, sender, model = _build()
    stored = service.ingest_message(_inbound("wamid.SUG"))
    model.queue_reply("¿Te ayudo con algo más?")

    suggestion = orchestrator.generate_follow_up(stored.conversation_id)  # type: ignore[arg-type]

    assert suggestion.message == "¿Te ayudo con algo más?"
    assert sender.sent == []
    assert service.repository.list_automation_logs(limit=1)[0].kind == "follow_up"


def test_analyze_conversation_marks_should_call() -> None:
    service, orchestrator, _, model = _build()
    stored = service.ingest_message(_inbound("wamid.AN", body="Quiero 3 frascos, ¿me llaman?"))
    model.queue_reply('```json\n{"probability": "alta", "should_call": "true", "summary": "Listo para comprar"}\n```')

    analysis = orchestrator.analyze_conversation(stored.conversation_id)  # type: ignore[arg-type]

    assert analysis.probability == "ALTA"
    assert analysis.should_call is True
    assert analysis.summary == "Listo para comprar"
    assert model.calls[-1]["temperature"] == 0.2
    assert model.calls[-1]["messages"][1]["content"] == "Cliente: Quiero 3 frascos, ¿me llaman?"
    conversation = service.repository.get_conversation(stored.conversation_id)  # type: ignore[arg-type]
    assert conversation is not None and conversation.should_call is True


def test_analyze_conversation_rejects_unparseable_verdict() -> None:
    service, orchestrator, _, model = _build()
    stored = service.ingest_message(_inbound("wamid.AN2"))
    model.queue_reply("no lo sé")

    with pytest.raises(ModelResponseError):
        orchestrator.analyze_conversation(stored.conversation_id)  # type: ignore[arg-type]

    log = service.repository.list_automation_logs(limit=1)[0]
    assert log.kind == "analysis"
    assert log.success is False


def test_parse_analysis_verdict_requires_known_probability() -> None:
    assert parse_analysis_verdict('{"probability": "BAJA", "should_call": false, "summary": ""}') == ("BAJA", False, "")
    with pytest.raises(ModelResponseError):
        parse_analysis_verdict('{"probability": "QUIZAS"}')


def test_operator_dispatch_creates_conversation_for_new_recipient() -> None:
    service, _, _, _ = _build()

    result = service.dispatch(OutboundMessage(to="+52 1 555 000 7777", content_type="text", text="Hola"))

    assert result.status == "sent"
    conversation = service.repository.get_conversation(result.conversation_id)  # type: ignore[arg-type]
    assert conversation is not None
    assert conversation.wa_id == "5215550007777"
    assert conversation.last_message == "Hola"


def test_operator_dispatch_validation_failure_stores_nothing() -> None:
    service, _, sender, _ = _build()

    result = service.dispatch(OutboundMessage(to="5215550001", content_type="image"))

    assert result.status == "failed"
    assert result.error_type == "validation"
    assert sender.sent == []
    assert service.repository.count_conversations() == 0
