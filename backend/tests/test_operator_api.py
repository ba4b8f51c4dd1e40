from __future__ import annotations

import os

from fastapi.testclient import TestClient

from inbox_web import api as api_module
from inbox_web.main import create_app
from inbox_web.model_client import ModelTimeoutError, StubModelClient
from inbox_web.whatsapp import StubChannelSender

PREFIX = "/api"
ADMIN_HEADERS = {"Authorization": "Bearer test-admin-token"}


def _client() -> TestClient:
    os.environ["ADMIN_API_TOKEN"] = "test-admin-token"
    os.environ["RUNTIME_SECRET_GUARD_MODE"] = "off"
    os.environ["WHATSAPP_VERIFY_TOKEN"] = "verify-test"
    os.environ["WEBHOOK_SIGNATURE_MODE"] = "off"
    os.environ["INBOX_STORE_BACKEND"] = "inmemory"
    os.environ["WHATSAPP_SENDER_TYPE"] = "stub"
    os.environ["MODEL_PROVIDER_TYPE"] = "stub"
    from inbox_web.config import get_settings

    api_module._settings = get_settings()
    api_module.inbox_repo = api_module.create_inbox_repository(
        backend=api_module._settings.inbox_store_backend,
        database_url=api_module._settings.database_url,
    )
    api_module.channel_sender = StubChannelSender(enabled=True)
    api_module.model_client = StubModelClient()
    api_module.conversation_service = api_module.ConversationService(
        repository=api_module.inbox_repo,
        sender=api_module.channel_sender,
        settings=api_module._settings,
    )
    api_module.reply_orchestrator = api_module.ReplyOrchestrator(
        conversations=api_module.conversation_service,
        model_client=api_module.model_client,
        settings=api_module._settings,
    )
    api_module.reset_runtime_state_for_tests()
    return TestClient(create_app())


def _send(client: TestClient, to: str = "5215550001", text: str = "Hola") -> dict:
    response = client.post(f"{PREFIX}/send", headers=ADMIN_HEADERS, json={"to": to, "text": text})
    assert response.status_code == 200
    return response.json()


def test_operator_endpoints_require_admin_token() -> None:
    client = _client()

    missing = client.get(f"{PREFIX}/conversations")
    wrong = client.get(f"{PREFIX}/conversations", headers={"Authorization": "Bearer nope"})
    ok = client.get(f"{PREFIX}/conversations", headers=ADMIN_HEADERS)

    assert missing.status_code == 401
    assert wrong.status_code == 401
    assert ok.status_code == 200
    assert ok.json() == {"items": []}


def test_send_text_message_stores_outbound_record() -> None:
    client = _client()

    body = _send(client, text="Tu pedido está listo")

    assert body["success"] is True
    assert body["wa_message_id"] == "wamid.stub-1"
    detail = client.get(f"{PREFIX}/conversations/{body['conversation_id']}", headers=ADMIN_HEADERS).json()
    assert detail["conversation"]["last_message"] == "Tu pedido está listo"
    assert detail["messages"][0]["id"] == body["message_id"]
    assert detail["messages"][0]["sender_type"] == "operator"
    assert detail["messages"][0]["status"] == "sent"


def test_send_failure_returns_structured_error() -> None:
    client = _client()

    response = client.post(f"{PREFIX}/send", headers=ADMIN_HEADERS, json={"to": "fail-5215550001", "text": "Hola"})

    assert response.status_code == 502
    assert response.json() == {
        "message": "Failed to send message",
        "error": {
            "code": "131026",
            "type": "channel",
            "details": "Stub sender forced failure for recipient",
        },
    }
    assert client.get(f"{PREFIX}/conversations", headers=ADMIN_HEADERS).json()["items"] == []


def test_send_requires_content_for_type() -> None:
    client = _client()

    text_missing = client.post(f"{PREFIX}/send", headers=ADMIN_HEADERS, json={"to": "5215550001", "type": "text"})
    image_missing = client.post(f"{PREFIX}/send", headers=ADMIN_HEADERS, json={"to": "5215550001", "type": "image"})
    image_ok = client.post(
        f"{PREFIX}/send",
        headers=ADMIN_HEADERS,
        json={"to": "5215550001", "type": "image", "image_url": "https://cdn.example.com/p.jpg", "caption": "Mira"},
    )

    assert text_missing.status_code == 422
    assert image_missing.status_code == 422
    assert image_ok.status_code == 200
    listed = client.get(f"{PREFIX}/conversations", headers=ADMIN_HEADERS).json()["items"]
    assert listed[0]["last_message"] == "[image]"


def test_operator_crud_and_stats() -> None:
    client = _client()

    created = client.post(
        f"{PREFIX}/operators",
        headers=ADMIN_HEADERS,
        json={"username": "Maria", "display_name": "María", "password": "maria-pass", "weight": 3},
    )
    assert created.status_code == 201
    operator = created.json()
    assert operator["username"] == "maria"
    assert "password" not in operator
    assert "password_hash" not in operator

    duplicate = client.post(
        f"{PREFIX}/operators",
        headers=ADMIN_HEADERS,
        json={"username": "maria", "display_name": "Otra", "password": "other-pass"},
    )
    assert duplicate.status_code == 409

    short_password = client.post(
        f"{PREFIX}/operators",
        headers=ADMIN_HEADERS,
        json={"username": "pedro", "display_name": "Pedro", "password": "short"},
    )
    assert short_password.status_code == 422

    _send(client, to="5215550001")
    _send(client, to="5215550002")

    stats = client.get(f"{PREFIX}/operators/stats", headers=ADMIN_HEADERS).json()
    assert stats["items"][0]["assigned_conversations"] == 2
    assert stats["unassigned_conversations"] == 0

    updated = client.patch(
        f"{PREFIX}/operators/{operator['id']}",
        headers=ADMIN_HEADERS,
        json={"is_active": False, "weight": 5},
    )
    assert updated.status_code == 200
    assert updated.json()["is_active"] is False
    assert updated.json()["weight"] == 5

    deleted = client.delete(f"{PREFIX}/operators/{operator['id']}", headers=ADMIN_HEADERS)
    assert deleted.status_code == 200
    assert deleted.json() == {"operator_id": operator["id"], "deleted": True, "unassigned_conversations": 2}

    assert client.delete(f"{PREFIX}/operators/{operator['id']}", headers=ADMIN_HEADERS).status_code == 404
    stats = client.get(f"{PREFIX}/operators/stats", headers=ADMIN_HEADERS).json()
    assert stats == {"items": [], "unassigned_conversations": 2}


def test_conversation_flags_and_kanban_moves() -> None:
    client = _client()
    conversation_id = _send(client)["conversation_id"]
    base = f"{PREFIX}/conversations/{conversation_id}"

    pinned = client.patch(f"{base}/pin", headers=ADMIN_HEADERS, json={"is_pinned": True})
    labeled = client.patch(f"{base}/label", headers=ADMIN_HEADERS, json={"label_id": 4})
    call = client.patch(f"{base}/should-call", headers=ADMIN_HEADERS, json={"should_call": True})
    assert pinned.json()["is_pinned"] is True
    assert labeled.json()["label_id"] == 4
    assert call.json()["kanban_column"] == "llamar"

    ready = client.patch(f"{base}/kanban-status", headers=ADMIN_HEADERS, json={"column": "listo"})
    assert ready.status_code == 200
    assert ready.json()["order_status"] == "ready"
    assert ready.json()["kanban_column"] == "listo"

    delivered = client.patch(f"{base}/order-status", headers=ADMIN_HEADERS, json={"order_status": "delivered"})
    assert delivered.json()["kanban_column"] == "entregado"

    invalid = client.patch(f"{base}/kanban-status", headers=ADMIN_HEADERS, json={"column": "archivado"})
    assert invalid.status_code == 422

    unknown_operator = client.patch(f"{base}/assignee", headers=ADMIN_HEADERS, json={"operator_id": 99})
    assert unknown_operator.status_code == 404

    assert client.patch(f"{PREFIX}/conversations/999/pin", headers=ADMIN_HEADERS, json={"is_pinned": True}).status_code == 404


def test_delete_conversation() -> None:
    client = _client()
    conversation_id = _send(client)["conversation_id"]

    deleted = client.delete(f"{PREFIX}/conversations/{conversation_id}", headers=ADMIN_HEADERS)
    assert deleted.status_code == 200
    assert deleted.json() == {"conversation_id": conversation_id, "deleted": True}
    assert client.get(f"{PREFIX}/conversations/{conversation_id}", headers=ADMIN_HEADERS).status_code == 404
    assert client.delete(f"{PREFIX}/conversations/{conversation_id}", headers=ADMIN_HEADERS).status_code == 404


def test_automation_settings_validate_ranges() -> None:
    client = _client()

    defaults = client.get(f"{PREFIX}/automation/settings", headers=ADMIN_HEADERS).json()
    assert defaults["enabled"] is False
    assert defaults["history_depth"] == 3
    assert defaults["instruction_char_budget"] == 4000

    too_hot = client.patch(f"{PREFIX}/automation/settings", headers=ADMIN_HEADERS, json={"temperature": 3.5})
    assert too_hot.status_code == 422

    updated = client.patch(
        f"{PREFIX}/automation/settings",
        headers=ADMIN_HEADERS,
        json={"enabled": True, "history_depth": 5, "voice": "nova"},
    )
    assert updated.status_code == 200
    assert updated.json()["history_depth"] == 5
    assert updated.json()["voice"] == "nova"
    assert updated.json()["model"] == "gpt-4o-mini"


def test_learned_rules_endpoints() -> None:
    client = _client()

    created = client.post(f"{PREFIX}/automation/rules", headers=ADMIN_HEADERS, json={"rule_text": "  Confirmar dirección  "})
    assert created.status_code == 201
    rule = created.json()
    assert rule["rule_text"] == "Confirmar dirección"
    assert rule["is_active"] is True

    toggled = client.patch(f"{PREFIX}/automation/rules/{rule['id']}", headers=ADMIN_HEADERS, json={"is_active": False})
    assert toggled.json()["is_active"] is False

    listed = client.get(f"{PREFIX}/automation/rules", headers=ADMIN_HEADERS).json()["items"]
    assert [item["id"] for item in listed] == [rule["id"]]

    deleted = client.delete(f"{PREFIX}/automation/rules/{rule['id']}", headers=ADMIN_HEADERS)
    assert deleted.json() == {"rule_id": rule["id"], "deleted": True}
    assert client.delete(f"{PREFIX}/automation/rules/{rule['id']}", headers=ADMIN_HEADERS).status_code == 404


def test_analyze_and_follow_up_endpoints() -> None:
    client = _client()
    conversation_id = _send(client)["conversation_id"]
    base = f"{PREFIX}/conversations/{conversation_id}"

    api_module.model_client.queue_reply('{"probability": "MEDIA", "should_call": true, "summary": "Pidió precios"}')
    analysis = client.post(f"{base}/analyze", headers=ADMIN_HEADERS)
    assert analysis.status_code == 200
    assert analysis.json()["probability"] == "MEDIA"
    assert analysis.json()["should_call"] is True

    detail = client.get(base, headers=ADMIN_HEADERS).json()
    assert detail["conversation"]["should_call"] is True

    api_module.model_client.queue_reply("¿Sigues interesado?")
    suggestion = client.post(f"{base}/generate-follow-up", headers=ADMIN_HEADERS)
    assert suggestion.status_code == 200
    assert suggestion.json()["message"] == "¿Sigues interesado?"

    api_module.model_client.queue_reply(ModelTimeoutError("slow"))
    failed = client.post(f"{base}/analyze", headers=ADMIN_HEADERS)
    assert failed.status_code == 502

    assert client.post(f"{PREFIX}/conversations/999/analyze", headers=ADMIN_HEADERS).status_code == 404


def test_follow_up_run_is_noop_when_disabled() -> None:
    client = _client()

    response = client.post(f"{PREFIX}/follow-ups/run/once", headers=ADMIN_HEADERS)

    assert response.status_code == 200
    assert response.json() == {"processed_count": 0, "sent_count": 0, "items": []}


def test_runtime_status_reports_configuration_without_secrets() -> None:
    client = _client()
    _send(client)

    response = client.get(f"{PREFIX}/runtime/status", headers=ADMIN_HEADERS)

    assert response.status_code == 200
    body = response.json()
    assert body["whatsapp_sender_type"] == "stub"
    assert body["model_provider_type"] == "stub"
    assert body["has_whatsapp_verify_token"] is True
    assert body["status_update_mode"] == "monotonic"
    assert body["conversation_count"] == 1
    assert "test-admin-token" not in response.text
