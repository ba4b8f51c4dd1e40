from __future__ import annotations

import threading
from pathlib import Path

import pytest

from inbox_web.inbox_store import (
    ConversationNotFoundError,
    DuplicateUsernameError,
    InboxRepository,
    InMemoryInboxRepository,
    OperatorNotFoundError,
    SqlAlchemyInboxRepository,
    create_inbox_repository,
    verify_password,
)


@pytest.fixture(params=["inmemory", "sqlite"])
def repo(request: pytest.FixtureRequest, tmp_path: Path) -> InboxRepository:
    if request.param == "inmemory":
        return InMemoryInboxRepository()
    return SqlAlchemyInboxRepository(f"sqlite+pysqlite:///{tmp_path / 'inbox.db'}")


def _insert_inbound(repo: InboxRepository, conversation_id: int, wa_message_id: str | None, body: str = "hola"):
    return repo.insert_message(
        conversation_id=conversation_id,
        wa_message_id=wa_message_id,
        direction="in",
        sender_type="contact",
        content_type="text",
        body=body,
        media_id=None,
        media_url=None,
        mime_type=None,
        status="received",
        external_timestamp="1760870000",
        raw_payload={"id": wa_message_id},
    )


def _insert_outbound(repo: InboxRepository, conversation_id: int, wa_message_id: str):
    return repo.insert_message(
        conversation_id=conversation_id,
        wa_message_id=wa_message_id,
        direction="out",
        sender_type="operator",
        content_type="text",
        body="respuesta",
        media_id=None,
        media_url=None,
        mime_type=None,
        status="sent",
        external_timestamp=None,
        raw_payload=None,
    )


def test_get_or_create_conversation_is_idempotent_per_wa_id(repo: InboxRepository) -> None:
    first, created = repo.get_or_create_conversation(wa_id="5215550001", contact_name="Ana")
    second, created_again = repo.get_or_create_conversation(wa_id="5215550001", contact_name="Otro")

    assert created is True
    assert created_again is False
    assert second.id == first.id
    assert second.contact_name == "Ana"
    assert repo.count_conversations() == 1


def test_duplicate_wa_message_id_is_not_stored_twice(repo: InboxRepository) -> None:
    conversation, _ = repo.get_or_create_conversation(wa_id="5215550001", contact_name="Ana")

    stored = _insert_inbound(repo, conversation.id, "wamid.ABC")
    duplicate = _insert_inbound(repo, conversation.id, "wamid.ABC", body="otra vez")

    assert stored is not None
    assert stored.raw_payload == {"id": "wamid.ABC"}
    assert duplicate is None
    assert [item.body for item in repo.list_messages(conversation.id)] == ["hola"]
    found = repo.find_message_by_wa_id("wamid.ABC")
    assert found is not None and found.id == stored.id


def test_insert_message_requires_existing_conversation(repo: InboxRepository) -> None:
    with pytest.raises(ConversationNotFoundError):
        _insert_inbound(repo, 999, "wamid.X")


def test_list_messages_before_returns_latest_window_in_order(repo: InboxRepository) -> None:
    conversation, _ = repo.get_or_create_conversation(wa_id="1", contact_name=None)
    stored = [_insert_inbound(repo, conversation.id, f"wamid.{index}", body=f"m{index}") for index in range(5)]
    trigger = stored[-1]
    assert trigger is not None

    history = repo.list_messages_before(conversation.id, before_message_id=trigger.id, limit=3)

    assert [item.body for item in history] == ["m1", "m2", "m3"]
    assert repo.list_messages_before(conversation.id, before_message_id=trigger.id, limit=0) == []
    assert [item.body for item in repo.list_messages(conversation.id, limit=2)] == ["m3", "m4"]


def test_status_updates_follow_lattice(repo: InboxRepository) -> None:
    conversation, _ = repo.get_or_create_conversation(wa_id="1", contact_name=None)
    _insert_outbound(repo, conversation.id, "wamid.OUT")

    read, applied = repo.apply_message_status(wa_message_id="wamid.OUT", status="read", mode="monotonic")
    assert applied is True and read is not None and read.status == "read"

    stale, applied = repo.apply_message_status(wa_message_id="wamid.OUT", status="delivered", mode="monotonic")
    assert applied is False and stale is not None and stale.status == "read"

    overwritten, applied = repo.apply_message_status(wa_message_id="wamid.OUT", status="delivered", mode="overwrite")
    assert applied is True and overwritten is not None and overwritten.status == "delivered"

    missing, applied = repo.apply_message_status(wa_message_id="wamid.NOPE", status="read", mode="monotonic")
    assert missing is None and applied is False


def test_update_conversation_rejects_unknown_fields(repo: InboxRepository) -> None:
    conversation, _ = repo.get_or_create_conversation(wa_id="1", contact_name=None)
    updated = repo.update_conversation(conversation.id, is_pinned=True, needs_human_attention=True)
    assert updated.is_pinned is True
    assert updated.needs_human_attention is True
    assert updated.updated_at >= conversation.updated_at

    with pytest.raises(ValueError):
        repo.update_conversation(conversation.id, wa_id="2")
    with pytest.raises(ConversationNotFoundError):
        repo.update_conversation(999, is_pinned=True)


def test_pinned_conversations_sort_first(repo: InboxRepository) -> None:
    first, _ = repo.get_or_create_conversation(wa_id="1", contact_name=None)
    repo.get_or_create_conversation(wa_id="2", contact_name=None)
    repo.update_conversation(first.id, is_pinned=True)

    listed = repo.list_conversations(limit=10)
    assert listed[0].id == first.id


def test_delete_conversation_removes_messages_and_logs(repo: InboxRepository) -> None:
    conversation, _ = repo.get_or_create_conversation(wa_id="1", contact_name=None)
    _insert_inbound(repo, conversation.id, "wamid.DEL")
    repo.append_automation_log(
        conversation_id=conversation.id,
        kind="reply",
        inbound_text="hola",
        reply_text=None,
        tokens_used=0,
        success=False,
        error="boom",
    )

    assert repo.delete_conversation(conversation.id) is True
    assert repo.get_conversation(conversation.id) is None
    assert repo.find_message_by_wa_id("wamid.DEL") is None
    assert repo.list_automation_logs(limit=10) == []
    assert repo.delete_conversation(conversation.id) is False


def test_operator_lifecycle_and_assignment_counts(repo: InboxRepository) -> None:
    operator = repo.create_operator(username="ana", display_name="Ana", password="s3cret-pass", weight=2, is_active=True)
    assert verify_password("s3cret-pass", operator.password_hash)
    assert not verify_password("wrong-pass", operator.password_hash)

    with pytest.raises(DuplicateUsernameError):
        repo.create_operator(username="ana", display_name="Otra", password="s3cret-pass", weight=1, is_active=True)

    conversation, _ = repo.get_or_create_conversation(wa_id="1", contact_name=None)
    repo.get_or_create_conversation(wa_id="2", contact_name=None)
    repo.update_conversation(conversation.id, assigned_operator_id=operator.id)
    assert repo.assignment_counts() == {operator.id: 1}
    assert repo.count_unassigned() == 1

    updated = repo.update_operator(operator.id, password="new-password", is_active=False)
    assert updated.is_active is False
    assert verify_password("new-password", updated.password_hash)
    assert repo.list_operators(active_only=True) == []

    assert repo.delete_operator(operator.id) == 1
    refreshed = repo.get_conversation(conversation.id)
    assert refreshed is not None and refreshed.assigned_operator_id is None
    with pytest.raises(OperatorNotFoundError):
        repo.delete_operator(operator.id)


def test_automation_settings_defaults_and_partial_update(repo: InboxRepository) -> None:
    defaults = repo.get_automation_settings()
    assert defaults.enabled is False
    assert defaults.history_depth == 3
    assert defaults.max_output_tokens == 120

    updated = repo.update_automation_settings(enabled=True, knowledge="catalogo")
    assert updated.enabled is True
    assert updated.knowledge == "catalogo"
    assert updated.model == "gpt-4o-mini"
    assert repo.get_automation_settings().enabled is True


def test_automation_logs_are_listed_newest_first(repo: InboxRepository) -> None:
    for index in range(3):
        repo.append_automation_log(
            conversation_id=None,
            kind="reply",
            inbound_text=f"in{index}",
            reply_text=None,
            tokens_used=index,
            success=True,
            error=None,
        )
    assert [item.inbound_text for item in repo.list_automation_logs(limit=2)] == ["in2", "in1"]


def test_learned_rules_crud(repo: InboxRepository) -> None:
    rule = repo.create_learned_rule(rule_text="No prometer fechas", source_conversation_id=None, is_active=True)
    inactive = repo.create_learned_rule(rule_text="Regla vieja", source_conversation_id=None, is_active=False)

    assert [item.id for item in repo.list_learned_rules(active_only=True)] == [rule.id]
    assert repo.update_learned_rule(inactive.id, is_active=True).is_active is True
    assert repo.delete_learned_rule(rule.id) is True
    assert repo.delete_learned_rule(rule.id) is False
    assert [item.rule_text for item in repo.list_learned_rules()] == ["Regla vieja"]


def test_concurrent_get_or_create_yields_single_conversation() -> None:
    repo = InMemoryInboxRepository()
    results: list[tuple[int, bool]] = []
    lock = threading.Lock()

    def worker() -> None:
        record, created = repo.get_or_create_conversation(wa_id="5215550001", contact_name=None)
        with lock:
            results.append((record.id, created))

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len({conversation_id for conversation_id, _ in results}) == 1
    assert sum(1 for _, created in results if created) == 1


def test_concurrent_duplicate_insert_stores_one_message(repo: InboxRepository) -> None:
    conversation, _ = repo.get_or_create_conversation(wa_id="5215550001", contact_name="Ana")
    results: list[object] = []
    lock = threading.Lock()
    barrier = threading.Barrier(6)

    def worker() -> None:
        barrier.wait()
        stored = _insert_inbound(repo, conversation.id, "wamid.RACE")
        with lock:
            results.append(stored)

    threads = [threading.Thread(target=worker) for _ in range(6)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(results) == 6
    assert sum(1 for item in results if item is not None) == 1
    assert [item.wa_message_id for item in repo.list_messages(conversation.id)] == ["wamid.RACE"]


def test_create_inbox_repository_selects_backend(tmp_path: Path) -> None:
    assert isinstance(create_inbox_repository(backend="inmemory", database_url=""), InMemoryInboxRepository)
    sqlite_repo = create_inbox_repository(backend="sqlite", database_url=f"sqlite+pysqlite:///{tmp_path / 'x.db'}")
    assert isinstance(sqlite_repo, SqlAlchemyInboxRepository)
    with pytest.raises(RuntimeError):
        create_inbox_repository(backend="mongo", database_url="")
