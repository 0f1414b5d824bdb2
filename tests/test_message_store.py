"""Tests: MessageStore persistence, paging, read and delete rules."""

from datetime import datetime, timedelta

import pytest
from pymongo.errors import ServerSelectionTimeoutError

from chat_server.exception import AuthorizationError, NotFoundError, StorageError, ValidationError
from chat_server.messaging.message_store import MessageStore
from chat_server.messaging.models import Message, UNAVAILABLE_CONTENT
from chat_server.repository.mongo_helper import MESSAGES
from chat_server.security.encryption import EncryptionCodec

from tests.conftest import OTHER_KEY


def _append(store, content, sender="alice", recipient="bob", conversation_id="CONV-1"):
    return store.append(Message(None, conversation_id, sender, content, recipient_id=recipient))


def test_append_returns_plaintext_and_stores_envelope(store, db, codec):
    view = _append(store, "hello")

    assert view.content == "hello"
    assert view.message_id.startswith("MSG-")
    doc = db[MESSAGES].find_one({"_id": view.message_id})
    assert doc["content"] != "hello"
    assert doc["content"].count(":") == 1
    assert codec.decrypt(doc["content"]) == "hello"
    assert doc["is_encrypted"] is True
    assert doc["read"] is False


def test_append_rejects_blank_content(store):
    with pytest.raises(ValidationError):
        _append(store, "   ")


def test_timestamps_strictly_increase(store):
    views = [_append(store, f"m{i}") for i in range(5)]
    stamps = [v.created_at for v in views]
    assert stamps == sorted(stamps)
    assert len(set(stamps)) == len(stamps)


def test_pages_concatenate_to_full_history(store):
    sent = [_append(store, f"message {i}").message_id for i in range(11)]

    collected, before, pages = [], None, 0
    while True:
        page, has_more = store.page("CONV-1", before=before, limit=4)
        collected = [v.message_id for v in page] + collected
        pages += 1
        if not has_more:
            break
        before = page[0].created_at

    assert collected == sent
    assert pages == 3


def test_page_is_chronological_and_reports_has_more(store):
    for i in range(3):
        _append(store, f"m{i}")

    page, has_more = store.page("CONV-1", limit=2)
    assert [v.content for v in page] == ["m1", "m2"]
    assert has_more is True

    page, has_more = store.page("CONV-1", limit=3)
    assert [v.content for v in page] == ["m0", "m1", "m2"]
    assert has_more is False


def test_page_orders_by_timestamp_not_insertion(store):
    base = datetime(2026, 1, 1, 12, 0, 0)
    for offset in (3, 1, 2, 0):
        store.append(Message(None, "CONV-1", "alice", f"m{offset}", recipient_id="bob",
                             created_at=base + timedelta(seconds=offset)))

    page, has_more = store.page("CONV-1", limit=2)
    assert [v.content for v in page] == ["m2", "m3"]
    assert has_more is True

    page, has_more = store.page("CONV-1", before=page[0].created_at, limit=2)
    assert [v.content for v in page] == ["m0", "m1"]
    assert has_more is False


def test_page_survives_rotated_key(db, store):
    old = _append(store, "before rotation")
    rotated = MessageStore(db, EncryptionCodec(OTHER_KEY))
    new = _append(rotated, "after rotation")

    page, _ = rotated.page("CONV-1")

    by_id = {v.message_id: v for v in page}
    assert by_id[old.message_id].content == UNAVAILABLE_CONTENT
    assert by_id[old.message_id].decryption_failed is True
    assert by_id[new.message_id].content == "after rotation"
    assert by_id[new.message_id].decryption_failed is False


def test_mark_read_by_recipient(store):
    view = _append(store, "hi")
    updated = store.mark_read(view.message_id, "bob")
    assert updated.read is True
    assert updated.read_by == ["bob"]


def test_mark_read_by_non_recipient_is_rejected_without_mutation(store, db):
    view = _append(store, "hi")

    with pytest.raises(AuthorizationError):
        store.mark_read(view.message_id, "mallory")
    with pytest.raises(AuthorizationError):
        store.mark_read(view.message_id, "alice")

    assert db[MESSAGES].find_one({"_id": view.message_id})["read"] is False


def test_mark_read_missing_message(store):
    with pytest.raises(NotFoundError):
        store.mark_read("MSG-missing", "bob")


def test_delete_by_sender_only(store):
    view = _append(store, "oops")

    assert store.delete_by_sender(view.message_id, "bob") is False
    assert store.delete_by_sender(view.message_id, "alice") is True
    assert store.delete_by_sender(view.message_id, "alice") is False
    assert store.get(view.message_id) is None
    assert store.page("CONV-1")[0] == []


def test_delete_all_for_conversation(store):
    for i in range(3):
        _append(store, f"m{i}")
    _append(store, "elsewhere", conversation_id="CONV-2")

    assert store.delete_all_for_conversation("CONV-1") == 3
    assert store.page("CONV-1")[0] == []
    assert len(store.page("CONV-2")[0]) == 1


def test_count_unread_ignores_own_and_deleted(store):
    first = _append(store, "from alice")
    _append(store, "from bob", sender="bob", recipient="alice")
    second = _append(store, "again from alice")

    assert store.count_unread("CONV-1", "bob", None) == 2
    assert store.count_unread("CONV-1", "bob", first.created_at) == 1
    store.delete_by_sender(second.message_id, "alice")
    assert store.count_unread("CONV-1", "bob", first.created_at) == 0


def test_driver_failure_becomes_storage_error(store, monkeypatch):
    def _timeout(*args, **kwargs):
        raise ServerSelectionTimeoutError("no servers")

    monkeypatch.setattr(store.collection, "insert_one", _timeout)
    with pytest.raises(StorageError) as exc:
        _append(store, "hello")
    assert "no servers" not in exc.value.message
