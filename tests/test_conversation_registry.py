"""Tests: ConversationRegistry membership invariants and projections.

Invariants:
    - admins ⊆ participants, and |admins| ≥ 1 while |participants| ≥ 1
    - removing the last participant deletes the conversation and its messages
    - direct conversations are unique per unordered pair
    - stale versions are rejected with ConflictError
"""

import logging

import pytest
from pymongo.errors import ServerSelectionTimeoutError

from chat_server.exception import (
    AuthorizationError, ConflictError, LastAdminError, NotFoundError, StorageError, ValidationError
)
from chat_server.messaging.models import Message
from chat_server.repository.mongo_helper import CONVERSATIONS, MESSAGES, USERS


def _assert_admin_invariant(conv):
    assert set(conv.admins) <= set(conv.participants)
    if conv.participants:
        assert conv.admins


def _send(store, registry, conv, sender, content="hi"):
    recipient = None if conv.is_group else conv.other_participants(sender)[0]
    view = store.append(Message(None, conv.conversation_id, sender, content, recipient_id=recipient))
    registry.record_message(conv.conversation_id, view)
    return view


# ==============================================================================
# Direct conversations
# ==============================================================================


def test_find_or_create_direct_is_idempotent_and_order_independent(registry):
    first, created = registry.find_or_create_direct("alice", "bob")
    second, created_again = registry.find_or_create_direct("bob", "alice")

    assert created is True
    assert created_again is False
    assert first.conversation_id == second.conversation_id
    assert sorted(first.participants) == ["alice", "bob"]
    assert first.is_group is False


def test_direct_with_self_is_rejected(registry):
    with pytest.raises(ValidationError):
        registry.find_or_create_direct("alice", "alice")


@pytest.mark.parametrize("user_id", ["", "a.b", "$where", None])
def test_invalid_user_ids_are_rejected(registry, user_id):
    with pytest.raises(ValidationError):
        registry.find_or_create_direct("alice", user_id)


def test_direct_membership_is_fixed(registry):
    conv, _ = registry.find_or_create_direct("alice", "bob")
    with pytest.raises(ValidationError):
        registry.add_participants(conv.conversation_id, "alice", ["carol"])
    with pytest.raises(ValidationError):
        registry.leave(conv.conversation_id, "alice")


def test_direct_can_be_deleted_by_either_participant(registry, store):
    conv, _ = registry.find_or_create_direct("alice", "bob")
    _send(store, registry, conv, "alice")

    registry.delete(conv.conversation_id, "bob")

    with pytest.raises(NotFoundError):
        registry.get_by_id(conv.conversation_id, "alice")
    assert store.page(conv.conversation_id)[0] == []


def test_failed_message_purge_is_logged_with_conversation_id(registry, store, monkeypatch, caplog):
    conv, _ = registry.find_or_create_direct("alice", "bob")
    _send(store, registry, conv, "alice")

    def _timeout(*args, **kwargs):
        raise ServerSelectionTimeoutError("mongo is down")

    monkeypatch.setattr(store.collection, "delete_many", _timeout)
    with caplog.at_level(logging.ERROR), pytest.raises(StorageError):
        registry.delete(conv.conversation_id, "alice")

    assert any(conv.conversation_id in r.getMessage() and r.levelno == logging.ERROR for r in caplog.records)
    with pytest.raises(NotFoundError):
        registry.get_by_id(conv.conversation_id, "alice")


# ==============================================================================
# Groups
# ==============================================================================


def test_create_group_makes_creator_sole_admin(registry):
    group = registry.create_group("carol", "Team", ["dave", "erin", "dave"], {"description": "d"})

    assert group.participants == ["carol", "dave", "erin"]
    assert group.admins == ["carol"]
    assert group.description == "d"
    assert group.settings.only_admins_can_post is False
    _assert_admin_invariant(group)


def test_create_group_validates_name_and_size(registry):
    with pytest.raises(ValidationError):
        registry.create_group("carol", "  ", ["dave"])
    with pytest.raises(ValidationError):
        registry.create_group("carol", "Big", [f"user{i}" for i in range(10)])


@pytest.mark.parametrize("options", [
    {"settings": "x"},
    {"settings": {"onlyAdminsCanPost": "yes"}},
    {"description": 42},
    {"avatar": ["a.png"]},
    {"tags": ["ok", 7]},
])
def test_create_group_rejects_malformed_options(registry, options):
    with pytest.raises(ValidationError):
        registry.create_group("carol", "Team", ["dave"], options)


@pytest.mark.parametrize("changes", [
    {"remove_admins": [{"a": 1}]},
    {"remove_admins": "dave"},
    {"add_admins": [None]},
    {"description": 42},
    {"avatar": 1},
])
def test_update_group_rejects_malformed_changes(registry, changes):
    group = registry.create_group("carol", "Team", ["dave"])
    with pytest.raises(ValidationError):
        registry.update_group(group.conversation_id, "carol", **changes)
    assert registry.get_by_id(group.conversation_id, "carol").version == group.version


def test_sole_admin_cannot_leave_while_members_remain(registry):
    group = registry.create_group("carol", "Team", ["dave", "erin"])

    with pytest.raises(AuthorizationError) as exc:
        registry.leave(group.conversation_id, "carol")

    assert isinstance(exc.value, LastAdminError)
    assert registry.get_by_id(group.conversation_id, "carol").participants == ["carol", "dave", "erin"]


def test_last_admin_cannot_be_demoted(registry):
    group = registry.create_group("carol", "Team", ["dave"])
    with pytest.raises(LastAdminError):
        registry.demote_admin(group.conversation_id, "carol", "carol")


def test_admin_sequence_keeps_invariant(registry):
    cid = registry.create_group("carol", "Team", ["dave"]).conversation_id

    conv, added = registry.add_participants(cid, "carol", ["erin", "frank"])
    assert added == ["erin", "frank"]
    _assert_admin_invariant(conv)

    conv = registry.promote_admin(cid, "carol", "erin")
    assert conv.admins == ["carol", "erin"]
    _assert_admin_invariant(conv)

    result = registry.leave(cid, "carol")
    assert result.deleted is False
    _assert_admin_invariant(result.conversation)

    result = registry.remove_participant(cid, "erin", "dave")
    assert result.conversation.participants == ["erin", "frank"]
    _assert_admin_invariant(result.conversation)

    with pytest.raises(LastAdminError):
        registry.demote_admin(cid, "erin", "erin")
    _assert_admin_invariant(registry.get_by_id(cid, "erin"))


def test_non_admin_cannot_remove_or_promote(registry):
    cid = registry.create_group("carol", "Team", ["dave", "erin"]).conversation_id
    with pytest.raises(AuthorizationError):
        registry.remove_participant(cid, "dave", "erin")
    with pytest.raises(AuthorizationError):
        registry.promote_admin(cid, "dave", "dave")


def test_non_participant_mutation_is_forbidden(registry):
    cid = registry.create_group("carol", "Team", ["dave"]).conversation_id
    with pytest.raises(AuthorizationError):
        registry.add_participants(cid, "mallory", ["eve"])


def test_promote_requires_membership(registry):
    cid = registry.create_group("carol", "Team", ["dave"]).conversation_id
    with pytest.raises(ValidationError):
        registry.promote_admin(cid, "carol", "stranger")


def test_add_existing_members_only_is_rejected(registry):
    cid = registry.create_group("carol", "Team", ["dave"]).conversation_id
    with pytest.raises(ValidationError):
        registry.add_participants(cid, "carol", ["dave"])


def test_only_admins_can_add_members_setting(registry):
    cid = registry.create_group("carol", "Open", ["dave"], {"onlyAdminsCanAddMembers": False}).conversation_id
    conv, added = registry.add_participants(cid, "dave", ["erin"])
    assert added == ["erin"]

    locked = registry.create_group("carol", "Locked", ["dave"]).conversation_id
    with pytest.raises(AuthorizationError):
        registry.add_participants(locked, "dave", ["erin"])


def test_rename_respects_edit_setting(registry):
    cid = registry.create_group("carol", "Team", ["dave"]).conversation_id
    with pytest.raises(AuthorizationError):
        registry.rename(cid, "dave", "Renamed")
    assert registry.rename(cid, "carol", "Renamed").name == "Renamed"


def test_removing_last_participant_deletes_group_and_messages(registry, store, db):
    group = registry.create_group("carol", "Pair", ["dave"])
    _send(store, registry, group, "dave")
    _send(store, registry, group, "carol")

    registry.leave(group.conversation_id, "dave")
    result = registry.remove_participant(group.conversation_id, "carol", "carol")

    assert result.deleted is True
    with pytest.raises(NotFoundError):
        registry.get_by_id(group.conversation_id, "carol")
    assert db[CONVERSATIONS].count_documents({}) == 0
    assert db[MESSAGES].count_documents({"conversation_id": group.conversation_id}) == 0


def test_only_admin_can_delete_group(registry):
    cid = registry.create_group("carol", "Team", ["dave"]).conversation_id
    with pytest.raises(AuthorizationError):
        registry.delete(cid, "dave")
    registry.delete(cid, "carol")
    with pytest.raises(NotFoundError):
        registry.get_by_id(cid, "carol")


# ==============================================================================
# Concurrency
# ==============================================================================


def test_stale_expected_version_conflicts(registry):
    group = registry.create_group("carol", "Team", ["dave"])
    version = group.version

    registry.add_participants(group.conversation_id, "carol", ["erin"], expected_version=version)
    with pytest.raises(ConflictError):
        registry.add_participants(group.conversation_id, "carol", ["frank"], expected_version=version)


def test_lost_race_on_write_conflicts(registry):
    group = registry.create_group("carol", "Team", ["dave"])
    stale = registry.get_by_id(group.conversation_id, "carol")
    registry.rename(group.conversation_id, "carol", "Fresh")

    with pytest.raises(ConflictError):
        registry._write(stale, {"$set": {"name": "Stale"}})
    assert registry.get_by_id(group.conversation_id, "carol").name == "Fresh"


def test_message_from_removed_sender_is_rolled_back(registry, store, db):
    group = registry.create_group("carol", "Team", ["dave", "erin"])
    registry.remove_participant(group.conversation_id, "carol", "dave")

    # dave's message was accepted against the old membership
    view = store.append(Message(None, group.conversation_id, "dave", "late"))
    with pytest.raises(AuthorizationError):
        registry.record_message(group.conversation_id, view)
    assert db[MESSAGES].count_documents({"_id": view.message_id}) == 0


# ==============================================================================
# Projections
# ==============================================================================


def test_unread_state_is_derived_from_last_read(registry, store):
    conv, _ = registry.find_or_create_direct("alice", "bob")
    _send(store, registry, conv, "alice", "one")
    _send(store, registry, conv, "alice", "two")

    conv = registry.get_by_id(conv.conversation_id, "bob")
    bob_view = registry.view(conv, "bob")
    alice_view = registry.view(conv, "alice")
    assert bob_view.has_unread is True
    assert bob_view.unread_count == 2
    assert bob_view.last_message["content"] == "two"
    assert alice_view.has_unread is False
    assert alice_view.unread_count == 0

    registry.mark_as_read(conv.conversation_id, "bob")
    assert registry.get_view(conv.conversation_id, "bob").unread_count == 0


def test_last_read_never_moves_backwards(registry, store):
    conv, _ = registry.find_or_create_direct("alice", "bob")
    first = _send(store, registry, conv, "alice", "one")
    second = _send(store, registry, conv, "alice", "two")

    registry.mark_as_read(conv.conversation_id, "bob", up_to=second.created_at)
    registry.mark_as_read(conv.conversation_id, "bob", up_to=first.created_at)

    state = registry.get_by_id(conv.conversation_id, "bob").state_for("bob")
    assert state.last_read == second.created_at


def test_refresh_last_message_after_delete(registry, store):
    conv, _ = registry.find_or_create_direct("alice", "bob")
    first = _send(store, registry, conv, "alice", "one")
    second = _send(store, registry, conv, "alice", "two")

    store.delete_by_sender(second.message_id, "alice")
    registry.refresh_last_message(conv.conversation_id, second.message_id)

    last = registry.get_by_id(conv.conversation_id, "alice").last_message
    assert last.message_id == first.message_id


def test_list_for_user_orders_pinned_then_activity(registry, store):
    older, _ = registry.find_or_create_direct("alice", "bob")
    newer, _ = registry.find_or_create_direct("alice", "carol")
    archived, _ = registry.find_or_create_direct("alice", "dave")
    _send(store, registry, older, "bob")
    _send(store, registry, newer, "carol")
    registry.set_preference(archived.conversation_id, "alice", archived=True)

    assert [v.conversation_id for v in registry.list_for_user("alice")] == [
        newer.conversation_id, older.conversation_id
    ]

    registry.set_preference(older.conversation_id, "alice", pinned=True)

    ids = [v.conversation_id for v in registry.list_for_user("alice")]
    assert ids == [older.conversation_id, newer.conversation_id]
    assert archived.conversation_id in [
        v.conversation_id for v in registry.list_for_user("alice", include_archived=True)
    ]


def test_display_name_uses_directory(registry, db):
    db[USERS].insert_one({"user_key": "bob", "first_name": "Bob", "last_name": "Builder"})
    conv, _ = registry.find_or_create_direct("alice", "bob")

    assert registry.view(conv, "alice").display_name == "Bob Builder"
    assert registry.view(conv, "bob").display_name == "alice"


def test_get_by_id_hides_conversations_of_others(registry):
    conv, _ = registry.find_or_create_direct("alice", "bob")
    with pytest.raises(NotFoundError):
        registry.get_by_id(conv.conversation_id, "mallory")
