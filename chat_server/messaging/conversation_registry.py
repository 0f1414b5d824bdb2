"""Conversation registry.

Owns direct and group conversations, their membership and admin
invariants, and the per-participant projections (last message, unread
state, preferences).

Invariants kept by every write:
- admins is a subset of participants;
- a group with participants always has at least one admin;
- a conversation never exists with zero participants (the last removal
  deletes it together with its messages);
- direct conversations keep the two participants they were created with.

Membership, admin and naming changes are optimistic: they are computed from
a document at version ``_v`` and written with ``{_v: v}`` in the filter.
A writer that lost the race gets ConflictError and must reload.
"""
import logging
from typing import Optional, Dict, Any, List, Iterable, Tuple

from pymongo import DESCENDING
from pymongo.errors import DuplicateKeyError

from chat_server.exception import (
    AuthorizationError, ConflictError, LastAdminError, NotFoundError, StorageError, ValidationError
)
from chat_server.messaging.message_store import MessageStore
from chat_server.messaging.models import (
    Conversation, ConversationView, GroupSettings, LastMessage, ParticipantState
)
from chat_server.repository.mongo_helper import CONVERSATIONS
from chat_server.repository.user_repository import UserDirectory
from chat_server.utils.decorators import storage_guard
from chat_server.utils.generator import generate_conversation_id
from chat_server.utils.time_utils import isoformat, utc_now
from chat_server.utils.versioning import versioned_delete, versioned_update

logger = logging.getLogger(__name__)

MAX_NAME_LENGTH = 100
DISPLAY_NAME_MEMBERS = 3


def validate_user_id(user_id, field: str = 'userId') -> str:
    if not isinstance(user_id, str) or not user_id.strip():
        raise ValidationError(f'{field} is required')
    if '.' in user_id or '$' in user_id:
        raise ValidationError(f'{field} contains invalid characters')
    return user_id


def _validate_name(name) -> str:
    if not isinstance(name, str) or not name.strip():
        raise ValidationError('Group name is required')
    name = name.strip()
    if len(name) > MAX_NAME_LENGTH:
        raise ValidationError(f'Group name must be at most {MAX_NAME_LENGTH} characters')
    return name


def _optional_text(value, field: str) -> Optional[str]:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f'{field} must be a string')
    return value


def _user_list(value, field: str) -> List[str]:
    if value is None:
        return []
    if not isinstance(value, (list, tuple)):
        raise ValidationError(f'{field} must be a list')
    for user in value:
        validate_user_id(user, field)
    return list(value)


def _group_settings(options: Dict[str, Any]) -> GroupSettings:
    settings = options.get('settings', options)
    if settings is None:
        settings = {}
    if not isinstance(settings, dict):
        raise ValidationError('settings must be an object')
    for key in GroupSettings.OPTION_KEYS:
        value = settings.get(key)
        if value is not None and not isinstance(value, bool):
            raise ValidationError(f'{key} must be a boolean')
    return GroupSettings.from_options(settings)


def _unique(items: Iterable[str]) -> List[str]:
    return list(dict.fromkeys(items))


class RemovalResult:
    """Outcome of removing someone from a group."""

    def __init__(self, conversation: Conversation, removed_user: str, deleted: bool):
        # When deleted, this is the last snapshot before teardown
        self.conversation = conversation
        self.removed_user = removed_user
        self.deleted = deleted


class ConversationRegistry:
    """Conversation aggregate store enforcing membership invariants."""

    def __init__(self, db, store: MessageStore, users: Optional[UserDirectory] = None,
                 max_group_participants: int = 256):
        self.collection = db[CONVERSATIONS]
        self.store = store
        self.users = users or UserDirectory(db)
        self.max_group_participants = max_group_participants

    # =========================================================================
    # Loading and authorization
    # =========================================================================

    @storage_guard
    def _load(self, conversation_id: str) -> Conversation:
        doc = self.collection.find_one({'_id': conversation_id}) if conversation_id else None
        if not doc:
            raise NotFoundError('Conversation not found')
        return Conversation.from_doc(doc)

    def get_by_id(self, conversation_id: str, user_id: str) -> Conversation:
        """Conversations the user is not part of are reported as absent."""
        conv = self._load(conversation_id)
        if not conv.is_participant(user_id):
            raise NotFoundError('Conversation not found')
        return conv

    def require_participant(self, conversation_id: str, user_id: str,
                            expected_version: Optional[int] = None) -> Conversation:
        conv = self._load(conversation_id)
        if not conv.is_participant(user_id):
            raise AuthorizationError('You are not a participant in this conversation')
        if expected_version is not None and expected_version != conv.version:
            raise ConflictError()
        return conv

    @staticmethod
    def _require_group(conv: Conversation):
        if not conv.is_group:
            raise ValidationError('Direct conversations have fixed membership')

    @staticmethod
    def _require_admin(conv: Conversation, user_id: str, action: str):
        if not conv.is_admin(user_id):
            raise AuthorizationError(f'Only group admins can {action}')

    @storage_guard
    def _write(self, conv: Conversation, update_doc: Dict[str, Any]) -> Conversation:
        """Apply a version-checked update computed from ``conv``."""
        result = versioned_update(self.collection, {'_id': conv.conversation_id}, update_doc, conv.version)
        if not result['success']:
            if self.collection.find_one({'_id': conv.conversation_id}, {'_id': 1}) is None:
                raise NotFoundError('Conversation not found')
            logger.info("Version conflict on conversation %s at v%s", conv.conversation_id, conv.version)
            raise ConflictError()
        return self._load(conv.conversation_id)

    @storage_guard
    def _teardown(self, conv: Conversation) -> None:
        """Delete the conversation, then its messages.

        The conversation disappears first, so nothing can observe it empty.
        """
        result = versioned_delete(self.collection, {'_id': conv.conversation_id}, conv.version)
        if not result['success']:
            if self.collection.find_one({'_id': conv.conversation_id}, {'_id': 1}) is None:
                raise NotFoundError('Conversation not found')
            raise ConflictError()
        try:
            self.store.delete_all_for_conversation(conv.conversation_id)
        except StorageError:
            logger.error("Conversation %s deleted but its messages were not purged", conv.conversation_id)
            raise
        logger.info("Conversation %s deleted", conv.conversation_id)

    # =========================================================================
    # Creation
    # =========================================================================

    @storage_guard
    def find_direct(self, user_a: str, user_b: str) -> Optional[Conversation]:
        doc = self.collection.find_one({'direct_key': Conversation.direct_key(user_a, user_b)})
        return Conversation.from_doc(doc) if doc else None

    @storage_guard
    def find_or_create_direct(self, user_a: str, user_b: str) -> Tuple[Conversation, bool]:
        """Return the direct conversation of the pair, creating it if needed.

        Idempotent and order-independent: the unique ``direct_key`` index
        arbitrates concurrent creators.
        """
        validate_user_id(user_a, 'senderId')
        validate_user_id(user_b, 'recipientId')
        if user_a == user_b:
            raise ValidationError('Cannot start a conversation with yourself')

        existing = self.find_direct(user_a, user_b)
        if existing:
            return existing, False

        conv = Conversation(
            conversation_id=generate_conversation_id(),
            is_group=False,
            participants=[user_a, user_b],
            created_by=user_a,
            participant_state={user_a: ParticipantState(), user_b: ParticipantState()},
        )
        try:
            self.collection.insert_one(conv.to_db_doc())
        except DuplicateKeyError:
            existing = self.find_direct(user_a, user_b)
            if existing is None:
                raise ConflictError()
            return existing, False
        logger.info("Direct conversation %s created for %s and %s", conv.conversation_id, user_a, user_b)
        return conv, True

    @storage_guard
    def create_group(self, creator: str, name: str, participants: List[str],
                     options: Optional[Dict[str, Any]] = None) -> Conversation:
        validate_user_id(creator, 'creator')
        name = _validate_name(name)
        if participants is None:
            participants = []
        if not isinstance(participants, (list, tuple)):
            raise ValidationError('participants must be a list')
        for p in participants:
            validate_user_id(p, 'participants')
        members = _unique([creator, *participants])
        if len(members) > self.max_group_participants:
            raise ValidationError(f'A group can have at most {self.max_group_participants} participants')

        options = options or {}
        if not isinstance(options, dict):
            raise ValidationError('options must be an object')
        tags = options.get('tags') or []
        if not isinstance(tags, list):
            raise ValidationError('tags must be a list')
        for tag in tags:
            _optional_text(tag, 'tags')
        description = _optional_text(options.get('description'), 'description')
        avatar = _optional_text(options.get('avatar'), 'avatar')
        conv = Conversation(
            conversation_id=generate_conversation_id(is_group=True),
            is_group=True,
            participants=members,
            admins=[creator],
            name=name,
            description=description or '',
            avatar=avatar,
            tags=[t.strip() for t in tags if t and t.strip()],
            settings=_group_settings(options),
            created_by=creator,
            participant_state={m: ParticipantState() for m in members},
        )
        self.collection.insert_one(conv.to_db_doc())
        logger.info("Group %s created by %s with %s participants", conv.conversation_id, creator, len(members))
        return conv

    # =========================================================================
    # Membership
    # =========================================================================

    def add_participants(self, conversation_id: str, acting_user: str, new_users: List[str],
                         expected_version: Optional[int] = None) -> Tuple[Conversation, List[str]]:
        """Add users to a group. Returns the updated group and who was added."""
        conv = self.require_participant(conversation_id, acting_user, expected_version)
        self._require_group(conv)
        if conv.settings.only_admins_can_add_members:
            self._require_admin(conv, acting_user, 'add participants')
        if not isinstance(new_users, (list, tuple)) or not new_users:
            raise ValidationError('participants must be a non-empty list')
        for u in new_users:
            validate_user_id(u, 'participants')

        added = [u for u in _unique(new_users) if not conv.is_participant(u)]
        if not added:
            raise ValidationError('All specified users are already in the group')
        if len(conv.participants) + len(added) > self.max_group_participants:
            raise ValidationError(f'A group can have at most {self.max_group_participants} participants')

        # History from before joining counts as read
        joined_read = conv.last_message.created_at if conv.last_message else None
        update = {'$set': {
            'participants': conv.participants + added,
            'last_activity': utc_now(),
        }}
        for u in added:
            update['$set'][f'participant_state.{u}'] = ParticipantState(last_read=joined_read).to_db_doc()
        updated = self._write(conv, update)
        logger.info("%s added %s to group %s", acting_user, added, conversation_id)
        return updated, added

    def _remove(self, conv: Conversation, target: str) -> RemovalResult:
        remaining = [p for p in conv.participants if p != target]
        remaining_admins = [a for a in conv.admins if a != target]
        if remaining and not remaining_admins:
            raise LastAdminError()

        if not remaining:
            self._teardown(conv)
            return RemovalResult(conv, target, deleted=True)

        updated = self._write(conv, {
            '$set': {
                'participants': remaining,
                'admins': remaining_admins,
                'last_activity': utc_now(),
            },
            '$unset': {f'participant_state.{target}': ''},
        })
        return RemovalResult(updated, target, deleted=False)

    def remove_participant(self, conversation_id: str, acting_user: str, target_user: str,
                           expected_version: Optional[int] = None) -> RemovalResult:
        """Remove ``target_user``; removing yourself is the same as leaving."""
        validate_user_id(target_user, 'participantId')
        conv = self.require_participant(conversation_id, acting_user, expected_version)
        self._require_group(conv)
        if target_user != acting_user:
            self._require_admin(conv, acting_user, 'remove participants')
        if not conv.is_participant(target_user):
            raise ValidationError('User is not a participant in this group')
        result = self._remove(conv, target_user)
        logger.info("%s removed %s from group %s (deleted=%s)",
                    acting_user, target_user, conversation_id, result.deleted)
        return result

    def leave(self, conversation_id: str, user_id: str,
              expected_version: Optional[int] = None) -> RemovalResult:
        conv = self.require_participant(conversation_id, user_id, expected_version)
        self._require_group(conv)
        result = self._remove(conv, user_id)
        logger.info("%s left group %s (deleted=%s)", user_id, conversation_id, result.deleted)
        return result

    # =========================================================================
    # Group details and admins
    # =========================================================================

    def update_group(self, conversation_id: str, acting_user: str, name: Optional[str] = None,
                     description: Optional[str] = None, avatar: Optional[str] = None,
                     add_admins: Optional[List[str]] = None, remove_admins: Optional[List[str]] = None,
                     expected_version: Optional[int] = None) -> Conversation:
        """Apply detail and admin changes as a single versioned write."""
        conv = self.require_participant(conversation_id, acting_user, expected_version)
        self._require_group(conv)

        changes: Dict[str, Any] = {}
        if name is not None or description is not None or avatar is not None:
            if conv.settings.only_admins_can_edit:
                self._require_admin(conv, acting_user, 'edit the group')
            if name is not None:
                changes['name'] = _validate_name(name)
            if description is not None:
                changes['description'] = _optional_text(description, 'description')
            if avatar is not None:
                changes['avatar'] = _optional_text(avatar, 'avatar')

        add_admins = _user_list(add_admins, 'addAdmins')
        remove_admins = _user_list(remove_admins, 'removeAdmins')
        if add_admins or remove_admins:
            self._require_admin(conv, acting_user, 'change admins')
            admins = list(conv.admins)
            for user in add_admins:
                if not conv.is_participant(user):
                    raise ValidationError(f'{user} is not a participant in this group')
                if user not in admins:
                    admins.append(user)
            removing = set(remove_admins)
            admins = [a for a in admins if a not in removing]
            if not admins:
                raise LastAdminError('A group must have at least one admin')
            changes['admins'] = admins

        if not changes:
            raise ValidationError('No changes requested')
        changes['last_activity'] = utc_now()
        updated = self._write(conv, {'$set': changes})
        logger.info("%s updated group %s: %s", acting_user, conversation_id, sorted(changes))
        return updated

    def rename(self, conversation_id: str, acting_user: str, name: str,
               expected_version: Optional[int] = None) -> Conversation:
        return self.update_group(conversation_id, acting_user, name=name, expected_version=expected_version)

    def promote_admin(self, conversation_id: str, acting_user: str, target_user: str,
                      expected_version: Optional[int] = None) -> Conversation:
        return self.update_group(conversation_id, acting_user, add_admins=[target_user],
                                 expected_version=expected_version)

    def demote_admin(self, conversation_id: str, acting_user: str, target_user: str,
                     expected_version: Optional[int] = None) -> Conversation:
        return self.update_group(conversation_id, acting_user, remove_admins=[target_user],
                                 expected_version=expected_version)

    def delete(self, conversation_id: str, acting_user: str,
               expected_version: Optional[int] = None) -> Conversation:
        """Delete a conversation and its messages; groups require an admin."""
        conv = self.require_participant(conversation_id, acting_user, expected_version)
        if conv.is_group:
            self._require_admin(conv, acting_user, 'delete the conversation')
        self._teardown(conv)
        return conv

    # =========================================================================
    # Projections
    # =========================================================================

    @storage_guard
    def record_message(self, conversation_id: str, message) -> None:
        """Update lastMessage/activity after ``message`` was stored.

        The write only applies while the sender is still a participant; a
        message that raced with its sender's removal is discarded.
        """
        sender = message.sender_id
        ts = message.created_at
        read_field = f'participant_state.{sender}.last_read'
        result = self.collection.update_one(
            {
                '_id': conversation_id,
                'participants': sender,
                '$or': [{'last_message': None}, {'last_message.created_at': {'$lt': ts}}],
            },
            {
                '$set': {'last_message': LastMessage.from_message(message).to_db_doc(), 'last_activity': ts},
                '$max': {read_field: ts},
            }
        )
        if result.matched_count:
            return

        doc = self.collection.find_one({'_id': conversation_id}, {'participants': 1})
        if doc is None or sender not in doc.get('participants', []):
            self.store.discard(message.message_id)
            if doc is None:
                raise NotFoundError('Conversation not found')
            raise AuthorizationError('You are not a participant in this conversation')
        # A newer message is already cached; only the sender's read marker moves
        self.collection.update_one({'_id': conversation_id}, {'$max': {read_field: ts}})

    @storage_guard
    def refresh_last_message(self, conversation_id: str, removed_message_id: str) -> None:
        """Recompute lastMessage if it pointed at a removed message."""
        latest = self.store.latest(conversation_id)
        self.collection.update_one(
            {'_id': conversation_id, 'last_message.message_id': removed_message_id},
            {'$set': {'last_message': LastMessage.from_message(latest).to_db_doc() if latest else None}}
        )

    @storage_guard
    def mark_as_read(self, conversation_id: str, user_id: str, up_to=None) -> None:
        """Advance the participant's lastRead. It never moves backwards."""
        conv = self.require_participant(conversation_id, user_id)
        if up_to is None:
            up_to = utc_now()
            if conv.last_message and conv.last_message.created_at and conv.last_message.created_at > up_to:
                up_to = conv.last_message.created_at
        self.collection.update_one(
            {'_id': conversation_id, 'participants': user_id},
            {'$max': {f'participant_state.{user_id}.last_read': up_to}}
        )

    @storage_guard
    def set_preference(self, conversation_id: str, user_id: str, muted: Optional[bool] = None,
                       pinned: Optional[bool] = None, archived: Optional[bool] = None) -> Conversation:
        conv = self.require_participant(conversation_id, user_id)
        changes = {}
        for field, value in zip(ParticipantState.PREFERENCES, (muted, pinned, archived)):
            if value is not None:
                changes[f'participant_state.{user_id}.{field}'] = bool(value)
        if not changes:
            raise ValidationError('No preferences provided')
        self.collection.update_one({'_id': conv.conversation_id, 'participants': user_id}, {'$set': changes})
        return self._load(conversation_id)

    # =========================================================================
    # Views
    # =========================================================================

    def _display_name(self, conv: Conversation, viewer_id: str, names: Dict[str, str]) -> str:
        if conv.is_group and conv.name:
            return conv.name
        others = [names.get(p, p) for p in conv.other_participants(viewer_id)]
        if not others:
            return conv.name or 'Just you'
        if len(others) <= DISPLAY_NAME_MEMBERS:
            return ', '.join(others)
        shown = ', '.join(others[:DISPLAY_NAME_MEMBERS])
        return f"{shown} and {len(others) - DISPLAY_NAME_MEMBERS} others"

    def _last_message_view(self, conv: Conversation) -> Optional[Dict[str, Any]]:
        last = conv.last_message
        if not last:
            return None
        content, failed = self.store.decrypt_content(last.content, last.message_id)
        return {
            'id': last.message_id,
            'senderId': last.sender_id,
            'content': content,
            'createdAt': isoformat(last.created_at),
            'decryptionFailed': failed,
        }

    def view(self, conv: Conversation, viewer_id: str,
             names: Optional[Dict[str, str]] = None) -> ConversationView:
        if names is None:
            names = self.users.display_names(conv.participants)
        last_read = conv.state_for(viewer_id).last_read
        last = conv.last_message
        has_unread = bool(
            last and last.sender_id != viewer_id
            and (last_read is None or last.created_at > last_read)
        )
        unread_count = self.store.count_unread(conv.conversation_id, viewer_id, last_read) if has_unread else 0
        return ConversationView(
            conversation=conv,
            viewer_id=viewer_id,
            display_name=self._display_name(conv, viewer_id, names),
            last_message=self._last_message_view(conv),
            unread_count=unread_count,
            has_unread=has_unread,
        )

    def get_view(self, conversation_id: str, user_id: str) -> ConversationView:
        return self.view(self.get_by_id(conversation_id, user_id), user_id)

    @storage_guard
    def list_for_user(self, user_id: str, include_archived: bool = False) -> List[ConversationView]:
        """Conversations of a user, pinned first, then most recent activity."""
        validate_user_id(user_id)
        query: Dict[str, Any] = {'participants': user_id}
        if not include_archived:
            query[f'participant_state.{user_id}.is_archived'] = {'$ne': True}
        convs = [Conversation.from_doc(d) for d in
                 self.collection.find(query).sort('last_activity', DESCENDING)]

        names = self.users.display_names(p for c in convs for p in c.participants)
        views = [self.view(c, user_id, names) for c in convs]
        # Stable sort keeps activity order within each bucket
        views.sort(key=lambda v: not v.conversation.state_for(user_id).is_pinned)
        return views
