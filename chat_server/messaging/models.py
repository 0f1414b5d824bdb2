"""Messaging data models.

Collections:
- conversations: direct and group conversations, with per-participant state
  and the cached last-message projection
- chat_messages: individual messages, content stored as an encrypted envelope

Stored documents use snake_case; the views returned to callers use the
camelCase shape of the live-event and HTTP payloads.
"""
from typing import Optional, Dict, Any, List
from datetime import datetime

from chat_server.utils.time_utils import isoformat, utc_now
from chat_server.utils.versioning import VERSION_FIELD

UNAVAILABLE_CONTENT = '[Message unavailable]'


class MessageMetadata:
    """Advisory request metadata captured when a message is sent."""

    def __init__(self, ip_address: Optional[str] = None, user_agent: Optional[str] = None,
                 timestamp: Optional[datetime] = None):
        self.ip_address = ip_address
        self.user_agent = user_agent
        self.timestamp = timestamp

    def to_db_doc(self) -> Dict[str, Any]:
        return {'ip_address': self.ip_address, 'user_agent': self.user_agent, 'timestamp': self.timestamp}

    @classmethod
    def from_doc(cls, doc: Optional[Dict[str, Any]]) -> 'MessageMetadata':
        doc = doc or {}
        return cls(doc.get('ip_address'), doc.get('user_agent'), doc.get('timestamp'))


class Message:
    """Stored message. ``content`` is always the encrypted envelope."""

    def __init__(
        self,
        message_id: str,
        conversation_id: str,
        sender_id: str,
        content: Optional[str],
        recipient_id: Optional[str] = None,
        is_encrypted: bool = True,
        read: bool = False,
        read_by: Optional[List[str]] = None,
        created_at: Optional[datetime] = None,
        metadata: Optional[MessageMetadata] = None,
        deleted_at: Optional[datetime] = None,
    ):
        self.message_id = message_id
        self.conversation_id = conversation_id
        self.sender_id = sender_id
        self.recipient_id = recipient_id
        self.content = content
        self.is_encrypted = is_encrypted
        self.read = read
        self.read_by = read_by or []
        self.created_at = created_at
        self.metadata = metadata or MessageMetadata()
        self.deleted_at = deleted_at

    def to_db_doc(self) -> Dict[str, Any]:
        return {
            '_id': self.message_id,
            'conversation_id': self.conversation_id,
            'sender_id': self.sender_id,
            'recipient_id': self.recipient_id,
            'content': self.content,
            'is_encrypted': self.is_encrypted,
            'read': self.read,
            'read_by': self.read_by,
            'created_at': self.created_at,
            'metadata': self.metadata.to_db_doc(),
            'deleted_at': self.deleted_at,
        }

    @classmethod
    def from_doc(cls, doc: Dict[str, Any]) -> 'Message':
        return cls(
            message_id=str(doc['_id']),
            conversation_id=doc.get('conversation_id'),
            sender_id=doc.get('sender_id'),
            recipient_id=doc.get('recipient_id'),
            content=doc.get('content'),
            is_encrypted=doc.get('is_encrypted', True),
            read=doc.get('read', False),
            read_by=doc.get('read_by', []),
            created_at=doc.get('created_at'),
            metadata=MessageMetadata.from_doc(doc.get('metadata')),
            deleted_at=doc.get('deleted_at'),
        )


class MessageView:
    """Message with decrypted content, as returned to application logic."""

    def __init__(self, message: Message, content: str, decryption_failed: bool = False):
        self.message_id = message.message_id
        self.conversation_id = message.conversation_id
        self.sender_id = message.sender_id
        self.recipient_id = message.recipient_id
        self.content = content
        self.is_encrypted = message.is_encrypted
        self.read = message.read
        self.read_by = list(message.read_by)
        self.created_at = message.created_at
        self.metadata = message.metadata
        self.decryption_failed = decryption_failed
        # Stored ciphertext, kept for the last-message projection only
        self.envelope = message.content

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.message_id,
            'conversationId': self.conversation_id,
            'senderId': self.sender_id,
            'recipientId': self.recipient_id,
            'content': self.content,
            'isEncrypted': self.is_encrypted,
            'read': self.read,
            'readBy': self.read_by,
            'createdAt': isoformat(self.created_at),
            'decryptionFailed': self.decryption_failed,
        }


class GroupSettings:

    OPTION_KEYS = (
        'onlyAdminsCanPost', 'only_admins_can_post',
        'onlyAdminsCanEdit', 'only_admins_can_edit',
        'onlyAdminsCanAddMembers', 'only_admins_can_add_members',
    )

    def __init__(self, only_admins_can_post: bool = False, only_admins_can_edit: bool = True,
                 only_admins_can_add_members: bool = True):
        self.only_admins_can_post = only_admins_can_post
        self.only_admins_can_edit = only_admins_can_edit
        self.only_admins_can_add_members = only_admins_can_add_members

    def to_db_doc(self) -> Dict[str, Any]:
        return {
            'only_admins_can_post': self.only_admins_can_post,
            'only_admins_can_edit': self.only_admins_can_edit,
            'only_admins_can_add_members': self.only_admins_can_add_members,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            'onlyAdminsCanPost': self.only_admins_can_post,
            'onlyAdminsCanEdit': self.only_admins_can_edit,
            'onlyAdminsCanAddMembers': self.only_admins_can_add_members,
        }

    @classmethod
    def from_doc(cls, doc: Optional[Dict[str, Any]]) -> 'GroupSettings':
        doc = doc or {}
        return cls(
            only_admins_can_post=doc.get('only_admins_can_post', False),
            only_admins_can_edit=doc.get('only_admins_can_edit', True),
            only_admins_can_add_members=doc.get('only_admins_can_add_members', True),
        )

    @classmethod
    def from_options(cls, options: Optional[Dict[str, Any]]) -> 'GroupSettings':
        """Build from caller options, accepting camelCase or snake_case keys."""
        options = options or {}

        def pick(camel, snake, default):
            value = options.get(camel, options.get(snake))
            return default if value is None else bool(value)

        return cls(
            only_admins_can_post=pick('onlyAdminsCanPost', 'only_admins_can_post', False),
            only_admins_can_edit=pick('onlyAdminsCanEdit', 'only_admins_can_edit', True),
            only_admins_can_add_members=pick('onlyAdminsCanAddMembers', 'only_admins_can_add_members', True),
        )


class ParticipantState:
    """Per-user state inside a conversation; never stored on its own."""

    PREFERENCES = ('is_muted', 'is_pinned', 'is_archived')

    def __init__(self, last_read: Optional[datetime] = None, is_muted: bool = False,
                 is_pinned: bool = False, is_archived: bool = False):
        self.last_read = last_read
        self.is_muted = is_muted
        self.is_pinned = is_pinned
        self.is_archived = is_archived

    def to_db_doc(self) -> Dict[str, Any]:
        doc = {
            'is_muted': self.is_muted,
            'is_pinned': self.is_pinned,
            'is_archived': self.is_archived,
        }
        # Absent until first read so that $max can initialise it
        if self.last_read is not None:
            doc['last_read'] = self.last_read
        return doc

    @classmethod
    def from_doc(cls, doc: Optional[Dict[str, Any]]) -> 'ParticipantState':
        doc = doc or {}
        return cls(
            last_read=doc.get('last_read'),
            is_muted=doc.get('is_muted', False),
            is_pinned=doc.get('is_pinned', False),
            is_archived=doc.get('is_archived', False),
        )


class LastMessage:
    """Denormalized projection of the newest message in a conversation."""

    def __init__(self, message_id: str, sender_id: str, content: Optional[str], created_at: datetime):
        self.message_id = message_id
        self.sender_id = sender_id
        self.content = content  # encrypted envelope
        self.created_at = created_at

    def to_db_doc(self) -> Dict[str, Any]:
        return {
            'message_id': self.message_id,
            'sender_id': self.sender_id,
            'content': self.content,
            'created_at': self.created_at,
        }

    @classmethod
    def from_doc(cls, doc: Optional[Dict[str, Any]]) -> Optional['LastMessage']:
        if not doc:
            return None
        return cls(doc.get('message_id'), doc.get('sender_id'), doc.get('content'), doc.get('created_at'))

    @classmethod
    def from_message(cls, message) -> 'LastMessage':
        envelope = getattr(message, 'envelope', None) or message.content
        return cls(message.message_id, message.sender_id, envelope, message.created_at)


class Conversation:
    """Conversation aggregate (direct or group)."""

    def __init__(
        self,
        conversation_id: str,
        is_group: bool,
        participants: List[str],
        admins: Optional[List[str]] = None,
        name: Optional[str] = None,
        description: Optional[str] = None,
        avatar: Optional[str] = None,
        tags: Optional[List[str]] = None,
        settings: Optional[GroupSettings] = None,
        created_by: Optional[str] = None,
        created_at: Optional[datetime] = None,
        updated_at: Optional[datetime] = None,
        last_activity: Optional[datetime] = None,
        last_message: Optional[LastMessage] = None,
        participant_state: Optional[Dict[str, ParticipantState]] = None,
        version: int = 1,
    ):
        self.conversation_id = conversation_id
        self.is_group = is_group
        self.participants = list(participants)
        self.admins = list(admins or [])
        self.name = name
        self.description = description
        self.avatar = avatar
        self.tags = list(tags or [])
        self.settings = settings or GroupSettings()
        self.created_by = created_by
        now = utc_now()
        self.created_at = created_at or now
        self.updated_at = updated_at or self.created_at
        self.last_activity = last_activity or self.created_at
        self.last_message = last_message
        self.participant_state = participant_state or {}
        self.version = version

    @staticmethod
    def direct_key(user_a: str, user_b: str) -> str:
        """Order-independent key identifying the direct conversation of a pair."""
        first, second = sorted((user_a, user_b))
        return f"{first}|{second}"

    def is_participant(self, user_id: str) -> bool:
        return user_id in self.participants

    def is_admin(self, user_id: str) -> bool:
        return self.is_group and user_id in self.admins

    def state_for(self, user_id: str) -> ParticipantState:
        return self.participant_state.get(user_id) or ParticipantState()

    def other_participants(self, user_id: str) -> List[str]:
        return [p for p in self.participants if p != user_id]

    def to_db_doc(self) -> Dict[str, Any]:
        doc = {
            '_id': self.conversation_id,
            'is_group': self.is_group,
            'participants': self.participants,
            'admins': self.admins,
            'name': self.name,
            'description': self.description,
            'avatar': self.avatar,
            'tags': self.tags,
            'settings': self.settings.to_db_doc(),
            'created_by': self.created_by,
            'created_at': self.created_at,
            'updated_at': self.updated_at,
            'last_activity': self.last_activity,
            'last_message': self.last_message.to_db_doc() if self.last_message else None,
            'participant_state': {uid: s.to_db_doc() for uid, s in self.participant_state.items()},
            VERSION_FIELD: self.version,
        }
        if not self.is_group and len(self.participants) == 2:
            doc['direct_key'] = self.direct_key(*self.participants)
        return doc

    @classmethod
    def from_doc(cls, doc: Dict[str, Any]) -> 'Conversation':
        return cls(
            conversation_id=str(doc['_id']),
            is_group=doc.get('is_group', False),
            participants=doc.get('participants', []),
            admins=doc.get('admins', []),
            name=doc.get('name'),
            description=doc.get('description'),
            avatar=doc.get('avatar'),
            tags=doc.get('tags', []),
            settings=GroupSettings.from_doc(doc.get('settings')),
            created_by=doc.get('created_by'),
            created_at=doc.get('created_at'),
            updated_at=doc.get('updated_at'),
            last_activity=doc.get('last_activity'),
            last_message=LastMessage.from_doc(doc.get('last_message')),
            participant_state={
                uid: ParticipantState.from_doc(s) for uid, s in (doc.get('participant_state') or {}).items()
            },
            version=doc.get(VERSION_FIELD, 1),
        )


class ConversationView:
    """Conversation as seen by one participant.

    Display name, unread state and decrypted last message are read-time
    projections and are never written back.
    """

    def __init__(self, conversation: Conversation, viewer_id: str, display_name: str,
                 last_message: Optional[Dict[str, Any]], unread_count: int, has_unread: bool):
        self.conversation = conversation
        self.viewer_id = viewer_id
        self.display_name = display_name
        self.last_message = last_message
        self.unread_count = unread_count
        self.has_unread = has_unread

    @property
    def conversation_id(self) -> str:
        return self.conversation.conversation_id

    def to_dict(self) -> Dict[str, Any]:
        conv = self.conversation
        state = conv.state_for(self.viewer_id)
        data = {
            'id': conv.conversation_id,
            'isGroup': conv.is_group,
            'name': conv.name,
            'displayName': self.display_name,
            'participants': conv.participants,
            'admins': conv.admins,
            'createdBy': conv.created_by,
            'lastMessage': self.last_message,
            'unreadCount': self.unread_count,
            'hasUnread': self.has_unread,
            'lastRead': isoformat(state.last_read),
            'isMuted': state.is_muted,
            'isPinned': state.is_pinned,
            'isArchived': state.is_archived,
            'createdAt': isoformat(conv.created_at),
            'updatedAt': isoformat(conv.updated_at),
            'lastActivity': isoformat(conv.last_activity),
            'version': conv.version,
        }
        if conv.is_group:
            data.update({
                'description': conv.description,
                'avatar': conv.avatar,
                'tags': conv.tags,
                'settings': conv.settings.to_dict(),
            })
        return data
