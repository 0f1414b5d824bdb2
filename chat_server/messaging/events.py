"""Live events exchanged over socket connections.

Outbound events form a closed set (EventType); each has a factory on
ChatEvent so payload shapes live in one place. Inbound payloads are
decoded and validated here before any handler acts on them.
"""
from enum import Enum
from typing import Any, Dict, Optional

from chat_server.exception import ValidationError


class EventType(str, Enum):
    # server -> client
    RECEIVE_MESSAGE = 'receive_message'
    MESSAGE_SENT = 'message_sent'
    USER_TYPING = 'user_typing'
    MESSAGE_READ = 'message_read'
    NEW_CONVERSATION = 'new_conversation'
    GROUP_UPDATED = 'group_updated'
    PARTICIPANT_REMOVED = 'participant_removed'
    REMOVED_FROM_GROUP = 'removed_from_group'
    ADDED_TO_GROUP = 'added_to_group'
    LEFT_GROUP = 'left_group'
    GROUP_DELETED = 'group_deleted'
    CONVERSATION_DELETED = 'conversation_deleted'
    MESSAGE_DELETED = 'message_deleted'
    ERROR = 'error'


class ClientEvent(str, Enum):
    SEND_MESSAGE = 'send_message'
    TYPING = 'typing'
    MESSAGE_READ = 'message_read'


class ChatEvent:
    """A single outbound event: its kind plus a JSON-ready payload.

    Payloads are objects, except message_read which carries a bare id.
    """

    def __init__(self, event_type: EventType, payload: Any):
        self.type = event_type
        self.payload = payload

    @property
    def name(self) -> str:
        return self.type.value

    def __repr__(self):
        return f"ChatEvent({self.name})"

    # Messages

    @classmethod
    def receive_message(cls, message: Dict[str, Any], muted: bool = False) -> 'ChatEvent':
        return cls(EventType.RECEIVE_MESSAGE, {**message, 'muted': muted})

    @classmethod
    def message_sent(cls, message: Dict[str, Any]) -> 'ChatEvent':
        return cls(EventType.MESSAGE_SENT, message)

    @classmethod
    def message_read(cls, message_id: str) -> 'ChatEvent':
        """Read receipt for the original sender; the payload is the bare id."""
        return cls(EventType.MESSAGE_READ, message_id)

    @classmethod
    def message_deleted(cls, message_id: str, conversation_id: str, deleted_by: str) -> 'ChatEvent':
        return cls(EventType.MESSAGE_DELETED, {
            'messageId': message_id, 'conversationId': conversation_id, 'deletedBy': deleted_by,
        })

    @classmethod
    def user_typing(cls, user_id: str, is_typing: bool, conversation_id: Optional[str]) -> 'ChatEvent':
        return cls(EventType.USER_TYPING, {
            'userId': user_id, 'isTyping': is_typing, 'conversationId': conversation_id,
        })

    # Conversations

    @classmethod
    def new_conversation(cls, conversation: Dict[str, Any]) -> 'ChatEvent':
        return cls(EventType.NEW_CONVERSATION, {'conversation': conversation})

    @classmethod
    def group_updated(cls, conversation: Dict[str, Any], updated_by: str) -> 'ChatEvent':
        return cls(EventType.GROUP_UPDATED, {'conversation': conversation, 'updatedBy': updated_by})

    @classmethod
    def added_to_group(cls, conversation: Dict[str, Any], added_by: str) -> 'ChatEvent':
        return cls(EventType.ADDED_TO_GROUP, {'conversation': conversation, 'addedBy': added_by})

    @classmethod
    def participant_removed(cls, conversation_id: str, user_id: str, removed_by: str) -> 'ChatEvent':
        return cls(EventType.PARTICIPANT_REMOVED, {
            'conversationId': conversation_id, 'userId': user_id, 'removedBy': removed_by,
        })

    @classmethod
    def removed_from_group(cls, conversation_id: str, removed_by: str) -> 'ChatEvent':
        return cls(EventType.REMOVED_FROM_GROUP, {'conversationId': conversation_id, 'removedBy': removed_by})

    @classmethod
    def left_group(cls, conversation_id: str) -> 'ChatEvent':
        return cls(EventType.LEFT_GROUP, {'conversationId': conversation_id})

    @classmethod
    def group_deleted(cls, conversation_id: str, deleted_by: str) -> 'ChatEvent':
        return cls(EventType.GROUP_DELETED, {'conversationId': conversation_id, 'deletedBy': deleted_by})

    @classmethod
    def conversation_deleted(cls, conversation_id: str, deleted_by: str) -> 'ChatEvent':
        return cls(EventType.CONVERSATION_DELETED, {'conversationId': conversation_id, 'deletedBy': deleted_by})

    @classmethod
    def error(cls, code: str, message: str) -> 'ChatEvent':
        return cls(EventType.ERROR, {'code': code, 'message': message})


# =============================================================================
# Inbound payloads
# =============================================================================

def _optional_str(data: Dict[str, Any], *keys) -> Optional[str]:
    for key in keys:
        value = data.get(key)
        if value is None or value == '':
            continue
        if not isinstance(value, str):
            raise ValidationError(f'{keys[0]} must be a string')
        return value
    return None


def _require_dict(data) -> Dict[str, Any]:
    if not isinstance(data, dict):
        raise ValidationError('Payload must be an object')
    return data


class SendMessagePayload:
    """``send_message``: content plus a conversation or a recipient."""

    def __init__(self, content: str, conversation_id: Optional[str] = None,
                 recipient_id: Optional[str] = None):
        self.content = content
        self.conversation_id = conversation_id
        self.recipient_id = recipient_id

    @classmethod
    def parse(cls, data) -> 'SendMessagePayload':
        data = _require_dict(data)
        content = data.get('content')
        if not isinstance(content, str) or not content.strip():
            raise ValidationError('content is required')
        conversation_id = _optional_str(data, 'conversationId', 'conversation_id')
        recipient_id = _optional_str(data, 'recipientId', 'recipient_id')
        if not conversation_id and not recipient_id:
            raise ValidationError('conversationId or recipientId is required')
        return cls(content, conversation_id, recipient_id)


class TypingPayload:
    """``typing``: indicator for a recipient or a conversation."""

    def __init__(self, is_typing: bool, recipient_id: Optional[str] = None,
                 conversation_id: Optional[str] = None):
        self.is_typing = is_typing
        self.recipient_id = recipient_id
        self.conversation_id = conversation_id

    @classmethod
    def parse(cls, data) -> 'TypingPayload':
        data = _require_dict(data)
        is_typing = data.get('isTyping', data.get('is_typing'))
        if not isinstance(is_typing, bool):
            raise ValidationError('isTyping must be a boolean')
        recipient_id = _optional_str(data, 'recipientId', 'recipient_id')
        conversation_id = _optional_str(data, 'conversationId', 'conversation_id')
        if not recipient_id and not conversation_id:
            raise ValidationError('recipientId or conversationId is required')
        return cls(is_typing, recipient_id, conversation_id)


class MessageReadPayload:
    """``message_read``: a bare message id or ``{messageId}``."""

    def __init__(self, message_id: str):
        self.message_id = message_id

    @classmethod
    def parse(cls, data) -> 'MessageReadPayload':
        if isinstance(data, str) and data:
            return cls(data)
        message_id = _optional_str(_require_dict(data), 'messageId', 'message_id')
        if not message_id:
            raise ValidationError('messageId is required')
        return cls(message_id)
