"""WebSocket chat handler.

Client events:
- send_message {conversationId | recipientId, content}
- typing {recipientId | conversationId, isTyping}
- message_read messageId | {messageId}

Failures are reported to the calling connection as an ``error`` event
{code, message} and in the acknowledgement; they never disconnect it.
"""
import functools
import logging
from typing import Dict, Any, Optional

from flask import request
from flask_socketio import emit

from chat_server.exception import MessagingError
from chat_server.messaging.events import (
    ClientEvent, EventType, MessageReadPayload, SendMessagePayload, TypingPayload
)
from chat_server.messaging.models import MessageMetadata

logger = logging.getLogger(__name__)

_chat_handler = None


class ChatHandler:
    """Handler for WebSocket chat events."""

    def __init__(self, socketio, hub, facade):
        self.socketio = socketio
        self.hub = hub
        self.facade = facade

    def _current_user(self) -> Optional[str]:
        return self.hub.user_for_sid(request.sid)

    def _guarded(self, func):
        """Resolve the caller and turn messaging errors into ``error`` events."""
        @functools.wraps(func)
        def wrapper(data=None):
            user_id = self._current_user()
            if not user_id:
                error = {'code': 'UNAUTHORIZED', 'message': 'Not authenticated'}
                emit(EventType.ERROR.value, error)
                return {'success': False, **error}
            try:
                result = func(user_id, data)
            except MessagingError as e:
                logger.info(f"WS {func.__name__} rejected for {user_id}: {e.code}")
                emit(EventType.ERROR.value, e.to_dict())
                return {'success': False, **e.to_dict()}
            return {'success': True, **(result or {})}
        return wrapper

    def _metadata(self) -> MessageMetadata:
        info = self.hub.connection_info(request.sid) or {}
        return MessageMetadata(ip_address=info.get('ip_address'), user_agent=info.get('user_agent'))

    def send_message(self, user_id: str, data) -> Dict[str, Any]:
        payload = SendMessagePayload.parse(data)
        view = self.facade.send(
            user_id,
            payload.content,
            conversation_id=payload.conversation_id,
            recipient_id=payload.recipient_id,
            metadata=self._metadata(),
        )
        return {'message': view.to_dict()}

    def typing(self, user_id: str, data) -> Dict[str, Any]:
        payload = TypingPayload.parse(data)
        self.hub.relay_typing(
            user_id,
            payload.is_typing,
            conversation_id=payload.conversation_id,
            recipient_id=payload.recipient_id,
        )
        return {}

    def message_read(self, user_id: str, data) -> Dict[str, Any]:
        payload = MessageReadPayload.parse(data)
        self.facade.mark_read(payload.message_id, user_id)
        return {'messageId': payload.message_id}

    def register_handlers(self):
        """Register all chat WebSocket event handlers."""
        self.socketio.on_event(ClientEvent.SEND_MESSAGE.value, self._guarded(self.send_message))
        self.socketio.on_event(ClientEvent.TYPING.value, self._guarded(self.typing))
        self.socketio.on_event(ClientEvent.MESSAGE_READ.value, self._guarded(self.message_read))


def init_chat_handler(socketio, hub, facade) -> ChatHandler:
    """Initialize chat handler with socketio instance."""
    global _chat_handler
    _chat_handler = ChatHandler(socketio, hub, facade)
    _chat_handler.register_handlers()
    logger.info("Chat handler initialized")
    return _chat_handler


def get_chat_handler() -> Optional[ChatHandler]:
    return _chat_handler
