"""Messaging facade.

Single entry point used by the socket handlers and the HTTP blueprint.
Each operation authorizes the actor, persists through the store and the
registry, and only then publishes live events. Publishing never fails an
operation: once the durable write happened the caller gets success.
"""
import logging
from typing import Optional, Dict, Any, List, Tuple

from chat_server.exception import AuthorizationError, MessagingError, NotFoundError, ValidationError
from chat_server.messaging.conversation_registry import ConversationRegistry, validate_user_id
from chat_server.messaging.events import ChatEvent
from chat_server.messaging.message_store import MessageStore
from chat_server.messaging.models import Conversation, ConversationView, Message, MessageMetadata, MessageView
from chat_server.utils.helpers import parse_limit
from chat_server.utils.time_utils import parse_cursor

logger = logging.getLogger(__name__)


class MessagingFacade:
    """Orchestrates messaging operations across store, registry and hub."""

    def __init__(self, store: MessageStore, registry: ConversationRegistry, hub,
                 max_message_length: int = 5000, page_default_limit: int = 50, page_max_limit: int = 100):
        self.store = store
        self.registry = registry
        self.hub = hub
        self.max_message_length = max_message_length
        self.page_default_limit = page_default_limit
        self.page_max_limit = page_max_limit

    @classmethod
    def from_config(cls, store, registry, hub, cfg) -> 'MessagingFacade':
        return cls(store, registry, hub,
                   max_message_length=cfg.MAX_MESSAGE_LENGTH,
                   page_default_limit=cfg.PAGE_DEFAULT_LIMIT,
                   page_max_limit=cfg.PAGE_MAX_LIMIT)

    # =========================================================================
    # Notification helpers
    # =========================================================================

    def _views_for(self, conv: Conversation, users: List[str]) -> Dict[str, Dict[str, Any]]:
        names = self.registry.users.display_names(conv.participants)
        return {u: self.registry.view(conv, u, names).to_dict() for u in users}

    def _announce(self, conv: Conversation, users: List[str], factory) -> None:
        """Publish a per-recipient conversation event built by ``factory``."""
        if not users:
            return
        try:
            views = self._views_for(conv, users)
        except MessagingError as e:
            logger.warning("Skipping live events for %s: %s", conv.conversation_id, e.message)
            return
        for user, view in views.items():
            self.hub.publish(user, factory(view))

    # =========================================================================
    # Messages
    # =========================================================================

    def _validate_content(self, content) -> str:
        if not isinstance(content, str) or not content.strip():
            raise ValidationError('content is required')
        if len(content) > self.max_message_length:
            raise ValidationError(f'content must be at most {self.max_message_length} characters')
        try:
            content.encode('utf-8')
        except UnicodeEncodeError:
            raise ValidationError('content must be valid UTF-8 text')
        return content

    def send(self, sender_id: str, content: str, conversation_id: Optional[str] = None,
             recipient_id: Optional[str] = None, metadata: Optional[MessageMetadata] = None) -> MessageView:
        """Send a message into a conversation, or directly to a recipient.

        A direct conversation is created on the first message between two
        users. Returns the stored message with plaintext content.
        """
        validate_user_id(sender_id, 'senderId')
        content = self._validate_content(content)

        created = False
        if conversation_id:
            conv = self.registry.require_participant(conversation_id, sender_id)
        elif recipient_id:
            conv, created = self.registry.find_or_create_direct(sender_id, recipient_id)
        else:
            raise ValidationError('conversationId or recipientId is required')

        if conv.is_group and conv.settings.only_admins_can_post and not conv.is_admin(sender_id):
            raise AuthorizationError('Only group admins can post in this group')

        recipient = None if conv.is_group else conv.other_participants(sender_id)[0]
        message = Message(
            message_id=None,
            conversation_id=conv.conversation_id,
            sender_id=sender_id,
            content=content,
            recipient_id=recipient,
            metadata=metadata,
        )
        view = self.store.append(message)
        self.registry.record_message(conv.conversation_id, view)
        logger.info("Message %s sent by %s in %s", view.message_id, sender_id, conv.conversation_id)

        if created:
            try:
                conv = self.registry.get_by_id(conv.conversation_id, sender_id)
            except MessagingError as e:
                logger.warning("Could not reload %s for announcement: %s", conv.conversation_id, e.message)
            self._announce(conv, conv.participants, ChatEvent.new_conversation)

        payload = view.to_dict()
        for user in conv.other_participants(sender_id):
            self.hub.publish(user, ChatEvent.receive_message(payload, muted=conv.state_for(user).is_muted))
        self.hub.publish(sender_id, ChatEvent.message_sent(payload))
        return view

    def page(self, conversation_id: str, user_id: str, before=None,
             limit=None) -> Tuple[List[MessageView], bool]:
        """One page of history, oldest first, strictly older than ``before``."""
        self.registry.get_by_id(conversation_id, user_id)
        try:
            cursor = parse_cursor(before)
        except ValueError:
            raise ValidationError('before must be an ISO-8601 timestamp')
        limit = parse_limit(limit, self.page_default_limit, self.page_max_limit)
        return self.store.page(conversation_id, cursor, limit)

    def mark_read(self, message_id: str, reader_id: str) -> MessageView:
        message = self.store.get(message_id)
        if message is None:
            raise NotFoundError('Message not found')
        self.registry.get_by_id(message.conversation_id, reader_id)

        view = self.store.mark_read(message_id, reader_id)
        self.registry.mark_as_read(message.conversation_id, reader_id, up_to=view.created_at)
        self.hub.publish(view.sender_id, ChatEvent.message_read(message_id))
        return view

    def mark_conversation_read(self, conversation_id: str, user_id: str) -> ConversationView:
        self.registry.mark_as_read(conversation_id, user_id)
        return self.registry.get_view(conversation_id, user_id)

    def delete_message(self, message_id: str, user_id: str) -> None:
        message = self.store.get(message_id)
        if message is None:
            raise NotFoundError('Message not found')
        conv = self.registry.get_by_id(message.conversation_id, user_id)
        if message.sender_id != user_id:
            raise AuthorizationError('Only the sender can delete this message')
        if not self.store.delete_by_sender(message_id, user_id):
            raise NotFoundError('Message not found')

        self.registry.refresh_last_message(conv.conversation_id, message_id)
        logger.info("Message %s deleted by %s", message_id, user_id)
        self.hub.publish_many(
            conv.participants,
            ChatEvent.message_deleted(message_id, conv.conversation_id, user_id),
            exclude=[user_id],
        )

    # =========================================================================
    # Conversations
    # =========================================================================

    def list_conversations(self, user_id: str, include_archived: bool = False) -> List[ConversationView]:
        return self.registry.list_for_user(user_id, include_archived=include_archived)

    def get_conversation(self, conversation_id: str, user_id: str) -> ConversationView:
        return self.registry.get_view(conversation_id, user_id)

    def start_direct(self, user_id: str, other_user_id: str) -> Tuple[ConversationView, bool]:
        conv, created = self.registry.find_or_create_direct(user_id, other_user_id)
        if created:
            self._announce(conv, conv.participants, ChatEvent.new_conversation)
        return self.registry.view(conv, user_id), created

    def delete_conversation(self, conversation_id: str, user_id: str,
                            expected_version: Optional[int] = None) -> None:
        conv = self.registry.delete(conversation_id, user_id, expected_version)
        factory = ChatEvent.group_deleted if conv.is_group else ChatEvent.conversation_deleted
        self.hub.publish_many(conv.participants, factory(conversation_id, user_id), exclude=[user_id])

    def set_preference(self, conversation_id: str, user_id: str, muted: Optional[bool] = None,
                       pinned: Optional[bool] = None, archived: Optional[bool] = None) -> ConversationView:
        conv = self.registry.set_preference(conversation_id, user_id, muted=muted, pinned=pinned, archived=archived)
        return self.registry.view(conv, user_id)

    # =========================================================================
    # Groups
    # =========================================================================

    def create_group(self, creator: str, name: str, participants: List[str],
                     options: Optional[Dict[str, Any]] = None) -> ConversationView:
        conv = self.registry.create_group(creator, name, participants, options)
        self._announce(conv, [creator], ChatEvent.new_conversation)
        self._announce(conv, conv.other_participants(creator),
                       lambda view: ChatEvent.added_to_group(view, creator))
        return self.registry.view(conv, creator)

    def add_participants(self, conversation_id: str, acting_user: str, new_users: List[str],
                         expected_version: Optional[int] = None) -> ConversationView:
        conv, added = self.registry.add_participants(conversation_id, acting_user, new_users, expected_version)
        self._announce(conv, added, lambda view: ChatEvent.added_to_group(view, acting_user))
        existing = [p for p in conv.participants if p not in added and p != acting_user]
        self._announce(conv, existing, lambda view: ChatEvent.group_updated(view, acting_user))
        return self.registry.view(conv, acting_user)

    def remove_participant(self, conversation_id: str, acting_user: str, target_user: str,
                           expected_version: Optional[int] = None) -> Optional[ConversationView]:
        if target_user == acting_user:
            return self.leave(conversation_id, acting_user, expected_version)
        result = self.registry.remove_participant(conversation_id, acting_user, target_user, expected_version)
        self.hub.publish(target_user, ChatEvent.removed_from_group(conversation_id, acting_user))
        if result.deleted:
            return None
        self.hub.publish_many(
            result.conversation.participants,
            ChatEvent.participant_removed(conversation_id, target_user, acting_user),
            exclude=[acting_user],
        )
        return self.registry.view(result.conversation, acting_user)

    def leave(self, conversation_id: str, user_id: str,
              expected_version: Optional[int] = None) -> None:
        """Leave a group; returns None since the caller no longer sees it."""
        result = self.registry.leave(conversation_id, user_id, expected_version)
        self.hub.publish(user_id, ChatEvent.left_group(conversation_id))
        if result.deleted:
            self.hub.publish(user_id, ChatEvent.group_deleted(conversation_id, user_id))
        else:
            self.hub.publish_many(
                result.conversation.participants,
                ChatEvent.participant_removed(conversation_id, user_id, user_id),
            )
        return None

    def update_group(self, conversation_id: str, acting_user: str, name: Optional[str] = None,
                     description: Optional[str] = None, avatar: Optional[str] = None,
                     add_admins: Optional[List[str]] = None, remove_admins: Optional[List[str]] = None,
                     expected_version: Optional[int] = None) -> ConversationView:
        conv = self.registry.update_group(
            conversation_id, acting_user, name=name, description=description, avatar=avatar,
            add_admins=add_admins, remove_admins=remove_admins, expected_version=expected_version,
        )
        self._announce(conv, conv.other_participants(acting_user),
                       lambda view: ChatEvent.group_updated(view, acting_user))
        return self.registry.view(conv, acting_user)

    def rename(self, conversation_id: str, acting_user: str, name: str,
               expected_version: Optional[int] = None) -> ConversationView:
        return self.update_group(conversation_id, acting_user, name=name, expected_version=expected_version)

    def promote_admin(self, conversation_id: str, acting_user: str, target_user: str,
                      expected_version: Optional[int] = None) -> ConversationView:
        return self.update_group(conversation_id, acting_user, add_admins=[target_user],
                                 expected_version=expected_version)

    def demote_admin(self, conversation_id: str, acting_user: str, target_user: str,
                     expected_version: Optional[int] = None) -> ConversationView:
        return self.update_group(conversation_id, acting_user, remove_admins=[target_user],
                                 expected_version=expected_version)
