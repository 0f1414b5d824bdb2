"""Durable message storage.

Messages are append-only per conversation. Content is encrypted on the way
in and decrypted on the way out, so callers only ever see plaintext and the
collection only ever holds envelopes.
"""
import logging
from datetime import datetime
from typing import Optional, List, Tuple

from pymongo import DESCENDING

from chat_server.exception import AuthorizationError, DecryptionError, NotFoundError, ValidationError
from chat_server.messaging.models import Message, MessageView, UNAVAILABLE_CONTENT
from chat_server.repository.mongo_helper import MESSAGES
from chat_server.security.encryption import EncryptionCodec
from chat_server.utils.decorators import storage_guard
from chat_server.utils.generator import generate_message_id
from chat_server.utils.time_utils import next_message_timestamp, utc_now

logger = logging.getLogger(__name__)

_LIVE = {'deleted_at': None}


class MessageStore:
    """Append-only message store keyed by conversation."""

    def __init__(self, db, codec: EncryptionCodec):
        self.collection = db[MESSAGES]
        self.codec = codec

    # =========================================================================
    # Content
    # =========================================================================

    def decrypt_content(self, envelope: Optional[str], message_id: str) -> Tuple[str, bool]:
        """Return (plaintext, failed). Failures degrade to a sentinel."""
        if envelope is None:
            return UNAVAILABLE_CONTENT, True
        try:
            return self.codec.decrypt(envelope), False
        except DecryptionError as e:
            logger.warning("Could not decrypt message %s: %s", message_id, e.message)
            return UNAVAILABLE_CONTENT, True

    def to_view(self, message: Message) -> MessageView:
        if not message.is_encrypted:
            return MessageView(message, message.content or '')
        content, failed = self.decrypt_content(message.content, message.message_id)
        return MessageView(message, content, decryption_failed=failed)

    # =========================================================================
    # Writes
    # =========================================================================

    @storage_guard
    def append(self, message: Message) -> MessageView:
        """Encrypt and persist ``message``; its ``content`` holds plaintext.

        The returned view carries the plaintext back, never the ciphertext.
        """
        plaintext = message.content
        if not isinstance(plaintext, str) or not plaintext.strip():
            raise ValidationError('content is required')

        message.message_id = message.message_id or generate_message_id()
        message.created_at = message.created_at or next_message_timestamp()
        if message.metadata.timestamp is None:
            message.metadata.timestamp = message.created_at
        message.content = self.codec.encrypt(plaintext)
        message.is_encrypted = True

        self.collection.insert_one(message.to_db_doc())
        logger.debug("Stored message %s in conversation %s", message.message_id, message.conversation_id)
        return MessageView(message, plaintext)

    @storage_guard
    def mark_read(self, message_id: str, reader_id: str) -> MessageView:
        """Flip the read flag. Only the message's recipient may do this.

        Group messages have no single recipient; any reader other than the
        sender qualifies and membership is checked by the caller.
        """
        message = self.get(message_id)
        if message is None:
            raise NotFoundError('Message not found')
        if message.recipient_id is not None:
            allowed = message.recipient_id == reader_id
        else:
            allowed = message.sender_id != reader_id
        if not allowed:
            raise AuthorizationError('Only the recipient can mark this message as read')

        self.collection.update_one(
            {'_id': message_id, **_LIVE},
            {'$set': {'read': True}, '$addToSet': {'read_by': reader_id}}
        )
        message.read = True
        if reader_id not in message.read_by:
            message.read_by.append(reader_id)
        return self.to_view(message)

    @storage_guard
    def delete_by_sender(self, message_id: str, sender_id: str) -> bool:
        """Soft-delete a message on behalf of its sender; erases the envelope."""
        result = self.collection.update_one(
            {'_id': message_id, 'sender_id': sender_id, **_LIVE},
            {'$set': {'deleted_at': utc_now(), 'content': None}}
        )
        return result.matched_count > 0

    @storage_guard
    def discard(self, message_id: str) -> None:
        """Hard-delete a message that was stored but never became visible."""
        self.collection.delete_one({'_id': message_id})
        logger.info("Discarded message %s", message_id)

    @storage_guard
    def delete_all_for_conversation(self, conversation_id: str) -> int:
        """Purge every message of a conversation being torn down."""
        result = self.collection.delete_many({'conversation_id': conversation_id})
        logger.info("Deleted %s messages of conversation %s", result.deleted_count, conversation_id)
        return result.deleted_count

    # =========================================================================
    # Reads
    # =========================================================================

    @storage_guard
    def get(self, message_id: str) -> Optional[Message]:
        doc = self.collection.find_one({'_id': message_id, **_LIVE})
        return Message.from_doc(doc) if doc else None

    @storage_guard
    def page(self, conversation_id: str, before: Optional[datetime] = None,
             limit: int = 50) -> Tuple[List[MessageView], bool]:
        """Return up to ``limit`` messages strictly older than ``before``.

        Fetches one extra record to learn whether an older page exists, then
        returns the page in chronological order.
        """
        if limit < 1:
            raise ValidationError('limit must be positive')
        query = {'conversation_id': conversation_id, **_LIVE}
        if before is not None:
            query['created_at'] = {'$lt': before}

        cursor = self.collection.find(query).sort(
            [('created_at', DESCENDING), ('_id', DESCENDING)]
        ).limit(limit + 1)
        docs = list(cursor)

        has_more = len(docs) > limit
        if has_more:
            docs = docs[:limit]
        docs.reverse()
        return [self.to_view(Message.from_doc(d)) for d in docs], has_more

    @storage_guard
    def latest(self, conversation_id: str) -> Optional[Message]:
        docs = list(self.collection.find({'conversation_id': conversation_id, **_LIVE}).sort(
            [('created_at', DESCENDING), ('_id', DESCENDING)]
        ).limit(1))
        return Message.from_doc(docs[0]) if docs else None

    @storage_guard
    def count_unread(self, conversation_id: str, user_id: str, since: Optional[datetime]) -> int:
        """Messages from others newer than ``since`` (the user's lastRead)."""
        query = {'conversation_id': conversation_id, 'sender_id': {'$ne': user_id}, **_LIVE}
        if since is not None:
            query['created_at'] = {'$gt': since}
        return self.collection.count_documents(query)
