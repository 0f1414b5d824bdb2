from pymongo import MongoClient, ASCENDING, DESCENDING
import logging

logger = logging.getLogger(__name__)

CONVERSATIONS = 'conversations'
MESSAGES = 'chat_messages'
USERS = 'users'


def create_client(cfg) -> MongoClient:
    """Build a client whose operations are bounded by MONGO_TIMEOUT_MS."""
    timeout = cfg.MONGO_TIMEOUT_MS
    logger.info("Connecting to MongoDB, DB: %s", cfg.CHAT_DB_NAME)
    return MongoClient(
        cfg.MONGO_URI,
        serverSelectionTimeoutMS=timeout,
        connectTimeoutMS=timeout,
        socketTimeoutMS=timeout,
    )


def get_db(cfg, client: MongoClient = None):
    client = client or create_client(cfg)
    return client[cfg.CHAT_DB_NAME]


def ensure_indexes(db):
    """Create indexes used by the messaging query paths (idempotent)."""
    conversations = db[CONVERSATIONS]
    messages = db[MESSAGES]
    # One direct conversation per unordered pair; groups omit direct_key
    conversations.create_index([('direct_key', ASCENDING)], unique=True, sparse=True,
                               name='conversations_direct_key')
    conversations.create_index([('participants', ASCENDING), ('last_activity', DESCENDING)],
                               name='conversations_participant_activity')
    messages.create_index([('conversation_id', ASCENDING), ('created_at', DESCENDING)],
                          name='messages_conversation_created_at')
    db[USERS].create_index([('user_key', ASCENDING)], unique=True, name='users_user_key')
    logger.info('Ensured messaging indexes')
