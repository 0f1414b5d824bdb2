"""Root conftest: shared fixtures for the messaging tests."""

import os

# Select config.test.yaml before the config singleton is built
os.environ.pop("FLASK_ENV", None)
os.environ["APP_ENV"] = "testing"

import mongomock
import pytest

from config import config
from chat_server.messaging.conversation_registry import ConversationRegistry
from chat_server.messaging.message_store import MessageStore
from chat_server.messaging.service import MessagingFacade
from chat_server.repository.mongo_helper import ensure_indexes
from chat_server.repository.user_repository import UserDirectory
from chat_server.security.authentication import AuthSecurity
from chat_server.security.encryption import EncryptionCodec

TEST_KEY = "000102030405060708090a0b0c0d0e0f101112131415161718191a1b1c1d1e1f"
OTHER_KEY = "ff" * 32


class RecordingHub:
    """Stands in for DeliveryHub; records every published event."""

    def __init__(self):
        self.events = []
        self.online = set()

    def publish(self, user_id, event):
        self.events.append((user_id, event))
        return True

    def publish_many(self, user_ids, event, exclude=None):
        skip = set(exclude or [])
        count = 0
        for user_id in dict.fromkeys(user_ids):
            if user_id not in skip:
                self.publish(user_id, event)
                count += 1
        return count

    def online_users(self, user_ids):
        return [u for u in user_ids if u in self.online]

    def sent(self, name, user_id=None):
        return [
            event for uid, event in self.events
            if event.name == name and (user_id is None or uid == user_id)
        ]

    def recipients(self, name):
        return [uid for uid, event in self.events if event.name == name]


# -- Storage and domain fixtures -----------------------------------------------

@pytest.fixture
def db():
    database = mongomock.MongoClient()["chat_db_test"]
    ensure_indexes(database)
    return database


@pytest.fixture
def codec():
    return EncryptionCodec(TEST_KEY)


@pytest.fixture
def store(db, codec):
    return MessageStore(db, codec)


@pytest.fixture
def registry(db, store):
    return ConversationRegistry(db, store, UserDirectory(db), max_group_participants=10)


@pytest.fixture
def hub():
    return RecordingHub()


@pytest.fixture
def facade(store, registry, hub):
    return MessagingFacade(store, registry, hub, max_message_length=200)


# -- Application fixtures ------------------------------------------------------

@pytest.fixture
def app(db, codec):
    from server import create_app

    application = create_app(config, db=db, codec=codec)
    application.config["TESTING"] = True
    return application


@pytest.fixture
def socketio(app):
    return app.extensions["socketio"]


@pytest.fixture
def client(app):
    return app.test_client()


def token_for(user_id):
    return AuthSecurity.encode_token({"user_key": user_id})


@pytest.fixture
def auth_headers(app):
    def _headers(user_id, **extra):
        return {"Authorization": f"Bearer {token_for(user_id)}", **extra}
    return _headers


@pytest.fixture
def connect(app, socketio):
    """Open an authenticated Socket.IO test connection for a user."""
    clients = []

    def _connect(user_id):
        sio = socketio.test_client(app, auth={"token": token_for(user_id)})
        clients.append(sio)
        return sio

    yield _connect
    for sio in clients:
        if sio.is_connected():
            sio.disconnect()
