import argparse
import logging

from flask import Flask
from flask_cors import CORS
from flask_socketio import SocketIO

from config import config
from chat_server.messaging.conversation_registry import ConversationRegistry
from chat_server.messaging.message_store import MessageStore
from chat_server.messaging.service import MessagingFacade
from chat_server.repository.mongo_helper import ensure_indexes, get_db
from chat_server.repository.user_repository import UserDirectory
from chat_server.routes.chat import messages_bp
from chat_server.security.authentication import AuthSecurity
from chat_server.security.encryption import EncryptionCodec
from chat_server.websocket.handlers.chat_handler import init_chat_handler
from chat_server.websocket.hub import DeliveryHub

logger = logging.getLogger(__name__)


def configure_logging(cfg=config):
    """Apply LOG_LEVEL / LOG_FORMAT from configuration."""
    logging.basicConfig(level=cfg.LOG_LEVEL, format=cfg.LOG_FORMAT, datefmt=cfg.LOG_DATE_FORMAT)


def configure_auth(cfg=config):
    """Configure token verification.

    JWT_SECRET is required in production (validate_required fails fast);
    elsewhere a missing secret only disables authentication.
    """
    cfg.validate_required()
    if not cfg.JWT_SECRET:
        logger.warning('JWT_SECRET is not set, every authenticated request will be rejected')
    AuthSecurity.configure(secret_key=cfg.JWT_SECRET, algorithm=cfg.JWT_ALGORITHM)


def create_app(cfg=config, db=None, codec: EncryptionCodec = None) -> Flask:
    """Application factory used by server.py and tests.

    Wires the message store, conversation registry, delivery hub and
    facade, then registers the HTTP blueprint and socket handlers.
    The Socket.IO server is available as ``app.extensions['socketio']``.
    """
    configure_logging(cfg)
    configure_auth(cfg)

    app = Flask(__name__)
    CORS(app, origins=cfg.CORS_ORIGINS_LIST)

    if db is None:
        db = get_db(cfg)
    ensure_indexes(db)

    codec = codec or EncryptionCodec.from_config(cfg)
    store = MessageStore(db, codec)
    registry = ConversationRegistry(db, store, UserDirectory(db), cfg.MAX_GROUP_PARTICIPANTS)

    cors_origins = '*' if cfg.CORS_ORIGINS == '*' else cfg.CORS_ORIGINS_LIST
    socketio = SocketIO(app, cors_allowed_origins=cors_origins, async_mode=cfg.SOCKETIO_ASYNC_MODE)
    hub = DeliveryHub(socketio, registry)
    hub.init_app(app, socketio)

    facade = MessagingFacade.from_config(store, registry, hub, cfg)
    init_chat_handler(socketio, hub, facade)
    app.extensions['messaging'] = facade

    app.register_blueprint(messages_bp)

    @app.route('/health')
    def health():
        return {'status': 'ok', 'name': cfg.APP_NAME, 'version': cfg.APP_VERSION}

    return app


def parse_args():
    """Parse simple CLI arguments for running the server."""
    parser = argparse.ArgumentParser(description='Run the encrypted chat backbone')
    parser.add_argument('--port', type=int, default=config.PORT, help='TCP port to bind (default: PORT config)')
    parser.add_argument('--host', default='0.0.0.0', help='Interface to bind (default: 0.0.0.0)')
    return parser.parse_args()


if __name__ == "__main__":
    args = parse_args()
    app = create_app()
    logger.info('Starting server with Socket.IO on port %s', args.port)
    app.extensions['socketio'].run(app, host=args.host, port=args.port, debug=config.DEBUG,
                                   allow_unsafe_werkzeug=config.DEBUG)
