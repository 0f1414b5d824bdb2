"""Delivery hub for live connections.

Maps authenticated Socket.IO connections to users and fans events out to
every live connection of a user. Each connection joins one private room,
``user:<id>``; conversation events are published to each participant's
room individually, never to a shared conversation room.

Delivery is best-effort and at-most-once. The database is the source of
truth and clients that missed events reconcile by fetching a page.
"""
import logging
import threading
from typing import Dict, Any, Iterable, List, Optional

from flask import Flask, request
from flask_socketio import SocketIO, emit, join_room

from chat_server.exception import AuthorizationError, UnauthorizedError
from chat_server.messaging.events import ChatEvent
from chat_server.security.authentication import AuthSecurity, extract_bearer_token
from chat_server.utils.time_utils import isoformat, utc_now

logger = logging.getLogger(__name__)


class DeliveryHub:
    """Connection registry and event fan-out."""

    def __init__(self, socketio: SocketIO = None, registry=None):
        self.socketio = socketio
        self.registry = registry
        self.connected_users: Dict[str, Dict[str, Any]] = {}
        self.user_sockets: Dict[str, List[str]] = {}
        self._lock = threading.Lock()
        self._initialized = False

    @staticmethod
    def room_for(user_id: str) -> str:
        return f"user:{user_id}"

    def init_app(self, app: Flask, socketio: SocketIO):
        """Bind to the Socket.IO server and register connection handlers."""
        logger.debug(f"WS_HUB: init app={app.name}, mode={getattr(socketio, 'async_mode', '?')}")
        self.socketio = socketio
        self.app = app
        self._register_handlers()
        self._initialized = True

    # =========================================================================
    # Connection tracking
    # =========================================================================

    def _register(self, socket_id: str, user_id: str, info: Dict[str, Any]) -> bool:
        """Track a connection. Returns True for the user's first connection."""
        with self._lock:
            self.connected_users[socket_id] = {'user_key': user_id, **info}
            sockets = self.user_sockets.setdefault(user_id, [])
            sockets.append(socket_id)
            return len(sockets) == 1

    def _unregister(self, socket_id: str) -> Optional[str]:
        """Forget a connection. Returns the user id if they went offline."""
        with self._lock:
            info = self.connected_users.pop(socket_id, None)
            if not info:
                return None
            user_id = info['user_key']
            sockets = [s for s in self.user_sockets.get(user_id, []) if s != socket_id]
            if sockets:
                self.user_sockets[user_id] = sockets
                return None
            self.user_sockets.pop(user_id, None)
            return user_id

    def user_for_sid(self, socket_id: str) -> Optional[str]:
        with self._lock:
            info = self.connected_users.get(socket_id)
        return info['user_key'] if info else None

    def connection_info(self, socket_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            info = self.connected_users.get(socket_id)
            return dict(info) if info else None

    def is_online(self, user_id: str) -> bool:
        with self._lock:
            return bool(self.user_sockets.get(user_id))

    def online_users(self, user_ids: Iterable[str]) -> List[str]:
        with self._lock:
            return [u for u in user_ids if self.user_sockets.get(u)]

    # =========================================================================
    # Socket.IO handlers
    # =========================================================================

    def _authenticate(self, token: str) -> Optional[Dict]:
        """Verify a connection token the same way HTTP requests are verified."""
        if not token:
            return None
        try:
            return AuthSecurity.decode_token(token)
        except UnauthorizedError as e:
            logger.debug(f"WS auth error: {e}")
            return None

    def _register_handlers(self):

        @self.socketio.on_error_default
        def default_error_handler(e):
            logger.error(f"WS error: {e}")

        @self.socketio.on('connect')
        def handle_connect(auth=None):
            socket_id = getattr(request, 'sid', None)

            token = None
            if auth and isinstance(auth, dict):
                token = auth.get('token')
            if not token:
                token = extract_bearer_token(request.headers.get('Authorization', ''))
            if not token:
                token = request.args.get('token', '')

            # Refuse before joining any room
            payload = self._authenticate(token)
            if not payload:
                logger.warning(f"WS auth failed: sid={socket_id}, ip={request.remote_addr}")
                return False

            user_id = payload['user_key']
            first = self._register(socket_id, user_id, {
                'connected_at': isoformat(utc_now()),
                'ip_address': request.remote_addr,
                'user_agent': request.headers.get('User-Agent'),
            })
            join_room(self.room_for(user_id))
            logger.info(f"WS connected: user={user_id}, sid={socket_id}, first={first}")

            emit('connected', {'message': 'Connected', 'userId': user_id, 'socketId': socket_id})
            return True

        @self.socketio.on('disconnect')
        def handle_disconnect(*args):
            socket_id = request.sid
            offline = self._unregister(socket_id)
            if offline:
                logger.debug(f"WS offline: user={offline}")

        @self.socketio.on('ping')
        def handle_ping(data=None):
            emit('pong', {'timestamp': isoformat(utc_now())})

    # =========================================================================
    # Publishing
    # =========================================================================

    def publish(self, user_id: str, event: ChatEvent) -> bool:
        """Push ``event`` to every live connection of ``user_id``.

        Never raises; a failed push is logged and reported as False.
        """
        if self.socketio is None:
            logger.warning(f"WS_HUB: not initialized, dropping {event.name} for {user_id}")
            return False
        try:
            self.socketio.emit(event.name, event.payload, to=self.room_for(user_id))
        except Exception as e:
            logger.warning(f"WS_HUB: push of {event.name} to {user_id} failed: {e}")
            return False
        return True

    def publish_many(self, user_ids: Iterable[str], event: ChatEvent,
                     exclude: Optional[Iterable[str]] = None) -> int:
        skip = set(exclude or [])
        delivered = 0
        for user_id in dict.fromkeys(user_ids):
            if user_id in skip:
                continue
            if self.publish(user_id, event):
                delivered += 1
        return delivered

    def relay_typing(self, user_id: str, is_typing: bool, conversation_id: Optional[str] = None,
                     recipient_id: Optional[str] = None) -> int:
        """Forward a typing indicator to the other participants. Not persisted."""
        if conversation_id:
            conv = self.registry.require_participant(conversation_id, user_id)
        else:
            conv = self.registry.find_direct(user_id, recipient_id)
            if conv is None:
                raise AuthorizationError('No conversation with this user')
        event = ChatEvent.user_typing(user_id, is_typing, conv.conversation_id)
        return self.publish_many(conv.other_participants(user_id), event)
