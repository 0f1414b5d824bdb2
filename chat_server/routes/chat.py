"""Messaging REST API routes.

The socket connection carries live delivery; these endpoints cover the
same operations for clients that are not connected, plus history paging.

Endpoints:
- POST   /api/messages/send                              send a message
- GET    /api/messages/conversations                     list conversations
- POST   /api/messages/conversations                     open a direct conversation
- GET    /api/messages/conversations/{id}                conversation details
- DELETE /api/messages/conversations/{id}                delete a conversation
- GET    /api/messages/conversations/{id}/messages       history (before, limit)
- POST   /api/messages/conversations/{id}/read           mark conversation read
- PUT    /api/messages/conversations/{id}/preferences    mute / pin / archive
- POST   /api/messages/{message_id}/read                 mark a message read
- DELETE /api/messages/{message_id}                      delete own message
- POST   /api/messages/groups                            create a group
- PATCH  /api/messages/groups/{id}                       rename / describe / admins
- DELETE /api/messages/groups/{id}                       delete a group
- POST   /api/messages/groups/{id}/participants          add participants
- DELETE /api/messages/groups/{id}/participants/{user}   remove a participant
- POST   /api/messages/groups/{id}/leave                 leave a group
- GET    /api/messages/presence?users=a,b                online users

Mutations of groups accept the expected conversation version through the
If-Match header or a ``version`` body field; a stale version yields 409.
"""
import logging

from flask import Blueprint, current_app, request

from chat_server.exception import ValidationError
from chat_server.messaging.models import MessageMetadata
from chat_server.messaging.service import MessagingFacade
from chat_server.utils.decorators import handle_errors, require_auth
from chat_server.utils.helpers import parse_expected_version, respond_success
from chat_server.utils.time_utils import isoformat

logger = logging.getLogger(__name__)

messages_bp = Blueprint('messages', __name__, url_prefix='/api/messages')


# =============================================================================
# Helper Functions
# =============================================================================

def _facade() -> MessagingFacade:
    return current_app.extensions['messaging']


def _body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError('Request body must be a JSON object')
    return data


def _expected_version(data: dict):
    return parse_expected_version(request.headers.get('If-Match') or data.get('version'))


def _user_list(data: dict, key: str):
    users = data.get(key)
    if users is None:
        return None
    if not isinstance(users, list):
        raise ValidationError(f'{key} must be a list')
    return users


def _flag(value):
    if value is None or isinstance(value, bool):
        return value
    raise ValidationError('Preference flags must be booleans')


def _request_metadata() -> MessageMetadata:
    return MessageMetadata(ip_address=request.remote_addr, user_agent=request.headers.get('User-Agent'))


# =============================================================================
# Messages
# =============================================================================

@messages_bp.route('/send', methods=['POST'])
@handle_errors
@require_auth
def send_message(auth_payload):
    """Send a message.

    Body: {conversationId | recipientId, content}
    """
    data = _body()
    view = _facade().send(
        auth_payload['user_key'],
        data.get('content'),
        conversation_id=data.get('conversationId'),
        recipient_id=data.get('recipientId'),
        metadata=_request_metadata(),
    )
    return respond_success({'message': view.to_dict()}, status=201)


@messages_bp.route('/<message_id>/read', methods=['POST'])
@handle_errors
@require_auth
def mark_message_read(message_id, auth_payload):
    view = _facade().mark_read(message_id, auth_payload['user_key'])
    return respond_success({'message': view.to_dict()})


@messages_bp.route('/<message_id>', methods=['DELETE'])
@handle_errors
@require_auth
def delete_message(message_id, auth_payload):
    _facade().delete_message(message_id, auth_payload['user_key'])
    return respond_success({'messageId': message_id, 'deleted': True})


# =============================================================================
# Conversations
# =============================================================================

@messages_bp.route('/conversations', methods=['GET'])
@handle_errors
@require_auth
def list_conversations(auth_payload):
    """List the caller's conversations, pinned first.

    Query Params:
        include_archived: bool - Include archived conversations
    """
    include_archived = request.args.get('include_archived', 'false').lower() == 'true'
    views = _facade().list_conversations(auth_payload['user_key'], include_archived=include_archived)
    conversations = [v.to_dict() for v in views]
    return respond_success({'conversations': conversations, 'count': len(conversations)})


@messages_bp.route('/conversations', methods=['POST'])
@handle_errors
@require_auth
def start_conversation(auth_payload):
    """Open (or return) the direct conversation with ``recipientId``."""
    data = _body()
    view, created = _facade().start_direct(auth_payload['user_key'], data.get('recipientId'))
    return respond_success({'conversation': view.to_dict(), 'created': created},
                           status=201 if created else 200)


@messages_bp.route('/conversations/<conversation_id>', methods=['GET'])
@handle_errors
@require_auth
def get_conversation(conversation_id, auth_payload):
    view = _facade().get_conversation(conversation_id, auth_payload['user_key'])
    return respond_success({'conversation': view.to_dict()})


@messages_bp.route('/conversations/<conversation_id>', methods=['DELETE'])
@handle_errors
@require_auth
def delete_conversation(conversation_id, auth_payload):
    data = _body()
    _facade().delete_conversation(conversation_id, auth_payload['user_key'], _expected_version(data))
    return respond_success({'conversationId': conversation_id, 'deleted': True})


@messages_bp.route('/conversations/<conversation_id>/messages', methods=['GET'])
@handle_errors
@require_auth
def get_messages(conversation_id, auth_payload):
    """Get messages in a conversation, oldest first.

    Query Params:
        limit: int - Max results (default: 50, max: 100)
        before: ISO-8601 timestamp - only messages strictly older than this

    Response:
        {
            "messages": [...],
            "count": 50,
            "has_more": true,
            "next_cursor": "2026-01-17T10:00:00.000Z"
        }
    """
    views, has_more = _facade().page(
        conversation_id,
        auth_payload['user_key'],
        before=request.args.get('before'),
        limit=request.args.get('limit'),
    )
    messages = [v.to_dict() for v in views]
    next_cursor = isoformat(views[0].created_at) if has_more and views else None
    return respond_success({
        'messages': messages,
        'count': len(messages),
        'has_more': has_more,
        'next_cursor': next_cursor,
    })


@messages_bp.route('/conversations/<conversation_id>/read', methods=['POST'])
@handle_errors
@require_auth
def mark_conversation_read(conversation_id, auth_payload):
    view = _facade().mark_conversation_read(conversation_id, auth_payload['user_key'])
    return respond_success({'conversation': view.to_dict()})


@messages_bp.route('/conversations/<conversation_id>/preferences', methods=['PUT'])
@handle_errors
@require_auth
def set_preferences(conversation_id, auth_payload):
    """Body: {muted?, pinned?, archived?}"""
    data = _body()
    view = _facade().set_preference(
        conversation_id,
        auth_payload['user_key'],
        muted=_flag(data.get('muted')),
        pinned=_flag(data.get('pinned')),
        archived=_flag(data.get('archived')),
    )
    return respond_success({'conversation': view.to_dict()})


# =============================================================================
# Groups
# =============================================================================

@messages_bp.route('/groups', methods=['POST'])
@handle_errors
@require_auth
def create_group(auth_payload):
    """Create a group; the caller becomes its only admin.

    Body: {name, participants, description?, avatar?, tags?, settings?}
    """
    data = _body()
    options = {k: data[k] for k in ('description', 'avatar', 'tags', 'settings') if k in data}
    view = _facade().create_group(
        auth_payload['user_key'],
        data.get('name'),
        _user_list(data, 'participants') or [],
        options,
    )
    return respond_success({'conversation': view.to_dict()}, status=201)


@messages_bp.route('/groups/<conversation_id>', methods=['PATCH'])
@handle_errors
@require_auth
def update_group(conversation_id, auth_payload):
    """Body: {name?, description?, avatar?, addAdmins?, removeAdmins?, version?}"""
    data = _body()
    view = _facade().update_group(
        conversation_id,
        auth_payload['user_key'],
        name=data.get('name'),
        description=data.get('description'),
        avatar=data.get('avatar'),
        add_admins=_user_list(data, 'addAdmins'),
        remove_admins=_user_list(data, 'removeAdmins'),
        expected_version=_expected_version(data),
    )
    return respond_success({'conversation': view.to_dict()})


@messages_bp.route('/groups/<conversation_id>', methods=['DELETE'])
@handle_errors
@require_auth
def delete_group(conversation_id, auth_payload):
    data = _body()
    _facade().delete_conversation(conversation_id, auth_payload['user_key'], _expected_version(data))
    return respond_success({'conversationId': conversation_id, 'deleted': True})


@messages_bp.route('/groups/<conversation_id>/participants', methods=['POST'])
@handle_errors
@require_auth
def add_participants(conversation_id, auth_payload):
    """Body: {participants: [...], version?}"""
    data = _body()
    view = _facade().add_participants(
        conversation_id,
        auth_payload['user_key'],
        _user_list(data, 'participants'),
        expected_version=_expected_version(data),
    )
    return respond_success({'conversation': view.to_dict()})


@messages_bp.route('/groups/<conversation_id>/participants/<user_id>', methods=['DELETE'])
@handle_errors
@require_auth
def remove_participant(conversation_id, user_id, auth_payload):
    data = _body()
    view = _facade().remove_participant(
        conversation_id,
        auth_payload['user_key'],
        user_id,
        expected_version=_expected_version(data),
    )
    return respond_success({'conversation': view.to_dict() if view else None})


@messages_bp.route('/groups/<conversation_id>/leave', methods=['POST'])
@handle_errors
@require_auth
def leave_group(conversation_id, auth_payload):
    data = _body()
    _facade().leave(conversation_id, auth_payload['user_key'], expected_version=_expected_version(data))
    return respond_success({'conversationId': conversation_id, 'left': True})


# =============================================================================
# Presence
# =============================================================================

@messages_bp.route('/presence', methods=['GET'])
@handle_errors
@require_auth
def get_presence(auth_payload):
    users = [u.strip() for u in request.args.get('users', '').split(',') if u.strip()]
    online = _facade().hub.online_users(users)
    return respond_success({'online': online})
