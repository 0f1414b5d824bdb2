from flask import jsonify

from chat_server.exception import ValidationError


def respond_error(message_or_dict, status=400, code=None):
    """Return a standardized error response."""
    if isinstance(message_or_dict, dict):
        body = {'success': False, 'errors': message_or_dict}
    else:
        body = {'success': False, 'error': message_or_dict}
    if code:
        body['code'] = code
    return jsonify(body), status


def respond_success(payload=None, status=200):
    if payload is None:
        payload = {}
    body = {'success': True}
    if isinstance(payload, dict):
        body.update(payload)
    else:
        body['data'] = payload
    return jsonify(body), status


def parse_limit(value, default_limit=50, max_limit=100):
    """Parse a page size, raising ValidationError when out of range."""
    if value is None or value == '':
        return default_limit
    try:
        limit = int(value)
    except (TypeError, ValueError):
        raise ValidationError('limit must be an integer')
    if limit < 1 or limit > max_limit:
        raise ValidationError(f'limit must be between 1 and {max_limit}')
    return limit


def parse_expected_version(value):
    """Parse an optimistic-concurrency version from a header or body field."""
    if value is None or value == '':
        return None
    try:
        return int(str(value).strip('"'))
    except (TypeError, ValueError):
        raise ValidationError('version must be an integer')
