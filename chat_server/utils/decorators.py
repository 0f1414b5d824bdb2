"""Decorators for common patterns like error handling and authentication.

This module provides reusable decorators to reduce boilerplate in route
handlers and storage code.
"""
import functools
import logging
from typing import Callable

from flask import request
from pymongo.errors import PyMongoError

from chat_server.exception import UnauthorizedError, MessagingError, StorageError
from chat_server.utils.helpers import respond_error
from chat_server.security.authentication import get_auth_payload

logger = logging.getLogger(__name__)


def storage_guard(func: Callable) -> Callable:
    """Translate driver failures (including timeouts) into StorageError.

    The driver's message is logged, never passed to the caller.
    """
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except PyMongoError as e:
            logger.exception("Storage failure in %s: %s", func.__qualname__, e)
            raise StorageError() from e
    return wrapper


def handle_errors(func: Callable) -> Callable:
    """Decorator to handle common exceptions in route handlers.

    Catches:
    - UnauthorizedError -> 401
    - MessagingError subclasses -> their own status and code
    - Other exceptions -> 500

    Usage:
        @bp.route('/example')
        @handle_errors
        def example_route():
            ...
    """
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except UnauthorizedError as e:
            logger.warning("Unauthorized: %s", e)
            return respond_error(str(e), status=401, code='UNAUTHORIZED')
        except MessagingError as e:
            if e.status >= 500:
                logger.error("%s in %s: %s", type(e).__name__, func.__name__, e.message)
            else:
                logger.info("%s in %s: %s", type(e).__name__, func.__name__, e.message)
            return respond_error(e.message, status=e.status, code=e.code)
        except Exception:
            logger.exception("Unexpected error in %s", func.__name__)
            return respond_error('Server error', status=500)
    return wrapper


def require_auth(func: Callable) -> Callable:
    """Decorator to require authentication and inject payload into handler.

    The decorated function receives `auth_payload` as a keyword argument.
    """
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        payload = get_auth_payload(request)
        kwargs['auth_payload'] = payload
        return func(*args, **kwargs)
    return wrapper

