from chat_server.exception.UnauthorizedError import UnauthorizedError
from chat_server.exception.MessagingError import (
    MessagingError, ValidationError, AuthorizationError, LastAdminError,
    NotFoundError, ConflictError, DecryptionError, StorageError
)

__all__ = [
    'UnauthorizedError',
    'MessagingError', 'ValidationError', 'AuthorizationError', 'LastAdminError',
    'NotFoundError', 'ConflictError', 'DecryptionError', 'StorageError',
]
