"""Error taxonomy for the messaging core.

Every error carries a stable ``code`` and an HTTP-equivalent ``status`` so
the HTTP and socket layers can report it without inspecting the message.
The message passed to the constructor is the public one; internal causes
are logged where they happen and never attached here.
"""


class MessagingError(Exception):
    """Base class for messaging failures."""
    code = 'MESSAGING_ERROR'
    status = 500
    retryable = False
    default_message = 'Messaging error'

    def __init__(self, message: str = None):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message

    def to_dict(self):
        return {'code': self.code, 'message': self.message}


class ValidationError(MessagingError):
    """Malformed input."""
    code = 'INVALID_DATA'
    status = 400
    default_message = 'Invalid request data'


class AuthorizationError(MessagingError):
    """Actor is not a participant, or not an admin where one is required."""
    code = 'FORBIDDEN'
    status = 403
    default_message = 'Not authorized for this conversation'


class LastAdminError(AuthorizationError):
    """Operation would leave a group with members but no admin."""
    code = 'LAST_ADMIN'
    default_message = ('You are the only admin. Please assign another admin '
                       'before leaving or delete the group.')


class NotFoundError(MessagingError):
    """Conversation or message absent, or not visible to the actor."""
    code = 'NOT_FOUND'
    status = 404
    default_message = 'Not found'


class ConflictError(MessagingError):
    """Concurrent modification detected; reload and retry."""
    code = 'CONFLICT'
    status = 409
    retryable = True
    default_message = 'Conversation was modified concurrently, reload and retry'


class DecryptionError(MessagingError):
    """Stored content cannot be recovered."""
    code = 'DECRYPTION_FAILED'
    status = 500
    default_message = 'Message content could not be decrypted'


class StorageError(MessagingError):
    """Durable store failure or timeout."""
    code = 'STORAGE_ERROR'
    status = 503
    default_message = 'Storage temporarily unavailable'
