"""Error taxonomy shared by the fan-out core and its HTTP surface."""


class ChatError(Exception):
    """Base exception for chat core errors."""


class ForbiddenError(ChatError):
    """Raised when a user acts on a channel they cannot read."""


class NotFoundError(ChatError):
    """Raised when a channel, message, connection or thread does not exist."""


class ConflictError(ChatError):
    """Raised when a write collides with existing state.

    The store raises this for integrity violations, e.g. a second message
    claiming an already used (channel_id, sequence) pair.
    """


class TransientStoreError(ChatError):
    """Raised when the store is unavailable.

    The operation must not be assumed to have succeeded; callers retry with
    backoff.
    """
