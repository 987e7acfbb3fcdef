class ChatError(Exception):
    """Base class for errors surfaced to callers of the chat core."""

    code = "error"


class NotFoundError(ChatError, LookupError):

    code = "not_found"


class InvalidArgumentError(ChatError, ValueError):

    code = "invalid_argument"


class ConflictError(ChatError):

    code = "conflict"
