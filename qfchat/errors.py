# /qfchat/errors.py
# Handled errors carry a client-safe message and become {"success": false, "message": ...}.
# InternalError is reported with a generic message.

INTERNAL_ERROR_MESSAGE = "Internal server error"


class QfChatError(Exception):
    message = "Request failed"

    def __init__(self, message=None):
        if message is not None:
            self.message = message
        super().__init__(self.message)


class DuplicateUsernameError(QfChatError):
    message = "Username already exists"


class InvalidCredentialsError(QfChatError):
    message = "Invalid credentials"


class NotFoundError(QfChatError):
    message = "Not found"


class InvalidEventError(QfChatError):
    """Realtime event that is not JSON, has an unknown name or a bad payload."""

    message = "Invalid event"


class InternalError(QfChatError):
    message = INTERNAL_ERROR_MESSAGE


class QfNumberExhaustedError(InternalError):
    """Every QfChat number in the configured range is already assigned."""
