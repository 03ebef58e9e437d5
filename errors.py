"""
Error taxonomy for the commerce API.

Every error carries the HTTP status code it is reported with and a message
that is safe to show to the caller. Handlers raise these; the exception
handlers in main.py turn them into `{"error": message}` responses.
"""
from typing import Optional


class CommerceError(Exception):
    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class Unauthorized(CommerceError):
    """No valid identity where one is required."""
    status_code = 401
    default_message = "Unauthorized"


class Forbidden(CommerceError):
    """Valid identity, insufficient role or ownership."""
    status_code = 403
    default_message = "Forbidden"


class NotFound(CommerceError):
    status_code = 404
    default_message = "Not found"


class InvalidInput(CommerceError):
    status_code = 400
    default_message = "Invalid input"


class Conflict(CommerceError):
    """Uniqueness or business-rule violation (duplicate slug, blocked delete...)."""
    status_code = 400
    default_message = "Conflict"


class Unexpected(CommerceError):
    """Storage or infrastructure failure. Details go to the log, not the caller."""
    status_code = 500
    default_message = "Internal server error"
