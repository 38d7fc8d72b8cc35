"""
Error taxonomy for the USAFFE backend.

Every error carries the HTTP status and a short machine-readable reason that the
exception handlers in main.py put on the wire.
"""

from typing import Optional


class USAFFEError(Exception):
    """Base exception for request-level failures."""
    status_code = 500
    reason = "error"
    default_message = "An error occurred"

    def __init__(self, message: Optional[str] = None, status_code: Optional[int] = None):
        self.message = message or self.default_message
        if status_code is not None:
            self.status_code = status_code
        super().__init__(self.message)


class NotFound(USAFFEError):
    """Raised when an identifier does not resolve."""
    status_code = 404
    reason = "not_found"
    default_message = "Not found"


class InvalidInput(USAFFEError):
    """Raised for missing or malformed request fields."""
    status_code = 400
    reason = "invalid_input"
    default_message = "Invalid input"


class NoChallenge(USAFFEError):
    status_code = 400
    reason = "no_challenge"
    default_message = "No verification started"


class Expired(USAFFEError):
    status_code = 400
    reason = "expired"
    default_message = "Expired"


class CodeMismatch(USAFFEError):
    status_code = 400
    reason = "code_mismatch"
    default_message = "Verification code not found in profile description"


class InvalidKey(USAFFEError):
    status_code = 401
    reason = "invalid_key"
    default_message = "Invalid key"


class AlreadyUsed(USAFFEError):
    status_code = 401
    reason = "already_used"
    default_message = "Key already used"


class Unauthorized(USAFFEError):
    status_code = 401
    reason = "unauthorized"
    default_message = "Admin token required"


class UpstreamUnavailable(USAFFEError):
    """Raised when the external profile service fails or times out."""
    status_code = 502
    reason = "upstream_unavailable"
    default_message = "Profile service unavailable"


class StorageError(USAFFEError):
    """Backing-store failure. Always surfaced as a generic 500."""
    status_code = 500
    reason = "storage_error"
    default_message = "Database error"
