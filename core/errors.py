"""
core/errors.py -- Error taxonomy for the download path.

Every failure a download can hit maps to exactly one of these classes, and
each class maps to one terminal DownloadState, one machine-readable code and
one generic public message. The message is all a caller ever sees; the
reason is internal and goes to the audit log.

Raised by resources/resolver.py and gateway/download.py, caught only at the
gateway boundary.
"""

from core.models import DownloadState


class DownloadError(Exception):
    """Base class. Subclasses fix state, code, status_code and public_message."""

    state: DownloadState = DownloadState.server_error
    code: str = "internal_error"
    status_code: int = 500
    public_message: str = "An unexpected error occurred."

    def __init__(self, reason: str = "") -> None:
        super().__init__(reason or self.public_message)
        self.reason = reason or self.code


class InvalidRequest(DownloadError):
    """Missing or malformed request parameters."""

    state = DownloadState.invalid_request
    code = "invalid_request"
    status_code = 400
    public_message = "Invalid request."


class InvalidToken(DownloadError):
    """Token unparsable, wrongly signed, bound to another resource, or expired."""

    state = DownloadState.denied
    code = "access_denied"
    status_code = 403
    public_message = "Access denied."


class AccessDenied(DownloadError):
    """An authorization rule refused the actor."""

    state = DownloadState.denied
    code = "access_denied"
    status_code = 403
    public_message = "Access denied."


class ResourceNotFound(DownloadError):
    """No metadata record, or the file is missing on disk."""

    state = DownloadState.not_found
    code = "not_found"
    status_code = 404
    public_message = "File not found."


class PathViolation(DownloadError):
    """The stored path resolves outside the resource root. A security event."""

    state = DownloadState.path_violation
    code = "access_denied"
    status_code = 403
    public_message = "Access denied."


class ServerError(DownloadError):
    """A collaborator failed unexpectedly."""
