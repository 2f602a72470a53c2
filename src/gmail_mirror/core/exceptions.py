"""Custom exceptions for Gmail Mirror.

Each error carries a stable ``code`` and a ``retryable`` hint so the client
surface can tell "retry later" apart from "reconnect account" and
"start a full sync".
"""


class GmailMirrorError(Exception):
    """Base exception for all Gmail Mirror errors."""

    code = "error"
    retryable = False


class AlreadyRunningError(GmailMirrorError):
    """A sync job is already active for the account."""

    code = "already_running"
    retryable = True


class NotFoundError(GmailMirrorError):
    """No such account or job."""

    code = "not_found"


class AuthExpiredError(GmailMirrorError):
    """Remote token is invalid; the account must be reconnected."""

    code = "auth_expired"


class RateLimitError(GmailMirrorError):
    """Gmail API rate limit exceeded and retries are exhausted."""

    code = "rate_limited"
    retryable = True


class RemoteUnavailableError(GmailMirrorError):
    """Network failure or 5xx from the Gmail API."""

    code = "remote_unavailable"
    retryable = True


class InvalidCursorError(GmailMirrorError):
    """The remote rejected a page token or history id as stale or invalid."""

    code = "invalid_cursor"


class InvalidRequestError(GmailMirrorError):
    """Caller supplied arguments that cannot be acted on."""

    code = "invalid_request"


class ParseError(GmailMirrorError):
    """Failed to normalize a raw Gmail message."""

    code = "parse_error"
