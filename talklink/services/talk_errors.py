from dataclasses import dataclass
from typing import Optional


class TalkServiceError(Exception):
    """Base error of the Talk client.

    `status_code` is 0 when no HTTP response was received at all.
    """

    is_authentication_error = False

    def __init__(self, message, status_code=0, response_text=None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.response_text = response_text


class TransportError(TalkServiceError):
    """Network, DNS or TLS failure: the server never answered."""


class AuthenticationError(TalkServiceError):
    """HTTP 401/403, or credentials missing from the settings."""

    is_authentication_error = True


class IncompleteConfigurationError(AuthenticationError):
    pass


class ServerRejectedError(TalkServiceError):
    """Any other non-success status, carrying the parsed server message."""


class ProtocolViolationError(TalkServiceError):
    """Success status but a required field (e.g. the room token) is missing."""


@dataclass(frozen=True)
class CallOutcome:
    """Result of a best-effort sub-step. Call sites discard it on purpose."""
    ok: bool
    status_code: int = 0
    error: Optional[TalkServiceError] = None


def ignore_result(outcome):
    """Marks a best-effort call whose outcome must not influence the caller."""
    return None
