"""
Error taxonomy for invite-relay.

Only ValidationError and AuthorizationError ever reach a synchronous caller.
Everything else is converted by the worker into a state transition or an
explicit delayed retry, or logged and acknowledged by the webhook handler.
"""

from typing import Optional


class RelayError(Exception):
    """Base class for all invite-relay errors."""


class ValidationError(RelayError):
    """Bad caller input. Surfaced as a client error, never retried."""


class AuthorizationError(RelayError):
    """Missing or wrong shared secret. Never retried."""


class RateLimitedError(RelayError):
    """The provider is throttling us; `retry_after` is its wait hint in seconds, if any."""

    def __init__(self, message: str, retry_after: Optional[int] = None):
        super().__init__(message)
        self.retry_after = retry_after


class ProviderError(RelayError):
    """Hard (non rate-limit) failure reported by the artifact provider."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class TransientError(RelayError):
    """Network or store failure that is expected to clear on retry."""


class LinkIndexConflict(RelayError):
    """A digest is already owned by a different request."""

    def __init__(self, digest: str, existing_request_id: str, request_id: str):
        super().__init__(
            f"Link digest {digest} already owned by request {existing_request_id}, "
            f"refusing to re-point it to {request_id}"
        )
        self.digest = digest
        self.existing_request_id = existing_request_id
        self.request_id = request_id
