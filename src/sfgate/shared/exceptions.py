"""Consolidated exceptions for sfgate.

All custom exceptions are defined here to provide a single source of truth
for error handling across the access layer.
"""

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from sfgate.infrastructure.salesforce.models import RestError


class SalesforceError(Exception):
    """Base exception for sfgate errors"""

    pass


class AuthenticationError(SalesforceError):
    """Raised when OAuth login or token refresh fails"""

    def __init__(
        self,
        code: str | None,
        description: str,
        status_code: int | None = None,
    ) -> None:
        self.code = code
        self.description = description
        self.status_code = status_code
        if code:
            message = f"Login error code:[{code}] description:[{description}]"
        else:
            message = f"Login error status:[{status_code}] reason:[{description}]"
        super().__init__(message)


class RemoteApiError(SalesforceError):
    """Raised for a non-2xx API response, carrying the decoded error list"""

    def __init__(
        self,
        message: str | None = None,
        status_code: int | None = None,
        errors: "list[RestError] | None" = None,
    ) -> None:
        self.status_code = status_code
        self.errors = list(errors or [])
        if message is None:
            message = self._format_errors()
        super().__init__(message)

    @classmethod
    def from_errors(
        cls, errors: "list[RestError]", status_code: int
    ) -> "RemoteApiError":
        return cls(status_code=status_code, errors=errors)

    def _format_errors(self) -> str:
        parts = " ".join(str(error) for error in self.errors)
        return f"{{ errors: [{parts}] statusCode: {self.status_code} }}"

    @property
    def error_codes(self) -> list[str]:
        """Provider error codes in response order"""
        return [e.error_code for e in self.errors if e.error_code]

    @property
    def is_bad_request(self) -> bool:
        return self.status_code == 400

    @property
    def is_unauthorized(self) -> bool:
        return self.status_code in (401, 403)

    @property
    def is_not_found(self) -> bool:
        return self.status_code == 404


class TransportError(SalesforceError):
    """Raised on network, I/O or payload decoding failure"""

    pass


class RequestReplayError(TransportError):
    """Raised when a request cannot be replayed after session refresh"""

    pass


class ConfirmationTimeout(SalesforceError):
    """Raised when a subscribe or unsubscribe is not confirmed in time"""

    def __init__(self, message: str, channel: str, timeout: float) -> None:
        self.channel = channel
        self.timeout = timeout
        super().__init__(message)


class SubscriptionError(SalesforceError):
    """Raised when the server explicitly rejects a subscribe or unsubscribe"""

    def __init__(self, message: str, channel: str, reason: str) -> None:
        self.channel = channel
        self.reason = reason
        super().__init__(message)


class HandshakeError(SalesforceError):
    """Raised when the streaming client fails to connect"""

    pass


class ConfigurationError(SalesforceError):
    """Raised when configuration is invalid or missing"""

    pass


class OperationCancelled(SalesforceError):
    """Raised when a caller cancels a blocked operation"""

    pass
