"""Shared definitions used across sfgate modules."""

from .exceptions import (
    AuthenticationError,
    ConfigurationError,
    ConfirmationTimeout,
    HandshakeError,
    OperationCancelled,
    RemoteApiError,
    RequestReplayError,
    SalesforceError,
    SubscriptionError,
    TransportError,
)

__all__ = [
    "SalesforceError",
    "AuthenticationError",
    "RemoteApiError",
    "TransportError",
    "RequestReplayError",
    "ConfirmationTimeout",
    "SubscriptionError",
    "HandshakeError",
    "ConfigurationError",
    "OperationCancelled",
]
