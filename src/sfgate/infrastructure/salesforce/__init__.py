"""Salesforce infrastructure module

SessionManager - OAuth2 password-flow login, refresh and revoke
ResilientApiClient - HTTP requests with session-expiry retry
RestClient - REST API operations on top of ResilientApiClient
TopicProvisioner - PushTopic create/update
StreamingSubscriptionEngine - Streaming API subscriptions
SalesforceClientFacade - Single entry point wiring the above together
"""

from .facade import CallbackConsumer, SalesforceClientFacade
from .protocols import ClientState, PushClient, PushConsumer
from .requests import ResilientApiClient, RestClient
from .session import Credentials, SessionManager
from .streaming import (
    BayeuxClient,
    EngineState,
    StreamingSubscriptionEngine,
    TopicProvisioner,
)
from .transport import build_http_client

__all__ = [
    "BayeuxClient",
    "CallbackConsumer",
    "ClientState",
    "Credentials",
    "EngineState",
    "PushClient",
    "PushConsumer",
    "ResilientApiClient",
    "RestClient",
    "SalesforceClientFacade",
    "SessionManager",
    "StreamingSubscriptionEngine",
    "TopicProvisioner",
    "build_http_client",
]
