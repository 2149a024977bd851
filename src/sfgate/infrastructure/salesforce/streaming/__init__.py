"""Salesforce Streaming API support

BayeuxClient - Long-polling Bayeux 1.0 client
TopicProvisioner - PushTopic create/update before subscribe
StreamingSubscriptionEngine - Confirmed subscriptions and message dispatch
"""

from .bayeux import BayeuxClient
from .subscriptions import (
    ChannelOutcomeState,
    EngineState,
    StreamingSubscriptionEngine,
)
from .topics import TopicProvisioner

__all__ = [
    "BayeuxClient",
    "ChannelOutcomeState",
    "EngineState",
    "StreamingSubscriptionEngine",
    "TopicProvisioner",
]
