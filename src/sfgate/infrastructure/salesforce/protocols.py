"""Protocols for the streaming engine's collaborators.

These protocols let the engine run against the Bayeux long-polling client
or an in-memory substitute, and accept any consumer object with the right
shape.
"""

from collections.abc import Callable
from enum import Enum
from typing import Any, Protocol, runtime_checkable

Message = dict[str, Any]
MessageListener = Callable[[str, Message], None]


class ClientState(Enum):
    """Push client connection state"""

    UNCONNECTED = "unconnected"
    HANDSHAKING = "handshaking"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


@runtime_checkable
class PushClient(Protocol):
    """Protocol for a long-polling push client."""

    @property
    def state(self) -> ClientState:
        """Current connection state."""
        ...

    def handshake(self) -> None:
        """Start the handshake; completion is reported on /meta/handshake."""
        ...

    def disconnect(self) -> None:
        """Stop the connect loop and disconnect."""
        ...

    def add_listener(self, channel: str, listener: MessageListener) -> None:
        """Listen to replies on a meta channel."""
        ...

    def remove_listener(self, channel: str, listener: MessageListener) -> None:
        """Stop listening to a meta channel."""
        ...

    def subscribe(self, channel: str, listener: MessageListener) -> None:
        """Add a data listener, subscribing to the channel if needed."""
        ...

    def unsubscribe(self, channel: str, listener: MessageListener) -> None:
        """Remove a data listener, unsubscribing when it was the last one."""
        ...


@runtime_checkable
class PushConsumer(Protocol):
    """Protocol for objects receiving push messages."""

    @property
    def consumer_id(self) -> str:
        """Stable identity used as the subscription registry key."""
        ...

    def process_message(self, channel: str, message: Message) -> None:
        """Handle one inbound message; must return quickly."""
        ...
