"""StreamingSubscriptionEngine - push topic subscriptions over Bayeux"""

import threading
from collections.abc import Callable
from enum import Enum

import httpx
from loguru import logger

from sfgate.core.cancellation import CancelToken
from sfgate.shared.exceptions import (
    AuthenticationError,
    ConfigurationError,
    ConfirmationTimeout,
    HandshakeError,
    OperationCancelled,
    SubscriptionError,
)

from ..protocols import (
    ClientState,
    Message,
    MessageListener,
    PushClient,
    PushConsumer,
)
from ..session import SessionManager
from .bayeux import (
    META_CONNECT,
    META_HANDSHAKE,
    META_SUBSCRIBE,
    META_UNSUBSCRIBE,
    BayeuxClient,
)
from .topics import TopicProvisioner

LEGACY_API_VERSION = "22.0"
HANDSHAKE_TIMEOUT = 110.0
CHANNEL_TIMEOUT = 40.0

PushClientFactory = Callable[..., PushClient]


class EngineState(Enum):
    UNSTARTED = "unstarted"
    HANDSHAKING = "handshaking"
    CONNECTED = "connected"
    SHUTDOWN = "shutdown"


def _subscriptions_of(message: Message) -> list[str]:
    subscription = message.get("subscription")
    if subscription is None:
        return []
    if isinstance(subscription, list):
        return [str(s) for s in subscription]
    return [str(subscription)]


class ChannelOutcomeState:
    """Confirmed channels and subscribe/unsubscribe errors

    Written only by the engine's meta-channel callbacks. Callers block on
    the condition until the outcome for their channel is known, so a
    confirmation that arrives before the wait starts is never missed.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._confirmed: set[str] = set()
        self._subscribe_errors: dict[str, str] = {}
        self._unsubscribe_errors: dict[str, str] = {}

    @property
    def confirmed_channels(self) -> set[str]:
        with self._cond:
            return set(self._confirmed)

    @property
    def subscribe_errors(self) -> dict[str, str]:
        with self._cond:
            return dict(self._subscribe_errors)

    @property
    def unsubscribe_errors(self) -> dict[str, str]:
        with self._cond:
            return dict(self._unsubscribe_errors)

    def is_confirmed(self, channel: str) -> bool:
        with self._cond:
            return channel in self._confirmed

    def subscribe_error(self, channel: str) -> str | None:
        with self._cond:
            return self._subscribe_errors.get(channel)

    def unsubscribe_error(self, channel: str) -> str | None:
        with self._cond:
            return self._unsubscribe_errors.get(channel)

    def subscribed(self, channel: str) -> None:
        with self._cond:
            self._confirmed.add(channel)
            self._subscribe_errors.pop(channel, None)
            self._cond.notify_all()

    def subscribe_failed(self, channel: str, reason: str) -> None:
        with self._cond:
            self._confirmed.discard(channel)
            self._subscribe_errors[channel] = reason
            self._cond.notify_all()

    def unsubscribed(self, channel: str) -> None:
        with self._cond:
            self._confirmed.discard(channel)
            self._unsubscribe_errors.pop(channel, None)
            self._cond.notify_all()

    def unsubscribe_failed(self, channel: str, reason: str) -> None:
        with self._cond:
            self._unsubscribe_errors[channel] = reason
            self._cond.notify_all()

    def clear_subscribe_error(self, channel: str) -> None:
        with self._cond:
            self._subscribe_errors.pop(channel, None)

    def clear_unsubscribe_error(self, channel: str) -> None:
        with self._cond:
            self._unsubscribe_errors.pop(channel, None)

    def reset(self) -> None:
        """Forget all outcomes; a new push client starts with none"""
        with self._cond:
            self._confirmed.clear()
            self._subscribe_errors.clear()
            self._unsubscribe_errors.clear()
            self._cond.notify_all()

    def wait_for(
        self,
        predicate: Callable[[], bool],
        timeout: float,
        cancel: CancelToken | None = None,
    ) -> bool:
        """Wait until predicate holds, timeout elapses or cancel is set

        Returns:
            Final value of predicate
        """
        unregister = cancel.register(self._wake) if cancel else None
        try:
            with self._cond:
                self._cond.wait_for(
                    lambda: predicate() or (cancel is not None and cancel.cancelled),
                    timeout=timeout,
                )
                return predicate()
        finally:
            if unregister:
                unregister()

    def _wake(self) -> None:
        with self._cond:
            self._cond.notify_all()


class StreamingSubscriptionEngine:
    """Manages the streaming client and per-consumer subscriptions

    Responsibilities:
    - Handshake lifecycle (UNSTARTED -> HANDSHAKING -> CONNECTED -> SHUTDOWN)
    - PushTopic provisioning before subscribe
    - Confirmed subscribe/unsubscribe with bounded waits
    - Dispatching inbound messages to consumer callbacks
    """

    def __init__(
        self,
        session: SessionManager,
        http_client: httpx.Client,
        api_version: str,
        topic_provisioner: TopicProvisioner | None = None,
        client_factory: PushClientFactory | None = None,
        handshake_timeout: float = HANDSHAKE_TIMEOUT,
        channel_timeout: float = CHANNEL_TIMEOUT,
    ) -> None:
        """Initialize streaming engine

        Args:
            session: Shared session manager
            http_client: Shared HTTP client for the long-polling transport
            api_version: Salesforce API version ("22.0" selects the legacy
                endpoint and channel naming)
            topic_provisioner: Provisioner used when subscribe is given a query
            client_factory: Builds the push client; defaults to BayeuxClient
            handshake_timeout: Seconds to wait for CONNECTED in start()
            channel_timeout: Seconds to wait for subscribe/unsubscribe confirmation
        """
        self._session = session
        self._http_client = http_client
        self._api_version = api_version
        self._topic_provisioner = topic_provisioner
        self._client_factory = client_factory or self._default_client_factory
        self._handshake_timeout = handshake_timeout
        self._channel_timeout = channel_timeout

        self._client: PushClient | None = None
        self._stream_token: str | None = None
        self._outcomes = ChannelOutcomeState()

        self._registry: dict[str, tuple[str, MessageListener]] = {}
        self._registry_lock = threading.Lock()

        self._start_lock = threading.Lock()
        self._lifecycle = threading.Condition()
        self._state = EngineState.UNSTARTED
        self._handshake_error: str | None = None
        self._handshake_exception: Exception | None = None
        self._connect_error: str | None = None

    @property
    def state(self) -> EngineState:
        with self._lifecycle:
            return self._state

    @property
    def outcomes(self) -> ChannelOutcomeState:
        return self._outcomes

    @property
    def is_legacy(self) -> bool:
        return self._api_version == LEGACY_API_VERSION

    def channel_name(self, topic_name: str) -> str:
        return f"/{topic_name}" if self.is_legacy else f"/topic/{topic_name}"

    def endpoint_url(self) -> str:
        instance_url = (self._session.instance_url or "").rstrip("/")
        if self.is_legacy:
            return f"{instance_url}/cometd"
        return f"{instance_url}/cometd/{self._api_version}"

    def subscription_for(self, consumer_id: str) -> str | None:
        """Channel the consumer is subscribed to, if any"""
        with self._registry_lock:
            entry = self._registry.get(consumer_id)
        return entry[0] if entry else None

    def registered_consumers(self) -> list[str]:
        with self._registry_lock:
            return list(self._registry)

    # lifecycle

    def start(self, cancel: CancelToken | None = None) -> None:
        """Handshake with the streaming endpoint and wait until connected

        Raises:
            HandshakeError: If CONNECTED is not reached within the timeout, or
                the session cannot be refreshed after a 401 (chained)
            OperationCancelled: If cancel is set while waiting
            AuthenticationError: If the lazy login fails
        """
        with self._start_lock:
            if self.state == EngineState.CONNECTED:
                return

            token = self._session.access_token
            if token is None:
                # lazy login
                token = self._session.login(None)

            client = self._client_factory(
                endpoint_url=self.endpoint_url(),
                http_client=self._http_client,
                header_provider=self._authorization_header,
                cookies=self._legacy_cookies(token) if self.is_legacy else None,
                unauthorized_handler=self._refresh_session,
            )
            client.add_listener(META_HANDSHAKE, self._on_handshake)
            client.add_listener(META_CONNECT, self._on_connect)
            client.add_listener(META_SUBSCRIBE, self._on_subscribe)
            client.add_listener(META_UNSUBSCRIBE, self._on_unsubscribe)

            with self._lifecycle:
                self._client = client
                self._state = EngineState.HANDSHAKING
                self._handshake_error = None
                self._handshake_exception = None
                self._connect_error = None
            self._outcomes.reset()

            logger.info(f"Connecting to streaming endpoint {self.endpoint_url()}...")
            client.handshake()

            connected = self._wait_connected(client, cancel)
            if connected:
                with self._lifecycle:
                    self._state = EngineState.CONNECTED
                logger.info("Streaming client connected")
                return

            client.disconnect()
            with self._lifecycle:
                self._client = None
                self._state = EngineState.UNSTARTED
                error = self._handshake_failure()

            if cancel is not None and cancel.cancelled:
                raise OperationCancelled("Streaming handshake cancelled")
            logger.error(str(error))
            raise error

    def shutdown(self) -> None:
        """Disconnect the push client

        Active channels are not unsubscribed first.
        """
        with self._start_lock:
            with self._lifecycle:
                client = self._client
                self._client = None
                self._state = EngineState.SHUTDOWN
            with self._registry_lock:
                self._registry.clear()
            self._outcomes.reset()
            if client is not None:
                logger.info("Disconnecting streaming client...")
                client.disconnect()

    def _wait_connected(
        self, client: PushClient, cancel: CancelToken | None
    ) -> bool:
        def wake() -> None:
            with self._lifecycle:
                self._lifecycle.notify_all()

        unregister = cancel.register(wake) if cancel else None
        try:
            with self._lifecycle:
                return self._lifecycle.wait_for(
                    lambda: client.state == ClientState.CONNECTED
                    or isinstance(self._handshake_exception, AuthenticationError)
                    or (cancel is not None and cancel.cancelled),
                    timeout=self._handshake_timeout,
                ) and client.state == ClientState.CONNECTED
        finally:
            if unregister:
                unregister()

    def _handshake_failure(self) -> HandshakeError:
        if self._handshake_exception is not None:
            error = HandshakeError(
                f"Exception during HANDSHAKE: {self._handshake_exception}"
            )
            error.__cause__ = self._handshake_exception
            return error
        if self._handshake_error is not None:
            return HandshakeError(f"Error during HANDSHAKE: {self._handshake_error}")
        if self._connect_error is not None:
            return HandshakeError(f"Error during CONNECT: {self._connect_error}")
        return HandshakeError(
            f"Handshake request timeout after {self._handshake_timeout} seconds"
        )

    def _authorization_header(self) -> dict[str, str]:
        token = self._session.access_token
        self._stream_token = token
        return {"Authorization": f"OAuth {token}"}

    def _refresh_session(self) -> None:
        self._session.login(self._stream_token)

    def _legacy_cookies(self, token: str) -> dict[str, str]:
        return {
            "com.salesforce.LocaleInfo": "us",
            "login": self._session.username,
            "sid": token,
            "language": "en_US",
        }

    @staticmethod
    def _default_client_factory(**kwargs) -> PushClient:
        return BayeuxClient(**kwargs)

    # meta-channel callbacks

    def _on_handshake(self, channel: str, message: Message) -> None:
        logger.debug(f"[CHANNEL:META_HANDSHAKE]: {message}")
        with self._lifecycle:
            if message.get("successful"):
                self._handshake_error = None
                self._handshake_exception = None
            else:
                error = message.get("error")
                if error is not None:
                    self._handshake_error = str(error)
                exception = message.get("exception")
                if isinstance(exception, Exception):
                    self._handshake_exception = exception
            self._lifecycle.notify_all()

    def _on_connect(self, channel: str, message: Message) -> None:
        logger.debug(f"[CHANNEL:META_CONNECT]: {message}")
        with self._lifecycle:
            if not message.get("successful"):
                error = message.get("error")
                if error is not None:
                    logger.error(f"Error during CONNECT: {error}")
                    self._connect_error = str(error)
            self._lifecycle.notify_all()

    def _on_subscribe(self, channel: str, message: Message) -> None:
        logger.debug(f"[CHANNEL:META_SUBSCRIBE]: {message}")
        for subscription in _subscriptions_of(message):
            if message.get("successful"):
                logger.info(f"Subscribed to channel {subscription}")
                self._outcomes.subscribed(subscription)
            else:
                reason = str(message.get("error") or "unknown error")
                logger.warning(f"Subscribe to {subscription} failed: {reason}")
                self._outcomes.subscribe_failed(subscription, reason)

    def _on_unsubscribe(self, channel: str, message: Message) -> None:
        logger.debug(f"[CHANNEL:META_UNSUBSCRIBE]: {message}")
        for subscription in _subscriptions_of(message):
            if message.get("successful"):
                logger.info(f"Unsubscribed from channel {subscription}")
                self._outcomes.unsubscribed(subscription)
            else:
                self._outcomes.unsubscribe_failed(
                    subscription, str(message.get("error") or "unknown error")
                )

    # subscriptions

    def _require_client(self) -> PushClient:
        with self._lifecycle:
            if self._state != EngineState.CONNECTED or self._client is None:
                raise ConfigurationError(
                    f"Streaming engine is {self._state.value}, call start() first"
                )
            return self._client

    def subscribe(
        self,
        topic_name: str,
        consumer: PushConsumer,
        query: str | None = None,
        notify_for_fields: str | None = None,
        notify_for_operations: str | None = None,
        allow_update: bool = False,
        cancel: CancelToken | None = None,
    ) -> None:
        """Subscribe a consumer to a topic's channel

        The topic is provisioned first when a query is given.

        Raises:
            ConfigurationError: If not started, or provisioning is refused
            SubscriptionError: If the server rejects the subscription
            ConfirmationTimeout: If no confirmation arrives in time
            OperationCancelled: If cancel is set while waiting
        """
        client = self._require_client()
        consumer_id = consumer.consumer_id

        existing = self.subscription_for(consumer_id)
        if existing is not None:
            logger.warning(f"Consumer {consumer_id} already subscribed to {existing}")
            return

        if query is not None:
            if self._topic_provisioner is None:
                raise ConfigurationError(
                    f"Cannot provision topic {topic_name}: no topic provisioner"
                )
            self._topic_provisioner.ensure_topic(
                topic_name,
                query,
                notify_for_fields=notify_for_fields,
                notify_for_operations=notify_for_operations,
                allow_update=allow_update,
                cancel=cancel,
            )

        channel = self.channel_name(topic_name)
        logger.info(f"Subscribing to channel {channel}...")

        def listener(message_channel: str, message: Message) -> None:
            logger.debug(f"Received Message: {message}")
            consumer.process_message(message_channel, message)

        self._outcomes.clear_subscribe_error(channel)
        client.subscribe(channel, listener)

        outcomes = self._outcomes
        confirmed = outcomes.wait_for(
            lambda: outcomes.is_confirmed(channel)
            or outcomes.subscribe_error(channel) is not None,
            timeout=self._channel_timeout,
            cancel=cancel,
        ) and outcomes.is_confirmed(channel)

        if confirmed:
            with self._registry_lock:
                self._registry[consumer_id] = (channel, listener)
            return

        client.unsubscribe(channel, listener)
        error = outcomes.subscribe_error(channel)
        if error is not None:
            msg = f"Error subscribing to topic {topic_name}: {error}"
            logger.error(msg)
            raise SubscriptionError(msg, channel=channel, reason=error)
        if cancel is not None and cancel.cancelled:
            raise OperationCancelled(f"Subscribe to topic {topic_name} cancelled")
        msg = (
            f"Timeout error subscribing to topic {topic_name} "
            f"after {self._channel_timeout} seconds"
        )
        logger.error(msg)
        raise ConfirmationTimeout(msg, channel=channel, timeout=self._channel_timeout)

    def unsubscribe(
        self,
        topic_name: str,
        consumer: PushConsumer,
        cancel: CancelToken | None = None,
    ) -> None:
        """Unsubscribe a consumer; a no-op when it is not subscribed

        The registry entry is removed before the request is sent and is not
        restored on failure.

        Raises:
            ConfigurationError: If the engine is not started
            SubscriptionError: If the server rejects the unsubscribe
            ConfirmationTimeout: If no confirmation arrives in time
        """
        client = self._require_client()
        consumer_id = consumer.consumer_id
        with self._registry_lock:
            entry = self._registry.pop(consumer_id, None)
            if entry is None:
                return
            channel, listener = entry
            shared = any(ch == channel for ch, _ in self._registry.values())

        logger.info(f"Unsubscribing from channel {channel}...")
        self._outcomes.clear_unsubscribe_error(channel)
        client.unsubscribe(channel, listener)
        if shared:
            # other consumers keep the channel subscribed
            return

        outcomes = self._outcomes
        outcomes.wait_for(
            lambda: not outcomes.is_confirmed(channel)
            or outcomes.unsubscribe_error(channel) is not None,
            timeout=self._channel_timeout,
            cancel=cancel,
        )

        error = outcomes.unsubscribe_error(channel)
        if error is not None:
            msg = f"Error unsubscribing from topic {topic_name}: {error}"
            logger.error(msg)
            raise SubscriptionError(msg, channel=channel, reason=error)
        if not outcomes.is_confirmed(channel):
            return
        if cancel is not None and cancel.cancelled:
            logger.info(f"Stopped waiting for unsubscribe from {channel}")
            return
        msg = (
            f"Timeout error unsubscribing from topic {topic_name} "
            f"after {self._channel_timeout} seconds"
        )
        logger.error(msg)
        raise ConfirmationTimeout(msg, channel=channel, timeout=self._channel_timeout)
