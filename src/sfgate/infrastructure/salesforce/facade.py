"""SalesforceClientFacade - single entry point for the access layer"""

import io
import threading
from collections.abc import Callable

import httpx
from loguru import logger

from sfgate.core.cancellation import CancelToken
from sfgate.core.config import Config
from sfgate.shared.exceptions import SalesforceError

from .protocols import Message
from .requests import Body, RestClient
from .session import SessionManager
from .streaming.subscriptions import (
    PushClientFactory,
    StreamingSubscriptionEngine,
)
from .streaming.topics import TopicProvisioner
from .transport import build_http_client

MessageCallback = Callable[[str, Message], None]


class CallbackConsumer:
    """PushConsumer wrapping a plain callable"""

    def __init__(self, consumer_id: str, on_message: MessageCallback) -> None:
        self._consumer_id = consumer_id
        self._on_message = on_message

    @property
    def consumer_id(self) -> str:
        return self._consumer_id

    def process_message(self, channel: str, message: Message) -> None:
        self._on_message(channel, message)

    def __repr__(self) -> str:
        return f"CallbackConsumer({self._consumer_id!r})"


class SalesforceClientFacade:
    """Salesforce access layer (facade pattern)

    Delegates to SessionManager, RestClient, TopicProvisioner and
    StreamingSubscriptionEngine, all sharing one session and one HTTP client.
    The streaming engine is started on the first subscribe.
    """

    def __init__(
        self,
        config: Config,
        http_client: httpx.Client | None = None,
        client_factory: PushClientFactory | None = None,
    ) -> None:
        """Initialize the access layer and log in

        Args:
            config: Access layer configuration
            http_client: Optional shared HTTP client (built from config if None)
            client_factory: Optional push client factory for the streaming engine

        Raises:
            AuthenticationError: If the initial login fails
            ValueError: If credentials are incomplete
        """
        self._config = config
        self._owns_http_client = http_client is None
        self._http_client = http_client or build_http_client(
            timeout=config.http_timeout
        )
        self._session = SessionManager(config.credentials(), self._http_client)

        self._rest_client = RestClient(
            self._session, self._http_client, config.api_version, config.format
        )
        # PushTopic records are always exchanged as JSON
        if config.format == "json":
            topic_client = self._rest_client
        else:
            topic_client = RestClient(
                self._session, self._http_client, config.api_version, "json"
            )
        self._topic_provisioner = TopicProvisioner(topic_client)

        self._engine = StreamingSubscriptionEngine(
            self._session,
            self._http_client,
            config.api_version,
            topic_provisioner=self._topic_provisioner,
            client_factory=client_factory,
            handshake_timeout=config.handshake_timeout,
            channel_timeout=config.channel_timeout,
        )
        self._consumers: dict[str, CallbackConsumer] = {}
        self._consumers_lock = threading.Lock()

    @classmethod
    def from_env(cls) -> "SalesforceClientFacade":
        """Build the facade from SALESFORCE_* environment variables"""
        return cls(Config.from_env())

    @property
    def session(self) -> SessionManager:
        return self._session

    @property
    def rest_client(self) -> RestClient:
        return self._rest_client

    @property
    def engine(self) -> StreamingSubscriptionEngine:
        return self._engine

    def execute(
        self,
        method: str,
        path: str,
        body: Body = None,
        headers: dict[str, str] | None = None,
        cancel: CancelToken | None = None,
    ) -> io.BytesIO | None:
        """Execute an authenticated REST request

        Returns:
            Response content, or None for an empty response
        """
        return self._rest_client.execute(
            method, path, body=body, headers=headers, cancel=cancel
        )

    def ensure_topic(
        self,
        name: str,
        query: str,
        notify_for_fields: str | None = None,
        notify_for_operations: str | None = None,
        cancel: CancelToken | None = None,
    ) -> None:
        """Create or update a PushTopic (updates allowed per config)"""
        self._topic_provisioner.ensure_topic(
            name,
            query,
            notify_for_fields=notify_for_fields,
            notify_for_operations=notify_for_operations,
            allow_update=self._config.update_topic,
            cancel=cancel,
        )

    def start(self, cancel: CancelToken | None = None) -> None:
        """Start the streaming engine"""
        self._engine.start(cancel=cancel)

    def subscribe(
        self,
        topic_name: str,
        filter_query: str | None,
        consumer_id: str,
        on_message: MessageCallback,
        notify_for_fields: str | None = None,
        notify_for_operations: str | None = None,
        cancel: CancelToken | None = None,
    ) -> None:
        """Subscribe a callback to a topic

        Args:
            topic_name: PushTopic name
            filter_query: SOQL query used to provision the topic, or None to
                subscribe to an existing topic as is
            consumer_id: Registry key for this subscription
            on_message: Called with (channel, message) on the connect thread
            notify_for_fields: NotifyForFields for a provisioned topic
            notify_for_operations: NotifyForOperations for a provisioned topic
            cancel: Optional cancellation token
        """
        self._engine.start(cancel=cancel)

        consumer = CallbackConsumer(consumer_id, on_message)
        self._engine.subscribe(
            topic_name,
            consumer,
            query=filter_query,
            notify_for_fields=notify_for_fields,
            notify_for_operations=notify_for_operations,
            allow_update=self._config.update_topic,
            cancel=cancel,
        )
        with self._consumers_lock:
            self._consumers[consumer_id] = consumer

    def unsubscribe(
        self,
        topic_name: str,
        consumer_id: str,
        cancel: CancelToken | None = None,
    ) -> None:
        """Unsubscribe a callback; unknown consumer ids are ignored"""
        with self._consumers_lock:
            consumer = self._consumers.pop(consumer_id, None)
        if consumer is None:
            return
        self._engine.unsubscribe(topic_name, consumer, cancel=cancel)

    def shutdown(self) -> None:
        """Disconnect streaming, revoke the session and close HTTP resources"""
        self._engine.shutdown()
        with self._consumers_lock:
            self._consumers.clear()

        try:
            self._session.logout()
        except SalesforceError as e:
            logger.warning(f"Error revoking session on shutdown: {e}")

        if self._owns_http_client:
            self._http_client.close()
        logger.info("Salesforce access layer shut down")

    def __enter__(self) -> "SalesforceClientFacade":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.shutdown()
