"""BayeuxClient - long-polling Bayeux 1.0 client for the Streaming API"""

import itertools
import threading
from collections import defaultdict
from collections.abc import Callable

import httpx
from loguru import logger

from sfgate.shared.exceptions import SalesforceError, TransportError

from ..protocols import ClientState, Message, MessageListener

META_HANDSHAKE = "/meta/handshake"
META_CONNECT = "/meta/connect"
META_SUBSCRIBE = "/meta/subscribe"
META_UNSUBSCRIBE = "/meta/unsubscribe"
META_DISCONNECT = "/meta/disconnect"

BAYEUX_VERSION = "1.0"
CONNECTION_TYPE = "long-polling"

# server holds /meta/connect open for up to advice.timeout ms
DEFAULT_CONNECT_TIMEOUT_MS = 110_000
NETWORK_MARGIN_SECONDS = 10.0


def failure_message(channel: str, error: Exception, **fields) -> Message:
    """Synthetic failed reply reported when the transport itself fails"""
    message: Message = {
        "channel": channel,
        "successful": False,
        "error": str(error),
        "exception": error,
    }
    message.update(fields)
    return message


class BayeuxClient:
    """Long-polling push client

    Responsibilities:
    - Handshake and the /meta/connect loop on a background thread
    - Subscribe/unsubscribe requests for data channels
    - Dispatching replies to meta listeners and data messages to subscribers

    Data messages are delivered on the connect thread. Listeners must return
    quickly; exceptions they raise are logged and do not stop the loop.
    """

    def __init__(
        self,
        endpoint_url: str,
        http_client: httpx.Client,
        header_provider: Callable[[], dict[str, str]] | None = None,
        cookies: dict[str, str] | None = None,
        unauthorized_handler: Callable[[], None] | None = None,
        backoff_increment: float = 1.0,
        max_backoff: float = 30.0,
    ) -> None:
        """Initialize Bayeux client

        Args:
            endpoint_url: CometD endpoint URL
            http_client: Shared HTTP client
            header_provider: Called before every POST for extra headers
                (e.g. current authorization)
            cookies: Cookies sent with every POST
            unauthorized_handler: Called when the server answers 401
            backoff_increment: Seconds added to the retry delay per failure
            max_backoff: Maximum retry delay in seconds
        """
        self._endpoint_url = endpoint_url
        self._http_client = http_client
        self._header_provider = header_provider
        self._cookies = dict(cookies or {})
        self._unauthorized_handler = unauthorized_handler
        self._backoff_increment = backoff_increment
        self._max_backoff = max_backoff

        self._state = ClientState.UNCONNECTED
        self._state_cond = threading.Condition()
        self._client_id: str | None = None
        self._advice: dict = {"reconnect": "retry", "interval": 0}
        self._message_ids = itertools.count(1)

        self._listeners_lock = threading.Lock()
        self._meta_listeners: dict[str, list[MessageListener]] = defaultdict(list)
        self._subscribers: dict[str, list[MessageListener]] = defaultdict(list)

        self._stop_event = threading.Event()
        self._connect_thread: threading.Thread | None = None

    @property
    def endpoint_url(self) -> str:
        return self._endpoint_url

    @property
    def state(self) -> ClientState:
        with self._state_cond:
            return self._state

    @property
    def client_id(self) -> str | None:
        return self._client_id

    def _set_state(self, state: ClientState) -> None:
        with self._state_cond:
            if self._state != state:
                logger.debug(f"Bayeux state {self._state.value} -> {state.value}")
            self._state = state
            self._state_cond.notify_all()

    # listeners

    def add_listener(self, channel: str, listener: MessageListener) -> None:
        with self._listeners_lock:
            self._meta_listeners[channel].append(listener)

    def remove_listener(self, channel: str, listener: MessageListener) -> None:
        with self._listeners_lock:
            listeners = self._meta_listeners.get(channel)
            if listeners and listener in listeners:
                listeners.remove(listener)

    def subscribe(self, channel: str, listener: MessageListener) -> None:
        """Add a data listener, sending /meta/subscribe for the first one

        The outcome is reported to /meta/subscribe listeners.
        """
        with self._listeners_lock:
            listeners = self._subscribers[channel]
            first = not listeners
            listeners.append(listener)

        if first:
            logger.debug(f"Sending subscribe for {channel}")
            self._send_meta(
                {"channel": META_SUBSCRIBE, "subscription": channel}
            )

    def unsubscribe(self, channel: str, listener: MessageListener) -> None:
        """Remove a data listener, sending /meta/unsubscribe for the last one

        The outcome is reported to /meta/unsubscribe listeners.
        """
        with self._listeners_lock:
            listeners = self._subscribers.get(channel, [])
            if listener not in listeners:
                return
            listeners.remove(listener)
            last = not listeners
            if last:
                del self._subscribers[channel]

        if last:
            logger.debug(f"Sending unsubscribe for {channel}")
            self._send_meta(
                {"channel": META_UNSUBSCRIBE, "subscription": channel}
            )

    # lifecycle

    def handshake(self) -> None:
        """Start the handshake and connect loop on a background thread

        Completion is reported on /meta/handshake and by the CONNECTED state.
        """
        if self._connect_thread and self._connect_thread.is_alive():
            logger.warning("Bayeux connect loop already running")
            return

        self._stop_event.clear()
        self._client_id = None
        self._set_state(ClientState.HANDSHAKING)
        self._connect_thread = threading.Thread(
            target=self._run, daemon=True, name="sfgate-bayeux-connect"
        )
        self._connect_thread.start()

    def disconnect(self) -> None:
        """Send /meta/disconnect (best effort) and stop the connect loop"""
        self._stop_event.set()
        if self._client_id is not None:
            message = {
                "channel": META_DISCONNECT,
                "clientId": self._client_id,
                "id": str(next(self._message_ids)),
            }
            try:
                replies = self._post([message])
                self._dispatch_all(replies)
            except (SalesforceError, httpx.HTTPError) as e:
                logger.warning(f"Error during DISCONNECT: {e}")
        self._client_id = None
        self._set_state(ClientState.DISCONNECTED)

        thread = self._connect_thread
        if thread and thread.is_alive() and thread is not threading.current_thread():
            thread.join(timeout=1)
            if thread.is_alive():
                logger.debug("Bayeux connect thread still finishing a long poll")

    # connect loop

    def _run(self) -> None:
        logger.info(f"Bayeux connect loop started for {self._endpoint_url}")
        backoff = 0.0
        while not self._stop_event.is_set():
            if self._client_id is None:
                ok = self._do_handshake()
            else:
                ok = self._do_connect()

            if self._stop_event.is_set():
                break

            reconnect = self._advice.get("reconnect", "retry")
            if reconnect == "none":
                logger.warning("Server advised no reconnect, stopping")
                self._set_state(ClientState.DISCONNECTED)
                break

            if ok:
                backoff = 0.0
                delay = self._advice.get("interval", 0) / 1000
            else:
                backoff = min(backoff + self._backoff_increment, self._max_backoff)
                delay = backoff

            if delay > 0 and self._stop_event.wait(delay):
                break

        logger.info("Bayeux connect loop stopped")

    def _do_handshake(self) -> bool:
        self._set_state(ClientState.HANDSHAKING)
        message = {
            "channel": META_HANDSHAKE,
            "version": BAYEUX_VERSION,
            "minimumVersion": BAYEUX_VERSION,
            "supportedConnectionTypes": [CONNECTION_TYPE],
            "id": str(next(self._message_ids)),
        }
        try:
            replies = self._post([message])
        except (SalesforceError, httpx.HTTPError) as e:
            logger.warning(f"Handshake request failed: {e}")
            self._dispatch(failure_message(META_HANDSHAKE, e))
            return False

        successful = False
        for reply in replies:
            if reply.get("channel") == META_HANDSHAKE:
                self._update_advice(reply)
                if reply.get("successful"):
                    self._client_id = reply.get("clientId")
                    successful = self._client_id is not None
                    if successful and not self._stop_event.is_set():
                        self._set_state(ClientState.CONNECTING)
        self._dispatch_all(replies)
        if successful:
            self._resubscribe()
        return successful

    def _resubscribe(self) -> None:
        """Subscribe again to every channel with listeners

        A new clientId carries no server-side subscriptions. Outcomes are
        reported to /meta/subscribe listeners.
        """
        with self._listeners_lock:
            channels = [ch for ch, listeners in self._subscribers.items() if listeners]
        for channel in channels:
            if self._stop_event.is_set():
                return
            logger.info(f"Resubscribing to {channel} after handshake")
            self._send_meta({"channel": META_SUBSCRIBE, "subscription": channel})

    def _do_connect(self) -> bool:
        message: Message = {
            "channel": META_CONNECT,
            "clientId": self._client_id,
            "connectionType": CONNECTION_TYPE,
            "id": str(next(self._message_ids)),
        }
        if self.state != ClientState.CONNECTED:
            message["advice"] = {"timeout": 0}

        timeout = (
            self._advice.get("timeout", DEFAULT_CONNECT_TIMEOUT_MS) / 1000
            + NETWORK_MARGIN_SECONDS
        )
        try:
            replies = self._post([message], timeout=timeout)
        except (SalesforceError, httpx.HTTPError) as e:
            if self._stop_event.is_set():
                return False
            logger.warning(f"Connect request failed: {e}")
            self._set_state(ClientState.CONNECTING)
            self._dispatch(failure_message(META_CONNECT, e))
            return False

        successful = False
        for reply in replies:
            if reply.get("channel") == META_CONNECT:
                self._update_advice(reply)
                successful = bool(reply.get("successful"))
                if successful and not self._stop_event.is_set():
                    self._set_state(ClientState.CONNECTED)
                elif self._advice.get("reconnect") == "handshake":
                    logger.info("Server requested re-handshake")
                    self._client_id = None
        self._dispatch_all(replies)
        return successful

    def _update_advice(self, reply: Message) -> None:
        advice = reply.get("advice")
        if isinstance(advice, dict):
            self._advice.update(advice)

    # wire

    def _send_meta(self, message: Message) -> None:
        message = dict(message)
        message["clientId"] = self._client_id
        message["id"] = str(next(self._message_ids))
        try:
            replies = self._post([message])
        except (SalesforceError, httpx.HTTPError) as e:
            logger.warning(f"{message['channel']} request failed: {e}")
            self._dispatch(
                failure_message(
                    message["channel"], e, subscription=message.get("subscription")
                )
            )
            return
        self._dispatch_all(replies)

    def _post(
        self, messages: list[Message], timeout: float | None = None
    ) -> list[Message]:
        headers = {"Content-Type": "application/json;charset=UTF-8"}
        if self._header_provider is not None:
            headers.update(self._header_provider())
        if self._cookies:
            headers["Cookie"] = "; ".join(
                f"{name}={value}" for name, value in self._cookies.items()
            )

        kwargs = {"json": messages, "headers": headers}
        if timeout is not None:
            kwargs["timeout"] = timeout
        response = self._http_client.post(self._endpoint_url, **kwargs)
        try:
            if response.status_code == 401 and self._unauthorized_handler:
                logger.warning("Streaming request unauthorized, refreshing session")
                self._unauthorized_handler()
            if response.status_code != 200:
                raise TransportError(
                    f"Bayeux request failed: {response.status_code} "
                    f"{response.reason_phrase}"
                )
            try:
                replies = response.json()
            except ValueError as e:
                raise TransportError(f"Invalid Bayeux response: {e}") from e
        finally:
            response.close()

        if isinstance(replies, dict):
            replies = [replies]
        if not isinstance(replies, list):
            raise TransportError(f"Invalid Bayeux response: {replies!r}")
        return [r for r in replies if isinstance(r, dict)]

    def _dispatch_all(self, messages: list[Message]) -> None:
        for message in messages:
            self._dispatch(message)

    def _dispatch(self, message: Message) -> None:
        channel = message.get("channel", "")
        with self._listeners_lock:
            if channel.startswith("/meta/"):
                listeners = list(self._meta_listeners.get(channel, []))
            else:
                listeners = list(self._subscribers.get(channel, []))

        if not listeners and not channel.startswith("/meta/"):
            logger.debug(f"No subscribers for message on {channel}")

        for listener in listeners:
            try:
                listener(channel, message)
            except Exception:
                logger.exception(f"Listener for {channel} failed")
