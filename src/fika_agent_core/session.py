"""
MQTT session manager for fika-agent-core.

Owns the single broker connection: mutual-TLS connect, reconnect with backoff,
re-subscription of the full topic set, retained online/offline presence (LWT),
backpressured publish and a restartable iterator of inbound messages.

Other components never touch the paho client; they see the connection only
through publish(), messages() and connectivity-state listeners.
"""

from __future__ import annotations

import json
import logging
import queue
import ssl
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Iterable, Iterator, Optional

import paho.mqtt.client as mqtt

from fika_agent_core.backoff import Backoff, BackoffPolicy
from fika_agent_core.errors import AuthError, PublishTimeout, TransportError
from fika_agent_core.mqtt_topics import TopicSchema

logger = logging.getLogger(__name__)

# CONNACK codes meaning "your identity is not accepted" (MQTT 3.1.1 and their v5 equivalents)
_AUTH_REASON_CODES = frozenset({4, 5, 134, 135})

_QUEUE_FULL_RETRY_S = 0.05


class ConnectivityState(str, Enum):
    DISCONNECTED = "Disconnected"
    CONNECTING = "Connecting"
    CONNECTED = "Connected"


@dataclass(frozen=True, slots=True)
class InboundMessage:
    topic: str
    payload: bytes
    received_at: float
    session_id: int  # increments on every successful CONNACK


StateListener = Callable[[ConnectivityState], None]


def _reason_value(reason_code: Any) -> int:
    # paho passes ReasonCode objects; tests and MQTT 3.1.1 paths may pass ints
    return int(getattr(reason_code, "value", reason_code))


class SessionManager:
    """
    MQTT session for one device.

    connect() starts a network thread and blocks until the first CONNACK (or the
    connect timeout). Transport loss is retried with exponential backoff;
    authentication failure is fatal and surfaces as AuthError from connect()
    and messages().
    """

    def __init__(
        self,
        host: str,
        port: int,
        device_id: str,
        *,
        ca_file: str,
        cert_file: str,
        key_file: str,
        version: str = "0.0.0+dev",
        client_id: Optional[str] = None,
        keepalive: int = 60,
        connect_timeout_s: float = 30.0,
        publish_timeout_s: float = 10.0,
        outbound_queue_size: int = 1000,
        backoff: BackoffPolicy = BackoffPolicy(),
    ) -> None:
        self.host = host
        self.port = port
        self.version = version
        self.keepalive = keepalive
        self.connect_timeout_s = connect_timeout_s
        self.publish_timeout_s = publish_timeout_s
        self.outbound_queue_size = outbound_queue_size
        self.ca_file = ca_file
        self.cert_file = cert_file
        self.key_file = key_file

        self.topics = TopicSchema(device_id)
        self.client_id = client_id or f"fika.agent.{device_id}"

        self._client: Optional[mqtt.Client] = None
        self._thread: Optional[threading.Thread] = None
        self._stop = threading.Event()
        self._connected = threading.Event()
        self._backoff = Backoff(backoff)

        self._state = ConnectivityState.DISCONNECTED
        self._state_lock = threading.Lock()
        self._listeners: list[StateListener] = []

        self._topics: dict[str, None] = {}  # insertion-ordered set
        self._topics_lock = threading.Lock()

        self._inbox: queue.Queue[InboundMessage] = queue.Queue()
        self._session_id = 0
        self._fatal: Optional[AuthError] = None

    # -------------------------
    # Connectivity state
    # -------------------------
    @property
    def state(self) -> ConnectivityState:
        return self._state

    @property
    def session_id(self) -> int:
        return self._session_id

    @property
    def fatal_error(self) -> Optional[AuthError]:
        return self._fatal

    def is_connected(self) -> bool:
        return self._state is ConnectivityState.CONNECTED

    def add_state_listener(self, listener: StateListener) -> None:
        self._listeners.append(listener)

    def _set_state(self, new: ConnectivityState) -> None:
        with self._state_lock:
            if new is self._state:
                return
            old, self._state = self._state, new
            if new is ConnectivityState.CONNECTED:
                self._connected.set()
            else:
                self._connected.clear()
        logger.info("Connectivity %s -> %s", old.value, new.value)
        for listener in list(self._listeners):
            try:
                listener(new)
            except Exception:
                logger.exception("Connectivity listener failed")

    # -------------------------
    # Lifecycle
    # -------------------------
    def _build_client(self) -> mqtt.Client:
        client = mqtt.Client(
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
            client_id=self.client_id,
            protocol=mqtt.MQTTv311,
            clean_session=False,
        )
        try:
            client.tls_set(
                ca_certs=self.ca_file,
                certfile=self.cert_file,
                keyfile=self.key_file,
                cert_reqs=ssl.CERT_REQUIRED,
            )
        except (ssl.SSLError, OSError) as exc:
            raise AuthError(f"cannot load TLS material: {exc}") from exc
        client.max_queued_messages_set(self.outbound_queue_size)

        # LWT is minimal: set once at connect; broker publishes it on crash or link loss.
        client.will_set(
            self.topics.status(),
            payload=json.dumps(self._status_payload("offline")),
            qos=1,
            retain=True,
        )

        client.on_connect = self._on_connect
        client.on_disconnect = self._on_disconnect
        client.on_message = self._on_message
        return client

    def connect(self) -> bool:
        """
        Start the session. Returns True once connected, False if the connect
        timeout passed first (reconnect attempts continue in the background).
        Raises AuthError if the broker rejects our identity.
        """
        if self._thread is None:
            self._stop.clear()
            self._client = self._build_client()
            self._thread = threading.Thread(
                target=self._network_loop,
                args=(self._client,),
                name="mqtt-session",
                daemon=True,
            )
            self._thread.start()

        deadline = time.monotonic() + self.connect_timeout_s
        while not self._connected.is_set():
            if self._fatal is not None:
                raise self._fatal
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                logger.warning(
                    "Not connected to %s:%s after %.1fs; still retrying",
                    self.host,
                    self.port,
                    self.connect_timeout_s,
                )
                return False
            self._connected.wait(timeout=min(remaining, 0.1))
        return True

    def disconnect(self) -> None:
        client = self._client
        if client is None:
            return
        try:
            if self.is_connected():
                info = client.publish(
                    self.topics.status(),
                    payload=json.dumps(self._status_payload("offline")),
                    qos=1,
                    retain=True,
                )
                try:
                    info.wait_for_publish(timeout=2.0)
                except (RuntimeError, ValueError) as exc:
                    logger.warning("Offline status not delivered: %s", exc)
            self._stop.set()
            client.disconnect()
            if self._thread is not None:
                self._thread.join(timeout=5.0)
        finally:
            self._thread = None
            self._client = None
            self._set_state(ConnectivityState.DISCONNECTED)

    def _network_loop(self, client: mqtt.Client) -> None:
        first = True
        while not self._stop.is_set():
            self._set_state(ConnectivityState.CONNECTING)
            try:
                self._open(client, first=first)
                first = False
                rc = self._pump(client)
            except AuthError as exc:
                self._fail(exc)
                return
            except TransportError as exc:
                rc = exc

            if self._fatal is not None:
                self._fail(self._fatal)
                return
            if self._stop.is_set():
                break

            self._set_state(ConnectivityState.DISCONNECTED)
            delay = self._backoff.next_delay()
            logger.warning("MQTT transport lost (%s); reconnecting in %.2fs", rc, delay)
            if self._stop.wait(timeout=delay):
                break
        logger.info("MQTT network loop stopped")

    def _open(self, client: mqtt.Client, *, first: bool) -> None:
        try:
            if first:
                client.connect(self.host, self.port, keepalive=self.keepalive)
            else:
                client.reconnect()
        except ssl.SSLError as exc:
            raise AuthError(f"TLS handshake rejected: {exc}") from exc
        except OSError as exc:
            raise TransportError(f"connect to {self.host}:{self.port} failed: {exc}") from exc

    def _pump(self, client: mqtt.Client) -> Any:
        """Run paho's loop until the link drops, stop is requested, or CONNACK never arrives."""
        connack_deadline = time.monotonic() + self.connect_timeout_s
        while not self._stop.is_set():
            rc = client.loop(timeout=0.5)
            if self._fatal is not None:
                return rc
            if rc != mqtt.MQTT_ERR_SUCCESS:
                return rc
            if self._state is not ConnectivityState.CONNECTED and time.monotonic() > connack_deadline:
                client.disconnect()
                raise TransportError("no CONNACK within connect timeout")
        return mqtt.MQTT_ERR_SUCCESS

    def _fail(self, exc: AuthError) -> None:
        logger.critical("MQTT authentication failed, giving up: %s", exc)
        self._fatal = exc
        self._stop.set()
        self._set_state(ConnectivityState.DISCONNECTED)

    # -------------------------
    # paho callbacks (network thread)
    # -------------------------
    def _on_connect(self, client: mqtt.Client, userdata: Any, flags: Any, reason_code: Any, properties: Any = None) -> None:
        code = _reason_value(reason_code)
        if code != 0:
            if code in _AUTH_REASON_CODES:
                self._fatal = AuthError(f"broker refused connection: {reason_code}")
                logger.error("MQTT connect refused (auth) rc=%s", reason_code)
            else:
                logger.error("MQTT connect refused rc=%s", reason_code)
            return

        self._session_id += 1
        self._backoff.reset()
        logger.info("Connected to MQTT broker as %s (session %d)", self.client_id, self._session_id)

        # Re-subscribe everything before anyone is told we are connected.
        for topic in self.subscribed_topics():
            client.subscribe(topic, qos=1)
            logger.info("Subscribed: %s", topic)

        client.publish(
            self.topics.status(),
            payload=json.dumps(self._status_payload("online")),
            qos=1,
            retain=True,
        )
        self._set_state(ConnectivityState.CONNECTED)

    def _on_disconnect(self, client: mqtt.Client, userdata: Any, flags: Any, reason_code: Any = 0, properties: Any = None) -> None:
        code = _reason_value(reason_code)
        if code != 0:
            logger.warning("Unexpected disconnect rc=%s", reason_code)
        if not self._stop.is_set():
            self._set_state(ConnectivityState.DISCONNECTED)

    def _on_message(self, client: mqtt.Client, userdata: Any, msg: mqtt.MQTTMessage) -> None:
        self._inbox.put(
            InboundMessage(
                topic=msg.topic,
                payload=bytes(msg.payload),
                received_at=time.time(),
                session_id=self._session_id,
            )
        )

    # -------------------------
    # Subscriptions / inbound
    # -------------------------
    def subscribed_topics(self) -> list[str]:
        with self._topics_lock:
            return list(self._topics)

    def subscribe(self, topics: Iterable[str]) -> None:
        """Add topics to the session's set. Subscribed now if connected, and on every reconnect."""
        new: list[str] = []
        with self._topics_lock:
            for topic in topics:
                if topic not in self._topics:
                    self._topics[topic] = None
                    new.append(topic)
        client = self._client
        if client is not None and self.is_connected():
            for topic in new:
                client.subscribe(topic, qos=1)
                logger.info("Subscribed: %s", topic)

    def messages(self, *, poll_interval_s: float = 0.5) -> Iterator[InboundMessage]:
        """
        Inbound messages in arrival order, across reconnects.

        Ends when the session is stopped; raises AuthError if the session died
        on authentication. Each call returns a new iterator over the same inbox.
        """
        while True:
            if self._fatal is not None:
                raise self._fatal
            try:
                msg = self._inbox.get(timeout=poll_interval_s)
            except queue.Empty:
                if self._stop.is_set():
                    return
                continue
            yield msg

    # -------------------------
    # Outbound
    # -------------------------
    def _status_payload(self, state: str) -> dict[str, Any]:
        return {"state": state, "device_id": self.topics.device_id, "version": self.version}

    def publish(
        self,
        topic: str,
        payload: Any,
        *,
        qos: int = 1,
        retain: bool = False,
        timeout_s: Optional[float] = None,
    ) -> Any:
        """
        Publish and wait for the broker to acknowledge (qos >= 1).

        Waits while the link is down or the outbound queue is full instead of
        dropping. Raises PublishTimeout once `timeout_s` (default
        publish_timeout_s) elapses.
        """
        if isinstance(payload, (dict, list)):
            payload = json.dumps(payload)
        timeout_s = self.publish_timeout_s if timeout_s is None else timeout_s
        deadline = time.monotonic() + timeout_s

        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0 or not self._connected.wait(timeout=remaining):
                raise PublishTimeout(f"not connected; publish to {topic} timed out")
            client = self._client
            if client is None:
                raise PublishTimeout(f"session closed; publish to {topic} abandoned")
            info = client.publish(topic, payload=payload, qos=qos, retain=retain)
            if info.rc == mqtt.MQTT_ERR_QUEUE_SIZE:
                time.sleep(min(_QUEUE_FULL_RETRY_S, max(0.0, deadline - time.monotonic())))
                continue
            if info.rc != mqtt.MQTT_ERR_SUCCESS:
                raise PublishTimeout(f"publish to {topic} failed rc={info.rc}")
            break

        if qos == 0:
            return info
        info.wait_for_publish(timeout=max(0.0, deadline - time.monotonic()))
        if not info.is_published():
            raise PublishTimeout(f"publish to {topic} not acknowledged within {timeout_s:.1f}s")
        return info

    def publish_nowait(self, topic: str, payload: Any, *, qos: int = 0, retain: bool = False) -> bool:
        """Best-effort publish that never blocks. Returns False if not sent."""
        client = self._client
        if client is None or not self.is_connected():
            return False
        if isinstance(payload, (dict, list)):
            payload = json.dumps(payload)
        info = client.publish(topic, payload=payload, qos=qos, retain=retain)
        return info.rc == mqtt.MQTT_ERR_SUCCESS
