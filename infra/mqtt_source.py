"""MQTT topics exposed as an ``EventSource``.

``MQTTEventSource`` lets the adapters in :mod:`core` wait on messages
from an MQTT broker: each topic is an event type, and each message is
decoded into a :class:`~core.events.Event` whose ``type`` is the topic.

Subscription semantics:
    The first listener for a topic sends an MQTT subscribe; removing
    the last listener sends an unsubscribe. The local listener table is
    the source of truth and is replayed on every successful
    ``on_connect``, so listeners added before ``connect()`` or during a
    reconnect are not lost.

Decoding:
    A payload that is a JSON object contributes its keys as event
    fields (``{"token": "abc", "pct": 42}`` → ``event.pct == 42``). A
    ``"type"`` key in the payload is ignored; the topic always wins. Any
    other payload is carried unchanged as ``event.payload`` (bytes).

Wildcards:
    A listener may subscribe to a filter containing ``+`` or ``#``. A
    message matching such a filter (``paho.mqtt.client.topic_matches_sub``)
    is delivered to its listeners as an event whose ``type`` is the
    filter and whose ``topic`` field is the concrete topic it arrived on.

Threading:
    Paho calls ``_on_message`` on its network thread, so listeners (and
    any binder or interceptor settled by them) run on that thread.
    Delivery goes through an internal
    :class:`~core.dispatcher.EventDispatcher` with error isolation: a
    failing listener is logged and counted, and the network loop keeps
    running.

Reconnection:
    Delegated to paho's ``loop_start()`` thread, bounded by
    ``reconnect_min_delay`` / ``reconnect_max_delay``.

Example::

    source = MQTTEventSource(MQTTSourceConfig(host="broker.local"))
    source.connect()
    promise = CorrelatedEventBinder().watch(
        source, "jobs/done", ["jobs/failed"], correlation_path="job_id",
        expected_correlation_value="42",
    )
    # ... broker publishes {"job_id": "42"} on jobs/done ...
    source.shutdown()
"""

import json
import logging
import threading
import time
from enum import Enum
from typing import Any

import paho.mqtt.client as mqtt
from pydantic import BaseModel, ConfigDict, Field

from core.dispatcher import DispatcherConfig, EventDispatcher, EventHandler
from core.events import Event

logger: logging.Logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class SourceState(str, Enum):
    """Connection state machine for :class:`MQTTEventSource`.

    States:
        INIT: Created, ``connect()`` not yet called.
        CONNECTING: ``connect()`` called, waiting for ``on_connect``.
        CONNECTED: Broker accepted the connection.
        SHUTDOWN: ``shutdown()`` called. Terminal state.
    """

    INIT = "INIT"
    CONNECTING = "CONNECTING"
    CONNECTED = "CONNECTED"
    SHUTDOWN = "SHUTDOWN"


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class MQTTSourceConfig(BaseModel):
    """Configuration for :class:`MQTTEventSource`.

    Attributes:
        host: Broker hostname.
        port: Broker port. Default 1883.
        keepalive: MQTT keepalive interval in seconds. Default 60.
        client_id: MQTT client identifier. Empty lets the broker assign one.
        qos: QoS level for topic subscriptions (0-2).
        transport: ``"tcp"`` or ``"websockets"``.
        reconnect_min_delay: Minimum reconnect backoff delay in seconds.
        reconnect_max_delay: Maximum reconnect backoff delay in seconds.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    host: str = Field(min_length=1, description="Broker hostname")
    port: int = Field(default=1883, gt=0, le=65535, description="Broker port")
    keepalive: int = Field(
        default=60,
        ge=5,
        le=300,
        description="MQTT keepalive interval in seconds",
    )
    client_id: str = Field(default="", description="MQTT client identifier")
    qos: int = Field(default=0, ge=0, le=2, description="Subscription QoS")
    transport: str = Field(
        default="tcp",
        pattern="^(tcp|websockets)$",
        description="Transport: 'tcp' or 'websockets'",
    )
    reconnect_min_delay: int = Field(
        default=1,
        ge=1,
        description="Minimum reconnect backoff delay in seconds",
    )
    reconnect_max_delay: int = Field(
        default=30,
        ge=1,
        description="Maximum reconnect backoff delay in seconds",
    )


# ---------------------------------------------------------------------------
# Event Source
# ---------------------------------------------------------------------------


class MQTTEventSource:
    """``EventSource`` backed by MQTT topic subscriptions.

    Args:
        config: Broker connection configuration.

    Example::

        source = MQTTEventSource(MQTTSourceConfig(host="localhost"))
        source.subscribe("sensors/alarm", on_alarm)
        source.connect()
    """

    def __init__(self, config: MQTTSourceConfig) -> None:
        self._config: MQTTSourceConfig = config
        self._dispatcher: EventDispatcher = EventDispatcher(
            DispatcherConfig(isolate_errors=True),
        )
        self._client: mqtt.Client | None = None

        self._state: SourceState = SourceState.INIT
        self._state_lock: threading.Lock = threading.Lock()
        self._sub_lock: threading.Lock = threading.Lock()

        self._messages_received: int = 0
        self._decode_errors: int = 0
        self._counter_lock: threading.Lock = threading.Lock()
        self._last_connect_ts: float = 0.0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def state(self) -> SourceState:
        with self._state_lock:
            return self._state

    @property
    def connected(self) -> bool:
        return self.state == SourceState.CONNECTED

    def connect(self) -> None:
        """Create the paho client, connect and start its network loop.

        Raises:
            RuntimeError: If the source is not in INIT state.
            Exception: If the initial connect fails.
        """
        with self._state_lock:
            if self._state != SourceState.INIT:
                raise RuntimeError(
                    f"Cannot connect: source is in {self._state.value} state"
                )
            self._state = SourceState.CONNECTING

        self._client = self._create_mqtt_client()
        self._client.connect(
            host=self._config.host,
            port=self._config.port,
            keepalive=self._config.keepalive,
        )
        self._client.loop_start()
        logger.info(
            "MQTT event source connecting to %s:%d",
            self._config.host,
            self._config.port,
        )

    def shutdown(self) -> None:
        """Stop the network loop and disconnect. Idempotent."""
        with self._state_lock:
            if self._state == SourceState.SHUTDOWN:
                return
            self._state = SourceState.SHUTDOWN

        if self._client is not None:
            try:
                self._client.loop_stop()
            except Exception:
                logger.debug("Exception during loop_stop", exc_info=True)
            try:
                self._client.disconnect()
            except Exception:
                logger.debug("Exception during disconnect", exc_info=True)

        logger.info(
            "MQTT event source shut down (messages=%d, decode_errors=%d)",
            self._messages_received,
            self._decode_errors,
        )

    # ------------------------------------------------------------------
    # EventSource
    # ------------------------------------------------------------------

    def subscribe(
        self,
        event_type: str,
        handler: EventHandler,
        use_capture: bool = False,
        priority: int = 0,
    ) -> None:
        """Listen for messages on topic ``event_type``."""
        with self._sub_lock:
            first: bool = not self._dispatcher.has_listener(event_type)
            self._dispatcher.subscribe(event_type, handler, use_capture, priority)
            if first and self.connected and self._client is not None:
                self._client.subscribe(event_type, qos=self._config.qos)
                logger.info("Subscribed to topic: %s", event_type)

    def unsubscribe(
        self,
        event_type: str,
        handler: EventHandler,
        use_capture: bool = False,
    ) -> None:
        """Stop listening; the topic is unsubscribed with its last listener."""
        with self._sub_lock:
            if not self._dispatcher.has_listener(event_type):
                return
            self._dispatcher.unsubscribe(event_type, handler, use_capture)
            if self._dispatcher.has_listener(event_type):
                return
            if self.connected and self._client is not None:
                self._client.unsubscribe(event_type)
                logger.info("Unsubscribed from topic: %s", event_type)

    @property
    def topics(self) -> tuple[str, ...]:
        """Topics with at least one local listener."""
        return self._dispatcher.stats().event_types

    def stats(self) -> dict[str, Any]:
        """Return source statistics."""
        dispatcher_stats = self._dispatcher.stats()
        with self._counter_lock:
            messages: int = self._messages_received
            decode_errors: int = self._decode_errors
        return {
            "state": self.state.value,
            "connected": self.connected,
            "messages_received": messages,
            "decode_errors": decode_errors,
            "listener_errors": dispatcher_stats.listener_errors,
            "topics": list(dispatcher_stats.event_types),
            "last_connect_ts": self._last_connect_ts,
        }

    # ------------------------------------------------------------------
    # MQTT Client Factory
    # ------------------------------------------------------------------

    def _create_mqtt_client(self) -> mqtt.Client:
        client: mqtt.Client = mqtt.Client(
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
            client_id=self._config.client_id,
            clean_session=True,
            transport=self._config.transport,
        )
        client.reconnect_delay_set(
            min_delay=self._config.reconnect_min_delay,
            max_delay=self._config.reconnect_max_delay,
        )
        client.on_connect = self._on_connect
        client.on_disconnect = self._on_disconnect
        client.on_message = self._on_message
        return client

    # ------------------------------------------------------------------
    # MQTT Callbacks
    # ------------------------------------------------------------------

    def _on_connect(
        self,
        client: mqtt.Client,
        userdata: object,
        flags: object,
        reason_code: Any,
        properties: object = None,
    ) -> None:
        """Mark connected and replay every topic with listeners."""
        if reason_code != 0:
            logger.error("MQTT connection refused (rc=%s)", reason_code)
            return

        with self._state_lock:
            if self._state == SourceState.SHUTDOWN:
                return
            self._state = SourceState.CONNECTED
        self._last_connect_ts = time.time()
        logger.info("Connected to MQTT broker at %s", self._config.host)

        with self._sub_lock:
            topics: tuple[str, ...] = self.topics
        for topic in topics:
            client.subscribe(topic, qos=self._config.qos)
            logger.info("Replayed subscription: %s", topic)

    def _on_disconnect(
        self,
        client: mqtt.Client,
        userdata: object,
        flags: object,
        reason_code: Any,
        properties: object = None,
    ) -> None:
        with self._state_lock:
            if self._state == SourceState.SHUTDOWN:
                return
            self._state = SourceState.CONNECTING
        if reason_code == 0:
            logger.info("Disconnected from MQTT broker (clean)")
        else:
            logger.warning("Unexpected MQTT disconnect (rc=%s)", reason_code)

    def _on_message(
        self,
        client: mqtt.Client,
        userdata: object,
        msg: mqtt.MQTTMessage,
    ) -> None:
        """Decode ``msg`` into an event and deliver it to local listeners."""
        with self._counter_lock:
            self._messages_received += 1

        try:
            fields: dict[str, Any] = self._decode(msg.payload)
            events: list[Event] = [
                self._event_for(topic_filter, msg.topic, fields)
                for topic_filter in self.topics
                if _matches(topic_filter, msg.topic)
            ]
        except Exception:
            with self._counter_lock:
                self._decode_errors += 1
            logger.exception("Failed to decode message on %s", msg.topic)
            return

        for event in events:
            self._dispatcher.dispatch(event)

    @staticmethod
    def _decode(payload: bytes) -> dict[str, Any]:
        """Turn a raw payload into event fields."""
        try:
            body: Any = json.loads(payload)
        except (UnicodeDecodeError, ValueError):
            return {"payload": payload}
        if not isinstance(body, dict):
            return {"payload": payload}
        return {key: value for key, value in body.items() if key != "type"}

    @staticmethod
    def _event_for(topic_filter: str, topic: str, fields: dict[str, Any]) -> Event:
        if topic_filter == topic:
            return Event(type=topic, **fields)
        return Event(type=topic_filter, **{**fields, "topic": topic})


def _matches(topic_filter: str, topic: str) -> bool:
    if topic_filter == topic:
        return True
    if "+" not in topic_filter and "#" not in topic_filter:
        return False
    return mqtt.topic_matches_sub(topic_filter, topic)
