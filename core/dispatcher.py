"""In-process event dispatcher with prioritised, named listeners.

This module provides the ``EventSource`` protocol the adapter layer
depends on, and ``EventDispatcher``, a reference implementation of it
backed by a per-type listener table.

Listener contract:
    ``subscribe(event_type, handler, use_capture, priority)`` registers
    ``handler`` for events whose ``type`` equals ``event_type``.
    ``unsubscribe(event_type, handler, use_capture)`` removes it again.
    A ``(handler, use_capture)`` pair is registered at most once per
    type; a duplicate subscribe is ignored. Handlers are compared with
    ``==``, so the same bound method of the same object unsubscribes
    the listener it subscribed.

Delivery order:
    Highest priority first, registration order on ties. Priority is an
    ordering hint between listeners of one dispatcher, not a global
    guarantee; other hosts satisfying ``EventSource`` may order
    differently. The adapters register above the default priority so
    they see an event before ordinary application listeners.

Snapshot semantics:
    ``dispatch()`` iterates a snapshot of the listeners registered for
    the event type when delivery starts. Listeners added during delivery
    are not called for the current event; listeners removed during
    delivery are skipped if they have not run yet.

Capture flag:
    ``use_capture`` is part of a listener's identity (as with DOM event
    targets) but this dispatcher has no propagation tree, so capture and
    bubble listeners are called in the same pass.

Error handling:
    By default a listener exception propagates out of ``dispatch()``
    and the remaining listeners are not called. With
    ``DispatcherConfig(isolate_errors=True)`` each exception is logged
    via ``logger.exception`` and counted, and delivery continues.

Example:
    >>> from core.dispatcher import EventDispatcher
    >>> from core.events import Event
    >>> dispatcher = EventDispatcher()
    >>> seen = []
    >>> dispatcher.subscribe("done", seen.append)
    >>> dispatcher.dispatch(Event(type="done", value=1))
    1
    >>> seen[0].value
    1
    >>> dispatcher.stats().total_dispatched
    1
"""

import itertools
import logging
import threading
from typing import Any, Callable, NamedTuple, Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict, Field

from core.events import event_type_of

logger: logging.Logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Type aliases
# ---------------------------------------------------------------------------

EventHandler = Callable[[Any], object]
"""Listener signature: ``(event) -> None``. Return values are ignored."""


# ---------------------------------------------------------------------------
# Host interface
# ---------------------------------------------------------------------------


@runtime_checkable
class EventSource(Protocol):
    """The subscribe/unsubscribe capability the adapters require.

    Any emitter of discrete named events satisfies it: this module's
    :class:`EventDispatcher`, :class:`infra.mqtt_source.MQTTEventSource`
    (topics as event types), or a wrapper around a UI toolkit's event
    target.
    """

    def subscribe(
        self,
        event_type: str,
        handler: EventHandler,
        use_capture: bool = False,
        priority: int = 0,
    ) -> None: ...

    def unsubscribe(
        self,
        event_type: str,
        handler: EventHandler,
        use_capture: bool = False,
    ) -> None: ...


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class DispatcherConfig(BaseModel):
    """Configuration for :class:`EventDispatcher`.

    Attributes:
        isolate_errors: If ``True``, a listener exception is logged and
            counted and delivery continues with the next listener. If
            ``False`` (default), the exception propagates out of
            ``dispatch()``.

    Example:
        >>> DispatcherConfig(isolate_errors=True).isolate_errors
        True
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    isolate_errors: bool = Field(
        default=False,
        description=(
            "Log and count listener exceptions instead of propagating "
            "them out of dispatch()."
        ),
    )


# ---------------------------------------------------------------------------
# Stats Model
# ---------------------------------------------------------------------------


class DispatcherStats(BaseModel):
    """Immutable snapshot of dispatcher statistics.

    Returned by :meth:`EventDispatcher.stats`.

    Attributes:
        total_dispatched: Events passed to ``dispatch()``.
        total_delivered: Listener invocations across all events.
        listener_errors: Listener exceptions caught in isolation mode.
        listener_count: Listeners currently registered.
        event_types: Event types with at least one listener, sorted.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    total_dispatched: int = Field(ge=0, description="Events dispatched.")
    total_delivered: int = Field(ge=0, description="Listener invocations.")
    listener_errors: int = Field(
        ge=0,
        description="Listener exceptions caught (isolation mode only).",
    )
    listener_count: int = Field(ge=0, description="Registered listeners.")
    event_types: tuple[str, ...] = Field(
        default=(),
        description="Event types with at least one listener.",
    )


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------


class _Listener(NamedTuple):
    handler: EventHandler
    use_capture: bool
    priority: int
    seq: int


class EventDispatcher:
    """Named-event dispatcher with priority-ordered listeners.

    Thread safety:
        The listener table is guarded by ``_lock`` so a source that
        delivers on an IO thread (see :mod:`infra.mqtt_source`) can
        coexist with subscribe/unsubscribe calls from the main thread.
        Listeners themselves are called outside the lock.

    Args:
        config: Dispatcher configuration. Defaults to
            ``DispatcherConfig()`` (errors propagate).

    Example:
        >>> dispatcher = EventDispatcher()
        >>> order = []
        >>> dispatcher.subscribe("tick", lambda e: order.append("low"))
        >>> dispatcher.subscribe("tick", lambda e: order.append("high"), priority=10)
        >>> dispatcher.dispatch({"type": "tick"})
        2
        >>> order
        ['high', 'low']
    """

    def __init__(self, config: DispatcherConfig | None = None) -> None:
        self._config: DispatcherConfig = config or DispatcherConfig()
        self._listeners: dict[str, list[_Listener]] = {}
        self._lock: threading.Lock = threading.Lock()
        self._seq: itertools.count[int] = itertools.count()

        self._total_dispatched: int = 0
        self._total_delivered: int = 0
        self._listener_errors: int = 0

    # ------------------------------------------------------------------
    # Listener table
    # ------------------------------------------------------------------

    def subscribe(
        self,
        event_type: str,
        handler: EventHandler,
        use_capture: bool = False,
        priority: int = 0,
    ) -> None:
        """Register ``handler`` for events of ``event_type``.

        A handler already registered for the same type and capture flag
        is left in place (its original priority is kept).

        Args:
            event_type: Event type name.
            handler: Callable receiving the event.
            use_capture: Capture flag, part of the listener's identity.
            priority: Higher runs earlier. Default 0.
        """
        with self._lock:
            listeners: list[_Listener] = self._listeners.setdefault(event_type, [])
            for existing in listeners:
                if existing.handler == handler and existing.use_capture == use_capture:
                    logger.debug(
                        "Listener already subscribed to %s, skipping",
                        event_type,
                    )
                    return
            listeners.append(
                _Listener(handler, use_capture, priority, next(self._seq)),
            )
            listeners.sort(key=lambda item: (-item.priority, item.seq))

    def unsubscribe(
        self,
        event_type: str,
        handler: EventHandler,
        use_capture: bool = False,
    ) -> None:
        """Remove ``handler`` for ``event_type``. Unknown handlers are ignored."""
        with self._lock:
            listeners: list[_Listener] | None = self._listeners.get(event_type)
            if not listeners:
                return
            remaining: list[_Listener] = [
                item
                for item in listeners
                if not (item.handler == handler and item.use_capture == use_capture)
            ]
            if remaining:
                self._listeners[event_type] = remaining
            else:
                del self._listeners[event_type]

    def has_listener(self, event_type: str, handler: EventHandler | None = None) -> bool:
        """Whether ``event_type`` has listeners (or ``handler`` specifically)."""
        with self._lock:
            listeners: list[_Listener] = self._listeners.get(event_type, [])
            if handler is None:
                return bool(listeners)
            return any(item.handler == handler for item in listeners)

    def listener_count(self, event_type: str | None = None) -> int:
        """Number of listeners for ``event_type``, or in total when ``None``."""
        with self._lock:
            if event_type is not None:
                return len(self._listeners.get(event_type, ()))
            return sum(len(items) for items in self._listeners.values())

    def clear(self) -> None:
        """Remove every listener and reset counters."""
        with self._lock:
            count: int = sum(len(items) for items in self._listeners.values())
            self._listeners.clear()
        self._total_dispatched = 0
        self._total_delivered = 0
        self._listener_errors = 0
        if count:
            logger.warning("Dispatcher cleared with %d listeners attached", count)

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    def dispatch(self, event: object) -> int:
        """Deliver ``event`` to the listeners registered for its type.

        Args:
            event: An :class:`~core.events.Event`, a mapping with a
                ``"type"`` key, or any object with a ``type`` attribute.

        Returns:
            Number of listeners invoked.

        Raises:
            ValueError: If the event has no string ``type``.
            Exception: Any listener exception, unless
                ``isolate_errors`` is enabled.
        """
        event_type: str | None = event_type_of(event)
        if event_type is None:
            raise ValueError(f"Event has no type: {event!r}")

        self._total_dispatched += 1
        with self._lock:
            snapshot: list[_Listener] = list(self._listeners.get(event_type, ()))

        delivered: int = 0
        for listener in snapshot:
            if not self._is_registered(event_type, listener):
                continue
            delivered += 1
            self._total_delivered += 1
            if not self._config.isolate_errors:
                listener.handler(event)
                continue
            try:
                listener.handler(event)
            except Exception:
                self._listener_errors += 1
                logger.exception("Listener error for event type %s", event_type)
        return delivered

    def _is_registered(self, event_type: str, listener: _Listener) -> bool:
        with self._lock:
            return any(
                item.seq == listener.seq
                for item in self._listeners.get(event_type, ())
            )

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------

    def stats(self) -> DispatcherStats:
        """Return a snapshot of dispatcher statistics."""
        with self._lock:
            listener_count: int = sum(len(items) for items in self._listeners.values())
            event_types: tuple[str, ...] = tuple(sorted(self._listeners))
        return DispatcherStats(
            total_dispatched=self._total_dispatched,
            total_delivered=self._total_delivered,
            listener_errors=self._listener_errors,
            listener_count=listener_count,
            event_types=event_types,
        )
