"""Correlated event binder: dispatcher events settle a result handle.

This module wires one result event type, any number of fault event
types and an optional progress event type of an
:class:`~core.dispatcher.EventSource` straight into a settlement sink
(a :class:`~core.deferred.Deferred` by default), and hands the caller
the sink's :class:`~core.deferred.Promise`.

Settlement:
    - Result event → ``sink.resolve(event)``.
    - Fault event → ``sink.reject(event)``.
    - Progress event → ``sink.update(...)``; never settles.
    After resolve/reject every listener the binding added (result,
    faults, progress) is removed, exactly once. Teardown runs in a
    ``finally`` block so a sink that raises while settling still leaves
    no listeners behind.

Correlation:
    Several concurrent operations may share one dispatcher and emit the
    same event types. With ``correlation_path`` set, each incoming event
    (progress included) is resolved along that path and compared with
    ``expected_correlation_value``; a mismatch is ignored entirely. The
    binding stays pending and keeps its listeners.

Cancellation:
    There is no timeout. ``EventBinding.release()`` (see :meth:`bind`)
    detaches a pending binding without settling it.

Example:
    >>> from core.binding import CorrelatedEventBinder
    >>> from core.dispatcher import EventDispatcher
    >>> from core.events import Event
    >>> dispatcher = EventDispatcher()
    >>> binder = CorrelatedEventBinder()
    >>> promise = binder.watch(dispatcher, "done", ["err1", "err2"], "progress", "pct")
    >>> seen = []
    >>> _ = promise.then(None, None, seen.append)
    >>> dispatcher.dispatch(Event(type="progress", pct=42))
    1
    >>> seen
    [42]
    >>> dispatcher.dispatch(Event(type="err2"))
    1
    >>> promise.is_rejected(), dispatcher.listener_count()
    (True, 0)
"""

import logging
from collections.abc import Mapping
from enum import Enum
from typing import Any, Callable

from pydantic import BaseModel, ConfigDict, Field, field_validator

from core.deferred import Deferred, Promise, SettlementSink
from core.dispatcher import EventSource
from core.events import event_type_of
from core.property_path import resolve_path

logger: logging.Logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Type aliases
# ---------------------------------------------------------------------------

SinkFactory = Callable[[], SettlementSink]
"""Zero-argument factory returning a fresh settlement sink."""

_POSITIONAL_FIELDS: tuple[str, ...] = ("result_type", "fault_types", "progress_type")
"""Field order of ``watch()``'s positional shorthand."""

_NOT_SET: object = object()


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class BindingConfig(BaseModel):
    """Normalized configuration of one binding.

    Attributes:
        result_type: Event type that resolves the handle.
        fault_types: Event types that reject the handle. A bare string
            is wrapped into a one-element tuple.
        progress_type: Optional non-terminal event type forwarded to
            ``sink.update()``.
        progress_path: Optional dotted path extracted from progress
            events before forwarding. Unset forwards the raw event.
        correlation_path: Optional dotted path to a correlation token
            on each event.
        expected_correlation_value: Token value an event must carry to
            be observed. Only consulted when ``correlation_path`` is set.
        use_capture: Capture flag passed to the dispatcher.
        priority: Listener priority passed to the dispatcher.

    Example:
        >>> BindingConfig(fault_types="timeout").fault_types
        ('timeout',)
        >>> BindingConfig.from_args("done", ["err"], {"priority": 5}).priority
        5
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    result_type: str = Field(default="result", min_length=1)
    fault_types: tuple[str, ...] = Field(default=("fault",))
    progress_type: str | None = Field(default=None)
    progress_path: str | None = Field(default=None)
    correlation_path: str | None = Field(default=None)
    expected_correlation_value: Any = Field(default=None)
    use_capture: bool = Field(default=False)
    priority: int = Field(default=0)

    @field_validator("fault_types", mode="before")
    @classmethod
    def _wrap_single_fault_type(cls, v: Any) -> Any:
        if isinstance(v, str):
            return (v,)
        return v

    @classmethod
    def from_args(cls, *args: Any, **options: Any) -> "BindingConfig":
        """Build a config from ``watch()``-style shorthand.

        Positional arguments fill ``result_type``, ``fault_types`` and
        ``progress_type`` in that order. The first mapping or
        ``BindingConfig`` argument is an options overlay and ends
        positional parsing. When ``progress_type`` was given
        positionally, the next argument is always an overlay: a mapping
        is merged, a bare string is taken as ``progress_path``. No
        argument is ever read as a fifth positional field; leftovers are
        ignored with a warning. Keyword arguments are overlaid last.

        Raises:
            pydantic.ValidationError: If a field has the wrong type.
        """
        fields: dict[str, Any] = {}
        consumed: int = 0
        for index, arg in enumerate(args):
            if _is_overlay(arg):
                fields.update(_overlay_fields(arg))
                consumed = index + 1
                break
            if index < len(_POSITIONAL_FIELDS):
                fields[_POSITIONAL_FIELDS[index]] = arg
                consumed = index + 1
                continue
            # Fourth argument after a positional progress type.
            if arg is not None:
                fields["progress_path"] = arg
            consumed = index + 1
            break

        if consumed < len(args):
            logger.warning(
                "Ignoring %d extra binding argument(s): %r",
                len(args) - consumed,
                args[consumed:],
            )

        fields.update(options)
        # None positional placeholders keep the defaults.
        return cls(**{key: value for key, value in fields.items() if value is not None})

    @property
    def event_types(self) -> tuple[str, ...]:
        """Every event type this binding listens to."""
        types: tuple[str, ...] = (self.result_type, *self.fault_types)
        if self.progress_type is not None:
            types = (*types, self.progress_type)
        return types


def _is_overlay(arg: Any) -> bool:
    return isinstance(arg, (Mapping, BindingConfig))


def _overlay_fields(arg: Any) -> dict[str, Any]:
    if isinstance(arg, BindingConfig):
        return dict(arg.model_dump(exclude_unset=True))
    return dict(arg)


# ---------------------------------------------------------------------------
# Binding
# ---------------------------------------------------------------------------


class BindingState(str, Enum):
    """Lifecycle of an :class:`EventBinding`.

    States:
        PENDING: Listeners attached, waiting for a qualifying event.
        SETTLED: Resolved or rejected; listeners removed.
        RELEASED: Detached by ``release()`` without settling.
    """

    PENDING = "PENDING"
    SETTLED = "SETTLED"
    RELEASED = "RELEASED"


class EventBinding:
    """Owns the listeners and sink of a single binder invocation.

    Created attached: the constructor subscribes the result, fault and
    progress listeners immediately. Only this object removes them.

    Args:
        dispatcher: Event source to listen on.
        config: Normalized binding configuration.
        sink: Settlement sink to drive.
    """

    def __init__(
        self,
        dispatcher: EventSource,
        config: BindingConfig,
        sink: SettlementSink,
    ) -> None:
        self._dispatcher: EventSource = dispatcher
        self._config: BindingConfig = config
        self._sink: SettlementSink = sink
        self._state: BindingState = BindingState.PENDING
        self._attach()

    @property
    def config(self) -> BindingConfig:
        return self._config

    @property
    def state(self) -> BindingState:
        return self._state

    @property
    def promise(self) -> Promise:
        """The sink's externally visible result handle."""
        return self._sink.promise

    def release(self) -> None:
        """Detach a pending binding without settling it. Idempotent."""
        if self._state is not BindingState.PENDING:
            return
        self._state = BindingState.RELEASED
        self._detach()
        logger.debug("Binding for %s released", self._config.result_type)

    # ------------------------------------------------------------------
    # Listener management
    # ------------------------------------------------------------------

    def _attach(self) -> None:
        config: BindingConfig = self._config
        for event_type in (config.result_type, *config.fault_types):
            self._dispatcher.subscribe(
                event_type,
                self._on_event,
                config.use_capture,
                config.priority,
            )
        if config.progress_type is not None:
            self._dispatcher.subscribe(
                config.progress_type,
                self._on_progress,
                config.use_capture,
                config.priority,
            )
        logger.debug("Binding attached to %s", config.event_types)

    def _detach(self) -> None:
        config: BindingConfig = self._config
        for event_type in (config.result_type, *config.fault_types):
            self._dispatcher.unsubscribe(event_type, self._on_event, config.use_capture)
        if config.progress_type is not None:
            self._dispatcher.unsubscribe(
                config.progress_type,
                self._on_progress,
                config.use_capture,
            )
        logger.debug("Binding detached from %s", config.event_types)

    # ------------------------------------------------------------------
    # Event delivery
    # ------------------------------------------------------------------

    def _matches_correlation(self, event: object) -> bool:
        path: str | None = self._config.correlation_path
        if path is None:
            return True
        token: Any = resolve_path(event, path, _NOT_SET)
        return token is not _NOT_SET and token == self._config.expected_correlation_value

    def _on_event(self, event: object) -> None:
        if self._state is not BindingState.PENDING:
            return
        if not self._matches_correlation(event):
            logger.debug("Ignoring uncorrelated %s event", event_type_of(event))
            return

        self._state = BindingState.SETTLED
        try:
            if event_type_of(event) == self._config.result_type:
                self._sink.resolve(event)
            else:
                self._sink.reject(event)
        finally:
            self._detach()

    def _on_progress(self, event: object) -> None:
        if self._state is not BindingState.PENDING:
            return
        if not self._matches_correlation(event):
            return
        path: str | None = self._config.progress_path
        if path is None:
            self._sink.update(event)
            return
        value: Any = resolve_path(event, path, _NOT_SET)
        if value is _NOT_SET:
            self._sink.update()
        else:
            self._sink.update(value)


# ---------------------------------------------------------------------------
# Binder
# ---------------------------------------------------------------------------


class CorrelatedEventBinder:
    """Entry point turning dispatcher events into result handles.

    Args:
        sink_factory: Creates the settlement sink for each binding.
            Defaults to :class:`~core.deferred.Deferred`.

    Example:
        >>> binder = CorrelatedEventBinder()
        >>> promise = binder.listen(
        ...     dispatcher, "done", ["failed"],
        ...     correlation_path="token", expected_correlation_value="abc",
        ... )
    """

    def __init__(self, sink_factory: SinkFactory = Deferred) -> None:
        self._sink_factory: SinkFactory = sink_factory

    def watch(self, dispatcher: EventSource | None, *args: Any, **options: Any) -> Promise | None:
        """Shorthand form of :meth:`listen`.

        See :meth:`BindingConfig.from_args` for how ``args`` and
        ``options`` are interpreted.

        The binder raises nothing of its own, but the options are
        validated as a :class:`BindingConfig` before anything is attached.

        Returns:
            The result handle, or ``None`` when ``dispatcher`` is ``None``.

        Raises:
            pydantic.ValidationError: If an overlay names an unknown option
                or gives an option the wrong type.
        """
        if dispatcher is None:
            return None
        config: BindingConfig = BindingConfig.from_args(*args, **options)
        return self.listen(
            dispatcher,
            config.result_type,
            config.fault_types,
            progress_type=config.progress_type,
            progress_path=config.progress_path,
            use_capture=config.use_capture,
            priority=config.priority,
            correlation_path=config.correlation_path,
            expected_correlation_value=config.expected_correlation_value,
        )

    def listen(
        self,
        dispatcher: EventSource,
        result_type: str,
        fault_types: str | tuple[str, ...] | list[str],
        progress_type: str | None = None,
        progress_path: str | None = None,
        use_capture: bool = False,
        priority: int = 0,
        correlation_path: str | None = None,
        expected_correlation_value: Any = None,
    ) -> Promise:
        """Bind result/fault/progress events and return the result handle.

        Args:
            dispatcher: Event source to listen on.
            result_type: Event type that resolves the handle.
            fault_types: Event type(s) that reject the handle.
            progress_type: Optional non-terminal progress event type.
            progress_path: Optional path extracted from progress events.
            use_capture: Capture flag passed to the dispatcher.
            priority: Listener priority passed to the dispatcher.
            correlation_path: Optional path to a correlation token.
            expected_correlation_value: Token value to accept.

        Returns:
            The sink's :class:`~core.deferred.Promise`.
        """
        config: BindingConfig = BindingConfig(
            result_type=result_type,
            fault_types=fault_types,
            progress_type=progress_type,
            progress_path=progress_path,
            use_capture=use_capture,
            priority=priority,
            correlation_path=correlation_path,
            expected_correlation_value=expected_correlation_value,
        )
        return self.bind(dispatcher, config).promise

    def bind(self, dispatcher: EventSource, config: BindingConfig) -> EventBinding:
        """Attach a binding for ``config`` and return it.

        Unlike :meth:`listen`, the caller keeps the :class:`EventBinding`
        and can ``release()`` it to cancel a pending operation.
        """
        return EventBinding(dispatcher, config, self._sink_factory())
