"""Two-phase multi-event interceptor.

Phase one, :meth:`MultiEventInterceptor.configure`, records which
events mean "result" and which mean "fault", together with the field
holding each event's payload. Nothing touches the dispatcher yet.

Phase two happens when the returned :class:`CallbackRegistration` is
called with real handlers. Only then are listeners attached, one per
listener spec, at :data:`INTERCEPTOR_PRIORITY` so the interceptor sees
an event before ordinary application listeners. The first configured
event to fire wins: its payload is extracted, the matching handler is
called, and every listener of the registration is removed, whether the
handler returned or raised.

State machine::

    UNCONFIGURED -> CONFIGURED -> ARMED -> FIRED
                                       \\-> RELEASED
    RELEASED / FIRED --(configure or re-arm)--> CONFIGURED / ARMED

Handler errors:
    An exception from the result handler gets a note naming the
    registration's scope and the phase ``"result-handler invocation"``
    and is re-raised after cleanup. An exception from the fault handler
    propagates after cleanup without a note. This asymmetry is kept for
    compatibility with existing callers.

Example:
    >>> from core.dispatcher import EventDispatcher
    >>> from core.events import Event
    >>> from core.interceptor import MultiEventInterceptor
    >>> dispatcher = EventDispatcher()
    >>> interceptor = MultiEventInterceptor(dispatcher)
    >>> add_callbacks = interceptor.configure(
    ...     {"type": "OK", "key": "session"},
    ...     {"type": "ERR", "key": "details"},
    ... )
    >>> sessions = []
    >>> add_callbacks(sessions.append, print)
    >>> dispatcher.dispatch(Event(type="OK", session={"id": 7}))
    1
    >>> sessions
    [{'id': 7}]
    >>> dispatcher.listener_count()
    0
"""

import logging
from enum import Enum
from typing import Any, Callable

from core.dispatcher import EventSource
from core.events import ListenerSpec, event_type_of, normalize_specs
from core.property_path import resolve_path

logger: logging.Logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

INTERCEPTOR_PRIORITY: int = 100
"""Listener priority used by the interceptor (default listeners use 0)."""

RESULT_HANDLER_PHASE: str = "result-handler invocation"

Handler = Callable[..., Any]


class InterceptorState(str, Enum):
    """Lifecycle of a :class:`CallbackRegistration`."""

    UNCONFIGURED = "UNCONFIGURED"
    CONFIGURED = "CONFIGURED"
    ARMED = "ARMED"
    FIRED = "FIRED"
    RELEASED = "RELEASED"


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


class CallbackRegistration:
    """Re-armable handle produced by :meth:`MultiEventInterceptor.configure`.

    Calling the registration (or :meth:`add_callbacks`) arms it; calling
    it with no result handler, or :meth:`release`, disarms it.

    Args:
        dispatcher: Event source to attach listeners to.
        result_specs: Specs whose events call the result handler.
        fault_specs: Specs whose events call the fault handler.
        priority: Listener priority.
    """

    def __init__(
        self,
        dispatcher: EventSource,
        result_specs: tuple[ListenerSpec, ...],
        fault_specs: tuple[ListenerSpec, ...],
        priority: int = INTERCEPTOR_PRIORITY,
    ) -> None:
        self._dispatcher: EventSource = dispatcher
        self._result_specs: tuple[ListenerSpec, ...] = result_specs
        self._fault_specs: tuple[ListenerSpec, ...] = fault_specs
        self._priority: int = priority

        self._state: InterceptorState = InterceptorState.CONFIGURED
        self._attached: list[str] = []
        self._result_handler: Handler | None = None
        self._fault_handler: Handler | None = None
        self._scope: Any = None
        self._generation: int = 0

    def __call__(
        self,
        result_handler: Handler | None = None,
        fault_handler: Handler | None = None,
        scope: Any = None,
    ) -> None:
        self.add_callbacks(result_handler, fault_handler, scope)

    @property
    def state(self) -> InterceptorState:
        return self._state

    @property
    def result_specs(self) -> tuple[ListenerSpec, ...]:
        return self._result_specs

    @property
    def fault_specs(self) -> tuple[ListenerSpec, ...]:
        return self._fault_specs

    @property
    def armed(self) -> bool:
        return self._state is InterceptorState.ARMED

    def add_callbacks(
        self,
        result_handler: Handler | None = None,
        fault_handler: Handler | None = None,
        scope: Any = None,
    ) -> None:
        """Arm the registration, or release it when ``result_handler`` is ``None``.

        Any previous arming is released first. Handlers are always called
        as ``handler(payload)``; pass a bound method or a
        :func:`functools.partial` to carry an owner along. Calling this from
        inside a handler re-arms the registration for the next event.

        Args:
            result_handler: Called with the payload of a result event.
            fault_handler: Called with the payload of a fault event.
            scope: Owner the handlers run for, named in the note added
                to result-handler errors.
        """
        self._teardown()
        self._generation += 1
        if result_handler is None:
            self._release_state()
            return

        self._result_handler = result_handler
        self._fault_handler = fault_handler
        self._scope = scope
        for spec in (*self._result_specs, *self._fault_specs):
            if spec.event_type in self._attached:
                continue
            self._dispatcher.subscribe(spec.event_type, self._on_event, False, self._priority)
            self._attached.append(spec.event_type)
        self._state = InterceptorState.ARMED
        logger.debug("Interceptor armed for %s", self._attached)

    def release(self) -> None:
        """Detach every listener. Safe to call repeatedly or before arming."""
        self.add_callbacks(None)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _release_state(self) -> None:
        if self._state is InterceptorState.ARMED:
            self._state = InterceptorState.RELEASED
        self._result_handler = None
        self._fault_handler = None
        self._scope = None

    def _teardown(self) -> None:
        if not self._attached:
            return
        for event_type in self._attached:
            self._dispatcher.unsubscribe(event_type, self._on_event, False)
        logger.debug("Interceptor listeners removed from %s", self._attached)
        self._attached = []

    def _find_spec(self, event_type: str | None) -> tuple[ListenerSpec | None, bool]:
        for spec in self._result_specs:
            if spec.event_type == event_type:
                return spec, True
        for spec in self._fault_specs:
            if spec.event_type == event_type:
                return spec, False
        return None, False

    @staticmethod
    def _extract(spec: ListenerSpec | None, event: object) -> Any:
        if spec is None:
            return None
        if spec.whole_event:
            return event
        return resolve_path(event, spec.data_key)

    def _on_event(self, event: object) -> None:
        if self._state is not InterceptorState.ARMED:
            return
        spec, is_result = self._find_spec(event_type_of(event))
        payload: Any = self._extract(spec, event)
        result_handler: Handler | None = self._result_handler
        fault_handler: Handler | None = self._fault_handler
        scope: Any = self._scope
        generation: int = self._generation

        self._state = InterceptorState.FIRED
        try:
            if is_result and result_handler is not None:
                try:
                    result_handler(payload)
                except Exception as exc:
                    exc.add_note(f"during {RESULT_HANDLER_PHASE} (scope={scope!r})")
                    raise
            elif fault_handler is not None:
                fault_handler(payload)
        finally:
            # A handler that re-armed or released already tore this cycle down.
            if generation == self._generation:
                self._teardown()
                self._result_handler = None
                self._fault_handler = None
                self._scope = None


# ---------------------------------------------------------------------------
# Interceptor
# ---------------------------------------------------------------------------


class MultiEventInterceptor:
    """Owns the current :class:`CallbackRegistration` for one dispatcher.

    Args:
        dispatcher: Event source to intercept events on.
        priority: Listener priority. Defaults to
            :data:`INTERCEPTOR_PRIORITY`, above default listeners.
    """

    def __init__(self, dispatcher: EventSource, priority: int = INTERCEPTOR_PRIORITY) -> None:
        self._dispatcher: EventSource = dispatcher
        self._priority: int = priority
        self._registration: CallbackRegistration | None = None

    @property
    def registration(self) -> CallbackRegistration | None:
        return self._registration

    @property
    def state(self) -> InterceptorState:
        if self._registration is None:
            return InterceptorState.UNCONFIGURED
        return self._registration.state

    def configure(self, result_events: Any, fault_events: Any = None) -> CallbackRegistration:
        """Record result/fault listener specs and return the registration.

        Each argument may be a single spec-like object (mapping,
        :class:`~core.events.ListenerSpec`, ``(type, key)`` pair or bare
        type string) or a sequence of them. Any previously configured
        registration is released first. The new registration is not
        armed.

        Raises:
            pydantic.ValidationError: If a spec mapping is malformed.
            TypeError: If a spec has none of the accepted forms.
        """
        result_specs: tuple[ListenerSpec, ...] = normalize_specs(result_events)
        fault_specs: tuple[ListenerSpec, ...] = normalize_specs(fault_events)
        self.release()
        self._registration = CallbackRegistration(
            self._dispatcher,
            result_specs,
            fault_specs,
            self._priority,
        )
        return self._registration

    def release(self) -> None:
        """Release the current registration, if any."""
        if self._registration is not None:
            self._registration.release()
