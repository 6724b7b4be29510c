"""Minimal single-settlement sink and chainable result handle.

``Deferred`` is the producer side: it is settled exactly once through
``resolve()`` or ``reject()`` and may publish any number of ``update()``
progress notifications while pending. ``Promise`` is the consumer side
returned to callers; ``then()`` registers callbacks and returns a new
``Promise`` for the callback's outcome.

Everything runs synchronously in the thread that settles the
``Deferred``; there is no scheduler. Callbacks registered after
settlement run immediately.

Chaining rules:
    - ``on_result`` / ``on_fault`` return value fulfils the chained
      promise. Returning a ``Promise`` adopts its eventual outcome.
    - An exception raised by a callback rejects the chained promise
      with that exception.
    - A missing callback passes the outcome through unchanged.
    - Progress values are forwarded down the chain after
      ``on_progress`` (if any) has seen them.

The adapter layer only depends on the :class:`SettlementSink` protocol,
so any object with ``resolve``/``reject``/``update`` and a ``promise``
attribute can be plugged in instead.

Example:
    >>> from core.deferred import Deferred
    >>> deferred = Deferred()
    >>> doubled = deferred.promise.then(lambda value: value * 2)
    >>> deferred.resolve(21)
    >>> doubled.result
    42
"""

import logging
from enum import Enum
from typing import Any, Callable, Protocol

logger: logging.Logger = logging.getLogger(__name__)

Callback = Callable[[Any], Any]


class DeferredState(str, Enum):
    """Settlement state of a :class:`Deferred`."""

    PENDING = "PENDING"
    FULFILLED = "FULFILLED"
    REJECTED = "REJECTED"


class SettlementSink(Protocol):
    """The producer-side interface the binder settles."""

    @property
    def promise(self) -> Any: ...

    def resolve(self, value: Any = None) -> None: ...

    def reject(self, error: Any = None) -> None: ...

    def update(self, value: Any = None) -> None: ...


class Deferred:
    """Exactly-once settlement sink.

    Raises:
        RuntimeError: From ``resolve()``/``reject()`` once settled.
    """

    def __init__(self) -> None:
        self._state: DeferredState = DeferredState.PENDING
        self._value: Any = None
        self._listeners: list[tuple[Callback, Callback, Callback]] = []
        self._promise: Promise = Promise(self)

    @property
    def promise(self) -> "Promise":
        return self._promise

    @property
    def state(self) -> DeferredState:
        return self._state

    @property
    def settled(self) -> bool:
        return self._state is not DeferredState.PENDING

    def resolve(self, value: Any = None) -> None:
        self._settle(DeferredState.FULFILLED, value)

    def reject(self, error: Any = None) -> None:
        self._settle(DeferredState.REJECTED, error)

    def update(self, value: Any = None) -> None:
        """Publish a progress value. Dropped once settled."""
        if self.settled:
            logger.debug("Progress after settlement dropped: %r", value)
            return
        for _, _, on_progress in list(self._listeners):
            on_progress(value)

    def _settle(self, state: DeferredState, value: Any) -> None:
        if self.settled:
            raise RuntimeError(f"Deferred already settled ({self._state.value})")
        self._state = state
        self._value = value
        listeners, self._listeners = self._listeners, []
        for on_result, on_fault, _ in listeners:
            self._notify(on_result, on_fault)

    def _notify(self, on_result: Callback, on_fault: Callback) -> None:
        if self._state is DeferredState.FULFILLED:
            on_result(self._value)
        else:
            on_fault(self._value)

    def _add_listener(
        self,
        on_result: Callback,
        on_fault: Callback,
        on_progress: Callback,
    ) -> None:
        if self.settled:
            self._notify(on_result, on_fault)
        else:
            self._listeners.append((on_result, on_fault, on_progress))


class Promise:
    """Read-only, chainable view of a :class:`Deferred`."""

    def __init__(self, deferred: Deferred) -> None:
        self._deferred: Deferred = deferred

    def __repr__(self) -> str:
        return f"Promise(state={self.state.value})"

    @property
    def state(self) -> DeferredState:
        return self._deferred.state

    @property
    def result(self) -> Any:
        """The settlement value (``None`` while pending)."""
        return self._deferred._value

    def is_fulfilled(self) -> bool:
        return self.state is DeferredState.FULFILLED

    def is_rejected(self) -> bool:
        return self.state is DeferredState.REJECTED

    def then(
        self,
        on_result: Callback | None = None,
        on_fault: Callback | None = None,
        on_progress: Callback | None = None,
    ) -> "Promise":
        """Register callbacks and return a promise for their outcome.

        Args:
            on_result: Called with the fulfilment value.
            on_fault: Called with the rejection value.
            on_progress: Called with each progress value while pending.

        Returns:
            A new :class:`Promise` settled from the callback's outcome.
        """
        chained: Deferred = Deferred()

        def run(callback: Callback | None, value: Any, rejected: bool) -> None:
            if callback is None:
                if rejected:
                    chained.reject(value)
                else:
                    chained.resolve(value)
                return
            try:
                outcome: Any = callback(value)
            except Exception as exc:
                chained.reject(exc)
                return
            if isinstance(outcome, Promise):
                outcome.then(chained.resolve, chained.reject, chained.update)
            else:
                chained.resolve(outcome)

        def forward_progress(value: Any) -> None:
            if on_progress is not None:
                on_progress(value)
            chained.update(value)

        self._deferred._add_listener(
            lambda value: run(on_result, value, rejected=False),
            lambda value: run(on_fault, value, rejected=True),
            forward_progress,
        )
        return chained.promise

    def on_fault(self, callback: Callback) -> "Promise":
        """Shorthand for ``then(None, callback)``."""
        return self.then(None, callback)

    def on_progress(self, callback: Callback) -> "Promise":
        """Shorthand for ``then(None, None, callback)``."""
        return self.then(None, None, callback)
