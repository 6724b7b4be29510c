"""Core adapter layer for the Event Settlement Adapter.

This package turns push-based named events into single-settlement
result handles: the correlated event binder, the two-phase multi-event
interceptor, the property-path resolver they share, plus the in-process
dispatcher and the minimal settlement sink used by default.
"""

from core.binding import BindingConfig, BindingState, CorrelatedEventBinder, EventBinding
from core.deferred import Deferred, DeferredState, Promise, SettlementSink
from core.dispatcher import (
    DispatcherConfig,
    DispatcherStats,
    EventDispatcher,
    EventSource,
)
from core.events import WHOLE_EVENT, Event, ListenerSpec, event_type_of
from core.interceptor import (
    INTERCEPTOR_PRIORITY,
    CallbackRegistration,
    InterceptorState,
    MultiEventInterceptor,
)
from core.property_path import resolve_path

__all__: list[str] = [
    "INTERCEPTOR_PRIORITY",
    "WHOLE_EVENT",
    "BindingConfig",
    "BindingState",
    "CallbackRegistration",
    "CorrelatedEventBinder",
    "Deferred",
    "DeferredState",
    "DispatcherConfig",
    "DispatcherStats",
    "Event",
    "EventBinding",
    "EventDispatcher",
    "EventSource",
    "InterceptorState",
    "ListenerSpec",
    "MultiEventInterceptor",
    "Promise",
    "SettlementSink",
    "event_type_of",
    "resolve_path",
]
