"""Event and listener-spec models shared by the adapter layer.

An *event* is anything a dispatcher delivers to its listeners. The
adapters only need two things from it: its type name and, optionally,
named fields to extract. :class:`Event` is the concrete model used by
:class:`~core.dispatcher.EventDispatcher` and the MQTT source, but the
adapters also accept plain mappings with a ``"type"`` key and arbitrary
objects exposing a ``type`` attribute.

A :class:`ListenerSpec` pairs an event type with the field that carries
its payload. The sentinel :data:`WHOLE_EVENT` (``"event"``) as data key
means "the whole event object is the payload".

Example:
    >>> from core.events import Event, ListenerSpec
    >>> event = Event(type="OK", session={"id": 7})
    >>> event.type
    'OK'
    >>> event.session
    {'id': 7}
    >>> ListenerSpec.coerce({"type": "OK", "key": "session"})
    ListenerSpec(event_type='OK', data_key='session')
"""

from collections.abc import Mapping, Sequence
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

WHOLE_EVENT: str = "event"
"""Data-key sentinel: the payload is the event object itself."""


# ---------------------------------------------------------------------------
# Event Model
# ---------------------------------------------------------------------------


class Event(BaseModel):
    """A named event with arbitrary extra fields.

    ``type`` is the only declared field; everything else passed to the
    constructor is kept as an extra attribute (``extra="allow"``), so
    ``Event(type="progress", pct=42).pct == 42``.

    Attributes:
        type: Event type name used for listener lookup. Non-empty.

    Example:
        >>> event = Event(type="progress", pct=42, token="abc")
        >>> event.pct
        42
        >>> event.model_dump()
        {'type': 'progress', 'pct': 42, 'token': 'abc'}
    """

    model_config = ConfigDict(frozen=True, extra="allow")

    type: str = Field(min_length=1, description="Event type name")


def event_type_of(event: object) -> str | None:
    """Return the type name of ``event``.

    Works for :class:`Event`, mappings with a ``"type"`` key and any
    object with a ``type`` attribute. Returns ``None`` when no type can
    be found.

    Args:
        event: The delivered event.

    Returns:
        The event type as a string, or ``None``.
    """
    if isinstance(event, Mapping):
        value: Any = event.get("type")
    else:
        value = getattr(event, "type", None)
    return value if isinstance(value, str) else None


# ---------------------------------------------------------------------------
# Listener Spec
# ---------------------------------------------------------------------------


class ListenerSpec(BaseModel):
    """Declares that events of ``event_type`` carry their payload in ``data_key``.

    Accepts both the long field names and the short ``type`` / ``key``
    aliases on construction.

    Attributes:
        event_type: Event type to listen for. Non-empty.
        data_key: Field holding the payload, or :data:`WHOLE_EVENT`
            (default) to use the event itself. Read with
            :func:`~core.property_path.resolve_path`, so a dotted key such
            as ``"session.id"`` names a nested field, not a key containing
            a dot.

    Example:
        >>> ListenerSpec(type="ERR", key="details").data_key
        'details'
        >>> ListenerSpec(event_type="ERR").data_key
        'event'
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    event_type: str = Field(
        min_length=1,
        validation_alias=AliasChoices("event_type", "type"),
        description="Event type to listen for",
    )
    data_key: str = Field(
        default=WHOLE_EVENT,
        min_length=1,
        validation_alias=AliasChoices("data_key", "key"),
        description="Payload field name, or 'event' for the whole event",
    )

    @property
    def whole_event(self) -> bool:
        """Whether the payload is the event object itself."""
        return self.data_key == WHOLE_EVENT

    @classmethod
    def coerce(cls, value: object) -> "ListenerSpec":
        """Build a spec from any of the accepted shorthand forms.

        Accepted forms: an existing ``ListenerSpec``, a mapping with
        ``type``/``key`` (or ``event_type``/``data_key``) entries, a
        ``(type, key)`` pair, or a bare event-type string.

        Raises:
            pydantic.ValidationError: If a mapping fails validation.
            TypeError: If ``value`` has none of the accepted forms.
        """
        if isinstance(value, ListenerSpec):
            return value
        if isinstance(value, str):
            return cls(event_type=value)
        if isinstance(value, Mapping):
            return cls.model_validate(dict(value))
        if isinstance(value, Sequence) and len(value) == 2:
            return cls(event_type=value[0], data_key=value[1])
        raise TypeError(f"Cannot build a ListenerSpec from {value!r}")


def normalize_specs(value: object) -> tuple[ListenerSpec, ...]:
    """Normalize one spec-like object, or a sequence of them, to a tuple.

    ``None`` yields an empty tuple. A bare spec-like object (string,
    mapping, ``ListenerSpec`` or ``(type, key)`` pair) is wrapped into a
    single-element tuple.

    Example:
        >>> normalize_specs({"type": "OK", "key": "session"})
        (ListenerSpec(event_type='OK', data_key='session'),)
        >>> normalize_specs(None)
        ()
    """
    if value is None:
        return ()
    if isinstance(value, (str, Mapping, ListenerSpec)):
        return (ListenerSpec.coerce(value),)
    if _is_pair(value):
        return (ListenerSpec.coerce(value),)
    return tuple(ListenerSpec.coerce(item) for item in value)  # type: ignore[attr-defined]


def _is_pair(value: object) -> bool:
    """A ``(type, key)`` tuple of two strings counts as one spec."""
    return (
        isinstance(value, tuple)
        and len(value) == 2
        and all(isinstance(item, str) for item in value)
    )
