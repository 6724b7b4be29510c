"""Unit tests for core.binding module.

Tests BindingConfig normalization (including watch() shorthand),
EventBinding settlement and teardown, correlation filtering, progress
passthrough, explicit release, and sink plug-in via sink_factory.
"""

from unittest.mock import MagicMock

import pytest
from pydantic import ValidationError

from core.binding import (
    BindingConfig,
    BindingState,
    CorrelatedEventBinder,
    EventBinding,
)
from core.deferred import Deferred, Promise
from core.dispatcher import EventDispatcher
from core.events import Event


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def dispatcher() -> EventDispatcher:
    """Return an empty dispatcher."""
    return EventDispatcher()


@pytest.fixture()
def binder() -> CorrelatedEventBinder:
    """Return a binder using the default Deferred sink."""
    return CorrelatedEventBinder()


@pytest.fixture()
def sink() -> MagicMock:
    """Return a mocked settlement sink."""
    return MagicMock()


@pytest.fixture()
def mock_binder(sink: MagicMock) -> CorrelatedEventBinder:
    """Return a binder whose sink is the mocked sink."""
    return CorrelatedEventBinder(sink_factory=lambda: sink)


# ---------------------------------------------------------------------------
# BindingConfig Tests
# ---------------------------------------------------------------------------


class TestBindingConfig:
    """Tests for BindingConfig defaults and validation."""

    def test_defaults(self) -> None:
        config: BindingConfig = BindingConfig()
        assert config.result_type == "result"
        assert config.fault_types == ("fault",)
        assert config.progress_type is None
        assert config.progress_path is None
        assert config.correlation_path is None
        assert config.expected_correlation_value is None
        assert config.use_capture is False
        assert config.priority == 0

    def test_single_fault_type_wrapped(self) -> None:
        assert BindingConfig(fault_types="timeout").fault_types == ("timeout",)

    def test_fault_list_becomes_tuple(self) -> None:
        assert BindingConfig(fault_types=["a", "b"]).fault_types == ("a", "b")

    def test_extra_fields_rejected(self) -> None:
        with pytest.raises(ValidationError):
            BindingConfig(timeout=5)  # type: ignore[call-arg]

    def test_wrong_type_rejected(self) -> None:
        with pytest.raises(ValidationError):
            BindingConfig(priority="high")  # type: ignore[arg-type]

    def test_event_types(self) -> None:
        config: BindingConfig = BindingConfig(
            result_type="done",
            fault_types=("e1", "e2"),
            progress_type="progress",
        )
        assert config.event_types == ("done", "e1", "e2", "progress")


class TestFromArgs:
    """Tests for BindingConfig.from_args() shorthand normalization."""

    def test_no_args_gives_defaults(self) -> None:
        assert BindingConfig.from_args() == BindingConfig()

    def test_positional_fields(self) -> None:
        config: BindingConfig = BindingConfig.from_args("done", ["e1", "e2"], "progress")
        assert config.result_type == "done"
        assert config.fault_types == ("e1", "e2")
        assert config.progress_type == "progress"

    def test_overlay_replaces_progress_position(self) -> None:
        """A mapping in third position is an overlay, not a progress type."""
        config: BindingConfig = BindingConfig.from_args(
            "done",
            ["err"],
            {"priority": 5, "correlation_path": "token"},
        )
        assert config.progress_type is None
        assert config.priority == 5
        assert config.correlation_path == "token"
        assert config.result_type == "done"

    def test_overlay_keeps_unspecified_defaults(self) -> None:
        config: BindingConfig = BindingConfig.from_args({"result_type": "done"})
        assert config.result_type == "done"
        assert config.fault_types == ("fault",)

    def test_fourth_arg_after_progress_is_overlay(self) -> None:
        config: BindingConfig = BindingConfig.from_args(
            "done",
            ["err"],
            "progress",
            {"progress_path": "pct", "use_capture": True},
        )
        assert config.progress_type == "progress"
        assert config.progress_path == "pct"
        assert config.use_capture is True

    def test_fourth_string_is_progress_path(self) -> None:
        config: BindingConfig = BindingConfig.from_args(
            "done",
            ["err1", "err2"],
            "progress",
            "pct",
        )
        assert config.progress_path == "pct"

    def test_extra_args_ignored_with_warning(self, caplog: pytest.LogCaptureFixture) -> None:
        config: BindingConfig = BindingConfig.from_args(
            "done",
            ["err"],
            "progress",
            "pct",
            "surplus",
        )
        assert config.progress_path == "pct"
        assert "Ignoring 1 extra binding argument" in caplog.text

    def test_none_placeholders_keep_defaults(self) -> None:
        config: BindingConfig = BindingConfig.from_args(None, None, "progress")
        assert config.result_type == "result"
        assert config.fault_types == ("fault",)
        assert config.progress_type == "progress"

    def test_binding_config_overlay(self) -> None:
        overlay: BindingConfig = BindingConfig(priority=7)
        config: BindingConfig = BindingConfig.from_args("done", overlay)
        assert config.result_type == "done"
        assert config.priority == 7

    def test_keyword_options_applied_last(self) -> None:
        config: BindingConfig = BindingConfig.from_args(
            "done",
            {"priority": 1},
            priority=9,
        )
        assert config.priority == 9

    def test_unknown_overlay_key_rejected(self) -> None:
        with pytest.raises(ValidationError):
            BindingConfig.from_args("done", {"timeout": 3})


# ---------------------------------------------------------------------------
# watch() / listen() Tests
# ---------------------------------------------------------------------------


class TestWatch:
    """Tests for CorrelatedEventBinder.watch()."""

    def test_none_dispatcher_returns_none(self, binder: CorrelatedEventBinder) -> None:
        assert binder.watch(None, "done") is None

    def test_returns_promise(
        self,
        binder: CorrelatedEventBinder,
        dispatcher: EventDispatcher,
    ) -> None:
        promise = binder.watch(dispatcher, "done", ["err"])
        assert isinstance(promise, Promise)

    def test_defaults_listen_to_result_and_fault(
        self,
        binder: CorrelatedEventBinder,
        dispatcher: EventDispatcher,
    ) -> None:
        binder.watch(dispatcher)
        assert dispatcher.has_listener("result")
        assert dispatcher.has_listener("fault")

    def test_unknown_overlay_option_rejected_before_attach(
        self,
        binder: CorrelatedEventBinder,
        dispatcher: EventDispatcher,
    ) -> None:
        with pytest.raises(ValidationError):
            binder.watch(dispatcher, "done", {"timeout": 5})
        assert dispatcher.listener_count() == 0

    def test_progress_then_fault_example(
        self,
        mock_binder: CorrelatedEventBinder,
        sink: MagicMock,
        dispatcher: EventDispatcher,
    ) -> None:
        """Progress updates while pending; a fault rejects and releases all."""
        mock_binder.watch(dispatcher, "done", ["err1", "err2"], "progress", "pct")
        for event_type in ("done", "err1", "err2", "progress"):
            assert dispatcher.has_listener(event_type)

        dispatcher.dispatch(Event(type="progress", pct=42))
        sink.update.assert_called_once_with(42)
        assert dispatcher.listener_count() == 4

        fault: Event = Event(type="err2")
        dispatcher.dispatch(fault)
        sink.reject.assert_called_once_with(fault)
        sink.resolve.assert_not_called()
        assert dispatcher.listener_count() == 0

    def test_watch_passes_priority_and_capture(
        self,
        binder: CorrelatedEventBinder,
    ) -> None:
        source: MagicMock = MagicMock()
        binder.watch(source, "done", ["err"], {"priority": 3, "use_capture": True})
        subscribed = {call.args[0]: call.args[2:] for call in source.subscribe.call_args_list}
        assert subscribed == {"done": (True, 3), "err": (True, 3)}


class TestListen:
    """Tests for CorrelatedEventBinder.listen() settlement."""

    def test_result_resolves_with_event(
        self,
        binder: CorrelatedEventBinder,
        dispatcher: EventDispatcher,
    ) -> None:
        promise: Promise = binder.listen(dispatcher, "done", ["err"])
        event: Event = Event(type="done", value=1)
        dispatcher.dispatch(event)
        assert promise.is_fulfilled()
        assert promise.result is event
        assert dispatcher.listener_count() == 0

    def test_fault_rejects_with_event(
        self,
        binder: CorrelatedEventBinder,
        dispatcher: EventDispatcher,
    ) -> None:
        promise: Promise = binder.listen(dispatcher, "done", ["err1", "err2"])
        event: Event = Event(type="err1")
        dispatcher.dispatch(event)
        assert promise.is_rejected()
        assert promise.result is event
        assert dispatcher.listener_count() == 0

    def test_settles_only_once(
        self,
        mock_binder: CorrelatedEventBinder,
        sink: MagicMock,
        dispatcher: EventDispatcher,
    ) -> None:
        mock_binder.listen(dispatcher, "done", ["err"])
        dispatcher.dispatch(Event(type="done"))
        dispatcher.dispatch(Event(type="done"))
        dispatcher.dispatch(Event(type="err"))
        assert sink.resolve.call_count == 1
        sink.reject.assert_not_called()

    def test_raw_progress_without_path(
        self,
        mock_binder: CorrelatedEventBinder,
        sink: MagicMock,
        dispatcher: EventDispatcher,
    ) -> None:
        mock_binder.listen(dispatcher, "done", ["err"], progress_type="progress")
        event: Event = Event(type="progress", pct=1)
        dispatcher.dispatch(event)
        dispatcher.dispatch(event)
        assert sink.update.call_count == 2
        sink.update.assert_called_with(event)

    def test_unresolvable_progress_path_updates_without_value(
        self,
        mock_binder: CorrelatedEventBinder,
        sink: MagicMock,
        dispatcher: EventDispatcher,
    ) -> None:
        mock_binder.listen(
            dispatcher,
            "done",
            ["err"],
            progress_type="progress",
            progress_path="detail.pct",
        )
        dispatcher.dispatch(Event(type="progress"))
        sink.update.assert_called_once_with()

    def test_progress_listener_removed_on_settlement(
        self,
        binder: CorrelatedEventBinder,
        dispatcher: EventDispatcher,
    ) -> None:
        binder.listen(dispatcher, "done", ["err"], progress_type="progress")
        dispatcher.dispatch(Event(type="done"))
        assert not dispatcher.has_listener("progress")

    def test_teardown_when_sink_raises(
        self,
        sink: MagicMock,
        dispatcher: EventDispatcher,
    ) -> None:
        sink.resolve.side_effect = RuntimeError("sink failed")
        binder: CorrelatedEventBinder = CorrelatedEventBinder(sink_factory=lambda: sink)
        binder.listen(dispatcher, "done", ["err"], progress_type="progress")
        with pytest.raises(RuntimeError, match="sink failed"):
            dispatcher.dispatch(Event(type="done"))
        assert dispatcher.listener_count() == 0

    def test_other_listeners_untouched(
        self,
        binder: CorrelatedEventBinder,
        dispatcher: EventDispatcher,
    ) -> None:
        seen: list = []
        dispatcher.subscribe("done", seen.append)
        binder.listen(dispatcher, "done", ["err"])
        dispatcher.dispatch(Event(type="done"))
        assert dispatcher.has_listener("done", seen.append)
        assert len(seen) == 1

    def test_independent_bindings_coexist(
        self,
        binder: CorrelatedEventBinder,
        dispatcher: EventDispatcher,
    ) -> None:
        first: Promise = binder.listen(dispatcher, "done", ["err"])
        second: Promise = binder.listen(dispatcher, "done", ["err"])
        assert dispatcher.listener_count("done") == 2
        dispatcher.dispatch(Event(type="done"))
        assert first.is_fulfilled()
        assert second.is_fulfilled()


# ---------------------------------------------------------------------------
# Correlation Tests
# ---------------------------------------------------------------------------


class TestCorrelation:
    """Tests for correlation-token filtering."""

    def test_mismatch_ignored_then_match_settles(
        self,
        binder: CorrelatedEventBinder,
        dispatcher: EventDispatcher,
    ) -> None:
        promise: Promise = binder.listen(
            dispatcher,
            "done",
            ["err"],
            correlation_path="token",
            expected_correlation_value="abc",
        )
        dispatcher.dispatch(Event(type="done", token="xyz"))
        dispatcher.dispatch(Event(type="err", token="xyz"))
        dispatcher.dispatch(Event(type="done"))
        assert not promise.is_fulfilled()
        assert not promise.is_rejected()
        assert dispatcher.listener_count() == 2

        match: Event = Event(type="done", token="abc")
        dispatcher.dispatch(match)
        assert promise.result is match
        assert dispatcher.listener_count() == 0

    def test_nested_correlation_path(
        self,
        binder: CorrelatedEventBinder,
        dispatcher: EventDispatcher,
    ) -> None:
        promise: Promise = binder.listen(
            dispatcher,
            "done",
            ["err"],
            correlation_path="request.id",
            expected_correlation_value=7,
        )
        dispatcher.dispatch({"type": "done", "request": {"id": 8}})
        assert not promise.is_fulfilled()
        dispatcher.dispatch({"type": "err", "request": {"id": 7}})
        assert promise.is_rejected()

    def test_progress_filtered_by_correlation(
        self,
        mock_binder: CorrelatedEventBinder,
        sink: MagicMock,
        dispatcher: EventDispatcher,
    ) -> None:
        mock_binder.listen(
            dispatcher,
            "done",
            ["err"],
            progress_type="progress",
            progress_path="pct",
            correlation_path="token",
            expected_correlation_value="abc",
        )
        dispatcher.dispatch(Event(type="progress", pct=10, token="xyz"))
        dispatcher.dispatch(Event(type="progress", pct=20, token="abc"))
        sink.update.assert_called_once_with(20)

    def test_concurrent_operations_share_dispatcher(
        self,
        binder: CorrelatedEventBinder,
        dispatcher: EventDispatcher,
    ) -> None:
        first: Promise = binder.watch(
            dispatcher, "done", ["err"],
            correlation_path="token", expected_correlation_value="a",
        )
        second: Promise = binder.watch(
            dispatcher, "done", ["err"],
            correlation_path="token", expected_correlation_value="b",
        )
        dispatcher.dispatch(Event(type="err", token="b"))
        assert second.is_rejected()
        assert not first.is_rejected()
        dispatcher.dispatch(Event(type="done", token="a"))
        assert first.is_fulfilled()
        assert dispatcher.listener_count() == 0


# ---------------------------------------------------------------------------
# bind() / release Tests
# ---------------------------------------------------------------------------


class TestBindAndRelease:
    """Tests for EventBinding lifecycle."""

    def test_bind_returns_pending_binding(
        self,
        binder: CorrelatedEventBinder,
        dispatcher: EventDispatcher,
    ) -> None:
        binding: EventBinding = binder.bind(dispatcher, BindingConfig(result_type="done"))
        assert binding.state is BindingState.PENDING
        assert binding.config.result_type == "done"
        assert isinstance(binding.promise, Promise)

    def test_settled_state(
        self,
        binder: CorrelatedEventBinder,
        dispatcher: EventDispatcher,
    ) -> None:
        binding: EventBinding = binder.bind(dispatcher, BindingConfig(result_type="done"))
        dispatcher.dispatch(Event(type="done"))
        assert binding.state is BindingState.SETTLED

    def test_release_detaches_without_settling(
        self,
        binder: CorrelatedEventBinder,
        dispatcher: EventDispatcher,
    ) -> None:
        binding: EventBinding = binder.bind(
            dispatcher,
            BindingConfig(result_type="done", progress_type="progress"),
        )
        binding.release()
        assert binding.state is BindingState.RELEASED
        assert dispatcher.listener_count() == 0
        dispatcher.dispatch(Event(type="done"))
        assert not binding.promise.is_fulfilled()

    def test_release_is_idempotent(
        self,
        dispatcher: EventDispatcher,
    ) -> None:
        source: MagicMock = MagicMock(wraps=dispatcher)
        binding: EventBinding = EventBinding(source, BindingConfig(), Deferred())
        binding.release()
        binding.release()
        assert source.unsubscribe.call_count == 2  # result + fault, once

    def test_release_after_settlement_is_noop(
        self,
        binder: CorrelatedEventBinder,
        dispatcher: EventDispatcher,
    ) -> None:
        binding: EventBinding = binder.bind(dispatcher, BindingConfig())
        dispatcher.dispatch(Event(type="result"))
        binding.release()
        assert binding.state is BindingState.SETTLED
