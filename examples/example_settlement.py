"""Example: turning named events into settled results.

This script demonstrates both adapters against an in-process
dispatcher, optionally fed from an MQTT broker:

    EventDispatcher / MQTTEventSource → CorrelatedEventBinder → Promise
                                      → MultiEventInterceptor → handlers

Usage:
    python -m examples.example_settlement
    python -m examples.example_settlement --mqtt-host localhost --topic jobs/done

Without ``--mqtt-host`` the script dispatches a scripted sequence of
events locally and exits. With it, the binder waits for a message on
``--topic`` carrying ``{"job_id": "<--job-id>"}`` until Ctrl+C.
"""

import argparse
import logging
import time

from core.binding import CorrelatedEventBinder
from core.dispatcher import EventDispatcher
from core.events import Event
from core.interceptor import MultiEventInterceptor
from infra.mqtt_source import MQTTEventSource, MQTTSourceConfig

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger: logging.Logger = logging.getLogger(__name__)


def run_local() -> None:
    """Drive both adapters with scripted events."""
    dispatcher: EventDispatcher = EventDispatcher()
    binder: CorrelatedEventBinder = CorrelatedEventBinder()

    promise = binder.watch(
        dispatcher,
        "upload.done",
        ["upload.failed"],
        "upload.progress",
        "pct",
        correlation_path="upload_id",
        expected_correlation_value="u-1",
    )
    promise.then(
        lambda event: logger.info("Upload finished: %s", event.url),
        lambda event: logger.error("Upload failed: %s", event.reason),
        lambda pct: logger.info("Upload progress: %s%%", pct),
    )

    for pct in (25, 50, 100):
        dispatcher.dispatch(Event(type="upload.progress", upload_id="u-1", pct=pct))
    dispatcher.dispatch(Event(type="upload.done", upload_id="u-2", url="ignored"))
    dispatcher.dispatch(Event(type="upload.done", upload_id="u-1", url="s3://bucket/a"))

    interceptor: MultiEventInterceptor = MultiEventInterceptor(dispatcher)
    add_callbacks = interceptor.configure(
        {"type": "login.ok", "key": "session"},
        [{"type": "login.denied", "key": "reason"}, {"type": "login.error", "key": "event"}],
    )
    add_callbacks(
        lambda session: logger.info("Logged in, session=%s", session),
        lambda reason: logger.warning("Login rejected: %s", reason),
    )
    dispatcher.dispatch(Event(type="login.denied", reason="bad password"))
    logger.info("Listeners left on dispatcher: %d", dispatcher.listener_count())


def run_mqtt(host: str, port: int, topic: str, job_id: str) -> None:
    """Wait for a correlated MQTT message on ``topic``."""
    source: MQTTEventSource = MQTTEventSource(MQTTSourceConfig(host=host, port=port))
    promise = CorrelatedEventBinder().watch(
        source,
        topic,
        [f"{topic}/failed"],
        correlation_path="job_id",
        expected_correlation_value=job_id,
    )
    source.connect()
    try:
        while not (promise.is_fulfilled() or promise.is_rejected()):
            time.sleep(0.1)
        logger.info("Settled (%s): %s", promise.state.value, promise.result)
    except KeyboardInterrupt:
        logger.info("Interrupted")
    finally:
        source.shutdown()


def main() -> None:
    """Parse arguments and run the selected example."""
    parser: argparse.ArgumentParser = argparse.ArgumentParser(
        description="Event settlement adapter example",
    )
    parser.add_argument("--mqtt-host", default=None, help="MQTT broker host")
    parser.add_argument("--mqtt-port", type=int, default=1883, help="MQTT broker port")
    parser.add_argument("--topic", default="jobs/done", help="Result topic")
    parser.add_argument("--job-id", default="42", help="Correlation token to wait for")
    args: argparse.Namespace = parser.parse_args()

    if args.mqtt_host is None:
        run_local()
    else:
        run_mqtt(args.mqtt_host, args.mqtt_port, args.topic, args.job_id)


if __name__ == "__main__":
    main()
