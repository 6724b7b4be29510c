"""Infrastructure layer for the Event Settlement Adapter.

This package provides event sources backed by external transports.
"""

from infra.mqtt_source import MQTTEventSource, MQTTSourceConfig, SourceState

__all__: list[str] = [
    "MQTTEventSource",
    "MQTTSourceConfig",
    "SourceState",
]
