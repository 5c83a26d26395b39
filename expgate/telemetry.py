"""
Telemetry sink for experiment group assignment events.
"""
from typing import Dict, Mapping, Protocol

from datadog import statsd

from expgate.logging_config import setup_logging

logger = setup_logging()


class EventName:
    """Well-known telemetry event names"""
    EXPERIMENTS = "EXPERIMENTS"


EXPERIMENT_NAME_PROPERTY = "expName"


class TelemetrySink(Protocol):
    def send(self, event_name: str, properties: Mapping[str, str]) -> None:
        ...


class StatsdTelemetrySink:
    """
    Forwards telemetry events to Datadog as a counter tagged with every
    property, plus a structured log line.
    """

    def __init__(self, metric_prefix: str = "experiments.telemetry"):
        self.metric_prefix = metric_prefix

    def send(self, event_name: str, properties: Mapping[str, str]) -> None:
        tags = [f"event:{event_name}"] + [f"{key}:{value}" for key, value in properties.items()]
        statsd.increment(f"{self.metric_prefix}.events", tags=tags)
        logger.info(
            f"Telemetry event {event_name}",
            extra={"exp_name": properties.get(EXPERIMENT_NAME_PROPERTY)},
        )


def group_properties(name: str) -> Dict[str, str]:
    return {EXPERIMENT_NAME_PROPERTY: name}
