"""
Example external metrics server.

Exposes one metric, ``incrementable``, across all namespaces. Its base value
counts up every tick, with three selectors moving at different rates::

    GET /apis/external.metrics.k8s.io/v1beta1/namespaces/*/incrementable
    GET /apis/external.metrics.k8s.io/v1beta1/namespaces/*/incrementable?labelSelector=some-key=B

Run with ``python -m service_external_metrics.app.example``.
"""

import threading

from shared.logging import get_logger

from .main import ExternalMetricsService
from .registry import Value, new_value
from .triggers import TriggerContext, tick


logger = get_logger("external_metrics.example")


class IncrementingCounters:
    """Three counters: A counts up by one, B by five, C counts down."""

    def __init__(self):
        self.counter_a = 1
        self.counter_b = 1
        self.counter_c = -1
        self._lock = threading.Lock()

    def __call__(self, ctx: TriggerContext, namespace: str, name: str) -> Value:
        logger.info("Calling metric incrementer", namespace=namespace, name=name)

        with self._lock:
            self.counter_a += 1
            self.counter_b += 5
            self.counter_c -= 1

            v = new_value(self.counter_a)
            v.add_selector("some-key", "A", self.counter_a)
            v.add_selector("some-key", "B", self.counter_b)
            v.add_selector("some-key", "C", self.counter_c)

        return v


def build_service() -> ExternalMetricsService:
    service = ExternalMetricsService()
    service.add_metric(
        service.config.example_namespace,
        service.config.example_metric_name,
        tick(service.config.example_tick_interval_seconds),
        IncrementingCounters()
    )
    return service


if __name__ == "__main__":
    build_service().run()
