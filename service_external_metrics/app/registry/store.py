"""
In-memory registry of metric values, keyed by namespace then metric name.
"""

import asyncio
import threading
from typing import Dict, Any, List, Optional

from shared.logging import get_logger
from shared.metrics import ServiceMetrics
from shared.errors import MetricNotFoundError, RegistrationError

from .value import Value, new_value
from .loop import UpdateLoop, MetricComputation
from ..triggers import TriggerSource


# Namespace conventions; the registry treats namespaces as opaque keys.
NAMESPACE_ALL = "*"
NAMESPACE_DEFAULT = "default"


class MetricRegistry:
    """Holds the latest value of every registered metric and the loops that update them.

    A single lock guards the namespace -> name -> Value mapping. Stored values
    are private copies, replaced wholesale on every successful computation,
    so readers always see a complete value.
    """

    def __init__(self, metrics: Optional[ServiceMetrics] = None):
        self.metrics = metrics
        self.logger = get_logger("external_metrics.registry")

        self._lock = threading.Lock()
        self._values: Dict[str, Dict[str, Value]] = {}
        self.loops: List[UpdateLoop] = []
        self.running = False

    def register(
        self,
        namespace: str,
        name: str,
        trigger: TriggerSource,
        computation: MetricComputation,
        stop_event: Optional[asyncio.Event] = None
    ) -> UpdateLoop:
        """Register a metric and its update loop.

        The metric is served with a zero value until the first computation
        succeeds. Registering the same namespace/name again resets it to zero
        and adds a second loop; both loops then write to the same entry.
        The loop starts now if the registry is running, otherwise on ``start()``.
        """
        if not namespace or not name:
            raise RegistrationError(
                "Namespace and metric name must not be empty",
                {"namespace": namespace, "name": name}
            )

        with self._lock:
            names = self._values.setdefault(namespace, {})
            duplicate = name in names
            names[name] = new_value(0)

            loop = UpdateLoop(
                self,
                namespace,
                name,
                trigger,
                computation,
                stop_event=stop_event,
                metrics=self.metrics
            )
            self.loops.append(loop)

        if duplicate:
            self.logger.warning(
                "Metric registered more than once, update loops will race",
                namespace=namespace,
                name=name
            )
        else:
            self.logger.info("Metric registered", namespace=namespace, name=name)

        if self.running:
            loop.start()
            self._update_gauge()

        return loop

    def store(self, namespace: str, name: str, value: Value):
        """Replace the stored value of a registered metric."""
        snapshot = value.copy()

        with self._lock:
            names = self._values.get(namespace)
            if names is None or name not in names:
                raise MetricNotFoundError(
                    f"Metric {name} is not registered under namespace {namespace}",
                    {"namespace": namespace, "name": name}
                )
            names[name] = snapshot

    def lookup(self, namespace: str, name: str) -> Optional[Value]:
        """Return the stored value, or None if the namespace or name is unknown.

        The returned value is shared; treat it as read-only.
        """
        with self._lock:
            return self._values.get(namespace, {}).get(name)

    def has_namespace(self, namespace: str) -> bool:
        with self._lock:
            return namespace in self._values

    def snapshot(self) -> Dict[str, Dict[str, Dict[str, Any]]]:
        """Return every stored value as plain dicts."""
        with self._lock:
            values = {ns: dict(names) for ns, names in self._values.items()}

        return {
            ns: {name: value.to_dict() for name, value in names.items()}
            for ns, names in values.items()
        }

    async def start(self):
        """Start every registered update loop."""
        self.running = True
        for loop in self.loops:
            loop.start()

        self._update_gauge()
        self.logger.info("Metric registry started", loops=len(self.loops))

    async def stop(self, timeout: float = 5.0):
        """Stop every update loop, cancelling any still computing after ``timeout``."""
        self.running = False
        for loop in self.loops:
            loop.stop()

        tasks = [loop.task for loop in self.loops if loop.task is not None]
        if tasks:
            _, pending = await asyncio.wait(tasks, timeout=timeout)
            for task in pending:
                self.logger.warning("Cancelling update loop still computing", task=task.get_name())
                task.cancel()

            await asyncio.gather(*tasks, return_exceptions=True)

        self._update_gauge()
        self.logger.info("Metric registry stopped")

    def _update_gauge(self):
        if self.metrics:
            running = len([loop for loop in self.loops if loop.task is not None and not loop.task.done()])
            self.metrics.set_registered_metrics(running)

    def get_registry_stats(self) -> Dict[str, Any]:
        with self._lock:
            namespaces = len(self._values)
            metrics = sum(len(names) for names in self._values.values())

        return {
            "namespaces": namespaces,
            "metrics": metrics,
            "loops": [loop.get_status() for loop in self.loops],
            "running": self.running
        }
