"""
Per-metric update loop.

Each registered metric gets one loop which waits on its trigger source,
runs the metric computation, and hands the result to the registry.
"""

import asyncio
import inspect
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Union, TYPE_CHECKING

from shared.logging import get_logger
from shared.metrics import ServiceMetrics
from shared.errors import ComputationError

from .value import Value
from ..triggers import TriggerContext, TriggerSource

if TYPE_CHECKING:
    from .store import MetricRegistry


MetricComputation = Callable[[TriggerContext, str, str], Union[Value, Awaitable[Value]]]


class LoopState(str, Enum):
    """Update loop states."""
    WAITING = "waiting"
    COMPUTING = "computing"
    STOPPED = "stopped"


class UpdateLoop:
    """Recomputes one metric each time its trigger fires."""

    def __init__(
        self,
        registry: "MetricRegistry",
        namespace: str,
        name: str,
        trigger: TriggerSource,
        computation: MetricComputation,
        stop_event: Optional[asyncio.Event] = None,
        metrics: Optional[ServiceMetrics] = None
    ):
        self.registry = registry
        self.namespace = namespace
        self.name = name
        self.trigger = trigger
        self.computation = computation
        self.metrics = metrics
        self.logger = get_logger("external_metrics.update_loop")

        self.state = LoopState.WAITING
        self.task: Optional[asyncio.Task] = None
        self._stop_event = stop_event or asyncio.Event()
        self.trigger_retry_delay = 1.0

        self.stats = {
            "computations": 0,
            "failures": 0,
            "trigger_failures": 0,
            "last_success": None,
            "last_error": None
        }

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    def start(self) -> asyncio.Task:
        """Schedule the loop on the running event loop."""
        if self.task is None:
            self.trigger.bind(asyncio.get_running_loop())
            self.task = asyncio.create_task(
                self.run(),
                name=f"update-loop:{self.namespace}/{self.name}"
            )
        return self.task

    def stop(self):
        """Signal the loop to stop; an in-flight computation is left to finish."""
        self._stop_event.set()

    async def run(self):
        """Wait for triggers and recompute until stopped."""
        self.logger.info("Update loop started", namespace=self.namespace, name=self.name)

        try:
            while True:
                ctx = await self._wait_for_trigger()
                if ctx is None:
                    break

                await self.run_once(ctx)
        finally:
            self.state = LoopState.STOPPED
            self.logger.info("Update loop stopped", namespace=self.namespace, name=self.name)

    async def _wait_for_trigger(self) -> Optional[TriggerContext]:
        """Block until the trigger fires or the loop is stopped, whichever is first.

        A failing trigger source is retried after ``trigger_retry_delay``;
        only exhaustion or stop ends the wait with None.
        """
        while not self._stop_event.is_set():
            self.state = LoopState.WAITING
            trigger_task = asyncio.ensure_future(self.trigger.next())
            stop_task = asyncio.ensure_future(self._stop_event.wait())

            try:
                done, _ = await asyncio.wait(
                    {trigger_task, stop_task},
                    return_when=asyncio.FIRST_COMPLETED
                )
            finally:
                for task in (trigger_task, stop_task):
                    if not task.done():
                        task.cancel()

            if stop_task in done:
                if trigger_task.done() and not trigger_task.cancelled():
                    trigger_task.exception()
                return None

            try:
                return trigger_task.result()
            except StopAsyncIteration:
                self.logger.info("Trigger source exhausted", namespace=self.namespace, name=self.name)
                return None
            except Exception as e:
                self.stats["trigger_failures"] += 1
                self.logger.error(
                    "Trigger source failed",
                    namespace=self.namespace,
                    name=self.name,
                    error=str(e),
                    retry_in=self.trigger_retry_delay
                )

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.trigger_retry_delay)
            except asyncio.TimeoutError:
                pass

        return None

    async def run_once(self, ctx: TriggerContext) -> bool:
        """Run the computation once and store its result.

        Returns True when a new value was stored. A failed computation is
        logged and leaves the previously stored value in place.
        """
        self.state = LoopState.COMPUTING
        start_time = time.time()

        try:
            value = await self._compute(ctx)
        except Exception as e:
            error = e if isinstance(e, ComputationError) else ComputationError(
                self.namespace,
                self.name,
                str(e),
                {"error_type": type(e).__name__}
            )
            self.stats["failures"] += 1
            self.stats["last_error"] = error.message
            self.logger.error(
                "Metric computation failed",
                code=error.code,
                message=error.message,
                details=error.details
            )
            self._record("error", start_time)
            return False
        finally:
            self.state = LoopState.WAITING

        if self._stop_event.is_set():
            self.logger.debug(
                "Discarding value computed after stop",
                namespace=self.namespace,
                name=self.name
            )
            return False

        self.registry.store(self.namespace, self.name, value)
        self.stats["computations"] += 1
        self.stats["last_success"] = time.time()
        self._record("success", start_time)

        self.logger.debug(
            "Metric value updated",
            namespace=self.namespace,
            name=self.name,
            base=value.base
        )
        return True

    async def _compute(self, ctx: TriggerContext) -> Value:
        if inspect.iscoroutinefunction(self.computation):
            result: Any = await self.computation(ctx, self.namespace, self.name)
        else:
            result = await asyncio.to_thread(self.computation, ctx, self.namespace, self.name)
            if inspect.isawaitable(result):
                result = await result

        if not isinstance(result, Value):
            raise ComputationError(
                self.namespace,
                self.name,
                f"computation returned {type(result).__name__}, not a Value"
            )

        return result

    def _record(self, outcome: str, start_time: float):
        if self.metrics:
            self.metrics.record_computation(
                self.namespace,
                self.name,
                outcome,
                time.time() - start_time
            )

    def get_status(self):
        return {
            "namespace": self.namespace,
            "name": self.name,
            "state": self.state.value,
            **self.stats
        }
