"""
Unit tests for the metric registry and update loops.
"""

import asyncio
import random
import threading
import time

import pytest

from service_external_metrics.app.registry import (
    LoopState,
    MetricRegistry,
    NAMESPACE_ALL,
    NAMESPACE_DEFAULT,
    Value,
    new_value,
)
from service_external_metrics.app.triggers import EventTrigger, TriggerContext
from shared.errors import ComputationError, MetricNotFoundError, RegistrationError
from shared.metrics import ServiceMetrics


async def wait_until(predicate, timeout: float = 1.0):
    """Poll until predicate() is true."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.01)


def constant(base: int, **selectors):
    """Build an async computation returning a fixed value."""
    async def computation(ctx, namespace, name):
        v = new_value(base)
        for label, (value, scalar) in selectors.items():
            v.add_selector(label, value, scalar)
        return v
    return computation


class TestMetricRegistry:
    """Test cases for MetricRegistry."""

    @pytest.fixture
    def metrics(self):
        """Create isolated service metrics."""
        return ServiceMetrics("test")

    @pytest.fixture
    def registry(self, metrics):
        """Create MetricRegistry instance."""
        return MetricRegistry(metrics=metrics)

    @pytest.fixture
    def trigger(self):
        """Create an event trigger."""
        return EventTrigger()

    def test_register_stores_zero_value(self, registry, trigger):
        """Test that registration creates a zero base value."""
        registry.register(NAMESPACE_DEFAULT, "cpu", trigger, constant(10))

        assert registry.has_namespace(NAMESPACE_DEFAULT)
        assert registry.lookup(NAMESPACE_DEFAULT, "cpu") == Value(base=0)

    def test_register_multiple_names_in_namespace(self, registry, trigger):
        """Test registering several metrics under one namespace."""
        registry.register(NAMESPACE_ALL, "a", trigger, constant(1))
        registry.register(NAMESPACE_ALL, "b", trigger, constant(2))

        assert registry.lookup(NAMESPACE_ALL, "a") is not None
        assert registry.lookup(NAMESPACE_ALL, "b") is not None
        assert registry.get_registry_stats()["namespaces"] == 1
        assert registry.get_registry_stats()["metrics"] == 2

    @pytest.mark.parametrize("namespace,name", [("", "cpu"), ("default", "")])
    def test_register_rejects_empty_identity(self, registry, trigger, namespace, name):
        """Test that empty namespaces and names are rejected."""
        with pytest.raises(RegistrationError):
            registry.register(namespace, name, trigger, constant(1))

    def test_lookup_missing(self, registry, trigger):
        """Test lookups of unknown namespaces and names."""
        registry.register(NAMESPACE_DEFAULT, "cpu", trigger, constant(1))

        assert registry.lookup("other", "cpu") is None
        assert registry.lookup(NAMESPACE_DEFAULT, "memory") is None
        assert registry.has_namespace("other") is False

    def test_store_replaces_value_wholesale(self, registry, trigger):
        """Test that storing replaces rather than merges."""
        registry.register(NAMESPACE_DEFAULT, "cpu", trigger, constant(1))

        first = new_value(1)
        first.add_selector("zone", "us", 2)
        registry.store(NAMESPACE_DEFAULT, "cpu", first)
        registry.store(NAMESPACE_DEFAULT, "cpu", new_value(3))

        stored = registry.lookup(NAMESPACE_DEFAULT, "cpu")
        assert stored.base == 3
        assert stored.selectors == {}

    def test_store_keeps_private_copy(self, registry, trigger):
        """Test that mutating a value after storing it does not change the stored value."""
        registry.register(NAMESPACE_DEFAULT, "cpu", trigger, constant(1))

        v = new_value(5)
        registry.store(NAMESPACE_DEFAULT, "cpu", v)
        v.add_selector("zone", "us", 100)

        assert registry.lookup(NAMESPACE_DEFAULT, "cpu").resolve("zone", "us") == 5

    def test_store_unregistered_metric(self, registry):
        """Test that storing an unregistered metric fails."""
        with pytest.raises(MetricNotFoundError):
            registry.store(NAMESPACE_DEFAULT, "cpu", new_value(1))

    def test_snapshot(self, registry, trigger):
        """Test the plain dict snapshot."""
        registry.register(NAMESPACE_DEFAULT, "cpu", trigger, constant(1))
        v = new_value(4)
        v.add_selector("zone", "us", 2)
        registry.store(NAMESPACE_DEFAULT, "cpu", v)

        assert registry.snapshot() == {
            "default": {"cpu": {"base": 4, "selectors": {"zone": {"us": 2}}}}
        }

    @pytest.mark.asyncio
    async def test_loop_starts_on_start(self, registry, trigger):
        """Test that loops registered before start run after start."""
        loop = registry.register(NAMESPACE_DEFAULT, "cpu", trigger, constant(10))
        assert loop.task is None

        await registry.start()
        try:
            trigger.fire()
            await wait_until(lambda: registry.lookup(NAMESPACE_DEFAULT, "cpu").base == 10)
        finally:
            await registry.stop()

        assert loop.state == LoopState.STOPPED

    @pytest.mark.asyncio
    async def test_register_while_running_starts_loop(self, registry, trigger):
        """Test that registering on a running registry starts the loop immediately."""
        await registry.start()
        try:
            loop = registry.register(NAMESPACE_DEFAULT, "cpu", trigger, constant(7, zone=("us", 3)))
            assert loop.task is not None

            trigger.fire()
            await wait_until(lambda: registry.lookup(NAMESPACE_DEFAULT, "cpu").base == 7)
            assert registry.lookup(NAMESPACE_DEFAULT, "cpu").resolve("zone", "us") == 3
        finally:
            await registry.stop()

    @pytest.mark.asyncio
    async def test_registered_metrics_gauge(self, registry, metrics, trigger):
        """Test that the running loop gauge follows start and stop."""
        registry.register(NAMESPACE_DEFAULT, "cpu", trigger, constant(1))
        registry.register(NAMESPACE_DEFAULT, "memory", trigger, constant(1))

        await registry.start()
        assert metrics.registry.get_sample_value("registered_metrics") == 2

        await registry.stop()
        assert metrics.registry.get_sample_value("registered_metrics") == 0

    @pytest.mark.asyncio
    async def test_reregistration_races_without_crashing(self, registry):
        """Test that registering the same metric twice runs two loops on one entry."""
        first, second = EventTrigger(), EventTrigger()
        registry.register(NAMESPACE_DEFAULT, "cpu", first, constant(1))
        registry.register(NAMESPACE_DEFAULT, "cpu", second, constant(2))

        await registry.start()
        try:
            assert len(registry.loops) == 2

            first.fire()
            await wait_until(lambda: registry.lookup(NAMESPACE_DEFAULT, "cpu").base == 1)

            second.fire()
            await wait_until(lambda: registry.lookup(NAMESPACE_DEFAULT, "cpu").base == 2)
        finally:
            await registry.stop()

        assert registry.lookup(NAMESPACE_DEFAULT, "cpu").base in (1, 2)

    @pytest.mark.asyncio
    async def test_stop_waits_for_in_flight_computation(self, registry, trigger):
        """Test that stop lets a running computation finish but discards its value."""
        started = asyncio.Event()
        release = asyncio.Event()

        async def slow(ctx, namespace, name):
            started.set()
            await release.wait()
            return new_value(99)

        loop = registry.register(NAMESPACE_DEFAULT, "cpu", trigger, slow)
        await registry.start()

        trigger.fire()
        await asyncio.wait_for(started.wait(), timeout=1.0)
        assert loop.state == LoopState.COMPUTING

        stopping = asyncio.create_task(registry.stop(timeout=1.0))
        await asyncio.sleep(0.01)
        release.set()
        await stopping

        assert loop.state == LoopState.STOPPED
        assert registry.lookup(NAMESPACE_DEFAULT, "cpu").base == 0

    @pytest.mark.asyncio
    async def test_stop_cancels_computation_after_timeout(self, registry, trigger):
        """Test that a computation ignoring stop is cancelled after the timeout."""
        started = asyncio.Event()

        async def stuck(ctx, namespace, name):
            started.set()
            await asyncio.sleep(60)
            return new_value(1)

        loop = registry.register(NAMESPACE_DEFAULT, "cpu", trigger, stuck)
        await registry.start()
        trigger.fire()
        await asyncio.wait_for(started.wait(), timeout=1.0)

        await registry.stop(timeout=0.05)

        assert loop.task.done()
        assert registry.lookup(NAMESPACE_DEFAULT, "cpu").base == 0

    @pytest.mark.asyncio
    async def test_concurrent_writers_and_readers_never_tear(self, registry):
        """Test that readers only ever observe values some writer stored."""
        triggers = [EventTrigger() for _ in range(5)]

        def consistent(ctx, namespace, name):
            # Every selector equals base, so a torn read would show a mismatch
            n = random.randint(1, 1_000_000)
            v = new_value(n)
            for label in ("a", "b", "c"):
                v.add_selector(label, "x", n)
            return v

        for trigger in triggers:
            registry.register(NAMESPACE_DEFAULT, "shared", trigger, consistent)

        mismatches = []
        done = threading.Event()

        def reader():
            while not done.is_set():
                time.sleep(0.0005)
                v = registry.lookup(NAMESPACE_DEFAULT, "shared")
                if v.base != 0 and any(v.resolve(label, "x") != v.base for label in ("a", "b", "c")):
                    mismatches.append(v)

        readers = [threading.Thread(target=reader) for _ in range(4)]
        for thread in readers:
            thread.start()

        await registry.start()
        try:
            for _ in range(20):
                for trigger in triggers:
                    trigger.fire()
                await asyncio.sleep(0.005)
            await wait_until(lambda: all(t.pending() == 0 for t in triggers), timeout=5.0)
        finally:
            await registry.stop()
            done.set()
            for thread in readers:
                thread.join()

        assert mismatches == []
        assert sum(loop.stats["computations"] for loop in registry.loops) > 0


class TestUpdateLoop:
    """Test cases for UpdateLoop."""

    @pytest.fixture
    def metrics(self):
        """Create isolated service metrics."""
        return ServiceMetrics("test")

    @pytest.fixture
    def registry(self, metrics):
        """Create MetricRegistry instance."""
        return MetricRegistry(metrics=metrics)

    @pytest.fixture
    def trigger(self):
        """Create an event trigger."""
        return EventTrigger()

    @pytest.mark.asyncio
    async def test_run_once_stores_value(self, registry, metrics):
        """Test a successful computation."""
        loop = registry.register(NAMESPACE_DEFAULT, "cpu", EventTrigger(), constant(10))

        stored = await loop.run_once(TriggerContext())

        assert stored is True
        assert registry.lookup(NAMESPACE_DEFAULT, "cpu").base == 10
        assert loop.stats["computations"] == 1
        assert metrics.registry.get_sample_value(
            "metric_computations_total",
            {"namespace": "default", "name": "cpu", "outcome": "success"}
        ) == 1

    @pytest.mark.asyncio
    async def test_run_once_passes_context_and_identity(self, registry):
        """Test that the computation receives the trigger context, namespace and name."""
        seen = {}

        async def computation(ctx, namespace, name):
            seen.update(ctx=ctx, namespace=namespace, name=name)
            return new_value(1)

        loop = registry.register(NAMESPACE_ALL, "queue", EventTrigger(), computation)
        ctx = TriggerContext(deadline=123.0)

        await loop.run_once(ctx)

        assert seen == {"ctx": ctx, "namespace": "*", "name": "queue"}

    @pytest.mark.asyncio
    async def test_run_once_sync_computation(self, registry):
        """Test that plain functions are supported."""
        def computation(ctx, namespace, name):
            return new_value(42)

        loop = registry.register(NAMESPACE_DEFAULT, "cpu", EventTrigger(), computation)

        assert await loop.run_once(TriggerContext()) is True
        assert registry.lookup(NAMESPACE_DEFAULT, "cpu").base == 42

    @pytest.mark.asyncio
    async def test_failed_computation_keeps_previous_value(self, registry, metrics):
        """Test that a failing computation leaves the last good value in place."""
        calls = {"n": 0}

        async def flaky(ctx, namespace, name):
            calls["n"] += 1
            if calls["n"] > 1:
                raise RuntimeError("upstream unavailable")
            return new_value(10)

        loop = registry.register(NAMESPACE_DEFAULT, "cpu", EventTrigger(), flaky)

        assert await loop.run_once(TriggerContext()) is True
        assert await loop.run_once(TriggerContext()) is False

        assert registry.lookup(NAMESPACE_DEFAULT, "cpu").base == 10
        assert loop.state == LoopState.WAITING
        assert loop.stats["failures"] == 1
        assert loop.stats["last_error"] == "upstream unavailable"
        assert metrics.registry.get_sample_value(
            "metric_computations_total",
            {"namespace": "default", "name": "cpu", "outcome": "error"}
        ) == 1

    @pytest.mark.asyncio
    async def test_non_value_result_is_a_failure(self, registry):
        """Test that returning something other than a Value is rejected."""
        async def wrong(ctx, namespace, name):
            return 10

        loop = registry.register(NAMESPACE_DEFAULT, "cpu", EventTrigger(), wrong)

        assert await loop.run_once(TriggerContext()) is False
        assert registry.lookup(NAMESPACE_DEFAULT, "cpu").base == 0
        assert "not a Value" in loop.stats["last_error"]

    @pytest.mark.asyncio
    async def test_computation_error_is_kept_as_is(self, registry):
        """Test that a ComputationError raised by user code is not rewrapped."""
        async def failing(ctx, namespace, name):
            raise ComputationError(namespace, name, "no data yet")

        loop = registry.register(NAMESPACE_DEFAULT, "cpu", EventTrigger(), failing)

        assert await loop.run_once(TriggerContext()) is False
        assert loop.stats["last_error"] == "no data yet"

    @pytest.mark.asyncio
    async def test_external_stop_event(self, registry):
        """Test that a caller-supplied stop event stops the loop."""
        stop_event = asyncio.Event()
        loop = registry.register(
            NAMESPACE_DEFAULT, "cpu", EventTrigger(), constant(1), stop_event=stop_event
        )

        task = loop.start()
        await asyncio.sleep(0.01)
        assert loop.state == LoopState.WAITING

        stop_event.set()
        await asyncio.wait_for(task, timeout=1.0)

        assert loop.stopped is True
        assert loop.state == LoopState.STOPPED

    @pytest.mark.asyncio
    async def test_no_writes_after_stop(self, registry):
        """Test that triggers fired after stop are ignored."""
        trigger = EventTrigger()
        loop = registry.register(NAMESPACE_DEFAULT, "cpu", trigger, constant(5))

        task = loop.start()
        loop.stop()
        await asyncio.wait_for(task, timeout=1.0)

        trigger.fire()
        await asyncio.sleep(0.02)

        assert registry.lookup(NAMESPACE_DEFAULT, "cpu").base == 0

    @pytest.mark.asyncio
    async def test_exhausted_trigger_stops_loop(self, registry):
        """Test that a trigger source ending its stream stops the loop."""
        class OneShot(EventTrigger):
            async def next(self):
                if self.pending() == 0:
                    raise StopAsyncIteration
                return await super().next()

        trigger = OneShot()
        trigger.fire()
        loop = registry.register(NAMESPACE_DEFAULT, "cpu", trigger, constant(8))

        await asyncio.wait_for(loop.start(), timeout=1.0)

        assert loop.state == LoopState.STOPPED
        assert registry.lookup(NAMESPACE_DEFAULT, "cpu").base == 8

    @pytest.mark.asyncio
    async def test_failing_trigger_is_retried(self, registry):
        """Test that a trigger source error does not end the loop."""
        class Flaky(EventTrigger):
            def __init__(self):
                super().__init__()
                self.calls = 0

            async def next(self):
                self.calls += 1
                if self.calls == 1:
                    raise RuntimeError("broker connection lost")
                return await super().next()

        trigger = Flaky()
        loop = registry.register(NAMESPACE_DEFAULT, "cpu", trigger, constant(6))
        loop.trigger_retry_delay = 0.01

        await registry.start()
        try:
            trigger.fire()
            await wait_until(lambda: registry.lookup(NAMESPACE_DEFAULT, "cpu").base == 6)

            assert loop.stats["trigger_failures"] == 1
            assert loop.state != LoopState.STOPPED
        finally:
            await registry.stop(timeout=1.0)

    @pytest.mark.asyncio
    async def test_failing_trigger_retry_interrupted_by_stop(self, registry):
        """Test that stop ends a loop waiting to retry its trigger."""
        class Broken(EventTrigger):
            async def next(self):
                raise RuntimeError("broker connection lost")

        loop = registry.register(NAMESPACE_DEFAULT, "cpu", Broken(), constant(6))
        loop.trigger_retry_delay = 60.0

        await registry.start()
        await wait_until(lambda: loop.stats["trigger_failures"] == 1)
        await asyncio.wait_for(registry.stop(timeout=1.0), timeout=2.0)

        assert loop.state == LoopState.STOPPED
        assert loop.task.cancelled() is False

    @pytest.mark.asyncio
    async def test_start_binds_trigger_for_threadsafe_fire(self, registry, trigger):
        """Test that a running loop receives threadsafe fires from other threads."""
        registry.register(NAMESPACE_DEFAULT, "cpu", trigger, constant(4))

        await registry.start()
        try:
            await asyncio.to_thread(trigger.fire_threadsafe)
            await wait_until(lambda: registry.lookup(NAMESPACE_DEFAULT, "cpu").base == 4)
        finally:
            await registry.stop(timeout=1.0)

    def test_get_status(self, registry):
        """Test loop status reporting."""
        loop = registry.register(NAMESPACE_DEFAULT, "cpu", EventTrigger(), constant(1))

        status = loop.get_status()

        assert status["namespace"] == "default"
        assert status["name"] == "cpu"
        assert status["state"] == "waiting"
        assert status["computations"] == 0
