"""Tests for readiness gates: fixed delays, polling and cancellation."""

import threading
import time

import pytest

from conftest import make_node
from plinth.errors import TransientError
from plinth.gates import (
    CancelToken,
    FixedDelayGate,
    GateOutcome,
    ImmediateGate,
    PollGate,
    gate_for,
)
from plinth.kernel.descriptor import PollGateSpec
from plinth.platform.memory import InMemoryPlatform
from plinth.reader import ObservedState, RemoteStateReader


class ScriptedReader:
    """Returns scripted observations (or raises scripted errors) in order."""

    def __init__(self, script, on_observe=None):
        self.script = list(script)
        self.calls = 0
        self.on_observe = on_observe

    def observe(self, node):
        self.calls += 1
        if self.on_observe:
            self.on_observe(self.calls)
        item = self.script[min(self.calls, len(self.script)) - 1]
        if isinstance(item, Exception):
            raise item
        return ObservedState(node_id=node.id, attributes={"state": item})


def _spec(**kwargs):
    values = {"kind": "poll", "field": "state", "ready_values": ["RUNNABLE"], "interval": 0.01, "max_attempts": 5}
    values.update(kwargs)
    return PollGateSpec(**values)


NODE = make_node("sql_instance", "db")


class TestFixedDelayGate:
    def test_blocks_at_least_the_configured_delay(self):
        start = time.monotonic()
        outcome = FixedDelayGate(0.05).await_ready(NODE)
        assert outcome is GateOutcome.READY
        assert time.monotonic() - start >= 0.05

    def test_zero_delay(self):
        assert FixedDelayGate(0).await_ready(NODE) is GateOutcome.READY

    def test_cancel_mid_wait(self):
        cancel = CancelToken()
        timer = threading.Timer(0.05, cancel.cancel)
        timer.start()
        start = time.monotonic()
        outcome = FixedDelayGate(5).await_ready(NODE, cancel=cancel)
        timer.join()
        assert outcome is GateOutcome.CANCELLED
        assert time.monotonic() - start < 2

    def test_timeout_shorter_than_delay(self):
        assert FixedDelayGate(5).await_ready(NODE, timeout=0.01) is GateOutcome.TIMED_OUT


class TestPollGate:
    def test_ready_after_propagation(self):
        platform = InMemoryPlatform(propagation_reads={"sql_instance": 2})
        platform.apply("sql_instance", "db", dict(NODE.attributes))
        gate = PollGate(_spec(), RemoteStateReader(platform))

        assert gate.await_ready(NODE) is GateOutcome.READY
        assert platform.calls_for("sql_instance", "db").count("get") == 3
        assert gate.last_observed.value("state") == "RUNNABLE"

    def test_times_out_when_never_terminal(self):
        platform = InMemoryPlatform(propagation_reads={"sql_instance": 1000})
        platform.apply("sql_instance", "db", dict(NODE.attributes))
        gate = PollGate(_spec(max_attempts=4), RemoteStateReader(platform))

        start = time.monotonic()
        assert gate.await_ready(NODE) is GateOutcome.TIMED_OUT
        assert platform.calls_for("sql_instance", "db").count("get") == 4
        assert time.monotonic() - start < 4 * 0.01 + 1

    def test_failed_terminal_value(self):
        reader = ScriptedReader(["PENDING_CREATE", "FAILED"])
        gate = PollGate(_spec(failed_values=["FAILED"]), reader)
        assert gate.await_ready(NODE) is GateOutcome.FAILED
        assert reader.calls == 2

    def test_transient_errors_count_as_attempts(self):
        reader = ScriptedReader([TransientError("reset"), TransientError("reset"), "RUNNABLE"])
        assert PollGate(_spec(), reader).await_ready(NODE) is GateOutcome.READY
        assert reader.calls == 3

        reader = ScriptedReader([TransientError("reset")])
        assert PollGate(_spec(max_attempts=3), reader).await_ready(NODE) is GateOutcome.TIMED_OUT
        assert reader.calls == 3

    def test_cancel_returns_within_one_interval_without_further_calls(self):
        cancel = CancelToken()
        timer = threading.Timer(0.05, cancel.cancel)
        reader = ScriptedReader(["PENDING_CREATE"], on_observe=lambda n: n == 1 and timer.start())
        gate = PollGate(_spec(interval=0.5, max_attempts=100), reader)

        start = time.monotonic()
        outcome = gate.await_ready(NODE, cancel=cancel)
        elapsed = time.monotonic() - start

        timer.join()
        assert outcome is GateOutcome.CANCELLED
        assert elapsed < 0.5
        assert reader.calls == 1

    def test_overall_timeout(self):
        reader = ScriptedReader(["PENDING_CREATE"])
        gate = PollGate(_spec(interval=0.05, max_attempts=1000), reader)
        start = time.monotonic()
        assert gate.await_ready(NODE, timeout=0.12) is GateOutcome.TIMED_OUT
        assert time.monotonic() - start < 1

    def test_exponential_interval_is_capped(self):
        gate = PollGate(_spec(interval=1, backoff="exponential", max_interval=5), ScriptedReader(["RUNNABLE"]))
        assert [gate.interval_for(n) for n in (1, 2, 3, 4)] == [1, 2, 4, 5]


def test_gate_for_declared_specs():
    reader = ScriptedReader(["RUNNABLE"])
    assert isinstance(gate_for(make_node("capability", "api"), reader), ImmediateGate)
    fixed = gate_for(make_node("capability", "api", gate={"kind": "fixed_delay", "seconds": 60}), reader)
    assert isinstance(fixed, FixedDelayGate) and fixed.seconds == 60
    poll = gate_for(make_node("sql_instance", "db", gate=_spec().model_dump()), reader)
    assert isinstance(poll, PollGate)


@pytest.mark.parametrize("gate", [ImmediateGate(), FixedDelayGate(0)])
def test_cancelled_before_start(gate):
    cancel = CancelToken()
    cancel.cancel()
    assert gate.await_ready(NODE, cancel=cancel) is GateOutcome.CANCELLED
