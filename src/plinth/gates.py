"""Readiness gates: bounded waits that compensate for asynchronous propagation.

Two classes of wait exist. A fixed-delay gate is a flat, cancellable sleep
for platforms that expose no completion signal (capability enablement). A
poll gate re-reads the node until a status attribute reaches a terminal
value (database instance boot), bounded by an attempt budget.

Cancellation only abandons the local wait. The remote operation keeps
running on the platform side.
"""

import threading
import time
from abc import ABC, abstractmethod
from enum import Enum
from typing import Optional

import structlog

from plinth.errors import TransientError
from plinth.kernel.descriptor import FixedDelayGateSpec, PollGateSpec, ResourceNode
from plinth.reader import ObservedState, RemoteStateReader

logger = structlog.get_logger(__name__)


class GateOutcome(str, Enum):
    READY = "ready"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"
    FAILED = "failed"


class CancelToken:
    """User-initiated abort, shared by every wait in a pass."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; returns True as soon as cancellation is requested."""
        if seconds <= 0:
            return self._event.is_set()
        return self._event.wait(seconds)


class ReadinessGate(ABC):
    """Contract: ``await_ready(node, timeout, cancel) -> GateOutcome``."""

    #: Last observation taken while waiting, if the gate reads remote state.
    last_observed: Optional[ObservedState] = None

    @abstractmethod
    def await_ready(
        self,
        node: ResourceNode,
        timeout: Optional[float] = None,
        cancel: Optional[CancelToken] = None,
    ) -> GateOutcome:
        ...


class ImmediateGate(ReadinessGate):
    """Nodes without a declared gate are ready as soon as apply returns."""

    def await_ready(self, node, timeout=None, cancel=None) -> GateOutcome:
        if cancel is not None and cancel.cancelled:
            return GateOutcome.CANCELLED
        return GateOutcome.READY


class FixedDelayGate(ReadinessGate):
    """Wait a configured duration, then report READY."""

    def __init__(self, seconds: float):
        self.seconds = seconds

    def await_ready(self, node, timeout=None, cancel=None) -> GateOutcome:
        cancel = cancel or CancelToken()
        wait_for = self.seconds if timeout is None else min(self.seconds, timeout)
        logger.info("gate.fixed_delay", node=node.id, seconds=self.seconds)
        deadline = time.monotonic() + wait_for
        # Event.wait may wake marginally early; loop until the deadline has passed
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            if cancel.wait(remaining):
                logger.info("gate.cancelled", node=node.id)
                return GateOutcome.CANCELLED
        if cancel.cancelled:
            return GateOutcome.CANCELLED
        if wait_for < self.seconds:
            return GateOutcome.TIMED_OUT
        return GateOutcome.READY


class PollGate(ReadinessGate):
    """Poll ``spec.field`` through the reader until it reaches a ready value.

    Transient read errors count as an unsuccessful attempt. A value from
    ``failed_values`` ends the wait with FAILED. Exhausting
    ``max_attempts`` (or the overall timeout) yields TIMED_OUT.
    """

    def __init__(self, spec: PollGateSpec, reader: RemoteStateReader):
        self.spec = spec
        self.reader = reader
        self.last_observed = None

    def interval_for(self, attempt: int) -> float:
        if self.spec.backoff == "exponential":
            return min(self.spec.interval * (2 ** (attempt - 1)), self.spec.max_interval)
        return self.spec.interval

    def await_ready(self, node, timeout=None, cancel=None) -> GateOutcome:
        cancel = cancel or CancelToken()
        deadline = None if timeout is None else time.monotonic() + timeout
        for attempt in range(1, self.spec.max_attempts + 1):
            if cancel.cancelled:
                logger.info("gate.cancelled", node=node.id, attempt=attempt)
                return GateOutcome.CANCELLED
            try:
                observed = self.reader.observe(node)
            except TransientError as e:
                logger.warning("gate.poll_error", node=node.id, attempt=attempt, error=e.message)
                observed = None
            if isinstance(observed, ObservedState):
                self.last_observed = observed
                value = observed.value(self.spec.field)
                logger.debug("gate.poll", node=node.id, attempt=attempt, field=self.spec.field, value=value)
                if value in self.spec.ready_values:
                    return GateOutcome.READY
                if value in self.spec.failed_values:
                    return GateOutcome.FAILED
            if attempt == self.spec.max_attempts:
                break
            wait_for = self.interval_for(attempt)
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                wait_for = min(wait_for, remaining)
            if cancel.wait(wait_for):
                logger.info("gate.cancelled", node=node.id, attempt=attempt)
                return GateOutcome.CANCELLED
        logger.warning("gate.timed_out", node=node.id, attempts=self.spec.max_attempts)
        return GateOutcome.TIMED_OUT


def gate_for(node: ResourceNode, reader: RemoteStateReader) -> ReadinessGate:
    """Build the gate declared on a node (a fresh instance per wait)."""
    spec = node.gate
    if spec is None:
        return ImmediateGate()
    if isinstance(spec, FixedDelayGateSpec):
        return FixedDelayGate(spec.seconds)
    if isinstance(spec, PollGateSpec):
        return PollGate(spec, reader)
    raise TypeError(f"Unsupported gate spec: {type(spec).__name__}")
