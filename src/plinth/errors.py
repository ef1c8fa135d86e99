"""
Exception hierarchy for plinth.

Errors carry an ErrorKind so the reconciler can record them per node
without inspecting exception types a second time.
"""

from typing import Any, Optional

from plinth.codes import ErrorKind


class PlinthError(Exception):
    """Base exception for all plinth errors."""

    kind: ErrorKind = ErrorKind.PERMANENT

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class ValidationError(PlinthError):
    """Descriptor is invalid. Raised before any remote call."""

    kind = ErrorKind.VALIDATION


class MissingDependenciesError(ValidationError):
    """Raised when dependencies are referenced but not defined."""

    def __init__(self, missing: set[str]):
        self.missing = missing
        missing_str = ", ".join(sorted(missing))
        super().__init__(f"Dependencies referenced but not defined: {missing_str}")


class CycleDetectedError(ValidationError):
    """Raised when a cycle is detected in the dependency graph."""

    def __init__(self, cycle: list[str]):
        # Cycle path without the closing duplicate
        if len(cycle) > 1 and cycle[0] == cycle[-1]:
            cycle = cycle[:-1]
        self.cycle = cycle
        cycle_str = " -> ".join(cycle) + f" -> {cycle[0]}"
        super().__init__(f"Cycle detected in dependency graph:\n  Cycle: {cycle_str}")


class TransientError(PlinthError):
    """
    Retryable platform or network fault.

    Examples: connection resets, request timeouts, throttling.
    """

    kind = ErrorKind.TRANSIENT


class PermanentError(PlinthError):
    """
    The remote side rejected the request. Not retried automatically.

    Examples: invalid configuration, quota refusal, permission denied.
    """

    kind = ErrorKind.PERMANENT


class TimedOut(PlinthError):
    """A readiness gate exceeded its wait budget."""

    kind = ErrorKind.TIMED_OUT

    def __init__(self, message: str, log_url: Optional[str] = None, details: Optional[dict[str, Any]] = None):
        self.log_url = log_url
        super().__init__(message, details)


class GateFailed(PlinthError):
    """A polled status reached a failed terminal value."""

    kind = ErrorKind.GATE_FAILED

    def __init__(self, message: str, log_url: Optional[str] = None, details: Optional[dict[str, Any]] = None):
        self.log_url = log_url
        super().__init__(message, details)


class BuildTimeout(TimedOut):
    """The external build job did not reach a terminal status within the polling window."""

    kind = ErrorKind.BUILD_TIMEOUT


class BuildFailed(PlinthError):
    """The external build job terminated unsuccessfully."""

    kind = ErrorKind.BUILD_FAILED

    def __init__(self, message: str, log_url: Optional[str] = None, details: Optional[dict[str, Any]] = None):
        self.log_url = log_url
        super().__init__(message, details)


class Cancelled(PlinthError):
    """A local wait was abandoned on user request."""

    kind = ErrorKind.CANCELLED


class IncompleteGraphError(PlinthError):
    """Outputs were requested while a producing node (or an ancestor) is not Ready."""

    def __init__(self, output: str, not_ready: list[str]):
        self.output = output
        self.not_ready = not_ready
        super().__init__(
            f"Output '{output}' cannot be projected; not ready: {', '.join(not_ready)}"
        )


class IllegalTransition(PlinthError):
    """A readiness transition violated the per-pass state machine."""


class StateFileError(PlinthError):
    """The persisted state document is unreadable or incompatible."""
