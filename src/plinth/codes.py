"""Error kind and action constants for plinth results.

These constants prevent stringly-typed failure kinds and issue codes, and ensure
result consumers and the state document agree on the same codes.
"""

from enum import Enum


class ErrorKind(str, Enum):
    """Failure kinds recorded per node."""

    # Fatal before any remote call
    VALIDATION = "VALIDATION"

    # Remote/platform faults
    TRANSIENT = "TRANSIENT"
    PERMANENT = "PERMANENT"

    # Waits
    TIMED_OUT = "TIMED_OUT"
    GATE_FAILED = "GATE_FAILED"
    CANCELLED = "CANCELLED"

    # External build
    BUILD_FAILED = "BUILD_FAILED"
    BUILD_TIMEOUT = "BUILD_TIMEOUT"


class Action(str, Enum):
    """Planned action for a node."""

    CREATE = "create"
    UPDATE = "update"
    NOOP = "noop"
    BUILD = "build"
    DELETE = "delete"


class ValidationCode(str, Enum):
    """Issue codes reported by descriptor validation."""

    INVALID_DESCRIPTOR = "INVALID_DESCRIPTOR"
    MISSING_DEPENDENCY = "MISSING_DEPENDENCY"
    CYCLE_DETECTED = "CYCLE_DETECTED"
    NO_OUTPUTS = "NO_OUTPUTS"  # warning
