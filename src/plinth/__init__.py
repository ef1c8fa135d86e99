"""plinth: declarative provisioning with readiness-aware reconciliation."""

from importlib.metadata import version, PackageNotFoundError

try:
    __version__ = version("plinth")
except PackageNotFoundError:
    __version__ = "dev"

# Public API exports
from plinth._internal.io.descriptor_file import load_descriptor
from plinth.api import ApplyReport, PlanResult, ValidationResult, validate
from plinth.codes import Action, ErrorKind, ValidationCode
from plinth.kernel.graph import ResourceGraph
from plinth.reconciler import Reconciler

__all__ = [
    "__version__",
    "validate",
    "load_descriptor",
    "ResourceGraph",
    "Reconciler",
    "ApplyReport",
    "PlanResult",
    "ValidationResult",
    "Action",
    "ErrorKind",
    "ValidationCode",
]
