"""Platform boundary: capability-typed resource CRUD plus a build job API."""

from enum import Enum
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict


class JobStatus(str, Enum):
    """Status of a remote build job."""

    QUEUED = "QUEUED"
    WORKING = "WORKING"
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"
    INTERNAL_ERROR = "INTERNAL_ERROR"
    TIMEOUT = "TIMEOUT"
    CANCELLED = "CANCELLED"

    @property
    def terminal(self) -> bool:
        return self not in (JobStatus.QUEUED, JobStatus.WORKING)


class JobInfo(BaseModel):
    """What the platform reports about a submitted job."""
    job_id: str
    status: JobStatus
    log_url: Optional[str] = None
    detail: Optional[str] = None

    model_config = ConfigDict(extra="forbid")


@runtime_checkable
class Platform(Protocol):
    """External platform the engine reconciles against.

    Implementations raise ``TransientError`` / ``PermanentError`` (or
    builtin ``ConnectionError`` / ``TimeoutError``, which the reader maps
    to ``TransientError``).
    """

    def get(self, resource_type: str, name: str) -> Optional[Dict[str, Any]]:
        """Observed attributes, or None when the resource does not exist. Idempotent."""
        ...

    def apply(self, resource_type: str, name: str, attributes: Dict[str, Any]) -> Dict[str, Any]:
        """Create-or-update; returns the observed attributes after the call."""
        ...

    def delete(self, resource_type: str, name: str) -> None:
        ...

    def submit_job(self, steps: List[List[str]], labels: Optional[Dict[str, str]] = None) -> JobInfo:
        """Submit a build job to the managed build pipeline."""
        ...

    def get_job(self, job_id: str) -> JobInfo:
        ...

    def resource_url(self, resource_type: str, name: str) -> str:
        """Where the remote status and events of a resource can be inspected."""
        ...
