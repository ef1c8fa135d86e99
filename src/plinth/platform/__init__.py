"""Platform boundary and the bundled simulator implementations."""

from .base import JobInfo, JobStatus, Platform
from .memory import InMemoryPlatform, LocalPlatform

__all__ = [
    "Platform",
    "JobInfo",
    "JobStatus",
    "InMemoryPlatform",
    "LocalPlatform",
]
