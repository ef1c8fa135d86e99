"""Deterministic platform simulator.

Stands in for the cloud control plane in tests and dry runs. It computes
the attributes a real platform would (registry urls, service urls,
instance connection names), delays readiness of polled status fields,
runs build jobs step by step, and supports fault injection.
"""

import json
import subprocess
import threading
from collections import defaultdict, deque
from pathlib import Path
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple

import structlog

from plinth._internal.canonical_json import canonical_dumps
from plinth.errors import PermanentError, StateFileError
from plinth.kernel.descriptor import join_ref
from plinth.kernel.hash_utils import short_digest
from .base import JobInfo, JobStatus

logger = structlog.get_logger(__name__)

Key = Tuple[str, str]

# (type) -> (status field, value while propagating, value once ready)
STATUS_FIELDS: Dict[str, Tuple[str, str, str]] = {
    "sql_instance": ("state", "PENDING_CREATE", "RUNNABLE"),
    "compute_service": ("status", "Deploying", "Ready"),
    "capability": ("state", "ENABLING", "ENABLED"),
}


def _computed_attributes(resource_type: str, name: str, attrs: Dict[str, Any]) -> Dict[str, Any]:
    project = attrs.get("project", "local-project")
    region = attrs.get("region", attrs.get("location", "local"))
    if resource_type == "registry":
        host = f"{attrs['location']}-docker.pkg.dev"
        return {"url": join_ref(host, str(project), str(attrs["repository_id"]))}
    if resource_type == "compute_service":
        return {"url": f"https://{name}-{short_digest(name)}-{region}.run.app"}
    if resource_type == "sql_instance":
        return {"connection_name": f"{project}:{region}:{name}"}
    if resource_type == "service_account":
        return {"email": f"{attrs['account_id']}@{project}.iam.gserviceaccount.com"}
    return {}


class InMemoryPlatform:
    """In-process Platform implementation.

    Args:
        propagation_reads: per resource type, how many ``get`` calls after an
            apply return the "propagating" status before it flips to ready.
        job_polls: how many ``get_job`` calls a build job spends WORKING.
    """

    def __init__(
        self,
        propagation_reads: Optional[Dict[str, int]] = None,
        job_polls: int = 1,
    ):
        self._lock = threading.RLock()
        self.propagation_reads: Dict[str, int] = dict(propagation_reads or {})
        self.job_polls = job_polls
        self.resources: Dict[Key, Dict[str, Any]] = {}
        self._pending_reads: Dict[Key, int] = {}
        self.jobs: Dict[str, Dict[str, Any]] = {}
        self.images: Dict[str, str] = {}  # pushed ref -> source digest
        self.mutations: List[Tuple[str, str, str]] = []
        self.calls: List[Tuple[str, str, str]] = []
        self._faults: Dict[Tuple[str, str, str], Deque[Exception]] = defaultdict(deque)
        self.job_outcome: Optional[JobStatus] = None  # force terminal status; None = success
        self.hang_jobs = False

    # -- fault injection -------------------------------------------------

    def inject(self, op: str, resource_type: str, name: str, error: Exception, times: int = 1) -> None:
        """Raise ``error`` on the next ``times`` calls of ``op`` for that resource."""
        with self._lock:
            for _ in range(times):
                self._faults[(op, resource_type, name)].append(error)

    def _maybe_fail(self, op: str, resource_type: str, name: str) -> None:
        queue = self._faults.get((op, resource_type, name))
        if queue:
            raise queue.popleft()

    def calls_for(self, resource_type: str, name: str) -> List[str]:
        with self._lock:
            return [op for op, t, n in self.calls if (t, n) == (resource_type, name)]

    # -- resource CRUD ---------------------------------------------------

    def get(self, resource_type: str, name: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            self.calls.append(("get", resource_type, name))
            self._maybe_fail("get", resource_type, name)
            key = (resource_type, name)
            current = self.resources.get(key)
            if current is None:
                return None
            observed = dict(current)
            if resource_type in STATUS_FIELDS:
                field, propagating, ready = STATUS_FIELDS[resource_type]
                remaining = self._pending_reads.get(key, 0)
                if remaining > 0:
                    self._pending_reads[key] = remaining - 1
                    observed[field] = propagating
                else:
                    observed[field] = ready
                self._persist()
            return observed

    def apply(self, resource_type: str, name: str, attributes: Dict[str, Any]) -> Dict[str, Any]:
        with self._lock:
            self.calls.append(("apply", resource_type, name))
            self._maybe_fail("apply", resource_type, name)
            key = (resource_type, name)
            existed = key in self.resources
            observed = dict(attributes)
            observed.update(_computed_attributes(resource_type, name, attributes))
            self.resources[key] = observed
            self._pending_reads[key] = self.propagation_reads.get(resource_type, 0)
            self.mutations.append(("update" if existed else "create", resource_type, name))
            logger.debug("platform.apply", resource_type=resource_type, name=name, existed=existed)
            self._persist()
            return dict(observed)

    def delete(self, resource_type: str, name: str) -> None:
        with self._lock:
            self.calls.append(("delete", resource_type, name))
            self._maybe_fail("delete", resource_type, name)
            key = (resource_type, name)
            if key not in self.resources:
                raise PermanentError(f"{resource_type}.{name} does not exist")
            del self.resources[key]
            self._pending_reads.pop(key, None)
            self.mutations.append(("delete", resource_type, name))
            self._persist()

    def resource_url(self, resource_type: str, name: str) -> str:
        return f"memory://resources/{resource_type}/{name}"

    # -- build jobs ------------------------------------------------------

    def submit_job(self, steps: List[List[str]], labels: Optional[Dict[str, str]] = None) -> JobInfo:
        with self._lock:
            job_id = f"job-{len(self.jobs) + 1:04d}-{short_digest(json.dumps(steps))}"
            self.calls.append(("submit_job", "build", job_id))
            self._maybe_fail("submit_job", "build", (labels or {}).get("node", ""))
            self.jobs[job_id] = {
                "steps": [list(s) for s in steps],
                "labels": dict(labels or {}),
                "polls": 0,
                "status": JobStatus.QUEUED.value,
            }
            self._persist()
            return self._job_info(job_id)

    def get_job(self, job_id: str) -> JobInfo:
        with self._lock:
            self.calls.append(("get_job", "build", job_id))
            job = self.jobs.get(job_id)
            if job is None:
                raise PermanentError(f"Unknown build job: {job_id}")
            if not JobStatus(job["status"]).terminal and not self.hang_jobs:
                job["polls"] += 1
                if job["polls"] > self.job_polls:
                    outcome = self.job_outcome or JobStatus.SUCCESS
                    if outcome is JobStatus.SUCCESS:
                        self._run_steps(job["steps"])
                    job["status"] = outcome.value
                else:
                    job["status"] = JobStatus.WORKING.value
                self._persist()
            return self._job_info(job_id)

    def _job_info(self, job_id: str) -> JobInfo:
        job = self.jobs[job_id]
        return JobInfo(
            job_id=job_id,
            status=JobStatus(job["status"]),
            log_url=f"memory://builds/{job_id}/log",
        )

    def _run_steps(self, steps: List[List[str]]) -> None:
        """Registry side of a job: pull/tag/push with last-write-wins tags."""
        local: Dict[str, str] = {}
        for step in steps:
            verb, args = step[1], step[2:]
            if verb == "pull":
                local[args[0]] = f"sha256:{short_digest(args[0], 64)}"
            elif verb == "tag":
                local[args[1]] = local[args[0]]
            elif verb == "push":
                self.images[args[0]] = local[args[0]]

    # -- registry boundary (local build strategy) -------------------------

    def command_runner(self) -> Callable[..., Any]:
        """A subprocess.run stand-in executing docker verbs against this registry."""
        local: Dict[str, str] = {}

        def run(cmd: List[str], **kwargs: Any):
            with self._lock:
                self.calls.append(("command", cmd[1], cmd[-1]))
                verb, args = cmd[1], cmd[2:]
                if verb == "pull":
                    local[args[0]] = f"sha256:{short_digest(args[0], 64)}"
                elif verb == "tag":
                    local[args[1]] = local[args[0]]
                elif verb == "push":
                    self.images[args[0]] = local[args[0]]
                    self._persist()
            return subprocess.CompletedProcess(cmd, 0, stdout="", stderr="")

        return run

    def _persist(self) -> None:
        """Hook for file-backed subclasses."""


class LocalPlatform(InMemoryPlatform):
    """InMemoryPlatform persisted to a JSON file.

    Lets separate CLI invocations share one simulated remote.
    """

    def __init__(self, path: Path, **kwargs: Any):
        self.path = Path(path)
        self._loading = True
        super().__init__(**kwargs)
        self._load()
        self._loading = False

    def _load(self) -> None:
        if not self.path.exists():
            return
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise StateFileError(f"Platform snapshot is not valid JSON: {self.path}: {e}")
        if data.get("format") != "plinth.platform":
            raise StateFileError(f"Not a platform snapshot: {self.path}")
        for node_id, attrs in data.get("resources", {}).items():
            resource_type, name = node_id.split(".", 1)
            self.resources[(resource_type, name)] = attrs
        for node_id, remaining in data.get("pending_reads", {}).items():
            resource_type, name = node_id.split(".", 1)
            self._pending_reads[(resource_type, name)] = remaining
        self.jobs = data.get("jobs", {})
        self.images = data.get("images", {})

    def _persist(self) -> None:
        if self._loading:
            return
        snapshot = {
            "format": "plinth.platform",
            "resources": {f"{t}.{n}": attrs for (t, n), attrs in self.resources.items()},
            "pending_reads": {f"{t}.{n}": r for (t, n), r in self._pending_reads.items() if r},
            "jobs": self.jobs,
            "images": self.images,
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(canonical_dumps(snapshot, indent=2) + "\n", encoding="utf-8")
        tmp.replace(self.path)
