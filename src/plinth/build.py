"""External Build Invoker: pull, retag and push an upstream image as one job.

The invoker does not care whether the job runs on the platform's managed
build pipeline or as local registry CLI commands. Both strategies expose
the same ``submit``/``poll`` job interface, so a build node is just another
remote job to the reconciler.
"""

import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional

import structlog
from tenacity import (
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from plinth.codes import ErrorKind
from plinth.errors import (
    BuildFailed,
    BuildTimeout,
    Cancelled,
    PermanentError,
    PlinthError,
    TransientError,
)
from plinth.gates import CancelToken
from plinth.kernel.descriptor import BuildSpec
from plinth.kernel.hash_utils import short_digest
from plinth._internal.clock import utc_now
from plinth.platform.base import JobStatus, Platform

logger = structlog.get_logger(__name__)


def build_steps(spec: BuildSpec, cli: str = "docker") -> List[List[str]]:
    """Pull the source, tag it once per target tag, push every tag."""
    steps = [[cli, "pull", spec.source_image]]
    for ref in spec.target_refs:
        steps.append([cli, "tag", spec.source_image, ref])
    for ref in spec.target_refs:
        steps.append([cli, "push", ref])
    return steps


@dataclass
class BuildJob:
    """One external invocation. Owned by the invoker, discarded once terminal."""
    node_id: str
    steps: List[List[str]]
    job_id: str
    status: JobStatus = JobStatus.QUEUED
    started_at: str = field(default_factory=utc_now)
    log_url: Optional[str] = None
    detail: Optional[str] = None


@dataclass
class BuildResult:
    """Success, or Failure(reason) with the kind and a pointer to the job log."""
    ok: bool
    node_id: str
    target_refs: List[str] = field(default_factory=list)
    job_id: Optional[str] = None
    log_url: Optional[str] = None
    reason: Optional[str] = None
    kind: Optional[ErrorKind] = None
    attempts: int = 1


class BuildStrategy(ABC):
    """How a build job is executed and observed."""

    name: str = "abstract"

    def __init__(self, cli: str = "docker"):
        self.cli = cli

    @abstractmethod
    def submit(self, spec: BuildSpec, node_id: str) -> BuildJob:
        ...

    @abstractmethod
    def poll(self, job: BuildJob) -> JobStatus:
        ...


class RemoteJobStrategy(BuildStrategy):
    """Submit the steps to the platform's managed build pipeline."""

    name = "remote"

    def __init__(self, platform: Platform, cli: str = "docker"):
        super().__init__(cli)
        self.platform = platform

    def submit(self, spec: BuildSpec, node_id: str) -> BuildJob:
        steps = build_steps(spec, self.cli)
        info = self.platform.submit_job(steps, labels={"node": node_id.split(".", 1)[-1]})
        logger.info("build.submitted", node=node_id, job_id=info.job_id, log_url=info.log_url)
        return BuildJob(
            node_id=node_id,
            steps=steps,
            job_id=info.job_id,
            status=info.status,
            log_url=info.log_url,
        )

    def poll(self, job: BuildJob) -> JobStatus:
        info = self.platform.get_job(job.job_id)
        job.status = info.status
        job.log_url = info.log_url or job.log_url
        job.detail = info.detail
        return info.status


class LocalCommandStrategy(BuildStrategy):
    """Run the registry CLI directly, one step at a time.

    The job is terminal as soon as ``submit`` returns; ``poll`` only reports
    the recorded status.
    """

    name = "local"

    def __init__(
        self,
        cli: str = "docker",
        runner: Callable[..., Any] = subprocess.run,
        command_timeout: float = 600,
    ):
        super().__init__(cli)
        self.runner = runner
        self.command_timeout = command_timeout

    def submit(self, spec: BuildSpec, node_id: str) -> BuildJob:
        steps = build_steps(spec, self.cli)
        job = BuildJob(
            node_id=node_id,
            steps=steps,
            job_id=f"local-{short_digest(repr(steps))}",
            status=JobStatus.WORKING,
        )
        for cmd in steps:
            logger.info("build.command", node=node_id, command=" ".join(cmd))
            try:
                proc = self.runner(cmd, capture_output=True, text=True, timeout=self.command_timeout, check=False)
            except subprocess.TimeoutExpired:
                job.status = JobStatus.TIMEOUT
                job.detail = f"'{' '.join(cmd)}' exceeded {self.command_timeout}s"
                return job
            except FileNotFoundError:
                raise PermanentError(f"Registry CLI '{self.cli}' not found on PATH", {"node": node_id})
            if proc.returncode != 0:
                job.status = JobStatus.FAILURE
                stderr = (proc.stderr or "").strip().splitlines()
                job.detail = f"'{' '.join(cmd)}' exited {proc.returncode}: {stderr[-1] if stderr else ''}".rstrip(": ")
                return job
        job.status = JobStatus.SUCCESS
        return job

    def poll(self, job: BuildJob) -> JobStatus:
        return job.status


class BuildInvoker:
    """Runs a build spec as a single opaque, retryable unit.

    Args:
        strategy: how jobs are executed (remote pipeline or local CLI)
        poll_interval: seconds between job status polls
        max_polls: polling budget before ``BuildTimeout``
        retries: resubmissions after a failed or transiently erroring job
        retry_wait: base seconds for exponential backoff between resubmissions
    """

    def __init__(
        self,
        strategy: BuildStrategy,
        poll_interval: float = 5.0,
        max_polls: int = 120,
        retries: int = 1,
        retry_wait: float = 1.0,
    ):
        self.strategy = strategy
        self.poll_interval = poll_interval
        self.max_polls = max_polls
        self.retries = retries
        self.retry_wait = retry_wait

    def run_build(self, spec: BuildSpec, node_id: str = "build", cancel: Optional[CancelToken] = None) -> BuildResult:
        """Success or Failure(reason). Raises ``Cancelled`` if the wait is aborted."""
        cancel = cancel or CancelToken()
        attempts = 0

        def sleep(seconds: float) -> None:
            if cancel.wait(seconds):
                raise Cancelled(f"{node_id}: build retry abandoned")

        def before_sleep(retry_state) -> None:
            exc = retry_state.outcome.exception()
            logger.warning("build.retry", node=node_id, attempt=retry_state.attempt_number, error=str(exc))

        retrying = Retrying(
            retry=retry_if_exception_type((TransientError, BuildFailed)),
            stop=stop_after_attempt(self.retries + 1),
            wait=wait_exponential(multiplier=self.retry_wait, max=self.retry_wait * 30),
            sleep=sleep,
            before_sleep=before_sleep,
            reraise=True,
        )
        try:
            for attempt in retrying:
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    job = self._run_once(spec, node_id, cancel)
        except (BuildFailed, BuildTimeout) as e:
            return BuildResult(
                ok=False,
                node_id=node_id,
                target_refs=spec.target_refs,
                log_url=e.log_url,
                reason=e.message,
                kind=e.kind,
                attempts=attempts,
            )
        except Cancelled:
            raise
        except PlinthError as e:
            return BuildResult(
                ok=False,
                node_id=node_id,
                target_refs=spec.target_refs,
                reason=e.message,
                kind=e.kind,
                attempts=attempts,
            )
        logger.info("build.succeeded", node=node_id, job_id=job.job_id, refs=spec.target_refs)
        return BuildResult(
            ok=True,
            node_id=node_id,
            target_refs=spec.target_refs,
            job_id=job.job_id,
            log_url=job.log_url,
            attempts=attempts,
        )

    def _run_once(self, spec: BuildSpec, node_id: str, cancel: CancelToken) -> BuildJob:
        if cancel.cancelled:
            raise Cancelled(f"{node_id}: build not submitted")
        job = self.strategy.submit(spec, node_id)
        status = job.status
        polls = 0
        while not status.terminal:
            if polls >= self.max_polls:
                raise BuildTimeout(
                    f"{node_id}: build job {job.job_id} not terminal after {self.max_polls} polls",
                    log_url=job.log_url,
                    details={"job_id": job.job_id, "status": status.value},
                )
            if cancel.wait(self.poll_interval):
                # Remote job keeps running; only the local wait stops
                raise Cancelled(f"{node_id}: stopped waiting for build job {job.job_id}")
            status = self.strategy.poll(job)
            polls += 1
        if status is JobStatus.SUCCESS:
            return job
        if status is JobStatus.TIMEOUT:
            raise BuildTimeout(
                f"{node_id}: build job {job.job_id} timed out remotely",
                log_url=job.log_url,
                details={"job_id": job.job_id},
            )
        reason = f"{node_id}: build job {job.job_id} finished with {status.value}"
        if job.detail:
            reason += f" ({job.detail})"
        raise BuildFailed(reason, log_url=job.log_url, details={"job_id": job.job_id})


def make_strategy(
    name: str,
    platform: Optional[Platform] = None,
    cli: str = "docker",
    runner: Optional[Callable[..., Any]] = None,
) -> BuildStrategy:
    """Factory for the configured build strategy ("remote" or "local")."""
    if name == "remote":
        if platform is None:
            raise ValueError("remote build strategy requires a platform")
        return RemoteJobStrategy(platform, cli=cli)
    if name == "local":
        return LocalCommandStrategy(cli=cli, runner=runner or subprocess.run)
    raise ValueError(f"Unknown build strategy '{name}' (expected 'remote' or 'local')")
