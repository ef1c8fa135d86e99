"""Reconciler: make observed remote state match the declared graph.

Nodes are processed in dependency order. Independent subtrees run on a
worker pool; a node is only submitted once every dependency is READY, so
siblings sharing a dependency serialize behind it. A failure halts the
failed node's dependents (they stay PENDING) and nothing is rolled back.

The state document is loaded before and saved after every pass, so a
re-run diffs against last-known state instead of re-creating resources.
"""

import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, TypeVar, Union

import structlog
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from plinth._internal.clock import utc_now
from plinth._internal.io.state_file import load_state, save_state
from plinth.build import BuildInvoker, BuildResult, RemoteJobStrategy
from plinth.codes import Action, ErrorKind
from plinth.errors import (
    BuildFailed,
    BuildTimeout,
    Cancelled,
    GateFailed,
    PermanentError,
    PlinthError,
    TimedOut,
    TransientError,
)
from plinth.gates import CancelToken, GateOutcome, gate_for
from plinth.kernel.descriptor import ResourceNode
from plinth.kernel.diff import NodeChange, plan_node
from plinth.kernel.graph import ResourceGraph
from plinth.kernel.state import (
    ReadinessState,
    ReadinessTable,
    ResourceRecord,
    StateDocument,
)
from plinth.outputs import OutputProjector
from plinth.platform.base import Platform
from plinth.reader import ObservedState, RemoteStateReader

logger = structlog.get_logger(__name__)

T = TypeVar("T")


@dataclass
class NodeFailure:
    """Which node failed, how, and where to look for the remote log."""
    node_id: str
    kind: ErrorKind
    message: str
    log_url: Optional[str] = None

    def describe(self) -> str:
        text = f"{self.node_id}: {self.kind.value}: {self.message}"
        if self.log_url:
            text += f" (log: {self.log_url})"
        return text


@dataclass
class ApplyResult:
    """Partial-success result of one reconciliation pass."""
    statuses: Dict[str, ReadinessState]
    failures: Dict[str, NodeFailure] = field(default_factory=dict)
    mutations: List[Tuple[str, str]] = field(default_factory=list)  # (action, node_id)
    outputs: Dict[str, Any] = field(default_factory=dict)
    cancelled: bool = False

    def _in(self, state: ReadinessState) -> List[str]:
        return sorted(n for n, s in self.statuses.items() if s is state)

    @property
    def ready_nodes(self) -> List[str]:
        return self._in(ReadinessState.READY)

    @property
    def failed_nodes(self) -> List[str]:
        return self._in(ReadinessState.FAILED)

    @property
    def pending_nodes(self) -> List[str]:
        return self._in(ReadinessState.PENDING)

    @property
    def ok(self) -> bool:
        return not self.failures and not self.cancelled and all(
            s is ReadinessState.READY for s in self.statuses.values()
        )


@dataclass
class Plan:
    """Actions a pass would take, computed without mutating anything."""
    order: List[str]
    changes: Dict[str, NodeChange] = field(default_factory=dict)
    unknown: Dict[str, str] = field(default_factory=dict)  # node -> why it could not be observed

    def actions(self) -> Dict[str, Action]:
        return {n: c.action for n, c in self.changes.items()}

    @property
    def has_changes(self) -> bool:
        return bool(self.unknown) or any(c.action is not Action.NOOP for c in self.changes.values())


@dataclass
class DestroyResult:
    deleted: List[str] = field(default_factory=list)
    forgotten: List[str] = field(default_factory=list)  # dropped from state without a remote call
    failures: Dict[str, NodeFailure] = field(default_factory=dict)
    blocked: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures and not self.blocked


def _failure_from(node_id: str, exc: PlinthError) -> NodeFailure:
    return NodeFailure(
        node_id=node_id,
        kind=exc.kind,
        message=exc.message,
        log_url=getattr(exc, "log_url", None),
    )


def _raise_build_failure(result: BuildResult) -> None:
    reason = result.reason or "build failed"
    if result.kind is ErrorKind.BUILD_TIMEOUT:
        raise BuildTimeout(reason, log_url=result.log_url)
    if result.kind is ErrorKind.TRANSIENT:
        raise TransientError(reason)
    if result.kind is ErrorKind.PERMANENT:
        raise PermanentError(reason)
    raise BuildFailed(reason, log_url=result.log_url)


class Reconciler:
    """Applies a ResourceGraph against a Platform.

    Args:
        platform: the external platform
        state_path: persisted state document; None keeps state in memory
        build_invoker: runs build nodes (defaults to the platform's build pipeline)
        max_workers: parallel workers for independent subtrees
        retry_attempts: attempts per remote call on TransientError
        retry_wait_min / retry_wait_max: exponential backoff bounds, seconds
        gate_timeout: cap on any single readiness gate, seconds
    """

    def __init__(
        self,
        platform: Platform,
        state_path: Optional[Union[str, Path]] = None,
        build_invoker: Optional[BuildInvoker] = None,
        max_workers: int = 4,
        retry_attempts: int = 3,
        retry_wait_min: float = 0.5,
        retry_wait_max: float = 10.0,
        gate_timeout: Optional[float] = None,
    ):
        self.platform = platform
        self.reader = RemoteStateReader(platform)
        self.state_path = Path(state_path) if state_path is not None else None
        self.build_invoker = build_invoker or BuildInvoker(RemoteJobStrategy(platform))
        self.max_workers = max_workers
        self.retry_attempts = retry_attempts
        self.retry_wait_min = retry_wait_min
        self.retry_wait_max = retry_wait_max
        self.gate_timeout = gate_timeout
        self.projector = OutputProjector()
        self._memory_state = StateDocument()
        self._state_lock = threading.Lock()

    # -- state document --------------------------------------------------

    def load_state(self) -> StateDocument:
        if self.state_path is None:
            return self._memory_state
        return load_state(self.state_path)

    def _save_state(self, state: StateDocument) -> None:
        if self.state_path is None:
            state.serial += 1
            self._memory_state = state
            return
        save_state(self.state_path, state)

    # -- remote calls ----------------------------------------------------

    def _call(self, fn: Callable[[], T], node_id: str, what: str, cancel: CancelToken) -> T:
        """Run a remote call, retrying TransientError with bounded backoff."""

        def sleep(seconds: float) -> None:
            if cancel.wait(seconds):
                raise Cancelled(f"{node_id}: retry of {what} abandoned")

        def before_sleep(retry_state) -> None:
            logger.warning(
                "remote.retry",
                node=node_id,
                call=what,
                attempt=retry_state.attempt_number,
                error=str(retry_state.outcome.exception()),
            )

        retrying = Retrying(
            retry=retry_if_exception_type(TransientError),
            stop=stop_after_attempt(self.retry_attempts),
            wait=wait_exponential(multiplier=self.retry_wait_min, min=self.retry_wait_min, max=self.retry_wait_max),
            sleep=sleep,
            before_sleep=before_sleep,
            reraise=True,
        )
        return retrying(fn)

    def _apply_remote(self, node: ResourceNode) -> Dict[str, Any]:
        try:
            return self.platform.apply(node.type, node.name, dict(node.attributes))
        except PlinthError:
            raise
        except (ConnectionError, TimeoutError) as e:
            raise TransientError(f"{node.id}: apply failed: {e}", {"node": node.id})

    # -- apply -----------------------------------------------------------

    def apply(
        self,
        graph: ResourceGraph,
        cancel: Optional[CancelToken] = None,
        retry_failed: bool = False,
    ) -> ApplyResult:
        """Reconcile the graph; returns a partial-success result."""
        cancel = cancel or CancelToken()
        state = self.load_state()
        state.descriptor_name = graph.name
        table = ReadinessTable(graph.nodes)
        failures: Dict[str, NodeFailure] = {}
        mutations: List[Tuple[str, str]] = []
        attributes: Dict[str, Dict[str, Any]] = {}
        order = graph.topological_order()
        log = logger.bind(descriptor=graph.name)
        log.info("apply.started", nodes=len(order), workers=self.max_workers)

        for node_id in order:
            record = state.record(node_id)
            node = graph.get(node_id)
            if (
                record is not None
                and record.status is ReadinessState.FAILED
                and record.error_kind is not ErrorKind.CANCELLED
                and record.desired_hash == node.desired_hash()
                and not retry_failed
            ):
                table.transition(node_id, ReadinessState.FAILED)
                failures[node_id] = NodeFailure(
                    node_id=node_id,
                    kind=record.error_kind or ErrorKind.PERMANENT,
                    message=f"failed in a previous pass and not retried: {record.error_message}",
                    log_url=record.log_url,
                )

        def process(node: ResourceNode) -> None:
            if not table.claim(node.id):
                return
            try:
                observed = self._reconcile_node(node, state, table, cancel, mutations)
            except PlinthError as e:
                self._fail(node, e, state, table, failures)
                return
            except Exception as e:
                log.exception("node.unexpected_error", node=node.id)
                self._fail(node, PermanentError(f"{type(e).__name__}: {e}"), state, table, failures)
                return
            with self._state_lock:
                attributes[node.id] = observed

        try:
            with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="plinth") as pool:
                in_flight: Dict[Future, str] = {}
                submitted: set = set()
                while True:
                    if not cancel.cancelled:
                        for node_id in order:
                            if node_id in submitted or table.get(node_id) is not ReadinessState.PENDING:
                                continue
                            deps = graph.get_dependencies(node_id)
                            if all(table.get(d) is ReadinessState.READY for d in deps):
                                submitted.add(node_id)
                                in_flight[pool.submit(process, graph.get(node_id))] = node_id
                    if not in_flight:
                        break
                    done, _ = wait(list(in_flight), return_when=FIRST_COMPLETED)
                    for future in done:
                        in_flight.pop(future)
                        future.result()
        finally:
            statuses = table.snapshot()
            outputs = self.projector.project_available(graph, statuses, attributes)
            state.outputs = outputs
            state.sensitive_outputs = sorted(o.name for o in graph.outputs if o.sensitive)
            orphans = sorted(set(state.resources) - set(graph.nodes))
            if orphans:
                log.warning("apply.orphaned_resources", nodes=orphans)
            self._save_state(state)

        result = ApplyResult(
            statuses=statuses,
            failures=failures,
            mutations=list(mutations),
            outputs=outputs,
            cancelled=cancel.cancelled,
        )
        log.info(
            "apply.finished",
            ready=len(result.ready_nodes),
            failed=len(result.failed_nodes),
            pending=len(result.pending_nodes),
            mutations=len(result.mutations),
            cancelled=result.cancelled,
        )
        return result

    def _fail(
        self,
        node: ResourceNode,
        exc: PlinthError,
        state: StateDocument,
        table: ReadinessTable,
        failures: Dict[str, NodeFailure],
    ) -> None:
        failure = _failure_from(node.id, exc)
        logger.error(
            "node.failed",
            node=node.id,
            kind=failure.kind.value,
            error=failure.message,
            log_url=failure.log_url,
        )
        table.transition(node.id, ReadinessState.FAILED)
        with self._state_lock:
            failures[node.id] = failure
            previous = state.record(node.id)
            state.resources[node.id] = ResourceRecord(
                type=node.type,
                name=node.name,
                attributes=previous.attributes if previous else {},
                desired_hash=node.desired_hash(),
                status=ReadinessState.FAILED,
                error_kind=failure.kind,
                error_message=failure.message,
                log_url=failure.log_url,
                updated_at=utc_now(),
            )

    def _reconcile_node(
        self,
        node: ResourceNode,
        state: StateDocument,
        table: ReadinessTable,
        cancel: CancelToken,
        mutations: List[Tuple[str, str]],
    ) -> Dict[str, Any]:
        log = logger.bind(node=node.id)
        with self._state_lock:
            record = state.record(node.id)
        desired_hash = node.desired_hash()
        converged_before = (
            record is not None
            and record.status is ReadinessState.READY
            and record.desired_hash == desired_hash
        )

        if node.is_build:
            change = plan_node(node, None, record)
            if change.action is Action.NOOP:
                log.info("node.noop", action="build")
                attrs = dict(record.attributes)
            else:
                log.info("node.build", refs=node.build.target_refs)
                result = self.build_invoker.run_build(node.build, node.id, cancel)
                if not result.ok:
                    _raise_build_failure(result)
                with self._state_lock:
                    mutations.append((Action.BUILD.value, node.id))
                attrs = {
                    "image_repository": node.build.image_repository,
                    "target_refs": list(result.target_refs),
                    "job_id": result.job_id,
                    "log_url": result.log_url,
                }
        else:
            observed = self._call(lambda: self.reader.observe(node), node.id, "observe", cancel)
            current = observed.attributes if isinstance(observed, ObservedState) else None
            change = plan_node(node, current, record)
            if change.action is Action.NOOP:
                log.info("node.noop")
                attrs = dict(current)
            else:
                log.info(
                    "node.apply",
                    action=change.action.value,
                    attributes=[c.attribute for c in change.changes],
                )
                attrs = self._call(lambda: self._apply_remote(node), node.id, "apply", cancel)
                with self._state_lock:
                    mutations.append((change.action.value, node.id))

        if change.action is not Action.NOOP or not converged_before:
            table.transition(node.id, ReadinessState.WAITING_FOR_PROPAGATION)
            gate = gate_for(node, self.reader)
            outcome = gate.await_ready(node, timeout=self.gate_timeout, cancel=cancel)
            if gate.last_observed is not None:
                attrs = dict(gate.last_observed.attributes)
            if outcome is GateOutcome.CANCELLED:
                raise Cancelled(f"{node.id}: wait for readiness abandoned")
            if outcome is GateOutcome.TIMED_OUT:
                raise TimedOut(
                    f"{node.id}: not ready within the gate budget",
                    log_url=self.platform.resource_url(node.type, node.name),
                    details={"gate": node.gate.kind if node.gate else None},
                )
            if outcome is GateOutcome.FAILED:
                field_name = getattr(node.gate, "field", "status")
                raise GateFailed(
                    f"{node.id}: {field_name} reached a failed value ({attrs.get(field_name)})",
                    log_url=self.platform.resource_url(node.type, node.name),
                )

        table.transition(node.id, ReadinessState.READY)
        with self._state_lock:
            state.resources[node.id] = ResourceRecord(
                type=node.type,
                name=node.name,
                attributes=attrs,
                desired_hash=desired_hash,
                status=ReadinessState.READY,
                updated_at=utc_now(),
            )
        log.info("node.ready")
        return attrs

    # -- plan ------------------------------------------------------------

    def plan(self, graph: ResourceGraph, cancel: Optional[CancelToken] = None) -> Plan:
        """Compute per-node actions without mutating anything."""
        cancel = cancel or CancelToken()
        state = self.load_state()
        order = graph.topological_order()
        plan = Plan(order=order)
        for node_id in order:
            node = graph.get(node_id)
            record = state.record(node_id)
            if node.is_build:
                plan.changes[node_id] = plan_node(node, None, record)
                continue
            try:
                observed = self._call(lambda: self.reader.observe(node), node_id, "observe", cancel)
            except PlinthError as e:
                plan.unknown[node_id] = f"{e.kind.value}: {e.message}"
                continue
            current = observed.attributes if isinstance(observed, ObservedState) else None
            plan.changes[node_id] = plan_node(node, current, record)
        return plan

    # -- destroy ---------------------------------------------------------

    def destroy(self, graph: Optional[ResourceGraph] = None, cancel: Optional[CancelToken] = None) -> DestroyResult:
        """Delete recorded resources, dependents first.

        Build nodes are only forgotten: pushed images belong to the
        registry. A node whose dependent could not be deleted is blocked.
        """
        cancel = cancel or CancelToken()
        state = self.load_state()
        result = DestroyResult()
        recorded = set(state.resources)
        if graph is not None:
            in_graph = [n for n in reversed(graph.topological_order()) if n in recorded]
            orphans = sorted(recorded - set(in_graph))
            order = orphans + in_graph
        else:
            order = sorted(recorded)
        halted: set = set()

        try:
            for node_id in order:
                if cancel.cancelled:
                    result.blocked.append(node_id)
                    continue
                record = state.resources[node_id]
                dependents = graph.get_transitive_dependents(node_id) if graph is not None and node_id in graph else set()
                if dependents & halted:
                    result.blocked.append(node_id)
                    halted.add(node_id)
                    continue
                if record.type == "build":
                    del state.resources[node_id]
                    result.forgotten.append(node_id)
                    continue
                try:
                    exists = self._call(
                        lambda: self.platform.get(record.type, record.name), node_id, "observe", cancel
                    )
                    if exists is None:
                        result.forgotten.append(node_id)
                    else:
                        self._call(lambda: self.platform.delete(record.type, record.name), node_id, "delete", cancel)
                        result.deleted.append(node_id)
                        logger.info("node.deleted", node=node_id)
                    del state.resources[node_id]
                except PlinthError as e:
                    failure = _failure_from(node_id, e)
                    logger.error("node.delete_failed", node=node_id, kind=failure.kind.value, error=failure.message)
                    result.failures[node_id] = failure
                    halted.add(node_id)
        finally:
            state.outputs = {}
            self._save_state(state)
        return result
