"""Public API for plinth.

High-level functions that return complete, structured results. The CLI
is a thin renderer over these; embedders should use them instead of
wiring the reconciler by hand.
"""

import os
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

from pydantic import BaseModel, Field

from plinth._internal.io.descriptor_file import load_descriptor
from plinth._internal.io.state_file import load_state
from plinth.build import BuildInvoker, make_strategy
from plinth.codes import ValidationCode
from plinth.errors import (
    CycleDetectedError,
    MissingDependenciesError,
    PlinthError,
    ValidationError,
)
from plinth.gates import CancelToken
from plinth.kernel.diff import NodeChange
from plinth.kernel.graph import ResourceGraph
from plinth.kernel.state import ReadinessState
from plinth.outputs import MASK, OutputProjector, mask_sensitive
from plinth.platform.base import Platform
from plinth.reconciler import ApplyResult, DestroyResult, Plan, Reconciler
from plinth.settings import Settings, get_settings

DescriptorSource = Union[str, os.PathLike, Path, Dict[str, Any]]


def _normalize_source(source: DescriptorSource) -> Union[Path, Dict[str, Any]]:
    """Normalize path input to Path object; dicts pass through."""
    return source if isinstance(source, dict) else Path(source)


class ValidationIssue(BaseModel):
    """A single validation issue (error or warning)."""
    code: str
    message: str
    node_id: Optional[str] = None
    missing_id: Optional[str] = None  # For MISSING_DEPENDENCY errors
    cycle_path: Optional[List[str]] = None  # For CYCLE_DETECTED errors


class ValidationResult(BaseModel):
    """Result of a descriptor preflight check."""
    ok: bool  # True if no errors (warnings don't block)
    errors: List[ValidationIssue]
    warnings: List[ValidationIssue]
    order: List[str] = Field(default_factory=list)  # Topological order when valid


class AttributeDiff(BaseModel):
    attribute: str
    change_type: str
    old_value: Any = None
    new_value: Any = None


class NodePlan(BaseModel):
    node_id: str
    action: str
    changes: List[AttributeDiff] = Field(default_factory=list)
    details: Optional[Dict[str, Any]] = None


class PlanResult(BaseModel):
    """What an apply would do, with sensitive values masked."""
    order: List[str]
    nodes: List[NodePlan]
    unknown: Dict[str, str] = Field(default_factory=dict)  # node -> why it could not be observed
    summary: Dict[str, int]  # counts by action
    has_changes: bool


class NodeFailureInfo(BaseModel):
    node_id: str
    kind: str
    message: str
    log_url: Optional[str] = None


class ApplyReport(BaseModel):
    """Partial-success result of an apply pass."""
    ok: bool
    cancelled: bool = False
    ready: List[str]
    failed: List[NodeFailureInfo]
    pending: List[str]
    mutations: List[List[str]]  # [action, node_id] in completion order
    outputs: Dict[str, Any]  # sensitive outputs masked


class DestroyReport(BaseModel):
    ok: bool
    deleted: List[str]
    forgotten: List[str]
    blocked: List[str]
    failed: List[NodeFailureInfo]


def mask_value(value: Any, secrets: Iterable[str]) -> Any:
    """Replace every occurrence of a secret inside strings, recursively."""
    secrets = [s for s in secrets if s]
    if not secrets:
        return value
    if isinstance(value, str):
        if value in secrets:
            return MASK
        for secret in secrets:
            value = value.replace(secret, MASK)
        return value
    if isinstance(value, dict):
        return {k: mask_value(v, secrets) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [mask_value(v, secrets) for v in value]
    if str(value) in secrets and not isinstance(value, bool):
        return MASK
    return value


def build_reconciler(
    platform: Platform,
    settings: Optional[Settings] = None,
    state_path: Optional[Union[str, os.PathLike, Path]] = None,
    runner=None,
) -> Reconciler:
    """Wire a Reconciler and its build invoker from settings."""
    settings = settings or get_settings()
    strategy = make_strategy(settings.build_strategy, platform, cli=settings.docker_cli, runner=runner)
    invoker = BuildInvoker(
        strategy,
        poll_interval=settings.build_poll_interval,
        max_polls=settings.build_max_polls,
        retries=settings.build_retries,
        retry_wait=settings.retry_wait_min,
    )
    return Reconciler(
        platform,
        state_path=state_path if state_path is not None else settings.state_path,
        build_invoker=invoker,
        max_workers=settings.max_workers,
        retry_attempts=settings.retry_attempts,
        retry_wait_min=settings.retry_wait_min,
        retry_wait_max=settings.retry_wait_max,
        gate_timeout=settings.gate_timeout,
    )


def validate(
    descriptor: DescriptorSource,
    variables: Optional[Dict[str, Any]] = None,
) -> ValidationResult:
    """
    Pure validation/preflight for a descriptor.

    Performs every check ``load_descriptor`` does and reports them as
    issues. No remote calls, no file writes.
    """
    errors: List[ValidationIssue] = []
    warnings: List[ValidationIssue] = []
    try:
        graph = load_descriptor(_normalize_source(descriptor), variables)
    except MissingDependenciesError as e:
        for missing_id in sorted(e.missing):
            errors.append(ValidationIssue(
                code=ValidationCode.MISSING_DEPENDENCY.value,
                message=f"Dependency '{missing_id}' is referenced but not declared",
                missing_id=missing_id,
            ))
        return ValidationResult(ok=False, errors=errors, warnings=warnings)
    except CycleDetectedError as e:
        errors.append(ValidationIssue(
            code=ValidationCode.CYCLE_DETECTED.value,
            message=str(e),
            cycle_path=e.cycle,
        ))
        return ValidationResult(ok=False, errors=errors, warnings=warnings)
    except ValidationError as e:
        errors.append(ValidationIssue(
            code=ValidationCode.INVALID_DESCRIPTOR.value,
            message=e.message,
        ))
        return ValidationResult(ok=False, errors=errors, warnings=warnings)

    if not graph.outputs:
        warnings.append(ValidationIssue(
            code=ValidationCode.NO_OUTPUTS.value,
            message=f"Descriptor '{graph.name}' declares no outputs",
        ))
    return ValidationResult(ok=True, errors=errors, warnings=warnings, order=graph.topological_order())


def _node_plan(change: NodeChange, secrets: Iterable[str]) -> NodePlan:
    return NodePlan(
        node_id=change.node_id,
        action=change.action.value,
        changes=[
            AttributeDiff(
                attribute=c.attribute,
                change_type=c.change_type,
                old_value=mask_value(c.old_value, secrets),
                new_value=mask_value(c.new_value, secrets),
            )
            for c in change.changes
        ],
        details=change.details,
    )


def plan_result(graph: ResourceGraph, plan: Plan) -> PlanResult:
    """Render a reconciler Plan as a masked, serializable result."""
    nodes = [_node_plan(plan.changes[n], graph.sensitive_values) for n in plan.order if n in plan.changes]
    summary: Dict[str, int] = {}
    for node in nodes:
        summary[node.action] = summary.get(node.action, 0) + 1
    if plan.unknown:
        summary["unknown"] = len(plan.unknown)
    return PlanResult(
        order=plan.order,
        nodes=nodes,
        unknown=dict(plan.unknown),
        summary=summary,
        has_changes=plan.has_changes,
    )


def plan(
    descriptor: DescriptorSource,
    platform: Platform,
    variables: Optional[Dict[str, Any]] = None,
    state_path: Optional[Union[str, os.PathLike, Path]] = None,
    settings: Optional[Settings] = None,
) -> PlanResult:
    """Read-only: observe the platform and report per-node actions."""
    graph = load_descriptor(_normalize_source(descriptor), variables)
    reconciler = build_reconciler(platform, settings, state_path)
    return plan_result(graph, reconciler.plan(graph))


def apply_report(graph: ResourceGraph, result: ApplyResult) -> ApplyReport:
    sensitive = [o.name for o in graph.outputs if o.sensitive]
    return ApplyReport(
        ok=result.ok,
        cancelled=result.cancelled,
        ready=result.ready_nodes,
        failed=[
            NodeFailureInfo(
                node_id=f.node_id,
                kind=f.kind.value,
                message=mask_value(f.message, graph.sensitive_values),
                log_url=f.log_url,
            )
            for _, f in sorted(result.failures.items())
        ],
        pending=result.pending_nodes,
        mutations=[[action, node_id] for action, node_id in result.mutations],
        outputs=mask_sensitive(result.outputs, sensitive),
    )


def apply(
    descriptor: DescriptorSource,
    platform: Platform,
    variables: Optional[Dict[str, Any]] = None,
    state_path: Optional[Union[str, os.PathLike, Path]] = None,
    settings: Optional[Settings] = None,
    cancel: Optional[CancelToken] = None,
    retry_failed: bool = False,
) -> ApplyReport:
    """Reconcile the descriptor against the platform.

    Raises:
        ValidationError: the descriptor is invalid (nothing is touched remotely).
    """
    graph = load_descriptor(_normalize_source(descriptor), variables)
    reconciler = build_reconciler(platform, settings, state_path)
    return apply_report(graph, reconciler.apply(graph, cancel=cancel, retry_failed=retry_failed))


def destroy_report(result: DestroyResult) -> DestroyReport:
    return DestroyReport(
        ok=result.ok,
        deleted=result.deleted,
        forgotten=result.forgotten,
        blocked=result.blocked,
        failed=[
            NodeFailureInfo(node_id=f.node_id, kind=f.kind.value, message=f.message, log_url=f.log_url)
            for _, f in sorted(result.failures.items())
        ],
    )


def destroy(
    platform: Platform,
    descriptor: Optional[DescriptorSource] = None,
    variables: Optional[Dict[str, Any]] = None,
    state_path: Optional[Union[str, os.PathLike, Path]] = None,
    settings: Optional[Settings] = None,
    cancel: Optional[CancelToken] = None,
) -> DestroyReport:
    """Delete every recorded resource, dependents first."""
    graph = load_descriptor(_normalize_source(descriptor), variables) if descriptor is not None else None
    reconciler = build_reconciler(platform, settings, state_path)
    return destroy_report(reconciler.destroy(graph, cancel=cancel))


def outputs(
    state_path: Union[str, os.PathLike, Path],
    names: Optional[Iterable[str]] = None,
    show_sensitive: bool = False,
    descriptor: Optional[DescriptorSource] = None,
    variables: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Output values from the persisted state.

    Without a descriptor, the outputs recorded by the last apply are
    returned. With one, outputs are projected afresh from the recorded
    node attributes; a node counts as Ready only if its record is Ready
    for the current desired attributes.

    Raises:
        IncompleteGraphError: a requested output's subgraph is not Ready.
        PlinthError: unknown or unrecorded output name.
    """
    state = load_state(state_path)
    if descriptor is None:
        recorded = dict(state.outputs)
        if names is not None:
            wanted = list(names)
            missing = [n for n in wanted if n not in recorded]
            if missing:
                raise PlinthError(f"Outputs not recorded in state: {', '.join(missing)}")
            recorded = {n: recorded[n] for n in wanted}
        sensitive = state.sensitive_outputs
    else:
        graph = load_descriptor(_normalize_source(descriptor), variables)
        statuses = {}
        attributes = {}
        for node_id, node in graph.nodes.items():
            record = state.record(node_id)
            if record is None:
                continue
            current = record.desired_hash == node.desired_hash()
            statuses[node_id] = record.status if current else ReadinessState.PENDING
            attributes[node_id] = record.attributes
        recorded = OutputProjector().project(graph, statuses, attributes, names)
        sensitive = [o.name for o in graph.outputs if o.sensitive]
    if show_sensitive:
        return recorded
    return mask_sensitive(recorded, sensitive)
