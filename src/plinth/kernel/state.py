"""Readiness state machine and the persisted state document."""

import threading
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from plinth._internal.clock import utc_now
from plinth.codes import ErrorKind
from plinth.errors import IllegalTransition


class ReadinessState(str, Enum):
    """Per-node progress within one reconciliation pass."""

    PENDING = "pending"
    APPLYING = "applying"
    WAITING_FOR_PROPAGATION = "waiting_for_propagation"
    READY = "ready"
    FAILED = "failed"


_ALLOWED: Dict[ReadinessState, frozenset] = {
    ReadinessState.PENDING: frozenset({ReadinessState.APPLYING, ReadinessState.FAILED}),
    ReadinessState.APPLYING: frozenset({
        ReadinessState.WAITING_FOR_PROPAGATION,
        ReadinessState.READY,
        ReadinessState.FAILED,
    }),
    ReadinessState.WAITING_FOR_PROPAGATION: frozenset({ReadinessState.READY, ReadinessState.FAILED}),
    ReadinessState.READY: frozenset(),
    ReadinessState.FAILED: frozenset(),
}


class ReadinessTable:
    """Shared readiness map, guarded for single-writer-per-node access.

    A worker must ``claim`` a node (PENDING -> APPLYING) before moving it
    further; only the claiming thread may transition it afterwards.
    """

    def __init__(self, node_ids: Iterable[str]):
        self._lock = threading.Lock()
        self._states: Dict[str, ReadinessState] = {n: ReadinessState.PENDING for n in node_ids}
        self._owners: Dict[str, int] = {}

    def get(self, node_id: str) -> ReadinessState:
        with self._lock:
            return self._states[node_id]

    def snapshot(self) -> Dict[str, ReadinessState]:
        with self._lock:
            return dict(self._states)

    def claim(self, node_id: str) -> bool:
        """Atomically move PENDING -> APPLYING for the calling thread."""
        with self._lock:
            if self._states[node_id] is not ReadinessState.PENDING:
                return False
            self._states[node_id] = ReadinessState.APPLYING
            self._owners[node_id] = threading.get_ident()
            return True

    def transition(self, node_id: str, new_state: ReadinessState) -> None:
        with self._lock:
            current = self._states[node_id]
            if new_state not in _ALLOWED[current]:
                raise IllegalTransition(f"{node_id}: {current.value} -> {new_state.value} is not allowed")
            owner = self._owners.get(node_id)
            if owner is not None and owner != threading.get_ident():
                raise IllegalTransition(f"{node_id}: transition attempted by a thread that does not own the node")
            self._states[node_id] = new_state
            if new_state in (ReadinessState.READY, ReadinessState.FAILED):
                self._owners.pop(node_id, None)

    def reset(self, node_id: str) -> None:
        """Explicit retry: FAILED -> PENDING."""
        with self._lock:
            if self._states[node_id] is not ReadinessState.FAILED:
                raise IllegalTransition(f"{node_id}: only failed nodes can be reset")
            self._states[node_id] = ReadinessState.PENDING

    def in_state(self, state: ReadinessState) -> List[str]:
        with self._lock:
            return sorted(n for n, s in self._states.items() if s is state)


class ResourceRecord(BaseModel):
    """Last-known state of one node, as persisted between invocations."""
    type: str
    name: str
    attributes: Dict[str, Any] = Field(default_factory=dict)  # observed
    desired_hash: Optional[str] = None  # hash of the intent last applied
    status: ReadinessState = ReadinessState.PENDING
    error_kind: Optional[ErrorKind] = None
    error_message: Optional[str] = None
    log_url: Optional[str] = None
    updated_at: str = Field(default_factory=utc_now)

    model_config = ConfigDict(extra="forbid")


class StateDocument(BaseModel):
    """Persisted record of the observed graph, keyed by node id."""
    format: str = "plinth.state"
    version: str = "1"
    serial: int = 0
    lineage: Optional[str] = None
    descriptor_name: Optional[str] = None
    resources: Dict[str, ResourceRecord] = Field(default_factory=dict)
    outputs: Dict[str, Any] = Field(default_factory=dict)
    sensitive_outputs: List[str] = Field(default_factory=list)

    model_config = ConfigDict(extra="forbid")

    def record(self, node_id: str) -> Optional[ResourceRecord]:
        return self.resources.get(node_id)

    def ready_ids(self) -> List[str]:
        return sorted(n for n, r in self.resources.items() if r.status is ReadinessState.READY)
