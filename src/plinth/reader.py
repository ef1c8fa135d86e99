"""Remote State Reader: read-only, fail-fast observation of platform resources."""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Union

import structlog

from plinth.errors import PermanentError, PlinthError, TransientError
from plinth.kernel.descriptor import ResourceNode
from plinth.kernel.graph import ResourceGraph
from plinth.platform.base import Platform

logger = structlog.get_logger(__name__)


class _NotFound:
    """Sentinel: the resource does not exist remotely."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "NOT_FOUND"

    def __bool__(self) -> bool:
        return False


NOT_FOUND = _NotFound()


@dataclass(frozen=True)
class ObservedState:
    """Attributes reported by the platform for one node."""
    node_id: str
    attributes: Dict[str, Any] = field(default_factory=dict)

    def value(self, attribute: str) -> Any:
        return self.attributes.get(attribute)


Observation = Union[ObservedState, _NotFound]


class RemoteStateReader:
    """Queries the platform for the current state of nodes.

    No retries happen here; the caller decides. Builtin network errors are
    mapped to ``TransientError``, anything else unexpected to
    ``PermanentError``.
    """

    def __init__(self, platform: Platform):
        self.platform = platform

    def observe(self, node: ResourceNode) -> Observation:
        if node.is_build:
            # Builds have no remote representation to read
            return NOT_FOUND
        try:
            attrs = self.platform.get(node.type, node.name)
        except PlinthError:
            raise
        except (ConnectionError, TimeoutError) as e:
            raise TransientError(f"{node.id}: read failed: {e}", {"node": node.id})
        except Exception as e:
            raise PermanentError(f"{node.id}: read failed: {e}", {"node": node.id})
        if attrs is None:
            return NOT_FOUND
        return ObservedState(node_id=node.id, attributes=dict(attrs))

    def observe_all(self, graph: ResourceGraph) -> Dict[str, Optional[Observation]]:
        """Observe every node; errors are recorded as None (unknown), not raised."""
        result: Dict[str, Optional[Observation]] = {}
        for node_id in graph.topological_order():
            try:
                result[node_id] = self.observe(graph.get(node_id))
            except PlinthError as e:
                logger.warning("observe.failed", node=node_id, kind=e.kind.value, error=e.message)
                result[node_id] = None
        return result
