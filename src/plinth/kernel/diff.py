"""Structural diff between desired and observed resource state."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional

from plinth.codes import Action
from .descriptor import ResourceNode
from .hash_utils import canonicalize_json
from .state import ReadinessState, ResourceRecord


@dataclass
class AttributeChange:
    """A single attribute difference between desired and observed state."""
    change_type: Literal[
        "ATTRIBUTE_ADDED",  # Desired attribute absent remotely
        "ATTRIBUTE_CHANGED",  # Present remotely with a different value
    ]
    attribute: str
    old_value: Any = None
    new_value: Any = None


@dataclass
class NodeChange:
    """Planned action for one node, with the attribute changes behind it."""
    node_id: str
    action: Action
    changes: List[AttributeChange] = field(default_factory=list)
    details: Optional[dict] = None


def _same(a: Any, b: Any) -> bool:
    # Canonical form makes tuple/list and key order irrelevant
    try:
        return canonicalize_json(a) == canonicalize_json(b)
    except ValueError:
        return a == b


def diff_attributes(desired: Dict[str, Any], observed: Optional[Dict[str, Any]]) -> List[AttributeChange]:
    """
    Compare desired attributes against observed ones.

    Only desired keys are compared: attributes computed by the platform
    (urls, connection names, status fields) never produce a diff.
    Returned in attribute-name order.
    """
    observed = observed or {}
    changes: List[AttributeChange] = []
    for attr in sorted(desired):
        if attr not in observed:
            changes.append(AttributeChange(
                change_type="ATTRIBUTE_ADDED",
                attribute=attr,
                new_value=desired[attr],
            ))
        elif not _same(desired[attr], observed[attr]):
            changes.append(AttributeChange(
                change_type="ATTRIBUTE_CHANGED",
                attribute=attr,
                old_value=observed[attr],
                new_value=desired[attr],
            ))
    return changes


def plan_node(
    node: ResourceNode,
    observed: Optional[Dict[str, Any]],
    record: Optional[ResourceRecord] = None,
) -> NodeChange:
    """Decide create/update/noop for a node.

    Build nodes have no remote ``get``; they are a no-op when the last
    successful build recorded the same desired hash.
    """
    if node.is_build:
        desired_hash = node.desired_hash()
        if (
            record is not None
            and record.desired_hash == desired_hash
            and record.status is ReadinessState.READY
        ):
            return NodeChange(node_id=node.id, action=Action.NOOP)
        return NodeChange(
            node_id=node.id,
            action=Action.BUILD,
            details={"target_refs": node.build.target_refs},
        )

    if observed is None:
        return NodeChange(
            node_id=node.id,
            action=Action.CREATE,
            changes=diff_attributes(node.attributes, None),
        )
    changes = diff_attributes(node.attributes, observed)
    if changes:
        return NodeChange(node_id=node.id, action=Action.UPDATE, changes=changes)
    return NodeChange(node_id=node.id, action=Action.NOOP)
