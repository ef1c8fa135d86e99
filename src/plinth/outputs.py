"""Output Projector: named values read from Ready nodes."""

import copy
from typing import Any, Dict, Iterable, Mapping, Optional

from plinth.errors import IncompleteGraphError, PlinthError
from plinth.kernel.descriptor import OutputSpec, join_ref
from plinth.kernel.graph import ResourceGraph
from plinth.kernel.state import ReadinessState

MASK = "<sensitive>"


class OutputProjector:
    """Renders OutputBindings once their producing subgraph is Ready.

    Never mutates graph, readiness or attribute state.
    """

    def project(
        self,
        graph: ResourceGraph,
        statuses: Mapping[str, ReadinessState],
        attributes: Mapping[str, Mapping[str, Any]],
        names: Optional[Iterable[str]] = None,
    ) -> Dict[str, Any]:
        """Project the requested outputs (all when ``names`` is None).

        Raises:
            IncompleteGraphError: the producing node or one of its ancestors is not Ready.
            PlinthError: an unknown output name was requested.
        """
        specs = self._select(graph, names)
        result: Dict[str, Any] = {}
        for spec in specs:
            result[spec.name] = self._resolve(graph, spec, statuses, attributes)
        return result

    def project_available(
        self,
        graph: ResourceGraph,
        statuses: Mapping[str, ReadinessState],
        attributes: Mapping[str, Mapping[str, Any]],
    ) -> Dict[str, Any]:
        """Project every output whose subgraph is Ready, skipping the rest."""
        result: Dict[str, Any] = {}
        for spec in graph.outputs:
            try:
                result[spec.name] = self._resolve(graph, spec, statuses, attributes)
            except IncompleteGraphError:
                continue
        return result

    @staticmethod
    def _select(graph: ResourceGraph, names: Optional[Iterable[str]]) -> list[OutputSpec]:
        if names is None:
            return list(graph.outputs)
        by_name = {o.name: o for o in graph.outputs}
        wanted = list(names)
        unknown = sorted(set(wanted) - set(by_name))
        if unknown:
            raise PlinthError(f"Unknown outputs: {', '.join(unknown)}")
        return [by_name[n] for n in wanted]

    @staticmethod
    def _resolve(
        graph: ResourceGraph,
        spec: OutputSpec,
        statuses: Mapping[str, ReadinessState],
        attributes: Mapping[str, Mapping[str, Any]],
    ) -> Any:
        required = {spec.node} | graph.get_transitive_dependencies(spec.node)
        not_ready = sorted(n for n in required if statuses.get(n) is not ReadinessState.READY)
        if not_ready:
            raise IncompleteGraphError(spec.name, not_ready)
        observed = attributes.get(spec.node) or {}
        if spec.attribute not in observed:
            raise IncompleteGraphError(spec.name, [f"{spec.node}.{spec.attribute}"])
        value = copy.deepcopy(observed[spec.attribute])
        if spec.path:
            value = join_ref(str(value), *spec.path)
        return value


def mask_sensitive(outputs: Mapping[str, Any], sensitive: Iterable[str]) -> Dict[str, Any]:
    hidden = set(sensitive)
    return {name: (MASK if name in hidden else value) for name, value in outputs.items()}
