"""Tests for graph.py."""

import json

import pytest

from conftest import make_node
from plinth._internal.io.descriptor_file import load_descriptor
from plinth.errors import MissingDependenciesError, ValidationError
from plinth.kernel.descriptor import OutputSpec
from plinth.kernel.graph import ResourceGraph


def _diamond():
    return ResourceGraph([
        make_node("capability", "api"),
        make_node("sql_instance", "db", depends_on=["capability.api"]),
        make_node("service_account", "runner", depends_on=["capability.api"]),
        make_node("compute_service", "web", depends_on=["sql_instance.db", "service_account.runner"]),
    ])


def test_build_graph():
    """Test building dependency graph."""
    graph = _diamond()

    assert len(graph) == 4
    assert "compute_service.web" in graph
    assert graph.get_dependencies("compute_service.web") == {"sql_instance.db", "service_account.runner"}
    assert graph.get_dependents("capability.api") == {"sql_instance.db", "service_account.runner"}
    assert graph.roots() == ["capability.api"]


def test_topological_order_respects_every_edge():
    graph = _diamond()
    order = graph.topological_order()
    position = {node_id: i for i, node_id in enumerate(order)}
    for node_id in graph.nodes:
        for dep in graph.get_dependencies(node_id):
            assert position[dep] < position[node_id]


def test_topological_order_breaks_ties_by_id():
    graph = ResourceGraph([
        make_node("capability", "zeta"),
        make_node("capability", "alpha"),
        make_node("capability", "mid"),
    ])
    assert graph.topological_order() == ["capability.alpha", "capability.mid", "capability.zeta"]


def test_transitive_dependencies_and_dependents():
    graph = _diamond()
    assert graph.get_transitive_dependencies("compute_service.web") == {
        "capability.api",
        "sql_instance.db",
        "service_account.runner",
    }
    assert graph.get_transitive_dependents("capability.api") == {
        "sql_instance.db",
        "service_account.runner",
        "compute_service.web",
    }
    assert graph.get_transitive_dependencies("capability.api") == set()


def test_missing_dependency():
    with pytest.raises(MissingDependenciesError) as exc_info:
        ResourceGraph([make_node("sql_database", "app", depends_on=["sql_instance.db"])])
    assert exc_info.value.missing == {"sql_instance.db"}
    assert isinstance(exc_info.value, ValidationError)


def test_output_referencing_undeclared_node():
    with pytest.raises(MissingDependenciesError, match="compute_service.web"):
        ResourceGraph(
            [make_node("capability", "api")],
            outputs=[OutputSpec(name="url", node="compute_service.web", attribute="url")],
        )


def test_load_descriptor_from_path(tmp_path):
    path = tmp_path / "descriptor.json"
    path.write_text(json.dumps({
        "descriptor_version": "1",
        "name": "from-file",
        "variables": {"pw": {"sensitive": True}},
        "resources": [
            {"type": "sql_instance", "name": "db", "attributes": {"database_version": "POSTGRES_15", "region": "r", "tier": "t"}},
            {"type": "sql_user", "name": "u", "attributes": {"instance": "db", "password": "${var.pw}"}, "depends_on": ["sql_instance.db"]},
        ],
    }), encoding="utf-8")

    graph = load_descriptor(path, {"pw": "s3cret"})

    assert graph.name == "from-file"
    assert graph.topological_order() == ["sql_instance.db", "sql_user.u"]
    assert graph.get("sql_user.u").attributes["password"] == "s3cret"
    assert graph.sensitive_values == {"s3cret"}
