"""Tests for desired/observed attribute diffing and per-node actions."""

from conftest import WIKI_BUILD, make_node
from plinth.codes import Action
from plinth.kernel.diff import diff_attributes, plan_node
from plinth.kernel.state import ReadinessState, ResourceRecord


def test_diff_only_compares_desired_keys():
    changes = diff_attributes(
        {"tier": "db-f1-micro", "region": "eu"},
        {"tier": "db-f1-micro", "region": "eu", "connection_name": "p:eu:db", "state": "RUNNABLE"},
    )
    assert changes == []


def test_diff_reports_added_and_changed_in_name_order():
    changes = diff_attributes({"tier": "db-g1-small", "edition": "ENTERPRISE"}, {"tier": "db-f1-micro"})
    assert [(c.attribute, c.change_type) for c in changes] == [
        ("edition", "ATTRIBUTE_ADDED"),
        ("tier", "ATTRIBUTE_CHANGED"),
    ]
    assert changes[1].old_value == "db-f1-micro"
    assert changes[1].new_value == "db-g1-small"


def test_diff_ignores_key_order_of_nested_values():
    desired = {"env": {"A": "1", "B": "2"}}
    observed = {"env": {"B": "2", "A": "1"}}
    assert diff_attributes(desired, observed) == []


def test_plan_node_create_update_noop():
    node = make_node("sql_instance", "db", tier="db-f1-micro")
    assert plan_node(node, None).action is Action.CREATE

    observed = dict(node.attributes)
    assert plan_node(node, observed).action is Action.NOOP

    observed["tier"] = "db-custom"
    change = plan_node(node, observed)
    assert change.action is Action.UPDATE
    assert [c.attribute for c in change.changes] == ["tier"]


def test_build_node_noop_only_after_successful_build():
    node = make_node("build", "image", build=WIKI_BUILD)

    first = plan_node(node, None, None)
    assert first.action is Action.BUILD
    assert first.details["target_refs"] == [
        "us-central1-docker.pkg.dev/proj/wiki/wiki:2",
        "us-central1-docker.pkg.dev/proj/wiki/wiki:latest",
    ]

    ready = ResourceRecord(type="build", name="image", desired_hash=node.desired_hash(), status=ReadinessState.READY)
    assert plan_node(node, None, ready).action is Action.NOOP

    failed = ready.model_copy(update={"status": ReadinessState.FAILED})
    assert plan_node(node, None, failed).action is Action.BUILD

    stale = ready.model_copy(update={"desired_hash": "sha256:old"})
    assert plan_node(node, None, stale).action is Action.BUILD
