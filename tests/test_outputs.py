"""Tests for output projection and sensitive masking."""

import pytest

from conftest import make_node
from plinth.errors import IncompleteGraphError, PlinthError
from plinth.kernel.descriptor import OutputSpec
from plinth.kernel.graph import ResourceGraph
from plinth.kernel.state import ReadinessState
from plinth.outputs import MASK, OutputProjector, mask_sensitive

READY = ReadinessState.READY


@pytest.fixture
def graph():
    return ResourceGraph(
        [
            make_node("registry", "wiki", location="us-central1", repository_id="wiki", format="DOCKER"),
            make_node("compute_service", "web", depends_on=["registry.wiki"]),
        ],
        outputs=[
            OutputSpec(name="registry_url", node="registry.wiki", attribute="url"),
            OutputSpec(name="image_path", node="registry.wiki", attribute="url", path=("/wiki/",)),
            OutputSpec(name="service_url", node="compute_service.web", attribute="url"),
            OutputSpec(name="env", node="compute_service.web", attribute="env", sensitive=True),
        ],
    )


ATTRIBUTES = {
    "registry.wiki": {"url": "us-central1-docker.pkg.dev/proj/wiki/"},
    "compute_service.web": {"url": "https://web.run.app", "env": {"DB_PASS": "x"}},
}


def test_projects_all_outputs_when_ready(graph):
    statuses = {n: READY for n in graph.nodes}
    outputs = OutputProjector().project(graph, statuses, ATTRIBUTES)
    assert outputs["service_url"] == "https://web.run.app"
    assert outputs["registry_url"] == "us-central1-docker.pkg.dev/proj/wiki/"


def test_path_join_has_no_duplicate_slashes(graph):
    statuses = {n: READY for n in graph.nodes}
    outputs = OutputProjector().project(graph, statuses, ATTRIBUTES, names=["image_path"])
    assert outputs == {"image_path": "us-central1-docker.pkg.dev/proj/wiki/wiki"}


def test_not_ready_node_raises_incomplete_graph(graph):
    statuses = {"registry.wiki": READY, "compute_service.web": ReadinessState.WAITING_FOR_PROPAGATION}
    with pytest.raises(IncompleteGraphError) as exc_info:
        OutputProjector().project(graph, statuses, ATTRIBUTES, names=["service_url"])
    assert exc_info.value.output == "service_url"
    assert exc_info.value.not_ready == ["compute_service.web"]


def test_not_ready_ancestor_raises_incomplete_graph(graph):
    statuses = {"registry.wiki": ReadinessState.FAILED, "compute_service.web": READY}
    with pytest.raises(IncompleteGraphError, match="registry.wiki"):
        OutputProjector().project(graph, statuses, ATTRIBUTES, names=["service_url"])


def test_missing_attribute_is_incomplete(graph):
    statuses = {n: READY for n in graph.nodes}
    with pytest.raises(IncompleteGraphError, match="registry.wiki.url"):
        OutputProjector().project(graph, statuses, {"compute_service.web": {}}, names=["registry_url"])


def test_unknown_output_name(graph):
    with pytest.raises(PlinthError, match="Unknown outputs: nope"):
        OutputProjector().project(graph, {}, {}, names=["nope"])


def test_project_available_skips_incomplete(graph):
    statuses = {"registry.wiki": READY, "compute_service.web": ReadinessState.PENDING}
    outputs = OutputProjector().project_available(graph, statuses, ATTRIBUTES)
    assert set(outputs) == {"registry_url", "image_path"}


def test_projection_does_not_alias_attributes(graph):
    statuses = {n: READY for n in graph.nodes}
    outputs = OutputProjector().project(graph, statuses, ATTRIBUTES, names=["env"])
    outputs["env"]["DB_PASS"] = "changed"
    assert ATTRIBUTES["compute_service.web"]["env"]["DB_PASS"] == "x"


def test_mask_sensitive():
    masked = mask_sensitive({"url": "https://x", "password": "hunter2"}, ["password"])
    assert masked == {"url": "https://x", "password": MASK}
