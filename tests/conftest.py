"""Pytest configuration for tests.

No sys.path hacks - tests should import from the installed plinth package.
All remote interaction goes through InMemoryPlatform; no network.
"""

import logging
from typing import Any, Dict, Iterable, Optional

import pytest
import structlog

from plinth.build import BuildInvoker, RemoteJobStrategy
from plinth.kernel.descriptor import RESOURCE_TYPES, OutputSpec, ResourceNode
from plinth.kernel.graph import ResourceGraph
from plinth.platform.memory import InMemoryPlatform
from plinth.reconciler import Reconciler
from plinth.settings import get_settings


def pytest_addoption(parser):
    """Add gated perf test option."""
    parser.addoption(
        "--run-perf",
        action="store_true",
        default=False,
        help="Run performance sentinel tests (gated)."
    )


def pytest_collection_modifyitems(config, items):
    """Skip perf-marked tests unless --run-perf is set."""
    if config.getoption("--run-perf"):
        return
    skip_perf = pytest.mark.skip(reason="perf tests gated; pass --run-perf")
    for item in items:
        if "perf" in item.keywords:
            item.add_marker(skip_perf)


@pytest.fixture(autouse=True)
def _isolate_settings_and_logging(monkeypatch):
    """Fresh settings per test; undo logging configured by CLI runs."""
    for var in ("PLINTH_STATE_PATH", "PLINTH_PLATFORM_PATH", "PLINTH_BUILD_STRATEGY", "PLINTH_LOG_JSON"):
        monkeypatch.delenv(var, raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()
    structlog.reset_defaults()
    for handler in logging.root.handlers[:]:
        logging.root.removeHandler(handler)


def make_node(
    type_: str,
    name: str,
    depends_on: Iterable[str] = (),
    gate: Optional[Dict[str, Any]] = None,
    build: Optional[Dict[str, Any]] = None,
    **attributes: Any,
) -> ResourceNode:
    """ResourceNode with placeholder values for any required attribute not given."""
    attrs = {attr: f"{name}-{attr}" for attr in RESOURCE_TYPES[type_]}
    attrs.update(attributes)
    return ResourceNode(
        type=type_,
        name=name,
        attributes=attrs,
        depends_on=tuple(depends_on),
        gate=gate,
        build=build,
    )


def make_reconciler(platform: InMemoryPlatform, state_path=None, **kwargs: Any) -> Reconciler:
    """Reconciler with zero backoff so retries do not slow the suite down."""
    invoker = kwargs.pop("build_invoker", None) or BuildInvoker(
        RemoteJobStrategy(platform), poll_interval=0, retry_wait=0
    )
    kwargs.setdefault("retry_wait_min", 0)
    kwargs.setdefault("retry_wait_max", 0)
    return Reconciler(platform, state_path=state_path, build_invoker=invoker, **kwargs)


WIKI_BUILD = {
    "source_image": "requarks/wiki:2",
    "target_repository": "us-central1-docker.pkg.dev/proj/wiki",
    "image_name": "wiki",
    "tags": ["2", "latest"],
}


@pytest.fixture
def node():
    return make_node


@pytest.fixture
def platform():
    return InMemoryPlatform()


@pytest.fixture
def reconciler_factory():
    return make_reconciler


@pytest.fixture
def chain_graph():
    """capability.api <- sql_instance.db <- sql_database.app, with one output."""
    return ResourceGraph(
        [
            make_node("capability", "api", service="sqladmin.googleapis.com"),
            make_node("sql_instance", "db", depends_on=["capability.api"], region="us-central1"),
            make_node("sql_database", "app", depends_on=["sql_instance.db"], instance="db"),
        ],
        outputs=[OutputSpec(name="connection_name", node="sql_instance.db", attribute="connection_name")],
        name="chain",
    )


@pytest.fixture
def wiki_descriptor() -> Dict[str, Any]:
    """Small descriptor with a build, a sensitive variable and a sensitive output."""
    return {
        "descriptor_version": "1",
        "name": "mini-wiki",
        "variables": {
            "project": {"default": "proj"},
            "db_password": {"sensitive": True},
        },
        "resources": [
            {
                "type": "registry",
                "name": "wiki",
                "attributes": {
                    "location": "us-central1",
                    "repository_id": "wiki",
                    "format": "DOCKER",
                    "project": "${var.project}",
                },
            },
            {
                "type": "build",
                "name": "wiki_image",
                "depends_on": ["registry.wiki"],
                "build": dict(WIKI_BUILD, target_repository="us-central1-docker.pkg.dev/${var.project}/wiki/"),
            },
            {
                "type": "sql_instance",
                "name": "db",
                "attributes": {"database_version": "POSTGRES_15", "region": "us-central1", "tier": "db-f1-micro"},
                "gate": {"kind": "poll", "field": "state", "ready_values": ["RUNNABLE"], "interval": 0.01, "max_attempts": 10},
            },
            {
                "type": "sql_user",
                "name": "wiki",
                "attributes": {"instance": "db", "password": "${var.db_password}"},
                "depends_on": ["sql_instance.db"],
            },
            {
                "type": "compute_service",
                "name": "wiki",
                "attributes": {
                    "image": "us-central1-docker.pkg.dev/${var.project}/wiki/wiki:2",
                    "region": "us-central1",
                    "env": {"DB_PASS": "${var.db_password}"},
                },
                "depends_on": ["build.wiki_image", "sql_user.wiki"],
            },
        ],
        "outputs": [
            {"name": "service_url", "node": "compute_service.wiki", "attribute": "url"},
            {"name": "image_repository", "node": "build.wiki_image", "attribute": "image_repository"},
            {"name": "db_password", "node": "sql_user.wiki", "attribute": "password", "sensitive": True},
        ],
    }
