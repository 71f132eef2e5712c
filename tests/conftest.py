import logging

import pytest

from ripple.dag import Graph
from ripple.workflow.state import Manifest


@pytest.fixture(autouse=True)
def enable_ripple_logger_propagation():
    """
    Enable log propagation for the ripple logger during tests.

    The ripple logger has propagate=False by default (set in context.py),
    which prevents pytest's caplog fixture from capturing log messages.
    """
    ripple_logger = logging.getLogger("ripple")
    original_propagate = ripple_logger.propagate
    ripple_logger.propagate = True
    yield
    ripple_logger.propagate = original_propagate


class FakeWorkspace:
    """In-memory workspace: node -> fingerprint, None for unreadable."""

    def __init__(self, fingerprints=None, missing=()):
        self.fingerprints = dict(fingerprints or {})
        self.missing = set(missing)

    def exists(self, node_id):
        return node_id not in self.missing and node_id in self.fingerprints

    def head_fingerprint(self, node_id):
        from ripple.exceptions import FingerprintUnavailableError

        sha = self.fingerprints.get(node_id)
        if sha is None:
            raise FingerprintUnavailableError(node_id, "not a git repository")
        return sha


class RecordingAction:
    """Action that records calls and fails for configured nodes."""

    def __init__(self, fail=(), skip=()):
        self.fail = set(fail)
        self.skip = set(skip)
        self.calls = []

    def __call__(self, node_id, options):
        from ripple.exceptions import ActionSkipped, NodeActionError

        self.calls.append(node_id)
        if node_id in self.skip:
            raise ActionSkipped(node_id, "no pom.xml")
        if node_id in self.fail:
            raise NodeActionError(
                node_id, "exit code 1", output=f"BUILD FAILURE in {node_id}", exit_code=1
            )
        return f"BUILD SUCCESS {node_id}"


@pytest.fixture
def maven_graph():
    """parent <- bom <- utils <- app, the usual multi-module layout."""
    return Graph.from_table({
        "parent": [],
        "bom": ["parent"],
        "utils": ["bom"],
        "app": ["utils"],
    })


@pytest.fixture
def diamond_graph():
    return Graph.from_table({
        "a": [],
        "b": ["a"],
        "c": ["a"],
        "d": ["b", "c"],
    })


@pytest.fixture
def empty_manifest():
    return Manifest()


@pytest.fixture
def fake_workspace_cls():
    return FakeWorkspace


@pytest.fixture
def recording_action_cls():
    return RecordingAction
