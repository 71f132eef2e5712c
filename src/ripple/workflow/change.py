"""
Change detection for incremental builds.

A node is *changed* when its working copy exists and its current fingerprint
differs from the one recorded in the manifest at its last successful run, or
when no fingerprint was recorded or the current one can't be read. The
*affected* set is the changed set plus everything that transitively depends on
it.
"""

import logging
from typing import Iterable, Protocol, Set

from ripple.dag.graph import Graph
from ripple.exceptions import FingerprintUnavailableError
from ripple.workflow.state import Manifest, Phase

logger = logging.getLogger(__name__)


class FingerprintSource(Protocol):
    def exists(self, node_id: str) -> bool: ...

    def head_fingerprint(self, node_id: str) -> str: ...


def detect_changes(
    graph: Graph,
    workspace: FingerprintSource,
    manifest: Manifest,
    phase: str = Phase.BUILD,
) -> Set[str]:
    """
    Find nodes whose working copy moved since their last successful run.

    Nodes without a working copy are ignored. The manifest is only read, so
    calling this twice without intervening writes gives the same answer.

    Args:
        graph: Dependency graph
        workspace: Provides existence and fingerprint per node
        manifest: Manifest holding the last-success fingerprints
        phase: Phase whose recorded fingerprint is compared

    Returns:
        Set of changed node ids
    """
    changed: Set[str] = set()

    for node_id in graph.nodes:
        if not workspace.exists(node_id):
            continue

        try:
            current = workspace.head_fingerprint(node_id)
        except (FingerprintUnavailableError, OSError) as e:
            logger.debug("Treating %s as changed: %s", node_id, e)
            changed.add(node_id)
            continue

        recorded = manifest.fingerprint_of(node_id, phase)
        if not recorded or recorded != current:
            changed.add(node_id)

    return changed


def transitive_closure(graph: Graph, changed: Iterable[str]) -> Set[str]:
    """
    Expand a changed set with every transitive dependent.

    Args:
        graph: Dependency graph
        changed: Seed node ids

    Returns:
        ``changed`` plus the transitive dependents of each member
    """
    affected = set(changed)
    for node_id in list(affected):
        affected.update(graph.transitive_dependents_of(node_id))
    return affected
