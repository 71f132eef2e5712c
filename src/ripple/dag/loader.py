"""
Graph definition loading.

A graph definition is a YAML document listing every component and the
components it depends on::

    nodes:
      parent: []
      utils: [parent]
      app:
        depends_on: [utils]
        description: Customer-facing service

Entries may be a plain list of dependencies or a mapping with a
``depends_on`` list. Declaration order is kept and becomes the graph's
insertion order.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml

from ripple.dag.graph import Graph
from ripple.exceptions import GraphDefinitionError


def parse_graph_table(data: Any, source: str = "<definition>") -> dict[str, list[str]]:
    """
    Validate a parsed definition and turn it into a dependency table.

    Every problem is collected before raising so a broken definition can be
    fixed in one pass.

    Args:
        data: Parsed YAML content
        source: Name used in error messages

    Returns:
        Mapping of node id -> list of dependency ids, in declaration order

    Raises:
        GraphDefinitionError: If the definition is malformed or references
            undeclared nodes
    """
    if not isinstance(data, dict):
        raise GraphDefinitionError(source, ["definition must be a mapping"])

    nodes = data.get("nodes", data)
    if not isinstance(nodes, dict) or not nodes:
        raise GraphDefinitionError(source, ["'nodes' must be a non-empty mapping"])

    errors: list[str] = []
    table: dict[str, list[str]] = {}

    for name, spec in nodes.items():
        name = str(name)
        if spec is None:
            deps: Any = []
        elif isinstance(spec, list):
            deps = spec
        elif isinstance(spec, dict):
            deps = spec.get("depends_on", []) or []
        else:
            errors.append(f"node '{name}': expected a list or mapping, got {type(spec).__name__}")
            continue

        if not isinstance(deps, list) or not all(isinstance(d, str) for d in deps):
            errors.append(f"node '{name}': 'depends_on' must be a list of node names")
            continue

        table[name] = list(dict.fromkeys(deps))

    for name, deps in table.items():
        for dep in deps:
            if dep not in table:
                errors.append(
                    f"node '{name}' depends on '{dep}' which is not declared"
                )

    if errors:
        raise GraphDefinitionError(source, errors)

    return table


def load_graph(path: str | Path) -> Graph:
    """
    Load a graph definition file and build a fresh Graph from it.

    Args:
        path: Path to the YAML definition

    Returns:
        Graph built with ``Graph.from_table``

    Raises:
        FileNotFoundError: If the definition file does not exist
        GraphDefinitionError: If the file is not valid YAML or is malformed
    """
    definition_path = Path(path).expanduser()
    if not definition_path.exists():
        raise FileNotFoundError(f"Graph definition not found: {definition_path}")

    try:
        with open(definition_path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise GraphDefinitionError(str(definition_path), [f"invalid YAML: {e}"]) from e

    return Graph.from_table(parse_graph_table(data, source=str(definition_path)))
