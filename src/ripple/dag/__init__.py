"""Dependency graph engine for Ripple."""
from ripple.dag.graph import Edge, Graph
from ripple.dag.loader import load_graph, parse_graph_table

__all__ = [
    "Edge",
    "Graph",
    "load_graph",
    "parse_graph_table",
]
