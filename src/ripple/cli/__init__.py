"""Ripple CLI - command-line interface for incremental multi-repository builds.

Core commands:
- ripple build: Build changed repositories and their dependents
- ripple setup: Clone every repository in the graph
- ripple dag: Inspect the dependency graph
- ripple status / reset: Inspect and reset the build manifest
"""

from .main import app

__all__ = ["app"]
