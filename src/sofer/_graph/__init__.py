"""Graph module providing dependency graph abstractions.

This module contains:
- DependencyGraph[T]: The "reads" relation between script nodes
- find_cycle, is_reachable: Algorithms shared by the
  outline tree and the dependency graph
"""

from ._algorithms import find_cycle, is_reachable
from ._dependency_graph import DependencyGraph

__all__ = ["DependencyGraph", "find_cycle", "is_reachable"]
