"""Dependency graph analysis.

Key Components:
    - DependencyGraph: Immutable DAG with cycle detection, depth, critical
      path, bottleneck and parallel group analysis
    - GraphExport: Versioned export schema read by external tooling
    - load_plan: YAML plan file loader

Example:
    >>> from conductor.graph import load_plan
    >>> graph = load_plan("plan.yaml").build_graph()
    >>> graph.parallel_groups()
"""

from conductor.graph.dependency_graph import DependencyGraph
from conductor.graph.models import GraphExport
from conductor.graph.plan_file import PlanDocument, load_plan

__all__ = [
    "DependencyGraph",
    "GraphExport",
    "PlanDocument",
    "load_plan",
]
