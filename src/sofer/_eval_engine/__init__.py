"""Evaluation engine module for sofer.

This module keeps the computed values of an outline consistent with its
content. Edits mark nodes dirty; an evaluation pass recomputes the dirty
closure in dependency order, captures per-node failures and applies the
mutation requests returned by scripts.

Key types:
- Evaluator: Owns the dependency graph and runs evaluation passes
- EvaluationReport: Structured result of one pass
- ResolvedReads: Read declarations mapped onto concrete node ids
"""

from ._engine import EvaluationReport, Evaluator
from ._resolution import ResolvedReads, build_inputs, resolve_reads

__all__ = [
    "EvaluationReport",
    "Evaluator",
    "ResolvedReads",
    "build_inputs",
    "resolve_reads",
]
