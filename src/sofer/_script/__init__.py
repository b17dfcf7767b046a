"""Script sandbox module.

This module defines the protocol the evaluator uses to parse and run node
scripts, and ships the default restricted-expression implementation.

Key types:
- ScriptEvaluator: Protocol (parse -> ParsedScript, execute -> ScriptOutcome)
- ReadChildren / ReadChild / ReadNode: Read declarations returned by parsing
- ScriptInputs / NodeView: Read-only snapshot handed to a script
- SetText / SetMetadata / RemoveMetadata: Mutation requests
- ExpressionSandbox: Default evaluator for restricted Python expressions
"""

from ._expression import ExpressionSandbox, split_script
from ._protocol import (
    ExecutionLimits,
    MutationRequest,
    NodeView,
    ParsedScript,
    ReadChild,
    ReadChildren,
    ReadDeclaration,
    ReadNode,
    RemoveMetadata,
    ScriptEvaluator,
    ScriptInputs,
    ScriptOutcome,
    SetMetadata,
    SetText,
)

__all__ = [
    "ExecutionLimits",
    "ExpressionSandbox",
    "MutationRequest",
    "NodeView",
    "ParsedScript",
    "ReadChild",
    "ReadChildren",
    "ReadDeclaration",
    "ReadNode",
    "RemoveMetadata",
    "ScriptEvaluator",
    "ScriptInputs",
    "ScriptOutcome",
    "SetMetadata",
    "SetText",
    "split_script",
]
