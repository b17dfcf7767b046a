"""Outline evaluation engine: outline nodes as small computation units."""

__all__ = [
    "NO_VALUE",
    "ChangeKind",
    "ConfigError",
    "CycleRejectedError",
    "DependencyGraph",
    "EngineConfig",
    "ErrorKind",
    "EvaluationCancelledError",
    "EvaluationReport",
    "Evaluator",
    "ExecutionLimits",
    "ExpressionSandbox",
    "FieldDefinition",
    "FieldType",
    "FormatError",
    "MetaValue",
    "MutationLoopLimit",
    "Node",
    "NodeError",
    "NodeInfo",
    "NodeRef",
    "NodeState",
    "NodeView",
    "NotFoundError",
    "Outline",
    "OutlineSession",
    "ParsedScript",
    "ReadChild",
    "ReadChildren",
    "ReadNode",
    "RemoveMetadata",
    "ScriptError",
    "ScriptEvaluator",
    "ScriptInputs",
    "ScriptOutcome",
    "ScriptParseError",
    "ScriptRuntimeError",
    "ScriptTimeoutError",
    "SessionClosedError",
    "SetMetadata",
    "SetText",
    "SoferError",
    "TemplateDefinition",
    "TemplateError",
    "TemplateNode",
    "TemplateRegistry",
    "apply_template",
    "dump_sofer",
    "expand",
    "export_outline_toml",
    "load_outline",
    "load_outline_toml",
    "load_sofer",
    "load_templates",
    "outline_from_dict",
    "outline_to_dict",
    "rendered_text",
    "save_outline",
]

from ._config import EngineConfig
from ._errors import (
    ConfigError,
    CycleRejectedError,
    ErrorKind,
    EvaluationCancelledError,
    FormatError,
    MutationLoopLimit,
    NodeError,
    NotFoundError,
    ScriptError,
    ScriptParseError,
    ScriptRuntimeError,
    ScriptTimeoutError,
    SessionClosedError,
    SoferError,
    TemplateError,
)
from ._eval_engine import EvaluationReport, Evaluator
from ._graph import DependencyGraph
from ._io import (
    dump_sofer,
    export_outline_toml,
    load_outline,
    load_outline_toml,
    load_sofer,
    outline_from_dict,
    outline_to_dict,
    save_outline,
)
from ._node import NO_VALUE, MetaValue, Node, NodeInfo, NodeRef, NodeState
from ._outline import ChangeKind, Outline
from ._script import (
    ExecutionLimits,
    ExpressionSandbox,
    NodeView,
    ParsedScript,
    ReadChild,
    ReadChildren,
    ReadNode,
    RemoveMetadata,
    ScriptEvaluator,
    ScriptInputs,
    ScriptOutcome,
    SetMetadata,
    SetText,
)
from ._session import OutlineSession, rendered_text
from ._template import (
    FieldDefinition,
    FieldType,
    TemplateDefinition,
    TemplateNode,
    TemplateRegistry,
    apply_template,
    expand,
    load_templates,
)
