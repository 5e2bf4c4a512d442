"""Reusable pipeline kernel (definition model, guards, graph, results).

This package is intentionally independent of `stagerun.*`. Anything that touches
processes, files, secrets or wall-clock scheduling lives in the engine application.
"""

from stagekit.config_namespace import ConfigNamespace
from stagekit.engine import (
    POST_CONDITIONS,
    ActionStep,
    ArchiveStep,
    CredentialBinding,
    EchoStep,
    GateSpec,
    ParameterSpec,
    PipelineDefinition,
    PipelineGraph,
    PipelineOptions,
    PostActions,
    ScanReportStep,
    ShellStep,
    StageResult,
    StageSpec,
    StepResult,
    TestReportStep,
    evaluate_guard,
    parse_guard,
    worst_status,
)
from stagekit.errors import DefinitionError, GuardEvaluationWarning

__all__ = [
    "POST_CONDITIONS",
    "ActionStep",
    "ArchiveStep",
    "ConfigNamespace",
    "CredentialBinding",
    "DefinitionError",
    "EchoStep",
    "GateSpec",
    "GuardEvaluationWarning",
    "ParameterSpec",
    "PipelineDefinition",
    "PipelineGraph",
    "PipelineOptions",
    "PostActions",
    "ScanReportStep",
    "ShellStep",
    "StageResult",
    "StageSpec",
    "StepResult",
    "TestReportStep",
    "evaluate_guard",
    "parse_guard",
    "worst_status",
]
