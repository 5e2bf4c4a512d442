"""Engine primitives: definition nodes, guards, the validated graph and result records."""

from stagekit.engine.conditions import (
    AllOf,
    AnyOf,
    BranchEquals,
    BranchMatches,
    ChangeRequest,
    EnvEquals,
    Expression,
    Guard,
    GuardContext,
    Not,
    ParamEquals,
    TagMatches,
    describe_guard,
    evaluate_guard,
    parse_guard,
)
from stagekit.engine.graph import ParallelGroup, PipelineGraph, join_path
from stagekit.engine.nodes import (
    POST_CONDITIONS,
    ActionStep,
    ArchiveStep,
    CredentialBinding,
    EchoStep,
    GateSpec,
    ParameterSpec,
    PipelineDefinition,
    PipelineOptions,
    PostActions,
    ScanReportStep,
    ShellStep,
    StageSpec,
    Step,
    TestReportStep,
    effective_step_name,
    step_kind,
)
from stagekit.engine.recorder import DefaultRunRecorder, NullRunRecorder, RunRecorder
from stagekit.engine.results import (
    StageResult,
    StepResult,
    utc_now_iso8601,
    worst_status,
)

__all__ = [
    "POST_CONDITIONS",
    "ActionStep",
    "AllOf",
    "AnyOf",
    "ArchiveStep",
    "BranchEquals",
    "BranchMatches",
    "ChangeRequest",
    "CredentialBinding",
    "DefaultRunRecorder",
    "EchoStep",
    "EnvEquals",
    "Expression",
    "GateSpec",
    "Guard",
    "GuardContext",
    "Not",
    "NullRunRecorder",
    "ParallelGroup",
    "ParamEquals",
    "ParameterSpec",
    "PipelineDefinition",
    "PipelineGraph",
    "PipelineOptions",
    "PostActions",
    "RunRecorder",
    "ScanReportStep",
    "ShellStep",
    "StageResult",
    "StageSpec",
    "Step",
    "StepResult",
    "TagMatches",
    "TestReportStep",
    "describe_guard",
    "effective_step_name",
    "evaluate_guard",
    "join_path",
    "parse_guard",
    "step_kind",
    "utc_now_iso8601",
    "worst_status",
]
