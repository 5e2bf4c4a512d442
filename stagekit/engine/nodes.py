"""Immutable definition model: steps, stages and the pipeline itself.

This module is intentionally app-agnostic and must not import `stagerun.*`.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Callable, Literal, TypeAlias

from stagekit.engine.conditions import Guard
from stagekit.errors import DefinitionError

PostCondition: TypeAlias = Literal["always", "success", "failure"]
POST_CONDITIONS: tuple[str, ...] = ("always", "success", "failure")

MissingCredentialPolicy: TypeAlias = Literal["fail", "skip", "placeholder"]
MISSING_CREDENTIAL_POLICIES: tuple[str, ...] = ("fail", "skip", "placeholder")

CredentialKind: TypeAlias = Literal["secret_text", "username_password"]
ParameterType: TypeAlias = Literal["boolean", "choice", "string"]
Severity: TypeAlias = Literal["info", "low", "medium", "high", "critical"]
SEVERITY_ORDER: tuple[str, ...] = ("info", "low", "medium", "high", "critical")

DEFAULT_ROOT_NAME = "pipeline"


def _normalize_name(value: Any, *, kind: str) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise TypeError(f"{kind} name must be a string or None (type={type(value).__name__})")
    name = value.strip()
    if not name:
        raise ValueError(f"{kind} name cannot be empty")
    if "/" in name:
        raise ValueError(f"{kind} name cannot contain '/': {name!r}")
    return name


def _freeze_env(value: Mapping[str, str] | None, *, owner: str) -> Mapping[str, str]:
    if value is None:
        return MappingProxyType({})
    if not isinstance(value, Mapping):
        raise TypeError(f"{owner} environment must be a mapping (type={type(value).__name__})")
    return MappingProxyType({str(k): str(v) for k, v in value.items()})


def _check_timeout(value: float | None, *, owner: str) -> None:
    if value is None:
        return
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise ValueError(f"{owner} timeout must be a positive number (got {value!r})")


@dataclass(frozen=True)
class ShellStep:
    """Run an external command through the command runner."""

    name: str | None
    command: str | tuple[str, ...]
    timeout: float | None = None
    continue_on_error: bool = False
    env: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "name", _normalize_name(self.name, kind="Step"))
        if isinstance(self.command, list):
            object.__setattr__(self, "command", tuple(str(part) for part in self.command))
        if isinstance(self.command, str):
            if not self.command.strip():
                raise ValueError("ShellStep command cannot be empty")
        elif not isinstance(self.command, tuple) or not self.command:
            raise TypeError("ShellStep command must be a string or a non-empty argv list")
        _check_timeout(self.timeout, owner="Step")
        object.__setattr__(self, "env", _freeze_env(self.env, owner="Step"))


@dataclass(frozen=True)
class EchoStep:
    name: str | None
    message: str
    continue_on_error: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(self, "name", _normalize_name(self.name, kind="Step"))
        if not isinstance(self.message, str):
            raise TypeError(f"EchoStep message must be a string (type={type(self.message).__name__})")


@dataclass(frozen=True)
class ActionStep:
    """Built-in Python action; receives the step environment and returns nothing useful."""

    name: str | None
    fn: Callable[[Any], Any]
    continue_on_error: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(self, "name", _normalize_name(self.name, kind="Step"))
        if not callable(self.fn):
            raise TypeError(f"Action fn must be callable (type={type(self.fn).__name__})")


@dataclass(frozen=True)
class ArchiveStep:
    name: str | None
    pattern: str
    fingerprint: bool = False
    allow_empty: bool = True
    retention_class: str = "default"
    continue_on_error: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(self, "name", _normalize_name(self.name, kind="Step"))
        if not isinstance(self.pattern, str) or not self.pattern.strip():
            raise ValueError("ArchiveStep pattern must be a non-empty string")
        object.__setattr__(self, "pattern", self.pattern.strip())


@dataclass(frozen=True)
class TestReportStep:
    name: str | None
    path: str
    allow_missing: bool = False
    continue_on_error: bool = False

    __test__ = False

    def __post_init__(self) -> None:
        object.__setattr__(self, "name", _normalize_name(self.name, kind="Step"))
        if not isinstance(self.path, str) or not self.path.strip():
            raise ValueError("TestReportStep path must be a non-empty string")


@dataclass(frozen=True)
class ScanReportStep:
    name: str | None
    path: str
    unstable_at: Severity = "high"
    continue_on_error: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(self, "name", _normalize_name(self.name, kind="Step"))
        if not isinstance(self.path, str) or not self.path.strip():
            raise ValueError("ScanReportStep path must be a non-empty string")
        if self.unstable_at not in SEVERITY_ORDER:
            raise ValueError(
                f"ScanReportStep unstable_at must be one of: {', '.join(SEVERITY_ORDER)} "
                f"(got {self.unstable_at!r})"
            )


Step: TypeAlias = ShellStep | EchoStep | ActionStep | ArchiveStep | TestReportStep | ScanReportStep


def step_kind(step: Step) -> str:
    if isinstance(step, ShellStep):
        return "sh"
    if isinstance(step, EchoStep):
        return "echo"
    if isinstance(step, ActionStep):
        return "action"
    if isinstance(step, ArchiveStep):
        return "archive"
    if isinstance(step, TestReportStep):
        return "test_report"
    return "scan_report"


def effective_step_name(step: Step, *, index: int) -> str:
    return step.name or f"step_{index + 1:02d}"


@dataclass(frozen=True)
class CredentialBinding:
    credential_id: str
    variable: str | None = None
    kind: CredentialKind = "secret_text"
    username_variable: str | None = None
    password_variable: str | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.credential_id, str) or not self.credential_id.strip():
            raise ValueError("CredentialBinding.credential_id must be a non-empty string")
        object.__setattr__(self, "credential_id", self.credential_id.strip())
        if self.kind == "secret_text":
            if not self.variable:
                raise ValueError(
                    f"secret_text credential {self.credential_id} requires a variable name"
                )
        elif self.kind == "username_password":
            if not self.username_variable or not self.password_variable:
                raise ValueError(
                    f"username_password credential {self.credential_id} requires "
                    "username_variable and password_variable"
                )
        else:
            raise ValueError(f"Unknown credential kind: {self.kind!r}")

    def variables(self) -> tuple[str, ...]:
        if self.kind == "secret_text":
            return (str(self.variable),)
        return (str(self.username_variable), str(self.password_variable))


@dataclass(frozen=True)
class GateSpec:
    message: str
    approvers: tuple[str, ...] = ()
    timeout: float | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.message, str) or not self.message.strip():
            raise ValueError("Gate message must be a non-empty string")
        object.__setattr__(self, "approvers", tuple(a.strip() for a in self.approvers if a.strip()))
        _check_timeout(self.timeout, owner="Gate")


@dataclass(frozen=True)
class PostActions:
    always: tuple[Step, ...] = ()
    success: tuple[Step, ...] = ()
    failure: tuple[Step, ...] = ()

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any] | None, *, stage_path: str = "") -> "PostActions":
        if not raw:
            return cls()
        unknown = sorted(str(key) for key in raw if key not in POST_CONDITIONS)
        if unknown:
            raise DefinitionError(
                f"Unknown post-action condition(s): {', '.join(unknown)} "
                f"(allowed: {', '.join(POST_CONDITIONS)})",
                stage_path=stage_path,
            )
        return cls(**{key: tuple(raw[key]) for key in POST_CONDITIONS if key in raw})

    def for_condition(self, condition: PostCondition) -> tuple[Step, ...]:
        return getattr(self, condition)

    def is_empty(self) -> bool:
        return not (self.always or self.success or self.failure)


@dataclass(frozen=True)
class StageSpec:
    name: str
    steps: tuple[Step, ...] = ()
    stages: tuple["StageSpec", ...] = ()
    parallel: tuple["StageSpec", ...] | None = None
    when: Guard | None = None
    agent: str | None = None
    environment: Mapping[str, str] = field(default_factory=dict)
    credentials: tuple[CredentialBinding, ...] = ()
    on_missing_credential: MissingCredentialPolicy = "fail"
    continue_on_error: bool = False
    fail_fast: bool = False
    timeout: float | None = None
    gate: GateSpec | None = None
    post: PostActions = field(default_factory=PostActions)

    def __post_init__(self) -> None:
        name = _normalize_name(self.name, kind="Stage")
        if name is None:
            raise ValueError("Stage name is required")
        object.__setattr__(self, "name", name)
        object.__setattr__(self, "steps", tuple(self.steps))
        object.__setattr__(self, "stages", tuple(self.stages))
        if self.parallel is not None:
            object.__setattr__(self, "parallel", tuple(self.parallel))
            if self.stages:
                raise DefinitionError("Stage cannot declare both stages and parallel", stage_path=name)
        if self.fail_fast and self.parallel is None:
            raise DefinitionError("fail_fast only applies to parallel stages", stage_path=name)
        if self.on_missing_credential not in MISSING_CREDENTIAL_POLICIES:
            raise DefinitionError(
                f"on_missing_credential must be one of: {', '.join(MISSING_CREDENTIAL_POLICIES)} "
                f"(got {self.on_missing_credential!r})",
                stage_path=name,
            )
        if isinstance(self.post, Mapping):
            object.__setattr__(self, "post", PostActions.from_mapping(self.post, stage_path=name))
        if self.agent is not None:
            agent = str(self.agent).strip()
            object.__setattr__(self, "agent", agent or None)
        _check_timeout(self.timeout, owner="Stage")
        object.__setattr__(self, "environment", _freeze_env(self.environment, owner="Stage"))
        object.__setattr__(self, "credentials", tuple(self.credentials))

    @property
    def is_parallel(self) -> bool:
        return self.parallel is not None

    def children(self) -> tuple["StageSpec", ...]:
        if self.parallel is not None:
            return self.parallel
        return self.stages


@dataclass(frozen=True)
class ParameterSpec:
    name: str
    type: ParameterType = "string"
    default: bool | str | None = None
    choices: tuple[str, ...] = ()
    description: str | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.name, str) or not self.name.strip():
            raise ValueError("Parameter name must be a non-empty string")
        object.__setattr__(self, "name", self.name.strip())
        if self.type not in ("boolean", "choice", "string"):
            raise ValueError(f"Parameter {self.name} has unknown type {self.type!r}")
        if self.type == "boolean":
            if self.default is None:
                object.__setattr__(self, "default", False)
            elif not isinstance(self.default, bool):
                raise ValueError(f"Parameter {self.name} default must be a boolean")
        elif self.type == "choice":
            choices = tuple(str(item) for item in self.choices)
            if not choices:
                raise ValueError(f"Choice parameter {self.name} requires choices")
            object.__setattr__(self, "choices", choices)
            if self.default is None:
                object.__setattr__(self, "default", choices[0])
            elif self.default not in choices:
                raise ValueError(
                    f"Choice parameter {self.name} default {self.default!r} is not one of its choices"
                )
        else:
            object.__setattr__(self, "default", "" if self.default is None else str(self.default))


@dataclass(frozen=True)
class PipelineOptions:
    timeout: float | None = None
    retention: int | None = None
    agent: str | None = None
    clean_workspace: bool = True

    def __post_init__(self) -> None:
        _check_timeout(self.timeout, owner="Pipeline")
        if self.retention is not None and (
            isinstance(self.retention, bool) or not isinstance(self.retention, int) or self.retention < 1
        ):
            raise ValueError(f"Pipeline retention must be a positive int (got {self.retention!r})")


@dataclass(frozen=True)
class PipelineDefinition:
    name: str = DEFAULT_ROOT_NAME
    stages: tuple[StageSpec, ...] = ()
    options: PipelineOptions = field(default_factory=PipelineOptions)
    parameters: tuple[ParameterSpec, ...] = ()
    environment: Mapping[str, str] = field(default_factory=dict)
    post: PostActions = field(default_factory=PostActions)

    def __post_init__(self) -> None:
        name = _normalize_name(self.name, kind="Pipeline") or DEFAULT_ROOT_NAME
        object.__setattr__(self, "name", name)
        object.__setattr__(self, "stages", tuple(self.stages))
        object.__setattr__(self, "parameters", tuple(self.parameters))
        object.__setattr__(self, "environment", _freeze_env(self.environment, owner="Pipeline"))
        if isinstance(self.post, Mapping):
            object.__setattr__(self, "post", PostActions.from_mapping(self.post, stage_path=name))
        seen: set[str] = set()
        for param in self.parameters:
            if param.name in seen:
                raise DefinitionError(f"Duplicate parameter name: {param.name}", stage_path=name)
            seen.add(param.name)

    def root_stage(self) -> StageSpec:
        """The synthetic stage wrapping the top-level stages and root post-actions."""

        return StageSpec(
            name=self.name,
            stages=self.stages,
            agent=self.options.agent,
            post=self.post,
        )
