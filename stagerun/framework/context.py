from __future__ import annotations

import logging
import string
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import Any

from stagekit.engine.nodes import ParameterSpec, PipelineDefinition
from stagerun.framework.config import parse_bool


def generate_run_id() -> str:
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    return f"{timestamp}_{uuid.uuid4().hex[:8]}"


@dataclass
class RunContext:
    """Per-run state shared read-only by every stage of the run.

    `parameters` and `environment` are read-only mappings; stage-local
    additions (stage environment, resolved secrets) live in the executing
    frame and never land here.
    """

    run_id: str
    build_number: int
    workspace: str
    logger: logging.Logger
    created_at: str
    branch: str | None = None
    tag: str | None = None
    change_request: bool = False
    parameters: Mapping[str, Any] = field(default_factory=dict)
    environment: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.parameters = MappingProxyType(dict(self.parameters))
        self.environment = MappingProxyType(dict(self.environment))

    def summary(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "build_number": self.build_number,
            "branch": self.branch,
            "tag": self.tag,
            "change_request": self.change_request,
            "parameters": dict(self.parameters),
            "workspace": self.workspace,
            "created_at": self.created_at,
        }


def resolve_parameters(
    specs: tuple[ParameterSpec, ...], overrides: Mapping[str, Any] | None = None
) -> dict[str, Any]:
    """Apply run overrides to declared parameters; unknown overrides are rejected."""

    overrides = dict(overrides or {})
    declared = {spec.name: spec for spec in specs}
    unknown = sorted(name for name in overrides if name not in declared)
    if unknown:
        raise ValueError(f"Unknown parameter(s): {', '.join(unknown)}")

    resolved: dict[str, Any] = {}
    for spec in specs:
        if spec.name not in overrides:
            resolved[spec.name] = spec.default
            continue
        raw = overrides[spec.name]
        if spec.type == "boolean":
            resolved[spec.name] = parse_bool(raw, f"parameters.{spec.name}")
        elif spec.type == "choice":
            value = str(raw)
            if value not in spec.choices:
                raise ValueError(
                    f"Invalid value for parameters.{spec.name}: {value!r} "
                    f"(choices: {', '.join(spec.choices)})"
                )
            resolved[spec.name] = value
        else:
            resolved[spec.name] = "" if raw is None else str(raw)
    return resolved


def _env_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return "" if value is None else str(value)


def interpolate(value: str, variables: Mapping[str, str]) -> str:
    """Expand `${NAME}` references; unknown names are left as written."""

    return string.Template(value).safe_substitute(variables)


def build_run_environment(
    definition: PipelineDefinition,
    *,
    run_id: str,
    build_number: int,
    workspace: str,
    parameters: Mapping[str, Any],
    branch: str | None,
    tag: str | None,
    change_request: bool,
) -> dict[str, str]:
    """Built-in variables, parameters, then the pipeline's own bindings (computed in order)."""

    env: dict[str, str] = {
        "RUN_ID": run_id,
        "BUILD_NUMBER": str(build_number),
        "WORKSPACE": workspace,
        "PIPELINE_NAME": definition.name,
    }
    if branch is not None:
        env["BRANCH_NAME"] = branch
    if tag is not None:
        env["TAG_NAME"] = tag
    if change_request:
        env["CHANGE_REQUEST"] = "true"
    for name, value in parameters.items():
        env[name] = _env_value(value)
    for name, raw in definition.environment.items():
        env[name] = interpolate(raw, env)
    return env
