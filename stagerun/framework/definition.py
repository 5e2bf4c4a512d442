"""Build a `PipelineDefinition` from its structured document form (YAML or mapping)."""

from __future__ import annotations

import os
from collections.abc import Mapping
from typing import Any

from stagekit.config_namespace import ConfigNamespace
from stagekit.engine.conditions import parse_guard
from stagekit.engine.graph import PipelineGraph, join_path
from stagekit.engine.nodes import (
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
)
from stagekit.errors import DefinitionError
from stagerun.foundation.config_io import load_yaml_mapping

STEP_KINDS: tuple[str, ...] = ("sh", "echo", "archive", "test_report", "scan_report")


def _wrap(path: str, fn, *args, **kwargs):
    try:
        return fn(*args, **kwargs)
    except DefinitionError:
        raise
    except (TypeError, ValueError) as exc:
        raise DefinitionError(str(exc), stage_path=path) from exc


def _parse_step(raw: Any, *, path: str, index: int) -> Step:
    where = f"{path}#steps[{index}]"
    if isinstance(raw, str):
        return _wrap(where, ShellStep, name=None, command=raw)
    if not isinstance(raw, Mapping):
        raise DefinitionError(
            f"Step must be a string or mapping (type={type(raw).__name__})", stage_path=where
        )

    kinds = [key for key in STEP_KINDS if key in raw]
    if len(kinds) != 1:
        raise DefinitionError(
            f"Step must declare exactly one of: {', '.join(STEP_KINDS)} (got {kinds or 'none'})",
            stage_path=where,
        )
    kind = kinds[0]
    ns = ConfigNamespace(raw, path=where)

    def build() -> Step:
        name = ns.get_str("name", default=None)
        continue_on_error = ns.get_bool("continue_on_error", default=False)

        if kind == "sh":
            command = ns.get_raw("sh")
            if isinstance(command, list):
                command = tuple(str(part) for part in command)
            return ShellStep(
                name=name,
                command=command,
                timeout=ns.get_optional_number("timeout", min_value=0),
                continue_on_error=continue_on_error,
                env=ns.get_str_mapping("env", default={}),
            )

        if kind == "echo":
            return EchoStep(
                name=name,
                message=str(ns.get_raw("echo")),
                continue_on_error=continue_on_error,
            )

        body = ns.get_raw(kind)
        if isinstance(body, str):
            body = {"pattern": body} if kind == "archive" else {"path": body}
        if not isinstance(body, Mapping):
            raise TypeError(f"{where}.{kind} must be a string or mapping")
        inner = ConfigNamespace(body, path=f"{where}.{kind}")

        if kind == "archive":
            step: Step = ArchiveStep(
                name=name,
                pattern=inner.get_str("pattern"),
                fingerprint=inner.get_bool("fingerprint", default=False),
                allow_empty=inner.get_bool("allow_empty", default=True),
                retention_class=inner.get_str("retention_class", default="default"),
                continue_on_error=continue_on_error,
            )
        elif kind == "test_report":
            step = TestReportStep(
                name=name,
                path=inner.get_str("path"),
                allow_missing=inner.get_bool("allow_missing", default=False),
                continue_on_error=continue_on_error,
            )
        else:
            step = ScanReportStep(
                name=name,
                path=inner.get_str("path"),
                unstable_at=inner.get_str(
                    "unstable_at",
                    default="high",
                    choices=("info", "low", "medium", "high", "critical"),
                ),
                continue_on_error=continue_on_error,
            )
        inner.assert_consumed()
        return step

    step = _wrap(where, build)
    _wrap(where, ns.assert_consumed)
    return step


def _parse_steps(raw: Any, *, path: str) -> tuple[Step, ...]:
    if raw is None:
        return ()
    if not isinstance(raw, (list, tuple)):
        raise DefinitionError("steps must be a list", stage_path=path)
    return tuple(_parse_step(item, path=path, index=i) for i, item in enumerate(raw))


def _parse_post(raw: Any, *, path: str) -> PostActions:
    if raw is None:
        return PostActions()
    if not isinstance(raw, Mapping):
        raise DefinitionError("post must be a mapping", stage_path=path)
    parsed = {
        str(key): _parse_steps(value, path=f"{path}#post.{key}") for key, value in raw.items()
    }
    return PostActions.from_mapping(parsed, stage_path=path)


def _parse_credentials(items: list[dict[str, Any]], *, path: str) -> tuple[CredentialBinding, ...]:
    bindings: list[CredentialBinding] = []
    for idx, item in enumerate(items):
        ns = ConfigNamespace(item, path=f"{path}#credentials[{idx}]")
        binding = CredentialBinding(
            credential_id=ns.get_str("id"),
            kind=ns.get_str("kind", default="secret_text", choices=("secret_text", "username_password")),
            variable=ns.get_str("variable", default=None),
            username_variable=ns.get_str("username_variable", default=None),
            password_variable=ns.get_str("password_variable", default=None),
        )
        ns.assert_consumed()
        bindings.append(binding)
    return tuple(bindings)


def _parse_gate(ns: ConfigNamespace) -> GateSpec:
    gate = GateSpec(
        message=ns.get_str("message"),
        approvers=tuple(ns.get_list_str("approvers", default=[], allow_empty=True)),
        timeout=ns.get_optional_number("timeout", min_value=0),
    )
    ns.assert_consumed()
    return gate


def _parse_stage(raw: Any, *, parent: str) -> StageSpec:
    if not isinstance(raw, Mapping):
        raise DefinitionError(
            f"Stage must be a mapping (type={type(raw).__name__})", stage_path=parent
        )
    label = raw.get("name")
    path = join_path(parent, str(label)) if isinstance(label, str) else f"{parent}/<unnamed>"
    ns = ConfigNamespace(raw, path=path)

    def build() -> StageSpec:
        name = ns.get_str("name")
        children: tuple[StageSpec, ...] = ()
        parallel: tuple[StageSpec, ...] | None = None
        if ns.has("stages"):
            children = tuple(
                _parse_stage(item, parent=path)
                for item in ns.get_list_mapping("stages", allow_empty=True)
            )
        if ns.has("parallel"):
            parallel = tuple(
                _parse_stage(item, parent=path)
                for item in ns.get_list_mapping("parallel", allow_empty=True)
            )
        gate = _parse_gate(ns.namespace("gate")) if ns.has("gate") else None
        stage = StageSpec(
            name=name,
            steps=_parse_steps(ns.get_raw("steps", default=None), path=path),
            stages=children,
            parallel=parallel,
            when=parse_guard(ns.get_raw("when", default=None), path=path),
            agent=ns.get_str("agent", default=None),
            environment=ns.get_str_mapping("environment", default={}),
            credentials=_parse_credentials(
                ns.get_list_mapping("credentials", default=[], allow_empty=True), path=path
            ),
            on_missing_credential=ns.get_str(
                "on_missing_credential", default="fail", choices=("fail", "skip", "placeholder")
            ),
            continue_on_error=ns.get_bool("continue_on_error", default=False),
            fail_fast=ns.get_bool("fail_fast", default=False),
            timeout=ns.get_optional_number("timeout", min_value=0),
            gate=gate,
            post=_parse_post(ns.get_raw("post", default=None), path=path),
        )
        ns.assert_consumed()
        return stage

    return _wrap(path, build)


def _parse_parameters(items: list[dict[str, Any]], *, path: str) -> tuple[ParameterSpec, ...]:
    params: list[ParameterSpec] = []
    for idx, item in enumerate(items):
        ns = ConfigNamespace(item, path=f"{path}#parameters[{idx}]")
        param = ParameterSpec(
            name=ns.get_str("name"),
            type=ns.get_str("type", default="string", choices=("boolean", "choice", "string")),
            default=ns.get_raw("default", default=None),
            choices=tuple(ns.get_list_str("choices", default=[], allow_empty=True)),
            description=ns.get_str("description", default=None, allow_empty=True),
        )
        ns.assert_consumed()
        params.append(param)
    return tuple(params)


def definition_from_dict(document: Mapping[str, Any]) -> PipelineDefinition:
    """Parse and validate a definition document; raises `DefinitionError` on any violation."""

    if not isinstance(document, Mapping):
        raise DefinitionError("Pipeline definition must be a mapping")
    name = document.get("name") if isinstance(document.get("name"), str) else "pipeline"
    ns = ConfigNamespace(document, path=name)

    def build() -> PipelineDefinition:
        options_ns = ns.namespace("options", default=None)
        options = PipelineOptions(
            timeout=options_ns.get_optional_number("timeout", min_value=0),
            retention=options_ns.get_raw("retention", default=None),
            agent=options_ns.get_str("agent", default=None),
            clean_workspace=options_ns.get_bool("clean_workspace", default=True),
        )
        definition = PipelineDefinition(
            name=ns.get_str("name", default="pipeline"),
            stages=tuple(
                _parse_stage(item, parent=name) for item in ns.get_list_mapping("stages")
            ),
            options=options,
            parameters=_parse_parameters(
                ns.get_list_mapping("parameters", default=[], allow_empty=True), path=name
            ),
            environment=ns.get_str_mapping("environment", default={}),
            post=_parse_post(ns.get_raw("post", default=None), path=name),
        )
        ns.assert_consumed()
        return definition

    definition = _wrap(name, build)
    PipelineGraph.build(definition)
    return definition


def load_definition(path: str | os.PathLike[str]) -> PipelineDefinition:
    try:
        document = load_yaml_mapping(path)
    except ValueError as exc:
        raise DefinitionError(str(exc)) from exc
    return definition_from_dict(document)
