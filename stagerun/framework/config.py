from __future__ import annotations

import os
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Literal, Mapping

CredentialSource = Literal["env", "file", "none"]
GateDecision = Literal["approve", "reject"]

DEFAULT_SLOT_LABEL = "any"


def parse_bool(value: Any, path: str) -> bool:
    """
    Strict boolean parsing to avoid bool('false') footguns.

    Accepts True/False, 0/1 and the strings true/false/1/0/yes/no
    (case-insensitive, surrounding whitespace ignored).
    """

    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        if value in (0, 1):
            return bool(value)
        raise ValueError(f"Invalid boolean for {path}: {value!r}")
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in {"true", "1", "yes"}:
            return True
        if normalized in {"false", "0", "no"}:
            return False
    raise ValueError(f"Invalid boolean for {path}: {value!r}")


def parse_float(value: Any, path: str) -> float:
    if value is None:
        raise ValueError(f"Invalid config value for {path}: None")
    if isinstance(value, bool):
        raise ValueError(f"Invalid config type for {path}: expected float, got bool")
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str) and value.strip():
        try:
            return float(value.strip())
        except ValueError as exc:
            raise ValueError(f"Invalid config value for {path}: must be a float") from exc
    raise ValueError(f"Invalid config value for {path}: must be a float")


def parse_int(value: Any, path: str) -> int:
    if value is None:
        raise ValueError(f"Invalid config value for {path}: None")
    if isinstance(value, bool):
        raise ValueError(f"Invalid config type for {path}: expected int, got bool")
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip():
        try:
            return int(value.strip())
        except ValueError as exc:
            raise ValueError(f"Invalid config value for {path}: must be an int") from exc
    raise ValueError(f"Invalid config value for {path}: must be an int")


@dataclass(frozen=True)
class CredentialsConfig:
    source: CredentialSource = "env"
    env_prefix: str = "STAGERUN_CRED_"
    file_path: str | None = None
    placeholder_value: str = ""


@dataclass(frozen=True)
class GatesConfig:
    default_timeout: float | None = 3600.0
    decisions: Mapping[str, GateDecision] = field(default_factory=dict)


@dataclass(frozen=True)
class EngineConfig:
    workspace_root: str
    log_dir: str
    artifact_dir: str
    run_index_path: str | None
    clean_workspace: bool
    poll_interval: float
    post_grace: float
    slots: Mapping[str, int]
    credentials: CredentialsConfig
    gates: GatesConfig

    @staticmethod
    def from_dict(
        cfg: Mapping[str, Any], *, base_dir: str | None = None
    ) -> tuple["EngineConfig", list[str]]:
        """
        Parse and validate engine configuration, returning (EngineConfig, warnings).

        Relative paths resolve against `base_dir` (default: the working directory).

        Raises:
            ValueError: if keys are invalid, or unknown while `strict: true`.
        """

        if not isinstance(cfg, Mapping):
            raise ValueError("Config must be a mapping")

        warnings: list[str] = []
        strict_unknown_keys = parse_bool(cfg.get("strict", False), "strict")
        root_dir = os.path.abspath(base_dir or os.getcwd())

        schema: Mapping[str, tuple[str, ...] | None] = {
            "strict": None,
            "engine": (
                "workspace_root",
                "log_path",
                "artifact_path",
                "run_index_path",
                "clean_workspace",
                "poll_interval",
                "post_grace",
            ),
            "slots": None,
            "credentials": ("source", "env_prefix", "file", "placeholder_value"),
            "gates": ("default_timeout", "decisions"),
        }

        unknown_keys: list[str] = []
        for key, value in cfg.items():
            if key not in schema:
                unknown_keys.append(str(key))
                continue
            allowed = schema[key]
            if allowed is None:
                continue
            if value is not None and not isinstance(value, Mapping):
                raise ValueError(f"Config section {key} must be a mapping")
            for sub_key in (value or {}):
                if sub_key not in allowed:
                    unknown_keys.append(f"{key}.{sub_key}")

        if unknown_keys:
            unknown_keys = sorted(set(unknown_keys))
            if strict_unknown_keys:
                raise ValueError("Unknown config keys: " + ", ".join(unknown_keys))
            warnings.extend(f"Unknown config key: {key}" for key in unknown_keys)

        def section(name: str) -> Mapping[str, Any]:
            value = cfg.get(name)
            return value if isinstance(value, Mapping) else {}

        def normalize_path(value: Any, path: str) -> str:
            if not isinstance(value, str) or not value.strip():
                raise ValueError(f"Invalid config value for {path}: must be a non-empty path")
            expanded = os.path.expandvars(os.path.expanduser(value.strip()))
            if not os.path.isabs(expanded):
                expanded = os.path.join(root_dir, expanded)
            return os.path.abspath(expanded)

        engine = section("engine")
        workspace_root = normalize_path(
            engine.get("workspace_root", ".stagerun/workspaces"), "engine.workspace_root"
        )
        log_dir = normalize_path(engine.get("log_path", ".stagerun/logs"), "engine.log_path")
        artifact_dir = normalize_path(
            engine.get("artifact_path", ".stagerun/artifacts"), "engine.artifact_path"
        )
        raw_index = engine.get("run_index_path", ".stagerun/runs.jsonl")
        run_index_path = (
            None if raw_index in (None, "") else normalize_path(raw_index, "engine.run_index_path")
        )
        clean_workspace = parse_bool(engine.get("clean_workspace", True), "engine.clean_workspace")
        poll_interval = parse_float(engine.get("poll_interval", 0.05), "engine.poll_interval")
        if poll_interval <= 0:
            raise ValueError("engine.poll_interval must be > 0")
        post_grace = parse_float(engine.get("post_grace", 30.0), "engine.post_grace")
        if post_grace < 0:
            raise ValueError("engine.post_grace must be >= 0")

        slots: dict[str, int] = {}
        for label, capacity in section("slots").items():
            value = parse_int(capacity, f"slots.{label}")
            if value < 1:
                raise ValueError(f"slots.{label} must be >= 1 (got {value})")
            slots[str(label).strip()] = value
        if not slots:
            slots[DEFAULT_SLOT_LABEL] = max(2, os.cpu_count() or 2)

        creds = section("credentials")
        source = str(creds.get("source", "env")).strip().lower()
        if source not in ("env", "file", "none"):
            raise ValueError(f"Unknown credentials.source: {creds.get('source')!r}")
        file_path = creds.get("file")
        if source == "file":
            if not file_path:
                raise ValueError("credentials.file is required when credentials.source=file")
            file_path = normalize_path(file_path, "credentials.file")
        elif file_path:
            warnings.append("credentials.file is ignored unless credentials.source=file")
            file_path = None
        placeholder = creds.get("placeholder_value", "")
        if placeholder is None or isinstance(placeholder, (Mapping, list, tuple)):
            raise ValueError("credentials.placeholder_value must be a string")
        credentials = CredentialsConfig(
            source=source,  # type: ignore[arg-type]
            env_prefix=str(creds.get("env_prefix", "STAGERUN_CRED_")),
            file_path=file_path,
            placeholder_value=str(placeholder),
        )

        gates_cfg = section("gates")
        raw_gate_timeout = gates_cfg.get("default_timeout", 3600)
        gate_timeout = (
            None
            if raw_gate_timeout is None
            else parse_float(raw_gate_timeout, "gates.default_timeout")
        )
        decisions: dict[str, GateDecision] = {}
        raw_decisions = gates_cfg.get("decisions") or {}
        if not isinstance(raw_decisions, Mapping):
            raise ValueError("gates.decisions must be a mapping of stage path -> approve|reject")
        for stage_path, decision in raw_decisions.items():
            normalized = str(decision).strip().lower()
            if normalized not in ("approve", "reject"):
                raise ValueError(
                    f"gates.decisions.{stage_path} must be approve or reject (got {decision!r})"
                )
            decisions[str(stage_path)] = normalized  # type: ignore[assignment]

        return (
            EngineConfig(
                workspace_root=workspace_root,
                log_dir=log_dir,
                artifact_dir=artifact_dir,
                run_index_path=run_index_path,
                clean_workspace=clean_workspace,
                poll_interval=poll_interval,
                post_grace=post_grace,
                slots=MappingProxyType(slots),
                credentials=credentials,
                gates=GatesConfig(
                    default_timeout=gate_timeout, decisions=MappingProxyType(decisions)
                ),
            ),
            warnings,
        )
