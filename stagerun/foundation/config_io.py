from __future__ import annotations

import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml

CONFIG_ENV_VAR = "STAGERUN_CONFIG"


def find_repo_root(start: str | os.PathLike[str] | None = None) -> str:
    start_path = Path(start or os.getcwd()).resolve()
    if start_path.is_file():
        start_path = start_path.parent

    markers = ("pyproject.toml", ".git")
    for candidate in (start_path, *start_path.parents):
        if (candidate / "pyproject.toml").is_file():
            return str(candidate)
        if (candidate / ".git").exists():
            return str(candidate)

    raise FileNotFoundError(
        "Cannot locate repo root: searched from "
        f"{start_path} for {', '.join(markers)}"
    )


def load_yaml_mapping(path: str | os.PathLike[str]) -> dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as handle:
            payload = yaml.safe_load(handle)
    except FileNotFoundError:
        raise
    except yaml.YAMLError as exc:
        raise ValueError(f"Invalid YAML in {path}: {exc}") from exc

    if payload is None:
        payload = {}
    if not isinstance(payload, Mapping):
        raise ValueError(f"File must contain a YAML mapping: {path}")
    return dict(payload)


def _shape(value: Any) -> str:
    if isinstance(value, Mapping):
        return "mapping"
    if isinstance(value, (list, tuple)):
        return "list"
    return "scalar"


def deep_merge(base: Any, overlay: Any, *, path: str = "") -> Any:
    """Overlay `overlay` onto `base`: mappings merge key by key, lists and scalars are replaced.

    An explicit null in the overlay clears the value.
    """

    if overlay is None or base is None:
        return overlay

    base_shape, overlay_shape = _shape(base), _shape(overlay)
    if base_shape != overlay_shape:
        raise ValueError(
            f"Invalid config overlay merge at {path or '<root>'}: "
            f"cannot replace a {base_shape} with a {overlay_shape} ({type(overlay).__name__})"
        )

    if base_shape == "mapping":
        merged: dict[str, Any] = dict(base)
        for key, value in overlay.items():
            child = f"{path}.{key}" if path else str(key)
            merged[key] = deep_merge(base[key], value, path=child) if key in base else value
        return merged
    if base_shape == "list":
        return list(overlay)
    return overlay


def load_config(
    *,
    config_path: str | None = None,
    env_var: str = CONFIG_ENV_VAR,
    config_rel_path: str = "config",
    start_dir: str | None = None,
) -> tuple[dict[str, Any], dict[str, Any]]:
    """
    Load engine configuration, returning (config, meta).

    An explicit path or the env var selects a single file. Otherwise
    `config/config.yaml` under the repo root is loaded and, when present,
    `config/config.local.yaml` is deep-merged over it. A repo without a base
    config file runs on built-in defaults.
    """

    explicit_path = None
    if config_path is not None:
        explicit_path = str(config_path).strip() or None
    elif env_var:
        explicit_path = os.environ.get(env_var, "").strip() or None

    if explicit_path:
        expanded = os.path.abspath(os.path.expandvars(os.path.expanduser(explicit_path)))
        cfg = load_yaml_mapping(expanded)
        meta = {
            "mode": "env" if config_path is None else "explicit",
            "paths": [expanded],
            "env_var": env_var,
            "repo_root": None,
        }
        return cfg, meta

    if os.path.isabs(config_rel_path):
        config_directory = config_rel_path
        repo_root = None
    else:
        try:
            repo_root = find_repo_root(start_dir)
        except FileNotFoundError:
            return {}, {"mode": "defaults", "paths": [], "env_var": env_var, "repo_root": None}
        config_directory = os.path.join(repo_root, config_rel_path)

    base_config_path = os.path.join(config_directory, "config.yaml")
    local_overlay_path = os.path.join(config_directory, "config.local.yaml")

    if not os.path.exists(base_config_path):
        return {}, {"mode": "defaults", "paths": [], "env_var": env_var, "repo_root": repo_root}

    cfg = load_yaml_mapping(base_config_path)
    loaded_paths = [os.path.abspath(base_config_path)]
    mode = "base"

    if os.path.exists(local_overlay_path):
        overlay = load_yaml_mapping(local_overlay_path)
        cfg = deep_merge(cfg, overlay)
        loaded_paths.append(os.path.abspath(local_overlay_path))
        mode = "base+local"

    meta = {"mode": mode, "paths": loaded_paths, "env_var": env_var, "repo_root": repo_root}
    return cfg, meta
