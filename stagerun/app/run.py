from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from typing import Any

from stagekit.engine.nodes import PipelineDefinition
from stagekit.engine.recorder import RunRecorder
from stagerun.foundation.logging_utils import close_logger, setup_operational_logger
from stagerun.framework.artifacts import ArtifactStore
from stagerun.framework.cleanup import WorkspaceCleaner
from stagerun.framework.config import DEFAULT_SLOT_LABEL, EngineConfig
from stagerun.framework.context import generate_run_id
from stagerun.framework.credentials import CredentialBroker, CredentialStore, build_credential_store
from stagerun.framework.definition import load_definition
from stagerun.framework.executor import CommandRunner, LogSink, StepExecutor, SubprocessCommandRunner
from stagerun.framework.gates import GateController
from stagerun.framework.ledger import RunLedger, append_run_index_entry
from stagerun.framework.runner import PipelineRunner
from stagerun.framework.slots import SlotPool


def build_runner(
    cfg: EngineConfig,
    *,
    logger: logging.Logger | None = None,
    command_runner: CommandRunner | None = None,
    credential_store: CredentialStore | None = None,
    gates: GateController | None = None,
    recorder: RunRecorder | None = None,
) -> PipelineRunner:
    """Wire every engine component from one `EngineConfig`."""

    store = credential_store or build_credential_store(
        cfg.credentials.source,
        env_prefix=cfg.credentials.env_prefix,
        file_path=cfg.credentials.file_path,
    )
    executor = StepExecutor(
        log_sink=LogSink(os.path.join(cfg.log_dir, "steps")),
        artifact_store=ArtifactStore(cfg.artifact_dir, logger=logger),
        command_runner=command_runner or SubprocessCommandRunner(poll_interval=cfg.poll_interval),
    )
    default_agent = DEFAULT_SLOT_LABEL if DEFAULT_SLOT_LABEL in cfg.slots else next(iter(cfg.slots))
    return PipelineRunner(
        executor=executor,
        slots=SlotPool(cfg.slots, poll_interval=cfg.poll_interval),
        broker=CredentialBroker(
            store, placeholder_value=cfg.credentials.placeholder_value, logger=logger
        ),
        gates=gates
        or GateController(
            decisions=cfg.gates.decisions,
            default_timeout=cfg.gates.default_timeout,
            poll_interval=cfg.poll_interval,
            logger=logger,
        ),
        workspace_root=cfg.workspace_root,
        cleaner=WorkspaceCleaner(trash_dir=os.path.join(cfg.workspace_root, ".trash"), logger=logger),
        recorder=recorder,
        logger=logger,
        default_agent=default_agent,
        clean_workspace=cfg.clean_workspace,
        post_grace=cfg.post_grace,
    )


def _log_config_source(logger: logging.Logger, meta: Mapping[str, Any] | None) -> None:
    if not meta:
        return
    mode = meta.get("mode")
    paths = meta.get("paths") or []
    env_var = meta.get("env_var") or "STAGERUN_CONFIG"
    if mode in {"env", "explicit"} and paths:
        label = f"env {env_var}" if mode == "env" else "explicit path"
        logger.info("Loaded config from %s=%s", label, paths[0])
    elif paths:
        local = paths[1] if len(paths) > 1 else None
        if local:
            logger.info("Loaded config base=%s local=%s", paths[0], local)
        else:
            logger.info("Loaded config base=%s", paths[0])
    else:
        logger.info("No config file found; using defaults")


def run_pipeline(
    cfg_dict: Mapping[str, Any],
    definition: PipelineDefinition | str,
    *,
    config_meta: Mapping[str, Any] | None = None,
    run_id: str | None = None,
    branch: str | None = None,
    tag: str | None = None,
    change_request: bool = False,
    parameters: Mapping[str, Any] | None = None,
    build_number: int = 1,
    decisions: Mapping[str, str] | None = None,
    command_runner: CommandRunner | None = None,
    credential_store: CredentialStore | None = None,
) -> RunLedger:
    """Run one pipeline end to end and persist its ledger, stage CSV and run-index entry."""

    base_dir = (config_meta or {}).get("repo_root")
    cfg, cfg_warnings = EngineConfig.from_dict(cfg_dict, base_dir=base_dir)

    run_id = run_id or generate_run_id()
    logger, operational_log_path = setup_operational_logger(cfg.log_dir, run_id)
    try:
        _log_config_source(logger, config_meta)
        for warning in cfg_warnings:
            logger.warning("%s", warning)

        if isinstance(definition, str):
            logger.info("Loading pipeline definition %s", definition)
            definition = load_definition(definition)

        merged = {**cfg.gates.decisions, **dict(decisions or {})}
        gates = GateController(
            decisions=merged,
            default_timeout=cfg.gates.default_timeout,
            poll_interval=cfg.poll_interval,
            logger=logger,
        )
        runner = build_runner(
            cfg,
            logger=logger,
            command_runner=command_runner,
            credential_store=credential_store,
            gates=gates,
        )
        ledger = runner.run(
            definition,
            branch=branch,
            tag=tag,
            change_request=change_request,
            parameters=parameters,
            build_number=build_number,
            run_id=run_id,
            logger=logger,
        )

        ledger_path = ledger.write_json(os.path.join(cfg.log_dir, f"{run_id}_ledger.json"))
        stages_path = ledger.write_stage_csv(os.path.join(cfg.log_dir, f"{run_id}_stages.csv"))
        logger.info("Ledger written to %s (stages: %s)", ledger_path, stages_path)
        if cfg.run_index_path:
            append_run_index_entry(cfg.run_index_path, ledger.index_entry(ledger_path=ledger_path))
        logger.debug("Operational log: %s", operational_log_path)
        return ledger
    except Exception:
        logger.exception("Run %s did not complete", run_id)
        raise
    finally:
        close_logger(logger)
