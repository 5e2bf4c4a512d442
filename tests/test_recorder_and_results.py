import logging

import pytest

from stagekit.engine.nodes import EchoStep, PipelineDefinition, ShellStep, StageSpec
from stagekit.engine.recorder import DefaultRunRecorder, validate_recorder
from stagekit.engine.results import StageResult, StepResult, never_run, status_severity, worst_status


class ListRecorder:
    def __init__(self):
        self.events = []

    def on_stage_start(self, ctx, path, **metrics):
        self.events.append(("stage-start", path))

    def on_stage_end(self, ctx, result):
        self.events.append(("stage-end", result.path, result.status))

    def on_step_start(self, ctx, path, **metrics):
        self.events.append(("step-start", path, metrics.get("kind")))

    def on_step_end(self, ctx, path, result):
        self.events.append(("step-end", path, result.status))


def test_worst_status_ordering():
    assert worst_status([]) == "succeeded"
    assert worst_status(["succeeded", "skipped"]) == "skipped"
    assert worst_status(["skipped", "unstable", "pending"]) == "unstable"
    assert worst_status(["unstable", "aborted", "succeeded"]) == "aborted"
    assert status_severity("failed") == status_severity("aborted")
    with pytest.raises(ValueError, match=r"Unknown status: 'exploded'"):
        worst_status(["exploded"])


def test_result_tree_navigation():
    leaf = never_run("Lint", "p/Verify/Lint", reason="not-run")
    verify = StageResult(name="Verify", path="p/Verify", status="pending", parallel=True, children=(leaf,))
    root = StageResult(name="p", path="p", status="failed", children=(verify,))

    assert root.child("Verify") is verify
    assert root.find("p/Verify/Lint") is leaf
    assert [r.path for r in root.iter_results()] == ["p", "p/Verify", "p/Verify/Lint"]
    assert root.to_dict()["stages"][0]["parallel"]["Lint"]["reason"] == "not-run"
    with pytest.raises(KeyError):
        root.find("p/Deploy")


def test_validate_recorder_requires_all_hooks():
    class Partial:
        def on_stage_start(self, ctx, path, **metrics):
            return None

    with pytest.raises(TypeError, match=r"missing required method: on_stage_end"):
        validate_recorder(Partial())


def test_runner_notifies_recorder_in_order(make_runner):
    recorder = ListRecorder()
    definition = PipelineDefinition(
        name="demo",
        stages=(
            StageSpec(
                name="Build",
                steps=(ShellStep("compile", "make"), EchoStep(None, "done")),
            ),
        ),
    )

    ledger = make_runner(recorder=recorder).run(definition)

    assert ledger.status == "succeeded"
    assert recorder.events == [
        ("stage-start", "demo"),
        ("stage-start", "demo/Build"),
        ("step-start", "demo/Build#compile", "sh"),
        ("step-end", "demo/Build#compile", "succeeded"),
        ("step-start", "demo/Build#step_02", "echo"),
        ("step-end", "demo/Build#step_02", "succeeded"),
        ("stage-end", "demo/Build", "succeeded"),
        ("stage-end", "demo", "succeeded"),
    ]


def test_default_recorder_logs_stage_and_step_lines(caplog):
    class Ctx:
        run_id = "r1"
        logger = logging.getLogger("stagerun.tests.recorder")

    recorder = DefaultRunRecorder()
    failed = StepResult(name="compile", index=0, kind="sh", status="failed", reason="exit-code", exit_code=2)
    stage = StageResult(name="Build", path="p/Build", status="failed", reason="exit-code", duration=1.5)

    with caplog.at_level(logging.INFO, logger="stagerun.tests.recorder"):
        recorder.on_stage_start(Ctx, "p/Build", agent="docker", parallel=False, gate=True, credentials=0)
        recorder.on_step_start(Ctx, "p/Build#compile", kind="sh")
        recorder.on_step_end(Ctx, "p/Build#compile", failed)
        recorder.on_stage_end(Ctx, stage)

    messages = [record.getMessage() for record in caplog.records]
    assert messages == [
        "Stage: p/Build (agent=docker, gate=True)",
        "Step: p/Build#compile (type=sh)",
        "Step failed: p/Build#compile (reason=exit-code, exit=2)",
        "Completed stage p/Build (status=failed, duration=1.50s, reason=exit-code)",
    ]
    assert caplog.records[-1].levelno == logging.WARNING
