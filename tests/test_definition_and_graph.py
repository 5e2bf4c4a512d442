from pathlib import Path

import pytest

from stagekit.engine.conditions import AnyOf
from stagekit.engine.graph import PipelineGraph
from stagekit.engine.nodes import (
    ArchiveStep,
    EchoStep,
    PipelineDefinition,
    PostActions,
    ScanReportStep,
    ShellStep,
    StageSpec,
    TestReportStep,
)
from stagekit.errors import DefinitionError
from stagerun.framework.definition import definition_from_dict, load_definition

EXAMPLE = Path(__file__).resolve().parents[1] / "pipelines" / "example.yaml"


def test_example_definition_loads():
    definition = load_definition(EXAMPLE)

    assert definition.name == "example"
    assert definition.options.timeout == 600
    assert definition.options.retention == 10
    assert [p.name for p in definition.parameters] == ["RELEASE", "TARGET"]
    assert definition.parameters[1].default == "staging"

    graph = PipelineGraph.build(definition)
    assert graph.paths() == (
        "example",
        "example/Checkout",
        "example/Verify",
        "example/Verify/Lint",
        "example/Verify/UnitTests",
        "example/Verify/SAST",
        "example/Package",
        "example/Deploy",
    )
    deploy = graph.find("example/Deploy")
    assert isinstance(deploy.when, AnyOf)
    assert deploy.gate.approvers == ("release-manager",)
    assert deploy.on_missing_credential == "skip"
    assert deploy.credentials[0].variables() == ("REGISTRY_USER", "REGISTRY_PASSWORD")

    unit = graph.find("example/Verify/UnitTests")
    assert isinstance(unit.steps[1], TestReportStep)
    assert isinstance(graph.find("example/Verify/SAST").steps[1], ScanReportStep)
    assert isinstance(graph.find("example/Package").steps[0], ArchiveStep)

    groups = list(graph.parallel_groups())
    assert [group.path for group in groups] == ["example/Verify"]
    assert groups[0].branch_paths() == (
        "example/Verify/Lint",
        "example/Verify/UnitTests",
        "example/Verify/SAST",
    )


def test_render_tree_marks_parallel_gates_and_agents():
    tree = PipelineGraph.build(load_definition(EXAMPLE)).render_tree()

    assert tree.splitlines()[0] == "- example"
    assert "  - Verify [parallel]" in tree
    assert "  - Deploy [gate] @docker" in tree


def test_unknown_stage_keys_are_rejected():
    with pytest.raises(DefinitionError, match=r"Unknown keys under p/Build: stepz"):
        definition_from_dict({"name": "p", "stages": [{"name": "Build", "stepz": []}]})


def test_unknown_post_condition_is_rejected():
    document = {
        "stages": [{"name": "Build", "steps": ["make"], "post": {"cleanup": [{"echo": "x"}]}}]
    }
    with pytest.raises(DefinitionError, match=r"Unknown post-action condition\(s\): cleanup"):
        definition_from_dict(document)


def test_step_must_declare_exactly_one_kind():
    document = {"stages": [{"name": "Build", "steps": [{"sh": "make", "echo": "hi"}]}]}
    with pytest.raises(DefinitionError, match=r"exactly one of"):
        definition_from_dict(document)


def test_duplicate_names_are_rejected_per_scope():
    with pytest.raises(DefinitionError, match=r"Duplicate stage name\(s\): Lint \(stage: pipeline/Verify\)"):
        PipelineGraph.build(
            PipelineDefinition(
                stages=(
                    StageSpec(name="Verify", parallel=(StageSpec(name="Lint"), StageSpec(name="Lint"))),
                )
            )
        )

    with pytest.raises(DefinitionError, match=r"Duplicate step name\(s\): step_01"):
        PipelineGraph.build(
            PipelineDefinition(
                stages=(
                    StageSpec(
                        name="Build",
                        steps=(ShellStep(None, "make"), EchoStep("step_01", "clash")),
                    ),
                )
            )
        )

    # the same name in different scopes is fine
    graph = PipelineGraph.build(
        PipelineDefinition(
            stages=(
                StageSpec(name="A", stages=(StageSpec(name="Test"),)),
                StageSpec(name="B", stages=(StageSpec(name="Test"),)),
            )
        )
    )
    assert "pipeline/A/Test" in graph.paths()
    assert "pipeline/B/Test" in graph.paths()


def test_empty_parallel_block_is_rejected():
    with pytest.raises(DefinitionError, match=r"at least one stage \(stage: pipeline/Matrix\)"):
        definition_from_dict({"stages": [{"name": "Matrix", "parallel": []}]})


def test_stage_model_invariants():
    with pytest.raises(DefinitionError, match=r"both stages and parallel"):
        StageSpec(name="X", stages=(StageSpec(name="a"),), parallel=(StageSpec(name="b"),))
    with pytest.raises(DefinitionError, match=r"fail_fast only applies to parallel stages"):
        StageSpec(name="X", fail_fast=True)
    with pytest.raises(ValueError, match=r"cannot contain '/'"):
        StageSpec(name="a/b")
    with pytest.raises(ValueError, match=r"timeout must be a positive number"):
        ShellStep(None, "make", timeout=0)


def test_post_actions_mapping_is_normalized():
    stage = StageSpec(name="Build", post={"failure": [EchoStep(None, "boom")]})
    assert isinstance(stage.post, PostActions)
    assert stage.post.for_condition("failure")[0].message == "boom"
    assert stage.post.always == ()


def test_string_steps_and_argv_commands():
    definition = definition_from_dict(
        {
            "name": "p",
            "stages": [
                {
                    "name": "Build",
                    "steps": ["make all", {"name": "argv", "sh": ["python", "-V"], "timeout": 30}],
                }
            ],
        }
    )
    steps = definition.stages[0].steps
    assert steps[0].name is None
    assert steps[0].command == "make all"
    assert steps[1].command == ("python", "-V")
    assert steps[1].timeout == 30


def test_invalid_yaml_becomes_definition_error(tmp_path):
    path = tmp_path / "broken.yaml"
    path.write_text("stages: [\n", encoding="utf-8")
    with pytest.raises(DefinitionError, match=r"Invalid YAML"):
        load_definition(path)
