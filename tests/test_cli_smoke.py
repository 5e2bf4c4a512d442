import json
from pathlib import Path

from stagerun import cli

EXAMPLE = Path(__file__).resolve().parents[1] / "pipelines" / "example.yaml"


def _write_config(tmp_path: Path) -> Path:
    root = tmp_path / "state"
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        "\n".join(
            [
                "engine:",
                f"  workspace_root: '{(root / 'workspaces').as_posix()}'",
                f"  log_path: '{(root / 'logs').as_posix()}'",
                f"  artifact_path: '{(root / 'artifacts').as_posix()}'",
                f"  run_index_path: '{(root / 'runs.jsonl').as_posix()}'",
                "  poll_interval: 0.01",
                "slots:",
                "  any: 2",
                "credentials:",
                "  source: none",
                "",
            ]
        ),
        encoding="utf-8",
    )
    return config_path


def _write_definition(tmp_path: Path) -> Path:
    path = tmp_path / "pipeline.yaml"
    path.write_text(
        "\n".join(
            [
                "name: smoke",
                "parameters:",
                "  - name: WHO",
                "    default: world",
                "stages:",
                "  - name: Hello",
                "    steps:",
                "      - echo: 'hello ${WHO} from build ${BUILD_NUMBER}'",
                "  - name: Gate",
                "    gate:",
                "      message: Continue?",
                "    steps:",
                "      - echo: approved",
                "",
            ]
        ),
        encoding="utf-8",
    )
    return path


def test_cli_validate_smoke(capsys):
    rc = cli.main(["validate", str(EXAMPLE)])
    assert rc == 0
    assert capsys.readouterr().out.strip() == "OK: example (7 stage(s))"


def test_cli_graph_smoke(capsys):
    rc = cli.main(["graph", str(EXAMPLE)])
    assert rc == 0

    out = capsys.readouterr().out
    assert out.startswith("- example\n")
    assert "Verify [parallel]" in out


def test_cli_validate_rejects_broken_definition(tmp_path, capsys):
    path = tmp_path / "broken.yaml"
    path.write_text("stages:\n  - name: A\n    bogus: 1\n", encoding="utf-8")

    assert cli.main(["validate", str(path)]) == cli.EXIT_INVALID
    assert "Invalid definition" in capsys.readouterr().err


def test_cli_run_smoke(tmp_path, capsys):
    config_path = _write_config(tmp_path)
    definition = _write_definition(tmp_path)

    rc = cli.main(
        [
            "run",
            str(definition),
            "--config",
            str(config_path),
            "--run-id",
            "cli-smoke",
            "--build-number",
            "12",
            "--param",
            "WHO=tester",
            "--approve",
            "smoke/Gate",
        ]
    )

    assert rc == 0
    out = capsys.readouterr().out
    assert "Run cli-smoke: succeeded" in out

    logs = tmp_path / "state" / "logs"
    ledger = json.loads((logs / "cli-smoke_ledger.json").read_text(encoding="utf-8"))
    assert ledger["status"] == "succeeded"
    assert ledger["context"]["build_number"] == 12
    hello = ledger["root"]["stages"][0]
    assert hello["steps"][0]["message"] == "hello tester from build 12"
    assert (logs / "cli-smoke_stages.csv").exists()
    assert (logs / "cli-smoke_oplog.log").exists()

    index_lines = (tmp_path / "state" / "runs.jsonl").read_text(encoding="utf-8").splitlines()
    assert json.loads(index_lines[-1])["run_id"] == "cli-smoke"


def test_cli_run_rejected_gate_exits_failed(tmp_path, capsys):
    rc = cli.main(
        [
            "run",
            str(_write_definition(tmp_path)),
            "--config",
            str(_write_config(tmp_path)),
            "--run-id",
            "cli-rejected",
            "--reject",
            "smoke/Gate",
        ]
    )

    assert rc == cli.EXIT_CODES["failed"]
    assert "Run cli-rejected: failed" in capsys.readouterr().out


def test_cli_run_invalid_inputs(tmp_path, capsys):
    config_path = str(_write_config(tmp_path))
    definition = str(_write_definition(tmp_path))

    assert cli.main(["run", definition, "--config", config_path, "--param", "NOPE=1"]) == cli.EXIT_INVALID
    assert "Unknown parameter(s): NOPE" in capsys.readouterr().err

    assert cli.main(["run", definition, "--config", config_path, "--param", "missing-equals"]) == cli.EXIT_INVALID
    assert "--param expects NAME=VALUE" in capsys.readouterr().err

    rc = cli.main(
        ["run", definition, "--config", config_path, "--approve", "smoke/Gate", "--reject", "smoke/Gate"]
    )
    assert rc == cli.EXIT_INVALID
    assert "both approved and rejected: smoke/Gate" in capsys.readouterr().err
