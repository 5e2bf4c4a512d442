from __future__ import annotations

import argparse
import sys
from collections.abc import Sequence

EXIT_CODES = {"succeeded": 0, "failed": 1, "unstable": 2, "aborted": 3}
EXIT_INVALID = 4


def _parse_params(items: Sequence[str]) -> dict[str, str]:
    params: dict[str, str] = {}
    for item in items:
        name, sep, value = item.partition("=")
        if not sep or not name.strip():
            raise ValueError(f"--param expects NAME=VALUE (got {item!r})")
        params[name.strip()] = value
    return params


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="stagerun", add_help=True)
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Run a pipeline definition")
    run.add_argument("definition", help="Path to the pipeline definition YAML")
    run.add_argument("--config", default=None, help="Engine config YAML (overrides discovery)")
    run.add_argument("--branch", default=None)
    run.add_argument("--tag", default=None)
    run.add_argument("--change-request", action="store_true", help="Treat the run as a change request build")
    run.add_argument("--param", action="append", default=[], metavar="NAME=VALUE")
    run.add_argument("--build-number", type=int, default=1)
    run.add_argument("--run-id", default=None)
    run.add_argument("--approve", action="append", default=[], metavar="STAGE_PATH")
    run.add_argument("--reject", action="append", default=[], metavar="STAGE_PATH")

    validate = sub.add_parser("validate", help="Validate a pipeline definition")
    validate.add_argument("definition")

    graph = sub.add_parser("graph", help="Print the stage tree of a pipeline definition")
    graph.add_argument("definition")

    return parser


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(list(argv) if argv is not None else None)

    from stagekit.engine.graph import PipelineGraph
    from stagekit.errors import DefinitionError
    from stagerun.framework.definition import load_definition

    if args.command in ("validate", "graph"):
        try:
            definition = load_definition(args.definition)
        except DefinitionError as exc:
            print(f"Invalid definition: {exc}", file=sys.stderr)
            return EXIT_INVALID
        graph = PipelineGraph.build(definition)
        if args.command == "graph":
            print(graph.render_tree())
        else:
            print(f"OK: {definition.name} ({len(graph.paths()) - 1} stage(s))")
        return 0

    if args.command == "run":
        from stagerun.app.run import run_pipeline
        from stagerun.foundation.config_io import load_config

        overlap = sorted(set(args.approve) & set(args.reject))
        if overlap:
            print(f"Stage(s) both approved and rejected: {', '.join(overlap)}", file=sys.stderr)
            return EXIT_INVALID
        decisions = {path: "approve" for path in args.approve}
        decisions.update({path: "reject" for path in args.reject})

        try:
            params = _parse_params(args.param)
            cfg_dict, cfg_meta = load_config(config_path=args.config)
            ledger = run_pipeline(
                cfg_dict,
                args.definition,
                config_meta=cfg_meta,
                run_id=args.run_id,
                branch=args.branch,
                tag=args.tag,
                change_request=args.change_request,
                parameters=params,
                build_number=args.build_number,
                decisions=decisions,
            )
        except (DefinitionError, ValueError) as exc:
            print(f"Cannot run pipeline: {exc}", file=sys.stderr)
            return EXIT_INVALID

        frame = ledger.stage_frame()
        if not frame.empty:
            print(frame[["path", "status", "reason", "duration"]].to_string(index=False))
        for note in ledger.cleanup_notes:
            print(f"cleanup: {note}")
        if ledger.fault:
            print(f"fault: {ledger.fault}", file=sys.stderr)
        print(f"Run {ledger.run_id}: {ledger.status}")
        return EXIT_CODES.get(str(ledger.status), 1)

    raise AssertionError(f"Unhandled command: {args.command}")


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main(sys.argv[1:]))
