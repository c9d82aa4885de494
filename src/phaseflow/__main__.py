"""Entry point for `python -m phaseflow` and the `phaseflow` CLI script."""

from __future__ import annotations

import argparse
import json
import logging
from dataclasses import replace
from pathlib import Path

from pydantic import ValidationError

from phaseflow.driver import DriverResult, PipelineDriver, ResultCode
from phaseflow.executor import load_executor
from phaseflow.models import DecisionAction, HumanDecision
from phaseflow.settings import RuntimeSettings

EXIT_CODES = {
    ResultCode.SUCCESS: 0,
    ResultCode.SUSPENDED: 3,
    ResultCode.VALIDATION_ERROR: 4,
    ResultCode.NOT_FOUND: 5,
}


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Drive a project through the phaseflow pipeline")
    parser.add_argument("--project", default=None, help="Project identifier (default: PHASEFLOW_PROJECT_ID)")
    parser.add_argument("--state-root", type=Path, default=None, help="Override PHASEFLOW_STATE_ROOT")
    parser.add_argument("--env-file", type=Path, default=Path(".env"), help="Optional dotenv file to load")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("status", help="Print the persisted pipeline state and validation issues")
    for name, help_text in (
        ("advance", "Run the current phase once"),
        ("run", "Run phases until completion, a decision point, or a failure"),
    ):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("--executor", required=True, help="Phase executor as module:attribute")
        if name == "run":
            sub.add_argument("--max-runs", type=int, default=None, help="Cap on phase executions")

    resolve = subparsers.add_parser("resolve", help="Answer a pending decision")
    resolve.add_argument("action", choices=[action.value for action in DecisionAction])
    resolve.add_argument("--exception", dest="exceptions", action="append", default=[], help="Recorded exception (skip)")
    resolve.add_argument("--output", dest="outputs", action="append", default=[], help="Artifact produced (skip)")
    resolve.add_argument("--note", default=None, help="Free-form note stored with the decision")
    resolve.add_argument("--decision-id", default=None, help="Idempotency key for the decision")
    resolve.add_argument("--decided-by", default=None, help="Who made the decision")

    subparsers.add_parser("reset", help="Archive history and start a fresh run")
    return parser.parse_args(argv)


def _emit(result: DriverResult) -> int:
    print(json.dumps(result.to_dict(), indent=2, default=str))
    return EXIT_CODES.get(result.code, 1)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        settings = RuntimeSettings.from_env(args.env_file)
        if args.state_root is not None:
            settings = replace(settings, state_root=str(args.state_root)).normalized()
        executor = load_executor(args.executor) if args.command in {"advance", "run"} else None
    except (ImportError, AttributeError, TypeError, ValueError) as exc:
        logging.error("Invalid configuration: %s", exc)
        return 1

    project_id = args.project or settings.project_id
    driver = PipelineDriver(executor, settings=settings)

    if args.command == "status":
        return _emit(driver.status(project_id))
    if args.command == "advance":
        return _emit(driver.advance(project_id))
    if args.command == "run":
        return _emit(driver.run(project_id, max_runs=args.max_runs))
    if args.command == "resolve":
        fields: dict[str, object] = {
            "action": DecisionAction(args.action),
            "exceptions": args.exceptions,
            "outputs": args.outputs,
            "note": args.note,
            "decided_by": args.decided_by,
        }
        if args.decision_id:
            fields["decision_id"] = args.decision_id
        try:
            decision = HumanDecision(**fields)
        except ValidationError as exc:
            logging.error("Invalid decision: %s", exc)
            return 1
        return _emit(driver.resolve(project_id, decision))
    if args.command == "reset":
        return _emit(driver.reset(project_id))
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
