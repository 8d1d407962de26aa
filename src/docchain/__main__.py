"""Entry point for `python -m docchain` and the `docchain` CLI script."""

from __future__ import annotations

import argparse
import logging
from pathlib import Path
from typing import Sequence

from pydantic import BaseModel

from docchain.models import Phase
from docchain.orchestrator import PipelineOrchestrator
from docchain.settings import RuntimeSettings

PHASE_CHOICES = [phase.value for phase in Phase]


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Drive a docchain project through its phase pipeline")
    parser.add_argument(
        "--repo-root",
        type=Path,
        default=None,
        help="Directory the state store root is resolved against (default: cwd)",
    )
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    init = commands.add_parser("init", help="Create a project in the first phase")
    init.add_argument("name")
    init.add_argument("--slug", default=None)
    init.add_argument("--description", default="")

    status = commands.add_parser("status", help="Show project metadata")
    status.add_argument("slug")

    put = commands.add_parser("put", help="Store an artifact from a file or inline text")
    put.add_argument("slug")
    put.add_argument("phase", choices=PHASE_CHOICES)
    put.add_argument("name")
    source = put.add_mutually_exclusive_group(required=True)
    source.add_argument("--file", type=Path, default=None)
    source.add_argument("--text", default=None)

    generate = commands.add_parser("generate", help="Generate an artifact with the configured model")
    generate.add_argument("slug")
    generate.add_argument("phase", choices=PHASE_CHOICES)
    generate.add_argument("name")
    generate.add_argument("--prompt", required=True)
    generate.add_argument("--idempotency-key", default=None)

    advance = commands.add_parser("advance", help="Move to the next phase")
    advance.add_argument("slug")
    advance.add_argument("--idempotency-key", default=None)

    approve = commands.add_parser("approve", help="Approve a gate")
    approve.add_argument("slug")
    approve.add_argument("gate")
    approve.add_argument("--approver", required=True)
    approve.add_argument("--notes", default=None)
    approve.add_argument("--score", type=int, default=None)
    approve.add_argument("--stack-choice", default=None)

    reject = commands.add_parser("reject", help="Reject a gate")
    reject.add_argument("slug")
    reject.add_argument("gate")
    reject.add_argument("--approver", required=True)
    reject.add_argument("--reason", required=True)

    validate = commands.add_parser("validate", help="Run cross-artifact validation")
    validate.add_argument("slug")

    snapshots = commands.add_parser("snapshots", help="List snapshots of a phase, latest first")
    snapshots.add_argument("slug")
    snapshots.add_argument("phase", choices=PHASE_CHOICES)

    rollback = commands.add_parser("rollback", help="Reopen a completed phase from its latest snapshot")
    rollback.add_argument("slug")
    rollback.add_argument("phase", choices=PHASE_CHOICES)
    rollback.add_argument("--confirm", action="store_true", help="Required: rollback rewrites live artifacts")

    preview = commands.add_parser("preview", help="Show what a rollback would restore")
    preview.add_argument("slug")
    preview.add_argument("phase", choices=PHASE_CHOICES)
    return parser.parse_args(argv)


def dispatch(orchestrator: PipelineOrchestrator, args: argparse.Namespace) -> tuple[BaseModel, bool]:
    """Run one subcommand and return its result model and whether it succeeded."""
    command = args.command
    if command == "init":
        result = orchestrator.create_project(args.name, description=args.description, slug=args.slug)
    elif command == "status":
        result = orchestrator.get_status(args.slug)
    elif command == "put":
        content = args.text if args.text is not None else args.file.read_text(encoding="utf-8")
        result = orchestrator.put_artifact(args.slug, Phase(args.phase), args.name, content, actor="cli")
    elif command == "generate":
        result = orchestrator.generate_artifact(
            args.slug,
            Phase(args.phase),
            args.name,
            args.prompt,
            idempotency_key=args.idempotency_key,
            actor="cli",
        )
    elif command == "advance":
        result = orchestrator.advance_phase(args.slug, idempotency_key=args.idempotency_key, actor="cli")
    elif command == "approve":
        result = orchestrator.approve_gate(
            args.slug,
            args.gate,
            args.approver,
            notes=args.notes,
            score=args.score,
            stack_choice=args.stack_choice,
        )
    elif command == "reject":
        result = orchestrator.reject_gate(args.slug, args.gate, args.approver, args.reason)
    elif command == "validate":
        result = orchestrator.run_validation(args.slug, actor="cli")
    elif command == "snapshots":
        result = orchestrator.list_snapshots(args.slug, Phase(args.phase))
    elif command == "rollback":
        result = orchestrator.rollback(args.slug, Phase(args.phase), confirm=args.confirm, actor="cli")
    elif command == "preview":
        preview = orchestrator.rollback_preview(args.slug, Phase(args.phase))
        return preview, preview.allowed
    else:
        raise ValueError(f"unknown command: {command}")
    return result, result.success


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    repo_root = (args.repo_root or Path.cwd()).resolve()
    try:
        settings = RuntimeSettings.from_env()
        orchestrator = PipelineOrchestrator.from_settings(settings, repo_root=repo_root)
    except (RuntimeError, ValueError) as exc:
        logging.error("Invalid configuration: %s", exc)
        return 1

    try:
        result, succeeded = dispatch(orchestrator, args)
    except OSError as exc:
        logging.error("Unable to read input: %s", exc)
        return 1

    print(result.model_dump_json(indent=2))
    return 0 if succeeded else 1


if __name__ == "__main__":
    raise SystemExit(main())
