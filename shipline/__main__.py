"""Command line entry point: ``python -m shipline <command>``."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import Any

from shipline.api.facade import Shipline
from shipline.deployment.config_manager import ConfigManager
from shipline.deployment.errors import ConflictError
from shipline.deployment.models import Release, ReleaseStatus

logger = logging.getLogger("shipline")

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFLICT = 2
EXIT_SKIPPED = 3


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="shipline", description="Release pipeline coordinator")
    parser.add_argument("--project", default=".", help="Project root (default: cwd)")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("trigger", help="Build, publish, and deploy a revision")
    p.add_argument("--target", required=True)
    p.add_argument("--revision", required=True)
    p.add_argument("--correlation-id", default=None)

    p = sub.add_parser("github-push", help="Release from a GitHub push event payload")
    p.add_argument("--target", required=True)
    p.add_argument("--event-path", required=True)

    p = sub.add_parser("status", help="Show locks and known-good artifacts")
    p.add_argument("--target", default=None)

    p = sub.add_parser("history", help="Show recorded transitions")
    p.add_argument("--release", default=None)
    p.add_argument("--target", default=None)

    p = sub.add_parser("unlock", help="Force-release a target lock")
    p.add_argument("--target", required=True)

    sub.add_parser("verify-journal", help="Check the transition journal hash chain")
    sub.add_parser("config", help="Print merged configuration with secrets masked")

    p = sub.add_parser("init", help="Write CI workflow, compose file, and .env.example")
    p.add_argument("--target", required=True)
    p.add_argument("--branch", default="main")
    return parser


def _print(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


def _release_exit(release: Release | None) -> int:
    if release is None:
        return EXIT_SKIPPED
    _print(release.summary())
    return EXIT_OK if release.status is ReleaseStatus.SUCCEEDED else EXIT_FAILED


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    settings = ConfigManager().load_settings(args.project)
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    ship = Shipline(args.project, settings=settings)
    try:
        if args.command == "trigger":
            return _release_exit(ship.trigger(args.revision, args.target, args.correlation_id))
        if args.command == "github-push":
            return _release_exit(ship.github_push(args.event_path, args.target))
        if args.command == "status":
            _print(ship.status(args.target))
        elif args.command == "history":
            _print([e.model_dump() for e in ship.history(args.release, args.target)])
        elif args.command == "unlock":
            _print({"target_id": args.target, "unlocked": ship.unlock(args.target)})
        elif args.command == "verify-journal":
            ok = ship.verify_journal()
            _print({"journal_valid": ok})
            return EXIT_OK if ok else EXIT_FAILED
        elif args.command == "config":
            _print(ship.config())
        elif args.command == "init":
            _print([str(p) for p in ship.init_project(args.target, args.branch)])
    except ConflictError as exc:
        logger.error("%s", exc)
        return EXIT_CONFLICT
    except KeyError as exc:
        logger.error("%s", exc.args[0] if exc.args else exc)
        return EXIT_FAILED
    finally:
        ship.close()
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
