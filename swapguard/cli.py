"""
swapguard CLI
~~~~~~~~~~~~~

Command-line interface for swapguard.
"""

from __future__ import annotations

import argparse
import json
import sys

from pydantic import ValidationError

from swapguard.config.loader import load_config, load_config_from_dict
from swapguard.config.schema import DeployConfig
from swapguard.exceptions import ConfigValidationError, SwapGuardError


def main(argv: list[str] | None = None) -> None:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="swapguard",
        description="swapguard: redeploy a backend binary with automatic rollback",
    )
    parser.add_argument(
        "--version",
        action="store_true",
        help="Show version and exit",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        help="Log level (default: INFO)",
    )
    parser.add_argument(
        "--log-format",
        choices=["text", "json"],
        default="text",
        help="Log format (default: text)",
    )
    subparsers = parser.add_subparsers(dest="command")

    # deploy command
    deploy_parser = subparsers.add_parser(
        "deploy", help="Deploy a new backend binary"
    )
    deploy_parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to swapguard.yaml",
    )
    deploy_parser.add_argument(
        "--artifact",
        type=str,
        required=True,
        help="Path of the backend binary to deploy",
    )
    deploy_parser.add_argument(
        "--strategy",
        choices=["blue_green", "recreate"],
        default=None,
        help="Override rollback.strategy from the config",
    )

    # status command
    status_parser = subparsers.add_parser(
        "status", help="Show recent deploy attempts"
    )
    status_parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to swapguard.yaml",
    )
    status_parser.add_argument(
        "--attempt",
        type=str,
        default=None,
        help="Show one attempt and its backup archives",
    )
    status_parser.add_argument(
        "--limit",
        type=int,
        default=10,
        help="Number of attempts to list (default: 10)",
    )
    status_parser.add_argument(
        "--json",
        action="store_true",
        help="Print JSON instead of a table",
    )

    # unlock command
    unlock_parser = subparsers.add_parser(
        "unlock", help="Release a pending attempt left by a killed deploy"
    )
    unlock_parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to swapguard.yaml",
    )

    # probe command
    probe_parser = subparsers.add_parser(
        "probe", help="Run the health check against a running backend"
    )
    probe_parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to swapguard.yaml",
    )
    probe_parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="Port to probe (default: network.host_port)",
    )

    # version command
    subparsers.add_parser("version", help="Show version")

    args = parser.parse_args(argv)

    if args.version or args.command == "version":
        from swapguard import __version__

        print(f"swapguard {__version__}")
        return

    from swapguard.logging_config import configure_logging

    configure_logging(level=args.log_level, fmt=args.log_format)

    try:
        if args.command == "deploy":
            code = _run_deploy(args)
        elif args.command == "status":
            code = _run_status(args)
        elif args.command == "unlock":
            code = _run_unlock(args)
        elif args.command == "probe":
            code = _run_probe(args)
        else:
            parser.print_help()
            code = 1
    except SwapGuardError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        code = 1
    sys.exit(code)


def _load(config_path: str | None) -> DeployConfig:
    """Load a DeployConfig from a file, or defaults when no path is given."""
    if config_path:
        return load_config(config_path)
    return load_config_from_dict({})


def _with_strategy(config: DeployConfig, strategy: str) -> DeployConfig:
    """Return a copy of ``config`` using another replacement strategy."""
    data = config.model_dump()
    data["rollback"]["strategy"] = strategy
    try:
        return DeployConfig.model_validate(data)
    except ValidationError as exc:
        raise ConfigValidationError(f"Invalid --strategy: {exc}") from exc


def _run_deploy(args: argparse.Namespace) -> int:
    """Run the deploy command."""
    from swapguard.controller import RollbackController

    config = _load(args.config)
    if args.strategy:
        config = _with_strategy(config, args.strategy)

    controller = RollbackController.from_config(config)
    attempt = controller.deploy(args.artifact)

    print(f"Attempt:    {attempt.id}")
    print(f"Status:     {attempt.status.value}")
    print(f"Bootstrap:  {attempt.bootstrap_state.value}")
    if attempt.message:
        print(f"Message:    {attempt.message}")
    return attempt.status.exit_code()


def _run_status(args: argparse.Namespace) -> int:
    """Run the status command."""
    from swapguard.storage.ledger import AttemptLedger

    config = _load(args.config)
    ledger = AttemptLedger(config.ledger.resolved_path())

    if args.attempt:
        attempt = ledger.get(args.attempt)
        if attempt is None:
            print(f"Error: No attempt {args.attempt}", file=sys.stderr)
            return 1
        records = ledger.records(attempt.id)
        if args.json:
            data = attempt.to_dict()
            data["archives"] = [
                {"kind": r.kind.value, "source": r.source, "archive": r.archive}
                for r in records
            ]
            print(json.dumps(data, indent=2))
            return 0
        for key, value in attempt.to_dict().items():
            print(f"{key + ':':<17}{value}")
        if records:
            print("Archives:")
            for record in records:
                print(f"  {record.kind.value:<11}{record.source:<20}{record.archive}")
        return 0

    attempts = ledger.history(config.service.name, limit=args.limit)
    if args.json:
        print(json.dumps([a.to_dict() for a in attempts], indent=2))
        return 0
    if not attempts:
        print(f"No deploy attempts recorded for {config.service.name}")
        return 0
    for attempt in attempts:
        print(
            f"{attempt.id}  {attempt.started_at:%Y-%m-%d %H:%M:%S}  "
            f"{attempt.status.value:<21}{attempt.message}"
        )
    return 0


def _run_unlock(args: argparse.Namespace) -> int:
    """Run the unlock command."""
    from swapguard.storage.ledger import AttemptLedger

    config = _load(args.config)
    ledger = AttemptLedger(config.ledger.resolved_path())
    released = ledger.release_stale(config.service.name)
    if not released:
        print(f"No pending attempt for {config.service.name}")
    for attempt_id in released:
        print(f"Released {attempt_id}")
    return 0


def _run_probe(args: argparse.Namespace) -> int:
    """Run the probe command."""
    from swapguard.health import HealthVerifier

    config = _load(args.config)
    verifier = HealthVerifier(config.health)
    port = args.port or config.network.host_port
    result = verifier.verify(verifier.url_for(port, config.network.host_ip))

    print(f"Passed:     {result.passed}")
    print(f"Attempts:   {result.attempts}")
    if result.status_code is not None:
        print(f"HTTP:       {result.status_code}")
    if result.error:
        print(f"Error:      {result.error}")
    elif result.raw_response:
        print(f"Response:   {result.raw_response[:200]}")
    return 0 if result.passed else 1


if __name__ == "__main__":
    main()
