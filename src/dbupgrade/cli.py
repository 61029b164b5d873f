"""
Command-line entry point.

Usage:
    dbupgrade [global options] run
    dbupgrade [global options] check
    dbupgrade [global options] resume --workload NAME [--workload NAME ...] --log-file PATH
    dbupgrade [global options] cancel-continuation

Global options override values from the YAML file and DBUPGRADE_*
environment variables.
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from typing import Any

import yaml
from pydantic import ValidationError

from dbupgrade import __version__
from dbupgrade.backup_client import BackupApiClient
from dbupgrade.config import AppConfig, load_config
from dbupgrade.errors import (
    InvalidArgumentError,
    PreconditionFailure,
    RestorationFailure,
    UpgradeError,
)
from dbupgrade.logging import get_logger, setup_logging
from dbupgrade.workflow.continuation import ContinuationScheduler
from dbupgrade.workflow.orchestrator import Orchestrator
from dbupgrade.workflow.version import VersionInspector, parse_semantic_version, should_upgrade
from dbupgrade.workflow.workloads import DependentWorkloadController

logger = get_logger(__name__)

EXIT_OK = 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="dbupgrade",
        description="Upgrade the local database engine while pausing dependent backups",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--config", "-c", type=str, help="Path to configuration file")
    parser.add_argument("--install-path", type=str, help="Database installation directory")
    parser.add_argument("--target-version", type=str, help="Version to upgrade to")
    parser.add_argument(
        "--restart",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Reboot after a successful install",
    )
    parser.add_argument(
        "--skip-if-unused",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Skip the upgrade when no enabled workload depends on the database",
    )
    parser.add_argument("--log-file", type=str, help="Append-only log file")
    parser.add_argument(
        "--log-level",
        type=str,
        choices=["debug", "info", "warning", "error"],
        help="Override log level",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)
    subparsers.add_parser("run", help="Run the full upgrade workflow")
    subparsers.add_parser("check", help="Report installed and target versions")

    resume = subparsers.add_parser(
        "resume", help="Re-enable workloads after a reboot (run by systemd)"
    )
    resume.add_argument(
        "--workload",
        dest="workloads",
        action="append",
        default=[],
        help="Workload to re-enable; repeat for each workload",
    )
    resume.add_argument("--log-file", dest="resume_log_file", type=str, help="Log file")

    subparsers.add_parser(
        "cancel-continuation", help="Remove a pending post-reboot continuation"
    )
    return parser


def build_overrides(args: argparse.Namespace) -> dict[str, Any]:
    """Translate parsed flags into a nested config override dictionary."""
    upgrade: dict[str, Any] = {}
    logging_section: dict[str, Any] = {}

    if args.install_path:
        upgrade["install_path"] = args.install_path
    if args.target_version:
        upgrade["target_version"] = args.target_version
    if args.restart is not None:
        upgrade["restart"] = args.restart
    if args.skip_if_unused is not None:
        upgrade["skip_if_unused"] = args.skip_if_unused

    log_file = getattr(args, "resume_log_file", None) or args.log_file
    if log_file:
        logging_section["file_path"] = log_file
    if args.log_level:
        logging_section["level"] = args.log_level

    overrides: dict[str, Any] = {}
    if upgrade:
        overrides["upgrade"] = upgrade
    if logging_section:
        overrides["logging"] = logging_section
    return overrides


def _backup_client(config: AppConfig) -> BackupApiClient:
    api = config.backup_api
    return BackupApiClient(
        api.base_url,
        api.token,
        verify_tls=api.verify_tls,
        timeout=api.timeout_seconds,
    )


def _scheduler(config: AppConfig) -> ContinuationScheduler:
    return ContinuationScheduler(
        config.continuation.unit_name,
        config.continuation.unit_dir,
        environment_file=config.continuation.environment_file,
        python_executable=config.continuation.python_executable,
        grace_seconds=config.continuation.grace_seconds,
    )


async def cmd_run(config: AppConfig) -> int:
    async with _backup_client(config) as client:
        orchestrator = Orchestrator.from_config(config, client)
        result = await orchestrator.run()

    logger.info(
        f"Workflow finished: {result.status} (exit code {result.exit_code})",
        extra={"result": result.model_dump(mode="json")},
    )
    return result.exit_code


async def cmd_check(config: AppConfig) -> int:
    target = parse_semantic_version(config.upgrade.target_version)
    current = await VersionInspector(config.upgrade.binary_path).current_version()
    if current is None:
        print(f"Installed version: unknown ({config.upgrade.binary_path})")
        print(f"Target version:    {target}")
        return PreconditionFailure.exit_code

    print(f"Installed version: {current}")
    print(f"Target version:    {target}")
    print(f"Upgrade needed:    {'yes' if should_upgrade(current, target) else 'no'}")
    return EXIT_OK


async def cmd_resume(config: AppConfig, workload_names: list[str]) -> int:
    if not workload_names:
        raise InvalidArgumentError("resume requires at least one --workload")

    async with _backup_client(config) as client:
        controller = DependentWorkloadController(
            client, recency_days=config.workloads.recency_days
        )
        results = await _scheduler(config).resume(workload_names, controller)

    failed = [name for name, ok in results.items() if not ok]
    return RestorationFailure.exit_code if failed else EXIT_OK


async def cmd_cancel_continuation(config: AppConfig) -> int:
    scheduler = _scheduler(config)
    if await scheduler.unregister():
        print(f"Removed pending continuation {scheduler.unit_name}")
    else:
        print("No pending continuation")
    return EXIT_OK


def main(argv: list[str] | None = None) -> int:
    """Parse arguments, load configuration and dispatch the command."""
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = load_config(args.config, overrides=build_overrides(args))
    except (FileNotFoundError, yaml.YAMLError, ValidationError) as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return InvalidArgumentError.exit_code

    setup_logging(config.logging)

    try:
        if args.command == "run":
            return asyncio.run(cmd_run(config))
        if args.command == "check":
            return asyncio.run(cmd_check(config))
        if args.command == "resume":
            return asyncio.run(cmd_resume(config, args.workloads))
        if args.command == "cancel-continuation":
            return asyncio.run(cmd_cancel_continuation(config))
    except UpgradeError as e:
        logger.error(f"{args.command} failed: {e.message}", extra={"error": e.to_dict()})
        return e.exit_code

    parser.error(f"unknown command {args.command}")
    return InvalidArgumentError.exit_code
