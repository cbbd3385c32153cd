"""cloudplan command line entry point."""

from __future__ import annotations

import argparse
import sys
from typing import Sequence

from cloudplan import __version__
from cloudplan.cli.ux import print_table
from cloudplan.config import get_settings
from cloudplan.logging import configure_logging
from cloudplan.providers import list_providers


def providers_command() -> int:
    rows = [
        [spec.name, spec.version or "unknown", spec.description or ""]
        for spec in list_providers()
    ]
    print_table("Providers", ["Name", "Version", "Description"], rows)
    return 0


def _add_plan_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("plan_file", help="Path to plan YAML file")
    parser.add_argument(
        "--param",
        action="append",
        default=[],
        metavar="NAME=VALUE",
        help="Set a plan parameter (repeatable, overrides the file's parameters)",
    )
    parser.add_argument("--output", choices=["text", "json"], default="text", help="Output format")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="cloudplan",
        description="Dependency-ordered cloud provisioning with rollback",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--log-level", default=None, help="Log level (default from settings)")
    subparsers = parser.add_subparsers(dest="command")

    plan_parser = subparsers.add_parser(
        "plan", help="Validate a plan and show its execution order (no provider calls)"
    )
    _add_plan_arguments(plan_parser)

    provision_parser = subparsers.add_parser(
        "provision", help="Provision a plan, rolling back on failure"
    )
    _add_plan_arguments(provision_parser)
    provision_parser.add_argument("--provider", help="Provider name (see 'cloudplan providers')")
    provision_parser.add_argument("--max-workers", type=int, help="Concurrent resource workers")
    provision_parser.add_argument("--deadline", type=float, help="Overall run deadline in seconds")
    provision_parser.add_argument("--poll-interval", type=float, help="Readiness poll interval in seconds")
    provision_parser.add_argument("--report", help="Write the JSON run report to this path")
    provision_parser.add_argument(
        "--skip-preflight", action="store_true", help="Skip pre-flight checks"
    )

    subparsers.add_parser("providers", help="List registered providers")
    return parser


def main(argv: Sequence[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    settings = get_settings()
    configure_logging(args.log_level or settings.log_level, json_output=settings.log_json)

    if args.command == "plan":
        from cloudplan.cli.plan import plan_command

        sys.exit(plan_command(args.plan_file, params=args.param, output_format=args.output))

    if args.command == "provision":
        from cloudplan.cli.provision import provision_command

        sys.exit(
            provision_command(
                args.plan_file,
                params=args.param,
                provider_name=args.provider,
                max_workers=args.max_workers,
                deadline=args.deadline,
                poll_interval=args.poll_interval,
                report_path=args.report,
                skip_preflight=args.skip_preflight,
                output_format=args.output,
                settings=settings,
            )
        )

    if args.command == "providers":
        sys.exit(providers_command())

    parser.print_help()
    sys.exit(1)
