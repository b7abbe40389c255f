"""
Command line provisioning without CloudFormation.

Usage:
    notes-app-provision plan
    notes-app-provision apply --outputs-file outputs.json
"""

import argparse
import sys
from pathlib import Path
from typing import Optional, Sequence

from .config import ProvisioningConfig, load_config
from .driver import apply, plan
from .errors import ConfigError, ProvisioningError, ValidationError
from .logging import StructuredLogger
from .outputs import report_outputs
from .providers.boto_provider import BotoProvider
from .topology import build_topology


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="notes-app-provision",
        description="Provision the notes app tables, function and GraphQL API",
    )
    parser.add_argument("command", choices=["plan", "apply"], help="Show the steps or provision them")
    parser.add_argument("--artifact", help="Path to the Lambda deployment package (zip)")
    parser.add_argument("--schema", help="Path to the GraphQL schema file")
    parser.add_argument("--region", help="AWS region (default: AWS_REGION / CDK_DEFAULT_REGION)")
    parser.add_argument("--account", help="AWS account ID")
    parser.add_argument("--outputs-file", type=Path, help="Write GraphQLApiURL/GraphQLApiKey as JSON")
    parser.add_argument("--poll-interval", type=float, default=5.0, help="Seconds between AWS status checks")
    return parser


def _config_from_args(args: argparse.Namespace) -> ProvisioningConfig:
    base = load_config()
    return ProvisioningConfig(
        account=args.account or base.account,
        region=args.region or base.region,
        artifact_path=args.artifact or base.artifact_path,
        schema_path=args.schema or base.schema_path,
        runtime=base.runtime,
        handler=base.handler,
    )


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    config = _config_from_args(args)
    logger = StructuredLogger("notes_app.cli")

    try:
        graph = build_topology(config)
        if args.command == "plan":
            for number, (operation, resource) in enumerate(plan(graph), start=1):
                print(f"{number:>3}. {operation} {resource}")
            return 0

        provider = BotoProvider(config.region, poll_interval=args.poll_interval, logger=logger)
        outputs = apply(graph, provider, logger)
    except (ConfigError, ValidationError, ProvisioningError) as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return 1

    report_outputs(outputs, args.outputs_file)
    return 0


if __name__ == "__main__":
    sys.exit(main())
