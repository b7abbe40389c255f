"""
Provisioning configuration.

The topology builder only sees a ProvisioningConfig. Reading the process
environment (and the optional .env file) happens here, on the caller side.
"""

import os
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

DEFAULT_RUNTIME = "dotnet8"
DEFAULT_HANDLER = "NotesApp.Lambda::NotesApp.Lambda.Function::FunctionHandler"
DEFAULT_ARTIFACT_NAME = "lambda-package.zip"
DEFAULT_SCHEMA_NAME = "schema.graphql"
DEFAULT_REGION = "us-east-1"


@dataclass(frozen=True)
class ProvisioningConfig:
    """Inputs to the topology builder."""

    account: Optional[str]
    region: str
    artifact_path: Optional[str]
    schema_path: Optional[str]
    runtime: str = DEFAULT_RUNTIME
    handler: str = DEFAULT_HANDLER


def get_region(environ: Optional[Mapping[str, str]] = None) -> str:
    """Get the AWS region from environment variables or default to us-east-1."""
    env = os.environ if environ is None else environ
    return env.get("AWS_REGION") or env.get("CDK_DEFAULT_REGION") or DEFAULT_REGION


def get_account(environ: Optional[Mapping[str, str]] = None, use_sts: bool = False) -> Optional[str]:
    """Get the AWS account ID.

    Args:
        environ: Mapping to read from (defaults to os.environ)
        use_sts: Ask the AWS CLI for the caller identity when the environment has no account

    Returns:
        Account ID, or None if it cannot be determined
    """
    env = os.environ if environ is None else environ
    account = env.get("AWS_ACCOUNT_ID") or env.get("CDK_DEFAULT_ACCOUNT")
    if account or not use_sts:
        return account
    try:
        return subprocess.check_output(
            ["aws", "sts", "get-caller-identity", "--query", "Account", "--output", "text"],
            text=True,
            stderr=subprocess.DEVNULL,
        ).strip()
    except (subprocess.CalledProcessError, FileNotFoundError):
        # Synthesis still works without an account; lookups are skipped
        return None


def load_env_file(env_file: Path, environ: Optional[dict] = None) -> None:
    """Load KEY=VALUE lines into the environment without overriding existing values."""
    env = os.environ if environ is None else environ
    if not env_file.exists():
        return
    with open(env_file) as f:
        for line in f:
            line = line.strip()
            if line and not line.startswith("#") and "=" in line:
                key, value = line.split("=", 1)
                if key.strip() and not env.get(key.strip()):
                    env[key.strip()] = value.strip()


def load_config(
    environ: Optional[Mapping[str, str]] = None,
    base_dir: Optional[Path] = None,
    use_sts: bool = False,
) -> ProvisioningConfig:
    """Build a ProvisioningConfig from environment variables.

    Artifact and schema default to files in `base_dir` (the working directory
    unless given), matching where the build drops them.
    """
    env = os.environ if environ is None else environ
    base = base_dir or Path.cwd()
    return ProvisioningConfig(
        account=get_account(env, use_sts=use_sts),
        region=get_region(env),
        artifact_path=env.get("NOTES_APP_ARTIFACT") or str(base / DEFAULT_ARTIFACT_NAME),
        schema_path=env.get("NOTES_APP_SCHEMA") or str(base / DEFAULT_SCHEMA_NAME),
        runtime=env.get("NOTES_APP_RUNTIME") or DEFAULT_RUNTIME,
        handler=env.get("NOTES_APP_HANDLER") or DEFAULT_HANDLER,
    )
