"""
Shared fixtures for notes app infrastructure tests.

Provides on-disk artifact/schema files, a config pointing at them and an
in-memory provider that records every call.
"""

import zipfile
from pathlib import Path

import pytest

from notes_app.config import ProvisioningConfig
from notes_app.logging import StructuredLogger
from notes_app.topology import build_topology
from recording_provider import RecordingProvider

SCHEMA_PATH = Path(__file__).resolve().parents[2] / "schema.graphql"


@pytest.fixture
def artifact_path(tmp_path: Path) -> Path:
    """A small Lambda deployment package."""
    path = tmp_path / "lambda-package.zip"
    with zipfile.ZipFile(path, "w") as archive:
        archive.writestr("NotesApp.Lambda.dll", b"placeholder")
    return path


@pytest.fixture
def schema_path() -> Path:
    """The GraphQL schema shipped with the CDK app."""
    return SCHEMA_PATH


@pytest.fixture
def config(artifact_path: Path, schema_path: Path) -> ProvisioningConfig:
    return ProvisioningConfig(
        account="123456789012",
        region="us-east-1",
        artifact_path=str(artifact_path),
        schema_path=str(schema_path),
    )


@pytest.fixture
def graph(config):
    return build_topology(config)


@pytest.fixture
def provider() -> RecordingProvider:
    return RecordingProvider()


@pytest.fixture
def logger() -> StructuredLogger:
    return StructuredLogger("notes_app.tests", correlation_id="test-run", level="ERROR")
