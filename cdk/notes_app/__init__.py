"""
Infrastructure for the notes app: DynamoDB tables, a Lambda function and an
AppSync GraphQL API.

- specs.py: declarative resource specs and the resource graph
- topology.py: the notes app topology
- driver.py: applies a graph through a provider
- outputs.py: API URL and key extraction
- stack.py: CDK stack entry point
"""

from .driver import apply, plan
from .errors import ConfigError, ProviderError, ProvisioningError, ValidationError
from .outputs import extract_outputs
from .topology import build_topology

__all__ = [
    "apply",
    "plan",
    "build_topology",
    "extract_outputs",
    "ConfigError",
    "ValidationError",
    "ProviderError",
    "ProvisioningError",
]
