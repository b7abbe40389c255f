"""Extraction and reporting of the provisioned API endpoint and key."""

import json
from pathlib import Path
from typing import Any, Mapping, Optional

from .errors import ProviderError
from .specs import AuthMode, ProvisionedOutputs

API_URL_OUTPUT = "GraphQLApiURL"
API_KEY_OUTPUT = "GraphQLApiKey"
AUTH_TYPE_OUTPUT = "AuthenticationType"

# Written in place of a key when the API does not use API_KEY auth
NO_API_KEY = "No API Key"


def extract_outputs(provider_response: Mapping[str, Any]) -> ProvisionedOutputs:
    """Read the API URL and key out of a provider's output description.

    The URL is mandatory. The key is reported as None when the provider gave
    none, gave the NO_API_KEY marker, or reports a non key-based auth mode.

    Raises:
        ProviderError: the response carries no API URL
    """
    url = provider_response.get(API_URL_OUTPUT)
    if not url:
        raise ProviderError(API_URL_OUTPUT, "describe_outputs", "provider response has no API URL")

    key = provider_response.get(API_KEY_OUTPUT)
    auth_type = provider_response.get(AUTH_TYPE_OUTPUT, AuthMode.API_KEY)
    if auth_type != AuthMode.API_KEY or not key or key == NO_API_KEY:
        key = None

    return ProvisionedOutputs(api_url=str(url), api_key=key)


def report_outputs(outputs: ProvisionedOutputs, path: Optional[Path] = None) -> None:
    """Print outputs to the console and optionally write them to a JSON file."""
    print(f"{API_URL_OUTPUT}: {outputs.api_url}")
    print(f"{API_KEY_OUTPUT}: {outputs.api_key if outputs.has_api_key else NO_API_KEY}")

    if path is not None:
        path.write_text(json.dumps(outputs.to_dict(), indent=2) + "\n")
