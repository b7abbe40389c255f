"""
Provisioning driver.

Applies a ResourceGraph through a Provider in dependency order:

    collections (each followed by its indexes)
    -> compute unit (environment resolved against the collections)
    -> permission grants
    -> gateway
    -> operation bindings
    -> outputs

The first ProviderError stops the run. Whatever was applied stays in place;
re-running apply converges because every provider primitive is idempotent.
"""

from typing import Any, Callable, Optional, TypeVar

from .errors import ProviderError, ProvisioningError, ValidationError
from .logging import StructuredLogger
from .outputs import extract_outputs
from .providers.base import Provider
from .specs import CollectionArnRef, CollectionNameRef, EnvValue, ProvisionedOutputs, ResourceGraph

T = TypeVar("T")


def _grant_label(grant: Any) -> str:
    return f"{grant.compute_unit}->{grant.collection}"


def plan(graph: ResourceGraph) -> list[tuple[str, str]]:
    """Ordered (operation, resource) steps apply() will perform, without calling anything."""
    steps: list[tuple[str, str]] = []
    for collection in graph.collections:
        steps.append(("ensure_collection", collection.name))
        for index in collection.secondary_indexes:
            steps.append(("ensure_secondary_index", f"{collection.name}/{index.index_name}"))
    steps.append(("ensure_compute_unit", graph.compute_unit.logical_id))
    for grant in graph.grants:
        steps.append(("grant_access", _grant_label(grant)))
    steps.append(("ensure_gateway", graph.gateway.name))
    for binding in graph.bindings:
        steps.append(("ensure_operation_binding", f"{binding.category}.{binding.name}"))
    steps.append(("describe_outputs", graph.gateway.name))
    return steps


def resolve_environment(
    environment: dict[str, EnvValue] | Any, collections: dict[str, dict[str, Any]]
) -> dict[str, str]:
    """Replace collection references with the generated names/ARNs the provider returned."""
    resolved: dict[str, str] = {}
    for key, value in environment.items():
        if isinstance(value, CollectionNameRef):
            resolved[key] = collections[value.logical_id]["name"]
        elif isinstance(value, CollectionArnRef):
            resolved[key] = collections[value.logical_id]["arn"]
        else:
            resolved[key] = value
    return resolved


class _Run:
    """Bookkeeping for one apply: completed steps and failure translation."""

    def __init__(self, logger: StructuredLogger):
        self.logger = logger
        self.completed: list[str] = []

    def step(self, operation: str, resource: str, call: Callable[[], T]) -> T:
        self.logger.debug("Applying step", operation=operation, resource=resource)
        try:
            result = call()
        except ProviderError as e:
            self.logger.error(
                "Provisioning step failed",
                operation=operation,
                resource=resource,
                error=e.message,
                completedSteps=len(self.completed),
            )
            raise ProvisioningError(resource, operation, self.completed, e.message) from e
        self.completed.append(f"{operation}:{resource}")
        self.logger.info("Step applied", operation=operation, resource=resource)
        return result


def apply(graph: ResourceGraph, provider: Provider, logger: Optional[StructuredLogger] = None) -> ProvisionedOutputs:
    """Provision the graph and return the API URL and key.

    Args:
        graph: Resource graph from build_topology
        provider: Provider to issue create-or-update calls against
        logger: Structured logger; one is created per run when omitted

    Returns:
        ProvisionedOutputs for the gateway

    Raises:
        ValidationError: the graph is invalid (no provider call is made)
        ProvisioningError: a provider call failed; names the failing resource
    """
    logger = logger or StructuredLogger(__name__)
    try:
        graph.validate()
    except ValidationError as e:
        logger.error("Resource graph is invalid", errorCode=e.error_code, error=e.message, **e.details)
        raise

    run = _Run(logger)
    logger.info("Provisioning started", steps=len(plan(graph)))

    collections: dict[str, dict[str, Any]] = {}
    for spec in graph.collections:
        live = run.step("ensure_collection", spec.name, lambda spec=spec: provider.ensure_collection(spec))
        collections[spec.logical_id] = live
        for index in spec.secondary_indexes:
            run.step(
                "ensure_secondary_index",
                f"{spec.name}/{index.index_name}",
                lambda live=live, index=index: provider.ensure_secondary_index(live, index),
            )

    unit = graph.compute_unit
    environment = resolve_environment(unit.environment, collections)
    function = run.step(
        "ensure_compute_unit", unit.logical_id, lambda: provider.ensure_compute_unit(unit, environment)
    )

    for grant in graph.grants:
        run.step(
            "grant_access",
            _grant_label(grant),
            lambda grant=grant: provider.grant_access(grant, function, collections[grant.collection]),
        )

    gateway = run.step("ensure_gateway", graph.gateway.name, lambda: provider.ensure_gateway(graph.gateway, function))

    for binding in graph.bindings:
        run.step(
            "ensure_operation_binding",
            f"{binding.category}.{binding.name}",
            lambda binding=binding: provider.ensure_operation_binding(binding, gateway),
        )

    outputs = run.step(
        "describe_outputs",
        graph.gateway.name,
        lambda: extract_outputs(provider.describe_outputs(graph.gateway, gateway)),
    )
    logger.info("Provisioning finished", apiUrl=outputs.api_url, apiKeyIssued=outputs.has_api_key)
    return outputs
