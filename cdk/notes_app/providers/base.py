"""Provider interface the driver provisions through."""

from abc import ABC, abstractmethod
from typing import Any

from ..specs import (
    ComputeUnitSpec,
    GatewaySpec,
    KeyedCollectionSpec,
    OperationBinding,
    PermissionGrant,
    SecondaryIndexSpec,
)


class Provider(ABC):
    """
    Idempotent create-or-update primitives over a cloud provider.

    Every method converges on the desired state: calling it again with the
    same spec must not create a second resource. Implementations raise
    ProviderError for any failure and keep their own retry policy.

    Returned dicts describe the live resource and are handed back to the
    later calls that depend on it.
    """

    @abstractmethod
    def ensure_collection(self, spec: KeyedCollectionSpec) -> dict[str, Any]:
        """Create or update a table. Returns at least `name` and `arn`."""

    @abstractmethod
    def ensure_secondary_index(self, collection: dict[str, Any], index: SecondaryIndexSpec) -> None:
        """Add a secondary index to an existing table if missing."""

    @abstractmethod
    def ensure_compute_unit(self, spec: ComputeUnitSpec, environment: dict[str, str]) -> dict[str, Any]:
        """Create or update a function with a resolved environment. Returns `name` and `arn`."""

    @abstractmethod
    def grant_access(self, grant: PermissionGrant, compute_unit: dict[str, Any], collection: dict[str, Any]) -> None:
        """Allow the function to access the table."""

    @abstractmethod
    def ensure_gateway(self, spec: GatewaySpec, compute_unit: dict[str, Any]) -> dict[str, Any]:
        """Create or update the GraphQL API and its Lambda data source. Returns `api_id` and `url`."""

    @abstractmethod
    def ensure_operation_binding(self, binding: OperationBinding, gateway: dict[str, Any]) -> None:
        """Create or update the resolver for one (type, field) pair."""

    @abstractmethod
    def describe_outputs(self, spec: GatewaySpec, gateway: dict[str, Any]) -> dict[str, Any]:
        """Report GraphQLApiURL, GraphQLApiKey and AuthenticationType for the API."""
