"""
Declarative resource specs for the notes app.

Specs are plain frozen dataclasses: they describe desired resources and never
talk to AWS. Values that depend on generated identifiers (a table's physical
name, its ARN) are expressed with reference types and resolved by the driver
once the referenced resource exists.
"""

from dataclasses import dataclass, field
from typing import Mapping, Union

from .errors import ValidationError


class AttributeType:
    """DynamoDB scalar attribute types."""

    STRING = "S"
    NUMBER = "N"
    BINARY = "B"

    ALL = (STRING, NUMBER, BINARY)


class BillingMode:
    PAY_PER_REQUEST = "PAY_PER_REQUEST"
    PROVISIONED = "PROVISIONED"


class RemovalPolicy:
    RETAIN = "retain"
    DESTROY = "destroy"


class Access:
    READ = "read"
    WRITE = "write"
    READ_WRITE = "read_write"

    ALL = (READ, WRITE, READ_WRITE)


class AuthMode:
    """AppSync authorization types."""

    API_KEY = "API_KEY"
    AWS_IAM = "AWS_IAM"
    USER_POOL = "AMAZON_COGNITO_USER_POOLS"
    OIDC = "OPENID_CONNECT"
    LAMBDA = "AWS_LAMBDA"

    ALL = (API_KEY, AWS_IAM, USER_POOL, OIDC, LAMBDA)


class OperationCategory:
    QUERY = "Query"
    MUTATION = "Mutation"

    ALL = (QUERY, MUTATION)


# AppSync refuses API keys that live longer than a year.
MAX_API_KEY_EXPIRY_DAYS = 365


@dataclass(frozen=True)
class AttributeSpec:
    name: str
    type: str = AttributeType.STRING

    def __post_init__(self) -> None:
        if not self.name:
            raise ValidationError("Attribute name must not be empty")
        if self.type not in AttributeType.ALL:
            raise ValidationError(f"Unsupported attribute type {self.type!r} for {self.name}", attribute=self.name)


@dataclass(frozen=True)
class SecondaryIndexSpec:
    index_name: str
    partition_key: AttributeSpec
    projection: str = "ALL"

    def __post_init__(self) -> None:
        if not self.index_name:
            raise ValidationError("Secondary index name must not be empty")


@dataclass(frozen=True)
class KeyedCollectionSpec:
    """A DynamoDB table with a string-typed partition key and optional GSIs."""

    logical_id: str
    name: str
    partition_key: AttributeSpec
    secondary_indexes: tuple[SecondaryIndexSpec, ...] = ()
    billing_mode: str = BillingMode.PAY_PER_REQUEST
    removal_policy: str = RemovalPolicy.DESTROY

    def __post_init__(self) -> None:
        seen: set[str] = set()
        for index in self.secondary_indexes:
            if index.index_name in seen:
                raise ValidationError(
                    f"Duplicate secondary index {index.index_name} on {self.name}",
                    collection=self.name,
                    index=index.index_name,
                )
            seen.add(index.index_name)
        if self.removal_policy not in (RemovalPolicy.RETAIN, RemovalPolicy.DESTROY):
            raise ValidationError(f"Unknown removal policy {self.removal_policy!r}", collection=self.name)

    def attribute_definitions(self) -> list[AttributeSpec]:
        """Every key attribute the table declares, primary key first, without duplicates."""
        attributes = {self.partition_key.name: self.partition_key}
        for index in self.secondary_indexes:
            key = index.partition_key
            existing = attributes.get(key.name)
            if existing is not None and existing.type != key.type:
                raise ValidationError(
                    f"Attribute {key.name} declared as both {existing.type} and {key.type} on {self.name}",
                    collection=self.name,
                    attribute=key.name,
                )
            attributes[key.name] = key
        return list(attributes.values())


@dataclass(frozen=True)
class CollectionNameRef:
    """Placeholder for a collection's generated physical name."""

    logical_id: str


@dataclass(frozen=True)
class CollectionArnRef:
    """Placeholder for a collection's generated ARN."""

    logical_id: str


EnvValue = Union[str, CollectionNameRef, CollectionArnRef]


@dataclass(frozen=True)
class ComputeUnitSpec:
    logical_id: str
    runtime: str
    handler: str
    code_path: str
    timeout_seconds: int = 30
    memory_mb: int = 512
    environment: Mapping[str, EnvValue] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.timeout_seconds <= 0 or self.timeout_seconds > 900:
            raise ValidationError("Timeout must be between 1 and 900 seconds", compute_unit=self.logical_id)
        if self.memory_mb < 128 or self.memory_mb > 10240:
            raise ValidationError("Memory must be between 128 and 10240 MB", compute_unit=self.logical_id)


@dataclass(frozen=True)
class PermissionGrant:
    compute_unit: str
    collection: str
    access: str = Access.READ_WRITE

    def __post_init__(self) -> None:
        if self.access not in Access.ALL:
            raise ValidationError(f"Unknown access level {self.access!r}", collection=self.collection)


@dataclass(frozen=True)
class AuthPolicy:
    mode: str = AuthMode.API_KEY
    api_key_expiry_days: int | None = MAX_API_KEY_EXPIRY_DAYS

    def __post_init__(self) -> None:
        if self.mode not in AuthMode.ALL:
            raise ValidationError(f"Unknown authorization mode {self.mode!r}")
        if self.mode == AuthMode.API_KEY:
            days = self.api_key_expiry_days
            if days is None or days < 1 or days > MAX_API_KEY_EXPIRY_DAYS:
                raise ValidationError(
                    f"API key expiry must be between 1 and {MAX_API_KEY_EXPIRY_DAYS} days",
                    api_key_expiry_days=days,
                )

    @property
    def uses_api_key(self) -> bool:
        return self.mode == AuthMode.API_KEY


@dataclass(frozen=True)
class GatewaySpec:
    logical_id: str
    name: str
    schema_path: str
    backing_compute_unit: str
    auth: AuthPolicy = field(default_factory=AuthPolicy)
    xray_enabled: bool = True


@dataclass(frozen=True)
class OperationBinding:
    category: str
    name: str
    compute_unit: str

    def __post_init__(self) -> None:
        if self.category not in OperationCategory.ALL:
            raise ValidationError(f"Unknown operation category {self.category!r}", operation=self.name)
        if not self.name:
            raise ValidationError("Operation name must not be empty")

    @property
    def key(self) -> tuple[str, str]:
        return (self.category, self.name)


@dataclass(frozen=True)
class ResourceGraph:
    """The full topology submitted to the driver in one piece."""

    collections: tuple[KeyedCollectionSpec, ...]
    compute_unit: ComputeUnitSpec
    grants: tuple[PermissionGrant, ...]
    gateway: GatewaySpec
    bindings: tuple[OperationBinding, ...]

    def __post_init__(self) -> None:
        self.validate()

    def collection(self, logical_id: str) -> KeyedCollectionSpec:
        for spec in self.collections:
            if spec.logical_id == logical_id:
                return spec
        raise ValidationError(f"Unknown collection {logical_id}", collection=logical_id)

    def bindings_for(self, category: str) -> list[OperationBinding]:
        return [binding for binding in self.bindings if binding.category == category]

    def validate(self) -> "ResourceGraph":
        """Check uniqueness and that every reference points at a declared resource.

        Runs on construction; apply() calls it again before touching a provider.

        Returns:
            The graph itself

        Raises:
            ValidationError: on the first problem found
        """
        collection_ids: set[str] = set()
        for spec in self.collections:
            if spec.logical_id in collection_ids:
                raise ValidationError(f"Duplicate collection {spec.logical_id}", collection=spec.logical_id)
            collection_ids.add(spec.logical_id)
            spec.attribute_definitions()

        unit_id = self.compute_unit.logical_id
        for key, value in self.compute_unit.environment.items():
            if isinstance(value, (CollectionNameRef, CollectionArnRef)) and value.logical_id not in collection_ids:
                raise ValidationError(
                    f"Environment variable {key} references unknown collection {value.logical_id}",
                    variable=key,
                )

        for grant in self.grants:
            if grant.compute_unit != unit_id:
                raise ValidationError(f"Grant references unknown compute unit {grant.compute_unit}")
            if grant.collection not in collection_ids:
                raise ValidationError(f"Grant references unknown collection {grant.collection}")

        if self.gateway.backing_compute_unit != unit_id:
            raise ValidationError(f"Gateway is backed by unknown compute unit {self.gateway.backing_compute_unit}")

        seen: set[tuple[str, str]] = set()
        for binding in self.bindings:
            if binding.key in seen:
                raise ValidationError(
                    f"Duplicate {binding.category} operation {binding.name}",
                    category=binding.category,
                    operation=binding.name,
                )
            seen.add(binding.key)
            if binding.compute_unit != unit_id:
                raise ValidationError(f"Operation {binding.name} is bound to unknown compute unit {binding.compute_unit}")

        return self


@dataclass(frozen=True)
class ProvisionedOutputs:
    api_url: str
    api_key: str | None = None

    @property
    def has_api_key(self) -> bool:
        return self.api_key is not None

    def to_dict(self) -> dict[str, str | None]:
        return {"GraphQLApiURL": self.api_url, "GraphQLApiKey": self.api_key}
