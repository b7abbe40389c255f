"""Topology of the notes app: two tables, one Lambda, one AppSync API."""

import os

from .config import ProvisioningConfig
from .errors import ConfigError
from .specs import (
    Access,
    AttributeSpec,
    AttributeType,
    AuthMode,
    AuthPolicy,
    BillingMode,
    CollectionNameRef,
    ComputeUnitSpec,
    GatewaySpec,
    KeyedCollectionSpec,
    OperationBinding,
    OperationCategory,
    PermissionGrant,
    RemovalPolicy,
    ResourceGraph,
    SecondaryIndexSpec,
)

USERS = "Users"
NOTES = "Notes"
FUNCTION_ID = "NotesAppFunction"
API_ID = "NotesApi"
API_NAME = "notes-api"

QUERY_OPERATIONS = (
    "getUserById",
    "getAllUsers",
    "getNoteById",
    "getAllNotes",
    "getNotesByUserId",
)

MUTATION_OPERATIONS = (
    "createUser",
    "updateUser",
    "deleteUser",
    "createNote",
    "updateNote",
    "deleteNote",
)


def _require_path(value: str | None, label: str) -> str:
    if not value:
        raise ConfigError(f"{label} path is not set", setting=label)
    if not os.path.exists(value):
        raise ConfigError(f"{label} not found: {value}", setting=label, path=value)
    return value


def _string_key(name: str) -> AttributeSpec:
    return AttributeSpec(name=name, type=AttributeType.STRING)


def build_topology(config: ProvisioningConfig) -> ResourceGraph:
    """Declare every resource of the notes app.

    Args:
        config: Provisioning configuration (artifact and schema locations, runtime)

    Returns:
        A validated ResourceGraph

    Raises:
        ConfigError: artifact or schema path unset or missing
        ValidationError: the declared graph is inconsistent
    """
    artifact_path = _require_path(config.artifact_path, "Lambda artifact")
    schema_path = _require_path(config.schema_path, "GraphQL schema")

    users = KeyedCollectionSpec(
        logical_id=USERS,
        name=USERS,
        partition_key=_string_key("Id"),
        secondary_indexes=(
            SecondaryIndexSpec("EmailIndex", _string_key("Email")),
            SecondaryIndexSpec("UsernameIndex", _string_key("Username")),
        ),
        billing_mode=BillingMode.PAY_PER_REQUEST,
        removal_policy=RemovalPolicy.DESTROY,
    )

    notes = KeyedCollectionSpec(
        logical_id=NOTES,
        name=NOTES,
        partition_key=_string_key("Id"),
        secondary_indexes=(SecondaryIndexSpec("UserIdIndex", _string_key("UserId")),),
        billing_mode=BillingMode.PAY_PER_REQUEST,
        removal_policy=RemovalPolicy.DESTROY,
    )

    function = ComputeUnitSpec(
        logical_id=FUNCTION_ID,
        runtime=config.runtime,
        handler=config.handler,
        code_path=artifact_path,
        timeout_seconds=30,
        memory_mb=512,
        environment={
            "USERS_TABLE": CollectionNameRef(USERS),
            "NOTES_TABLE": CollectionNameRef(NOTES),
        },
    )

    grants = (
        PermissionGrant(FUNCTION_ID, USERS, Access.READ_WRITE),
        PermissionGrant(FUNCTION_ID, NOTES, Access.READ_WRITE),
    )

    api = GatewaySpec(
        logical_id=API_ID,
        name=API_NAME,
        schema_path=schema_path,
        backing_compute_unit=FUNCTION_ID,
        auth=AuthPolicy(mode=AuthMode.API_KEY, api_key_expiry_days=365),
        xray_enabled=True,
    )

    bindings = tuple(OperationBinding(OperationCategory.QUERY, name, FUNCTION_ID) for name in QUERY_OPERATIONS) + tuple(
        OperationBinding(OperationCategory.MUTATION, name, FUNCTION_ID) for name in MUTATION_OPERATIONS
    )

    return ResourceGraph(
        collections=(users, notes),
        compute_unit=function,
        grants=grants,
        gateway=api,
        bindings=bindings,
    )
