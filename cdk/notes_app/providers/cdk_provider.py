"""
CDK-backed provider.

Each primitive declares the matching construct in a stack. Nothing is called
at synth time; CloudFormation reconciles the template on `cdk deploy`.
Re-applying returns the construct already declared under the same ID.
"""

from contextlib import contextmanager
from typing import Any, Iterator

from aws_cdk import CfnOutput, Duration, Expiration
from aws_cdk import RemovalPolicy as CdkRemovalPolicy
from aws_cdk import aws_appsync as appsync
from aws_cdk import aws_dynamodb as ddb
from aws_cdk import aws_lambda as lambda_
from constructs import Construct
from jsii.errors import JSIIError

from ..errors import ProviderError
from ..outputs import API_KEY_OUTPUT, API_URL_OUTPUT, AUTH_TYPE_OUTPUT, NO_API_KEY
from ..specs import (
    Access,
    AttributeType,
    AuthMode,
    BillingMode,
    ComputeUnitSpec,
    GatewaySpec,
    KeyedCollectionSpec,
    OperationBinding,
    PermissionGrant,
    RemovalPolicy,
    SecondaryIndexSpec,
)
from .base import Provider

_ATTRIBUTE_TYPES = {
    AttributeType.STRING: ddb.AttributeType.STRING,
    AttributeType.NUMBER: ddb.AttributeType.NUMBER,
    AttributeType.BINARY: ddb.AttributeType.BINARY,
}

_PROJECTIONS = {
    "ALL": ddb.ProjectionType.ALL,
    "KEYS_ONLY": ddb.ProjectionType.KEYS_ONLY,
}

_RUNTIMES = {
    "dotnet8": lambda_.Runtime.DOTNET_8,
    "python3.12": lambda_.Runtime.PYTHON_3_12,
    "python3.13": lambda_.Runtime.PYTHON_3_13,
    "nodejs20.x": lambda_.Runtime.NODEJS_20_X,
    "java21": lambda_.Runtime.JAVA_21,
}


@contextmanager
def _declaring(resource: str, operation: str) -> Iterator[None]:
    """Surface construct errors (bad asset path, invalid props) as ProviderError."""
    try:
        yield
    except (JSIIError, RuntimeError, OSError, ValueError) as e:
        raise ProviderError(resource, operation, str(e)) from e


def table_construct_id(spec: KeyedCollectionSpec) -> str:
    return f"{spec.logical_id}Table"


def resolver_construct_id(binding: OperationBinding) -> str:
    return f"{binding.category}{binding.name[:1].upper()}{binding.name[1:]}Resolver"


class CdkProvider(Provider):
    """Declares the topology as CDK constructs inside `scope`."""

    def __init__(self, scope: Construct):
        self.scope = scope
        self.tables: dict[str, ddb.Table] = {}
        self.functions: dict[str, lambda_.Function] = {}
        self.apis: dict[str, appsync.GraphqlApi] = {}
        self.data_sources: dict[str, appsync.LambdaDataSource] = {}

    def ensure_collection(self, spec: KeyedCollectionSpec) -> dict[str, Any]:
        construct_id = table_construct_id(spec)
        table = self.scope.node.try_find_child(construct_id)
        if table is None:
            with _declaring(spec.name, "ensure_collection"):
                table = ddb.Table(
                    self.scope,
                    construct_id,
                    table_name=spec.name,
                    partition_key=ddb.Attribute(
                        name=spec.partition_key.name, type=_ATTRIBUTE_TYPES[spec.partition_key.type]
                    ),
                    billing_mode=(
                        ddb.BillingMode.PAY_PER_REQUEST
                        if spec.billing_mode == BillingMode.PAY_PER_REQUEST
                        else ddb.BillingMode.PROVISIONED
                    ),
                    removal_policy=(
                        CdkRemovalPolicy.RETAIN if spec.removal_policy == RemovalPolicy.RETAIN else CdkRemovalPolicy.DESTROY
                    ),
                )
        self.tables[construct_id] = table
        return {"name": table.table_name, "arn": table.table_arn, "construct_id": construct_id}

    @staticmethod
    def _has_index(table: ddb.Table, index_name: str) -> bool:
        try:
            table.schema(index_name)
        except (JSIIError, RuntimeError):
            return False
        return True

    def ensure_secondary_index(self, collection: dict[str, Any], index: SecondaryIndexSpec) -> None:
        construct_id = collection["construct_id"]
        table = self.tables[construct_id]
        if self._has_index(table, index.index_name):
            return
        with _declaring(f"{construct_id}/{index.index_name}", "ensure_secondary_index"):
            table.add_global_secondary_index(
                index_name=index.index_name,
                partition_key=ddb.Attribute(
                    name=index.partition_key.name, type=_ATTRIBUTE_TYPES[index.partition_key.type]
                ),
                projection_type=_PROJECTIONS.get(index.projection, ddb.ProjectionType.ALL),
            )

    def ensure_compute_unit(self, spec: ComputeUnitSpec, environment: dict[str, str]) -> dict[str, Any]:
        function = self.scope.node.try_find_child(spec.logical_id)
        if function is None:
            with _declaring(spec.logical_id, "ensure_compute_unit"):
                function = lambda_.Function(
                    self.scope,
                    spec.logical_id,
                    runtime=_RUNTIMES.get(spec.runtime) or lambda_.Runtime(spec.runtime),
                    handler=spec.handler,
                    code=lambda_.Code.from_asset(spec.code_path),
                    timeout=Duration.seconds(spec.timeout_seconds),
                    memory_size=spec.memory_mb,
                    environment=environment,
                )
        self.functions[spec.logical_id] = function
        return {"name": function.function_name, "arn": function.function_arn, "construct_id": spec.logical_id}

    def grant_access(self, grant: PermissionGrant, compute_unit: dict[str, Any], collection: dict[str, Any]) -> None:
        table = self.tables[collection["construct_id"]]
        function = self.functions[compute_unit["construct_id"]]
        with _declaring(f"{grant.compute_unit}->{grant.collection}", "grant_access"):
            if grant.access == Access.READ:
                table.grant_read_data(function)
            elif grant.access == Access.WRITE:
                table.grant_write_data(function)
            else:
                table.grant_read_write_data(function)

    def _authorization_config(self, spec: GatewaySpec) -> appsync.AuthorizationConfig:
        auth = spec.auth
        if auth.mode == AuthMode.API_KEY:
            mode = appsync.AuthorizationMode(
                authorization_type=appsync.AuthorizationType.API_KEY,
                api_key_config=appsync.ApiKeyConfig(expires=Expiration.after(Duration.days(auth.api_key_expiry_days))),
            )
        elif auth.mode == AuthMode.AWS_IAM:
            mode = appsync.AuthorizationMode(authorization_type=appsync.AuthorizationType.IAM)
        else:
            raise ProviderError(
                spec.name, "ensure_gateway", f"authorization mode {auth.mode} needs settings this stack does not provide"
            )
        return appsync.AuthorizationConfig(default_authorization=mode)

    def ensure_gateway(self, spec: GatewaySpec, compute_unit: dict[str, Any]) -> dict[str, Any]:
        api = self.scope.node.try_find_child(spec.logical_id)
        if api is None:
            authorization_config = self._authorization_config(spec)
            with _declaring(spec.name, "ensure_gateway"):
                api = appsync.GraphqlApi(
                    self.scope,
                    spec.logical_id,
                    name=spec.name,
                    definition=appsync.Definition.from_file(spec.schema_path),
                    authorization_config=authorization_config,
                    xray_enabled=spec.xray_enabled,
                )
                self.data_sources[spec.logical_id] = api.add_lambda_data_source(
                    "LambdaDataSource", self.functions[compute_unit["construct_id"]]
                )
        elif spec.logical_id not in self.data_sources:
            # Declared by an earlier provider bound to the same stack
            self.data_sources[spec.logical_id] = api.node.find_child("LambdaDataSource")
        self.apis[spec.logical_id] = api
        return {"api_id": api.api_id, "url": api.graphql_url, "construct_id": spec.logical_id}

    def ensure_operation_binding(self, binding: OperationBinding, gateway: dict[str, Any]) -> None:
        api = self.apis[gateway["construct_id"]]
        construct_id = resolver_construct_id(binding)
        if api.node.try_find_child(construct_id) is not None:
            return
        with _declaring(f"{binding.category}.{binding.name}", "ensure_operation_binding"):
            self.data_sources[gateway["construct_id"]].create_resolver(
                construct_id,
                type_name=binding.category,
                field_name=binding.name,
            )

    def describe_outputs(self, spec: GatewaySpec, gateway: dict[str, Any]) -> dict[str, Any]:
        api = self.apis[gateway["construct_id"]]
        api_key = api.api_key if spec.auth.uses_api_key else None
        key_value = api_key or NO_API_KEY
        if self.scope.node.try_find_child(API_URL_OUTPUT) is None:
            CfnOutput(self.scope, API_URL_OUTPUT, value=api.graphql_url)
            CfnOutput(self.scope, API_KEY_OUTPUT, value=key_value)
        return {
            API_URL_OUTPUT: api.graphql_url,
            API_KEY_OUTPUT: key_value,
            AUTH_TYPE_OUTPUT: spec.auth.mode,
        }
