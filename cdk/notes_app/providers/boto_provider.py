"""
Direct AWS API provider.

Provisions the topology with boto3 instead of CloudFormation. Each primitive
describes the live resource first and only creates or updates what differs,
so re-running converges on the same resources.
"""

import base64
import hashlib
import json
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Iterator, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from ..errors import ProviderError
from ..logging import StructuredLogger
from ..outputs import API_KEY_OUTPUT, API_URL_OUTPUT, AUTH_TYPE_OUTPUT, NO_API_KEY
from ..specs import (
    Access,
    AttributeSpec,
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

LAMBDA_BASIC_EXECUTION_POLICY = "arn:aws:iam::aws:policy/service-role/AWSLambdaBasicExecutionRole"
LAMBDA_DATA_SOURCE_NAME = "LambdaDataSource"

# Same action sets the CDK Table.grant_*_data helpers emit
DYNAMODB_READ_ACTIONS = [
    "dynamodb:BatchGetItem",
    "dynamodb:GetRecords",
    "dynamodb:GetShardIterator",
    "dynamodb:Query",
    "dynamodb:GetItem",
    "dynamodb:Scan",
    "dynamodb:ConditionCheckItem",
    "dynamodb:DescribeTable",
]
DYNAMODB_WRITE_ACTIONS = [
    "dynamodb:BatchWriteItem",
    "dynamodb:PutItem",
    "dynamodb:UpdateItem",
    "dynamodb:DeleteItem",
    "dynamodb:DescribeTable",
]

SECONDS_PER_DAY = 86400


def _error_code(error: ClientError) -> str:
    return error.response.get("Error", {}).get("Code", "")


@contextmanager
def _calling(resource: str, operation: str) -> Iterator[None]:
    """Raise AWS and local I/O failures as ProviderError tagged with the resource."""
    try:
        yield
    except ClientError as e:
        message = e.response.get("Error", {}).get("Message", str(e))
        raise ProviderError(resource, operation, f"{_error_code(e)}: {message}") from e
    except (BotoCoreError, OSError) as e:
        raise ProviderError(resource, operation, str(e)) from e


def _trust_policy(service: str) -> str:
    return json.dumps(
        {
            "Version": "2012-10-17",
            "Statement": [
                {
                    "Effect": "Allow",
                    "Principal": {"Service": service},
                    "Action": "sts:AssumeRole",
                }
            ],
        }
    )


def _check_partition_key(
    resource: str, operation: str, table: dict, key_schema: list[dict], key: AttributeSpec
) -> None:
    """Raise when a live key schema does not match the desired partition key."""
    hash_key = next(k["AttributeName"] for k in key_schema if k["KeyType"] == "HASH")
    if hash_key != key.name:
        raise ProviderError(resource, operation, f"partition key is {hash_key}, cannot change it to {key.name}")
    types = {d["AttributeName"]: d["AttributeType"] for d in table.get("AttributeDefinitions", [])}
    live_type = types.get(hash_key)
    if live_type is not None and live_type != key.type:
        raise ProviderError(
            resource, operation, f"partition key {hash_key} has type {live_type}, cannot change it to {key.type}"
        )


def grant_actions(access: str) -> list[str]:
    """IAM actions for an access level, deduplicated and in a stable order."""
    if access == Access.READ:
        actions = DYNAMODB_READ_ACTIONS
    elif access == Access.WRITE:
        actions = DYNAMODB_WRITE_ACTIONS
    else:
        actions = DYNAMODB_READ_ACTIONS + DYNAMODB_WRITE_ACTIONS
    return list(dict.fromkeys(actions))


def code_sha256(code: bytes) -> str:
    """Digest in the format Lambda reports as CodeSha256."""
    return base64.b64encode(hashlib.sha256(code).digest()).decode()


class BotoProvider(Provider):
    """
    Provider backed by the DynamoDB, IAM, Lambda and AppSync APIs.

    Args:
        region: AWS region to provision in
        session: boto3 session (a new one is created for the region if omitted)
        poll_interval: Seconds between status checks while waiting on AWS
        max_attempts: Status checks before giving up on a resource
        logger: Structured logger
        clock: Returns the current epoch time (used for API key expiry)
    """

    def __init__(
        self,
        region: str,
        session: Optional[Any] = None,
        poll_interval: float = 5.0,
        max_attempts: int = 60,
        logger: Optional[StructuredLogger] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.region = region
        self.session = session or boto3.session.Session(region_name=region)
        self.poll_interval = poll_interval
        self.max_attempts = max_attempts
        self.logger = logger or StructuredLogger(__name__)
        self.clock = clock
        self._clients: dict[str, Any] = {}

    def get_client(self, service: str) -> Any:
        """Get a cached boto3 client."""
        if service not in self._clients:
            self._clients[service] = self.session.client(service, region_name=self.region)
        return self._clients[service]

    def _wait(self, resource: str, operation: str, check: Callable[[], Optional[Any]]) -> Any:
        """Poll `check` until it returns something other than None."""
        for attempt in range(self.max_attempts):
            result = check()
            if result is not None:
                return result
            if attempt < self.max_attempts - 1:
                time.sleep(self.poll_interval)
        raise ProviderError(resource, operation, f"not ready after {self.max_attempts} checks")

    # --- DynamoDB ---

    def _describe_table(self, name: str) -> Optional[dict]:
        try:
            return self.get_client("dynamodb").describe_table(TableName=name)["Table"]
        except ClientError as e:
            if _error_code(e) == "ResourceNotFoundException":
                return None
            raise

    def _wait_for_table(self, name: str) -> dict:
        def check() -> Optional[dict]:
            table = self._describe_table(name)
            if table is None or table.get("TableStatus") != "ACTIVE":
                return None
            for index in table.get("GlobalSecondaryIndexes", []):
                if index.get("IndexStatus", "ACTIVE") != "ACTIVE":
                    return None
            return table

        return self._wait(name, "wait_for_table", check)

    def ensure_collection(self, spec: KeyedCollectionSpec) -> dict[str, Any]:
        client = self.get_client("dynamodb")
        retain = spec.removal_policy == RemovalPolicy.RETAIN
        with _calling(spec.name, "ensure_collection"):
            table = self._describe_table(spec.name)
            if table is None:
                key = spec.partition_key
                params: dict[str, Any] = {
                    "TableName": spec.name,
                    "KeySchema": [{"AttributeName": key.name, "KeyType": "HASH"}],
                    "AttributeDefinitions": [{"AttributeName": key.name, "AttributeType": key.type}],
                    "BillingMode": spec.billing_mode,
                }
                if spec.billing_mode == BillingMode.PROVISIONED:
                    params["ProvisionedThroughput"] = {"ReadCapacityUnits": 5, "WriteCapacityUnits": 5}
                if retain:
                    params["DeletionProtectionEnabled"] = True
                client.create_table(**params)
                self.logger.info("Created table", table=spec.name)
            else:
                _check_partition_key(spec.name, "ensure_collection", table, table["KeySchema"], spec.partition_key)
                updates: dict[str, Any] = {}
                current_billing = table.get("BillingModeSummary", {}).get("BillingMode", BillingMode.PROVISIONED)
                if current_billing != spec.billing_mode:
                    updates["BillingMode"] = spec.billing_mode
                if bool(table.get("DeletionProtectionEnabled", False)) != retain:
                    updates["DeletionProtectionEnabled"] = retain
                if updates:
                    client.update_table(TableName=spec.name, **updates)
                    self.logger.info("Updated table", table=spec.name, changes=sorted(updates))
            table = self._wait_for_table(spec.name)
        return {"name": table["TableName"], "arn": table["TableArn"]}

    def ensure_secondary_index(self, collection: dict[str, Any], index: SecondaryIndexSpec) -> None:
        name = collection["name"]
        resource = f"{name}/{index.index_name}"
        with _calling(resource, "ensure_secondary_index"):
            table = self._wait_for_table(name)
            existing = {gsi["IndexName"]: gsi for gsi in table.get("GlobalSecondaryIndexes", [])}
            if index.index_name in existing:
                live = existing[index.index_name]
                _check_partition_key(resource, "ensure_secondary_index", table, live["KeySchema"], index.partition_key)
                return
            create: dict[str, Any] = {
                "IndexName": index.index_name,
                "KeySchema": [{"AttributeName": index.partition_key.name, "KeyType": "HASH"}],
                "Projection": {"ProjectionType": index.projection},
            }
            if table.get("BillingModeSummary", {}).get("BillingMode", BillingMode.PROVISIONED) == BillingMode.PROVISIONED:
                create["ProvisionedThroughput"] = {"ReadCapacityUnits": 5, "WriteCapacityUnits": 5}
            # DynamoDB builds one new index per UpdateTable call
            self.get_client("dynamodb").update_table(
                TableName=name,
                AttributeDefinitions=[
                    {"AttributeName": index.partition_key.name, "AttributeType": index.partition_key.type}
                ],
                GlobalSecondaryIndexUpdates=[{"Create": create}],
            )
            self.logger.info("Creating index", table=name, index=index.index_name)
            self._wait_for_table(name)

    # --- IAM ---

    def _ensure_role(self, role_name: str, service: str, managed_policies: list[str]) -> str:
        iam = self.get_client("iam")
        try:
            arn = iam.get_role(RoleName=role_name)["Role"]["Arn"]
        except ClientError as e:
            if _error_code(e) != "NoSuchEntity":
                raise
            arn = iam.create_role(RoleName=role_name, AssumeRolePolicyDocument=_trust_policy(service))["Role"]["Arn"]
            self.logger.info("Created role", role=role_name)
        for policy_arn in managed_policies:
            iam.attach_role_policy(RoleName=role_name, PolicyArn=policy_arn)
        return arn

    # --- Lambda ---

    def _function_ready(self, name: str) -> Callable[[], Optional[dict]]:
        def check() -> Optional[dict]:
            config = self.get_client("lambda").get_function_configuration(FunctionName=name)
            if config.get("State") == "Failed" or config.get("LastUpdateStatus") == "Failed":
                reason = config.get("LastUpdateStatusReason") or config.get("StateReason") or "unknown reason"
                raise ProviderError(name, "wait_for_function", reason)
            if config.get("State", "Active") != "Active" or config.get("LastUpdateStatus") == "InProgress":
                return None
            return config

        return check

    def _create_function(self, params: dict[str, Any]) -> dict:
        client = self.get_client("lambda")
        for attempt in range(self.max_attempts):
            try:
                return client.create_function(**params)
            except ClientError as e:
                message = e.response.get("Error", {}).get("Message", "")
                # A freshly created role takes a few seconds to become assumable
                if _error_code(e) != "InvalidParameterValueException" or "role" not in message.lower():
                    raise
                if attempt == self.max_attempts - 1:
                    raise
                time.sleep(self.poll_interval)
        raise ProviderError(params["FunctionName"], "ensure_compute_unit", "role never became assumable")

    def ensure_compute_unit(self, spec: ComputeUnitSpec, environment: dict[str, str]) -> dict[str, Any]:
        name = spec.logical_id
        role_name = f"{name}-execution-role"
        client = self.get_client("lambda")
        with _calling(name, "ensure_compute_unit"):
            code = Path(spec.code_path).read_bytes()
            role_arn = self._ensure_role(role_name, "lambda.amazonaws.com", [LAMBDA_BASIC_EXECUTION_POLICY])
            config: dict[str, Any] = {
                "Role": role_arn,
                "Handler": spec.handler,
                "Runtime": spec.runtime,
                "Timeout": spec.timeout_seconds,
                "MemorySize": spec.memory_mb,
                "Environment": {"Variables": dict(environment)},
            }
            try:
                existing = client.get_function(FunctionName=name)["Configuration"]
            except ClientError as e:
                if _error_code(e) != "ResourceNotFoundException":
                    raise
                existing = None

            if existing is None:
                arn = self._create_function({"FunctionName": name, "Code": {"ZipFile": code}, **config})["FunctionArn"]
                self.logger.info("Created function", function=name)
            else:
                arn = existing["FunctionArn"]
                if existing.get("CodeSha256") != code_sha256(code):
                    client.update_function_code(FunctionName=name, ZipFile=code)
                    self._wait(name, "wait_for_function", self._function_ready(name))
                client.update_function_configuration(FunctionName=name, **config)
                self.logger.info("Updated function", function=name)
            self._wait(name, "wait_for_function", self._function_ready(name))
        return {"name": name, "arn": arn, "role_name": role_name}

    def grant_access(self, grant: PermissionGrant, compute_unit: dict[str, Any], collection: dict[str, Any]) -> None:
        arn = collection["arn"]
        document = {
            "Version": "2012-10-17",
            "Statement": [
                {
                    "Effect": "Allow",
                    "Action": grant_actions(grant.access),
                    "Resource": [arn, f"{arn}/index/*"],
                }
            ],
        }
        with _calling(f"{grant.compute_unit}->{grant.collection}", "grant_access"):
            # put_role_policy replaces the named inline policy
            self.get_client("iam").put_role_policy(
                RoleName=compute_unit["role_name"],
                PolicyName=f"{collection['name']}-{grant.access}",
                PolicyDocument=json.dumps(document),
            )

    # --- AppSync ---

    def _find_api(self, name: str) -> Optional[dict]:
        paginator = self.get_client("appsync").get_paginator("list_graphql_apis")
        for page in paginator.paginate():
            for api in page.get("graphqlApis", []):
                if api["name"] == name:
                    return api
        return None

    def _upload_schema(self, api_id: str, schema_path: str, resource: str) -> None:
        client = self.get_client("appsync")
        client.start_schema_creation(apiId=api_id, definition=Path(schema_path).read_bytes())

        def check() -> Optional[str]:
            response = client.get_schema_creation_status(apiId=api_id)
            status = response.get("status")
            if status == "FAILED":
                raise ProviderError(resource, "upload_schema", response.get("details", "schema rejected"))
            return status if status in ("SUCCESS", "ACTIVE") else None

        self._wait(resource, "upload_schema", check)

    def _ensure_api_key(self, api_id: str, expiry_days: int) -> str:
        client = self.get_client("appsync")
        now = self.clock()
        # Expiry must be rounded down to the hour
        expires = int((now + expiry_days * SECONDS_PER_DAY) // 3600 * 3600)
        for key in client.list_api_keys(apiId=api_id).get("apiKeys", []):
            if key.get("expires", 0) <= now:
                continue
            if key["expires"] < expires:
                client.update_api_key(apiId=api_id, id=key["id"], expires=expires)
                self.logger.info("Extended API key", apiId=api_id, expires=expires)
            return key["id"]
        key = client.create_api_key(apiId=api_id, description="notes-api key", expires=expires)["apiKey"]
        self.logger.info("Created API key", apiId=api_id, expires=expires)
        return key["id"]

    def _ensure_lambda_data_source(self, api_name: str, api_id: str, function_arn: str) -> str:
        client = self.get_client("appsync")
        role_name = f"{api_name}-lambda-ds-role"
        role_arn = self._ensure_role(role_name, "appsync.amazonaws.com", [])
        self.get_client("iam").put_role_policy(
            RoleName=role_name,
            PolicyName="invoke-function",
            PolicyDocument=json.dumps(
                {
                    "Version": "2012-10-17",
                    "Statement": [
                        {
                            "Effect": "Allow",
                            "Action": "lambda:InvokeFunction",
                            "Resource": [function_arn, f"{function_arn}:*"],
                        }
                    ],
                }
            ),
        )
        params = {
            "apiId": api_id,
            "name": LAMBDA_DATA_SOURCE_NAME,
            "type": "AWS_LAMBDA",
            "serviceRoleArn": role_arn,
            "lambdaConfig": {"lambdaFunctionArn": function_arn},
        }
        try:
            client.get_data_source(apiId=api_id, name=LAMBDA_DATA_SOURCE_NAME)
        except ClientError as e:
            if _error_code(e) != "NotFoundException":
                raise
            client.create_data_source(**params)
        else:
            client.update_data_source(**params)
        return LAMBDA_DATA_SOURCE_NAME

    def ensure_gateway(self, spec: GatewaySpec, compute_unit: dict[str, Any]) -> dict[str, Any]:
        client = self.get_client("appsync")
        params = {
            "name": spec.name,
            "authenticationType": spec.auth.mode,
            "xrayEnabled": spec.xray_enabled,
        }
        with _calling(spec.name, "ensure_gateway"):
            api = self._find_api(spec.name)
            if api is None:
                api = client.create_graphql_api(**params)["graphqlApi"]
                self.logger.info("Created GraphQL API", api=spec.name, apiId=api["apiId"])
            else:
                api = client.update_graphql_api(apiId=api["apiId"], **params)["graphqlApi"]
            api_id = api["apiId"]
            self._upload_schema(api_id, spec.schema_path, spec.name)
            api_key = self._ensure_api_key(api_id, spec.auth.api_key_expiry_days) if spec.auth.uses_api_key else None
            data_source = self._ensure_lambda_data_source(spec.name, api_id, compute_unit["arn"])
        return {"api_id": api_id, "url": api["uris"]["GRAPHQL"], "data_source": data_source, "api_key": api_key}

    def ensure_operation_binding(self, binding: OperationBinding, gateway: dict[str, Any]) -> None:
        client = self.get_client("appsync")
        params = {
            "apiId": gateway["api_id"],
            "typeName": binding.category,
            "fieldName": binding.name,
            "dataSourceName": gateway["data_source"],
        }
        with _calling(f"{binding.category}.{binding.name}", "ensure_operation_binding"):
            try:
                client.get_resolver(apiId=gateway["api_id"], typeName=binding.category, fieldName=binding.name)
            except ClientError as e:
                if _error_code(e) != "NotFoundException":
                    raise
                client.create_resolver(**params)
            else:
                client.update_resolver(**params)

    def describe_outputs(self, spec: GatewaySpec, gateway: dict[str, Any]) -> dict[str, Any]:
        return {
            API_URL_OUTPUT: gateway["url"],
            API_KEY_OUTPUT: gateway.get("api_key") or NO_API_KEY,
            AUTH_TYPE_OUTPUT: spec.auth.mode,
        }
