"""Tests for the boto3-backed provider."""

import json
import os
from dataclasses import replace
from unittest.mock import MagicMock

import boto3
import pytest
from botocore.exceptions import ClientError
from moto import mock_aws

from notes_app.driver import apply
from notes_app.errors import ProviderError, ProvisioningError
from notes_app.providers.boto_provider import (
    DYNAMODB_WRITE_ACTIONS,
    LAMBDA_BASIC_EXECUTION_POLICY,
    BotoProvider,
    code_sha256,
    grant_actions,
)
from notes_app.specs import (
    Access,
    AttributeSpec,
    AuthMode,
    AuthPolicy,
    KeyedCollectionSpec,
    OperationBinding,
    PermissionGrant,
    RemovalPolicy,
    SecondaryIndexSpec,
)

NOW = 1_700_000_000.0
URL = "https://api123.appsync-api.us-east-1.amazonaws.com/graphql"
FUNCTION_ARN = "arn:aws:lambda:us-east-1:123456789012:function:NotesAppFunction"


def client_error(code: str, message: str = "", operation: str = "Operation") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": message}}, operation)


def table_response(name="Users", key="Id", indexes=None, status="ACTIVE", billing="PAY_PER_REQUEST", **extra):
    return {
        "Table": {
            "TableName": name,
            "TableArn": f"arn:aws:dynamodb:us-east-1:123456789012:table/{name}",
            "TableStatus": status,
            "KeySchema": [{"AttributeName": key, "KeyType": "HASH"}],
            "BillingModeSummary": {"BillingMode": billing},
            "GlobalSecondaryIndexes": [
                {
                    "IndexName": index,
                    "IndexStatus": index_status,
                    "KeySchema": [{"AttributeName": index.removesuffix("Index"), "KeyType": "HASH"}],
                }
                for index, index_status in (indexes or {}).items()
            ],
            **extra,
        }
    }


@pytest.fixture
def clients():
    return {name: MagicMock(name=name) for name in ("dynamodb", "iam", "lambda", "appsync")}


@pytest.fixture
def boto_provider(clients, logger):
    session = MagicMock()
    session.client.side_effect = lambda service, region_name=None: clients[service]
    return BotoProvider("us-east-1", session=session, poll_interval=0, max_attempts=3, logger=logger, clock=lambda: NOW)


@pytest.fixture
def users_spec(graph):
    return graph.collection("Users")


class TestGetClient:
    """Tests for client caching."""

    def test_caches_clients(self, boto_provider):
        assert boto_provider.get_client("dynamodb") is boto_provider.get_client("dynamodb")
        assert boto_provider.session.client.call_count == 1


class TestEnsureCollection:
    """Tests for ensure_collection."""

    def test_creates_missing_table(self, boto_provider, clients, users_spec):
        ddb = clients["dynamodb"]
        ddb.describe_table.side_effect = [client_error("ResourceNotFoundException"), table_response()]

        result = boto_provider.ensure_collection(users_spec)

        ddb.create_table.assert_called_once_with(
            TableName="Users",
            KeySchema=[{"AttributeName": "Id", "KeyType": "HASH"}],
            AttributeDefinitions=[{"AttributeName": "Id", "AttributeType": "S"}],
            BillingMode="PAY_PER_REQUEST",
        )
        assert result == {"name": "Users", "arn": "arn:aws:dynamodb:us-east-1:123456789012:table/Users"}

    def test_retain_enables_deletion_protection(self, boto_provider, clients):
        ddb = clients["dynamodb"]
        ddb.describe_table.side_effect = [client_error("ResourceNotFoundException"), table_response("Archive")]
        spec = KeyedCollectionSpec("Archive", "Archive", AttributeSpec("Id"), removal_policy=RemovalPolicy.RETAIN)

        boto_provider.ensure_collection(spec)

        assert ddb.create_table.call_args.kwargs["DeletionProtectionEnabled"] is True

    def test_existing_table_left_alone(self, boto_provider, clients, users_spec):
        ddb = clients["dynamodb"]
        ddb.describe_table.return_value = table_response()

        boto_provider.ensure_collection(users_spec)

        ddb.create_table.assert_not_called()
        ddb.update_table.assert_not_called()

    def test_billing_mode_drift_is_updated(self, boto_provider, clients, users_spec):
        ddb = clients["dynamodb"]
        ddb.describe_table.return_value = table_response(billing="PROVISIONED")

        boto_provider.ensure_collection(users_spec)

        ddb.update_table.assert_called_once_with(TableName="Users", BillingMode="PAY_PER_REQUEST")

    def test_partition_key_is_immutable(self, boto_provider, clients, users_spec):
        clients["dynamodb"].describe_table.return_value = table_response(key="UserKey")

        with pytest.raises(ProviderError, match="partition key is UserKey"):
            boto_provider.ensure_collection(users_spec)

    def test_partition_key_type_is_immutable(self, boto_provider, clients, users_spec):
        clients["dynamodb"].describe_table.return_value = table_response(
            AttributeDefinitions=[{"AttributeName": "Id", "AttributeType": "N"}]
        )

        with pytest.raises(ProviderError, match="partition key Id has type N, cannot change it to S"):
            boto_provider.ensure_collection(users_spec)

    def test_client_error_becomes_provider_error(self, boto_provider, clients, users_spec):
        clients["dynamodb"].describe_table.side_effect = client_error("AccessDeniedException", "not allowed")

        with pytest.raises(ProviderError) as exc_info:
            boto_provider.ensure_collection(users_spec)

        assert exc_info.value.resource == "Users"
        assert exc_info.value.operation == "ensure_collection"
        assert "AccessDeniedException: not allowed" in exc_info.value.message

    def test_gives_up_waiting(self, boto_provider, clients, users_spec):
        clients["dynamodb"].describe_table.return_value = table_response(status="CREATING")

        with pytest.raises(ProviderError, match="not ready after 3 checks"):
            boto_provider.ensure_collection(users_spec)


class TestEnsureSecondaryIndex:
    """Tests for ensure_secondary_index."""

    def test_existing_index_skipped(self, boto_provider, clients):
        ddb = clients["dynamodb"]
        ddb.describe_table.return_value = table_response(indexes={"EmailIndex": "ACTIVE"})

        boto_provider.ensure_secondary_index({"name": "Users"}, SecondaryIndexSpec("EmailIndex", AttributeSpec("Email")))

        ddb.update_table.assert_not_called()

    def test_existing_index_with_other_key_rejected(self, boto_provider, clients):
        table = table_response(indexes={"EmailIndex": "ACTIVE"})
        table["Table"]["GlobalSecondaryIndexes"][0]["KeySchema"] = [{"AttributeName": "Phone", "KeyType": "HASH"}]
        clients["dynamodb"].describe_table.return_value = table

        with pytest.raises(ProviderError) as exc_info:
            boto_provider.ensure_secondary_index(
                {"name": "Users"}, SecondaryIndexSpec("EmailIndex", AttributeSpec("Email"))
            )

        assert exc_info.value.resource == "Users/EmailIndex"
        assert "partition key is Phone, cannot change it to Email" in exc_info.value.message
        clients["dynamodb"].update_table.assert_not_called()

    def test_creates_index_and_waits_until_active(self, boto_provider, clients):
        ddb = clients["dynamodb"]
        ddb.describe_table.side_effect = [
            table_response(indexes={"EmailIndex": "ACTIVE"}),
            table_response(indexes={"EmailIndex": "ACTIVE", "UsernameIndex": "CREATING"}),
            table_response(indexes={"EmailIndex": "ACTIVE", "UsernameIndex": "ACTIVE"}),
        ]

        boto_provider.ensure_secondary_index(
            {"name": "Users"}, SecondaryIndexSpec("UsernameIndex", AttributeSpec("Username"))
        )

        ddb.update_table.assert_called_once_with(
            TableName="Users",
            AttributeDefinitions=[{"AttributeName": "Username", "AttributeType": "S"}],
            GlobalSecondaryIndexUpdates=[
                {
                    "Create": {
                        "IndexName": "UsernameIndex",
                        "KeySchema": [{"AttributeName": "Username", "KeyType": "HASH"}],
                        "Projection": {"ProjectionType": "ALL"},
                    }
                }
            ],
        )
        assert ddb.describe_table.call_count == 3

    def test_provisioned_table_index_gets_throughput(self, boto_provider, clients):
        ddb = clients["dynamodb"]
        ddb.describe_table.return_value = table_response(billing="PROVISIONED")

        boto_provider.ensure_secondary_index({"name": "Users"}, SecondaryIndexSpec("EmailIndex", AttributeSpec("Email")))

        create = ddb.update_table.call_args.kwargs["GlobalSecondaryIndexUpdates"][0]["Create"]
        assert create["ProvisionedThroughput"] == {"ReadCapacityUnits": 5, "WriteCapacityUnits": 5}


class TestEnsureComputeUnit:
    """Tests for ensure_compute_unit."""

    @pytest.fixture
    def ready(self, clients):
        clients["lambda"].get_function_configuration.return_value = {"State": "Active", "LastUpdateStatus": "Successful"}

    def test_creates_role_and_function(self, boto_provider, clients, graph, ready):
        iam, lam = clients["iam"], clients["lambda"]
        iam.get_role.side_effect = client_error("NoSuchEntity")
        iam.create_role.return_value = {"Role": {"Arn": "arn:aws:iam::123456789012:role/NotesAppFunction-execution-role"}}
        lam.get_function.side_effect = client_error("ResourceNotFoundException")
        lam.create_function.return_value = {"FunctionArn": FUNCTION_ARN}

        result = boto_provider.ensure_compute_unit(graph.compute_unit, {"USERS_TABLE": "Users", "NOTES_TABLE": "Notes"})

        trust = json.loads(iam.create_role.call_args.kwargs["AssumeRolePolicyDocument"])
        assert trust["Statement"][0]["Principal"] == {"Service": "lambda.amazonaws.com"}
        iam.attach_role_policy.assert_called_once_with(
            RoleName="NotesAppFunction-execution-role", PolicyArn=LAMBDA_BASIC_EXECUTION_POLICY
        )
        params = lam.create_function.call_args.kwargs
        assert params["FunctionName"] == "NotesAppFunction"
        assert params["Runtime"] == "dotnet8"
        assert params["Timeout"] == 30
        assert params["MemorySize"] == 512
        assert params["Environment"] == {"Variables": {"USERS_TABLE": "Users", "NOTES_TABLE": "Notes"}}
        assert params["Code"]["ZipFile"].startswith(b"PK")
        assert result == {"name": "NotesAppFunction", "arn": FUNCTION_ARN, "role_name": "NotesAppFunction-execution-role"}

    def test_retries_while_role_propagates(self, boto_provider, clients, graph, ready):
        iam, lam = clients["iam"], clients["lambda"]
        iam.get_role.return_value = {"Role": {"Arn": "arn:aws:iam::123456789012:role/r"}}
        lam.get_function.side_effect = client_error("ResourceNotFoundException")
        lam.create_function.side_effect = [
            client_error("InvalidParameterValueException", "The role defined for the function cannot be assumed by Lambda."),
            {"FunctionArn": FUNCTION_ARN},
        ]

        result = boto_provider.ensure_compute_unit(graph.compute_unit, {})

        assert lam.create_function.call_count == 2
        assert result["arn"] == FUNCTION_ARN

    def test_unchanged_code_is_not_reuploaded(self, boto_provider, clients, graph, ready, artifact_path):
        iam, lam = clients["iam"], clients["lambda"]
        iam.get_role.return_value = {"Role": {"Arn": "arn:aws:iam::123456789012:role/r"}}
        lam.get_function.return_value = {
            "Configuration": {"FunctionArn": FUNCTION_ARN, "CodeSha256": code_sha256(artifact_path.read_bytes())}
        }

        boto_provider.ensure_compute_unit(graph.compute_unit, {"USERS_TABLE": "Users"})

        lam.create_function.assert_not_called()
        lam.update_function_code.assert_not_called()
        assert lam.update_function_configuration.call_args.kwargs["Environment"] == {"Variables": {"USERS_TABLE": "Users"}}

    def test_changed_code_is_uploaded(self, boto_provider, clients, graph, ready):
        iam, lam = clients["iam"], clients["lambda"]
        iam.get_role.return_value = {"Role": {"Arn": "arn:aws:iam::123456789012:role/r"}}
        lam.get_function.return_value = {"Configuration": {"FunctionArn": FUNCTION_ARN, "CodeSha256": "stale"}}

        boto_provider.ensure_compute_unit(graph.compute_unit, {})

        lam.update_function_code.assert_called_once()
        lam.update_function_configuration.assert_called_once()

    def test_failed_update_raises(self, boto_provider, clients, graph):
        iam, lam = clients["iam"], clients["lambda"]
        iam.get_role.return_value = {"Role": {"Arn": "arn:aws:iam::123456789012:role/r"}}
        lam.get_function.side_effect = client_error("ResourceNotFoundException")
        lam.create_function.return_value = {"FunctionArn": FUNCTION_ARN}
        lam.get_function_configuration.return_value = {"State": "Failed", "StateReason": "bad package"}

        with pytest.raises(ProviderError, match="bad package"):
            boto_provider.ensure_compute_unit(graph.compute_unit, {})


class TestGrantAccess:
    """Tests for grant_access."""

    def test_puts_inline_policy_for_table_and_indexes(self, boto_provider, clients):
        arn = "arn:aws:dynamodb:us-east-1:123456789012:table/Users"

        boto_provider.grant_access(
            PermissionGrant("NotesAppFunction", "Users"),
            {"name": "NotesAppFunction", "role_name": "NotesAppFunction-execution-role"},
            {"name": "Users", "arn": arn},
        )

        kwargs = clients["iam"].put_role_policy.call_args.kwargs
        assert kwargs["RoleName"] == "NotesAppFunction-execution-role"
        assert kwargs["PolicyName"] == "Users-read_write"
        statement = json.loads(kwargs["PolicyDocument"])["Statement"][0]
        assert statement["Resource"] == [arn, f"{arn}/index/*"]
        assert "dynamodb:GetItem" in statement["Action"] and "dynamodb:PutItem" in statement["Action"]

    def test_action_sets(self):
        assert "dynamodb:PutItem" not in grant_actions(Access.READ)
        assert grant_actions(Access.WRITE) == DYNAMODB_WRITE_ACTIONS
        combined = grant_actions(Access.READ_WRITE)
        assert len(combined) == len(set(combined))


class TestEnsureGateway:
    """Tests for ensure_gateway and resolvers."""

    @pytest.fixture
    def appsync(self, clients):
        client = clients["appsync"]
        client.get_schema_creation_status.return_value = {"status": "SUCCESS"}
        clients["iam"].get_role.return_value = {"Role": {"Arn": "arn:aws:iam::123456789012:role/notes-api-lambda-ds-role"}}
        return client

    def test_creates_api_key_and_data_source(self, boto_provider, appsync, graph):
        appsync.get_paginator.return_value.paginate.return_value = [{"graphqlApis": []}]
        appsync.create_graphql_api.return_value = {"graphqlApi": {"apiId": "api123", "uris": {"GRAPHQL": URL}}}
        appsync.list_api_keys.return_value = {"apiKeys": []}
        appsync.create_api_key.return_value = {"apiKey": {"id": "da2-new"}}
        appsync.get_data_source.side_effect = client_error("NotFoundException")

        result = boto_provider.ensure_gateway(graph.gateway, {"arn": FUNCTION_ARN})

        appsync.create_graphql_api.assert_called_once_with(name="notes-api", authenticationType="API_KEY", xrayEnabled=True)
        assert appsync.start_schema_creation.call_args.kwargs["definition"].startswith(b"type User")
        expires = appsync.create_api_key.call_args.kwargs["expires"]
        assert expires % 3600 == 0
        assert NOW + 364 * 86400 < expires <= NOW + 365 * 86400
        ds = appsync.create_data_source.call_args.kwargs
        assert ds["type"] == "AWS_LAMBDA"
        assert ds["lambdaConfig"] == {"lambdaFunctionArn": FUNCTION_ARN}
        assert result == {"api_id": "api123", "url": URL, "data_source": "LambdaDataSource", "api_key": "da2-new"}

    def test_existing_api_and_key_reused(self, boto_provider, appsync, graph):
        appsync.get_paginator.return_value.paginate.return_value = [
            {"graphqlApis": [{"name": "other", "apiId": "x"}, {"name": "notes-api", "apiId": "api123"}]}
        ]
        appsync.update_graphql_api.return_value = {"graphqlApi": {"apiId": "api123", "uris": {"GRAPHQL": URL}}}
        appsync.list_api_keys.return_value = {
            "apiKeys": [{"id": "da2-old", "expires": NOW - 10}, {"id": "da2-live", "expires": NOW + 86400}]
        }

        result = boto_provider.ensure_gateway(graph.gateway, {"arn": FUNCTION_ARN})

        appsync.create_graphql_api.assert_not_called()
        appsync.update_graphql_api.assert_called_once()
        appsync.create_api_key.assert_not_called()
        appsync.update_data_source.assert_called_once()
        assert result["api_key"] == "da2-live"
        appsync.update_api_key.assert_called_once()

    def test_reused_key_expiry_is_extended(self, boto_provider, appsync, graph):
        appsync.get_paginator.return_value.paginate.return_value = [{"graphqlApis": [{"name": "notes-api", "apiId": "api123"}]}]
        appsync.update_graphql_api.return_value = {"graphqlApi": {"apiId": "api123", "uris": {"GRAPHQL": URL}}}
        appsync.list_api_keys.return_value = {"apiKeys": [{"id": "da2-old", "expires": NOW + 3600}]}

        result = boto_provider.ensure_gateway(graph.gateway, {"arn": FUNCTION_ARN})

        appsync.create_api_key.assert_not_called()
        kwargs = appsync.update_api_key.call_args.kwargs
        assert kwargs["apiId"] == "api123"
        assert kwargs["id"] == "da2-old"
        assert kwargs["expires"] % 3600 == 0
        assert NOW + 364 * 86400 < kwargs["expires"] <= NOW + 365 * 86400
        assert result["api_key"] == "da2-old"

    def test_key_already_at_full_expiry_left_alone(self, boto_provider, appsync, graph):
        appsync.get_paginator.return_value.paginate.return_value = [{"graphqlApis": [{"name": "notes-api", "apiId": "api123"}]}]
        appsync.update_graphql_api.return_value = {"graphqlApi": {"apiId": "api123", "uris": {"GRAPHQL": URL}}}
        appsync.list_api_keys.return_value = {"apiKeys": [{"id": "da2-live", "expires": NOW + 365 * 86400}]}

        boto_provider.ensure_gateway(graph.gateway, {"arn": FUNCTION_ARN})

        appsync.update_api_key.assert_not_called()
        appsync.create_api_key.assert_not_called()

    def test_iam_auth_issues_no_key(self, boto_provider, appsync, graph):
        appsync.get_paginator.return_value.paginate.return_value = [{"graphqlApis": []}]
        appsync.create_graphql_api.return_value = {"graphqlApi": {"apiId": "api123", "uris": {"GRAPHQL": URL}}}
        gateway = replace(graph.gateway, auth=AuthPolicy(AuthMode.AWS_IAM, None))

        result = boto_provider.ensure_gateway(gateway, {"arn": FUNCTION_ARN})
        outputs = boto_provider.describe_outputs(gateway, result)

        appsync.list_api_keys.assert_not_called()
        assert outputs == {"GraphQLApiURL": URL, "GraphQLApiKey": "No API Key", "AuthenticationType": "AWS_IAM"}

    def test_schema_failure_raises(self, boto_provider, appsync, graph):
        appsync.get_paginator.return_value.paginate.return_value = [{"graphqlApis": []}]
        appsync.create_graphql_api.return_value = {"graphqlApi": {"apiId": "api123", "uris": {"GRAPHQL": URL}}}
        appsync.get_schema_creation_status.return_value = {"status": "FAILED", "details": "Syntax Error"}

        with pytest.raises(ProviderError, match="Syntax Error"):
            boto_provider.ensure_gateway(graph.gateway, {"arn": FUNCTION_ARN})

    def test_creates_missing_resolver(self, boto_provider, clients):
        appsync = clients["appsync"]
        appsync.get_resolver.side_effect = client_error("NotFoundException")

        boto_provider.ensure_operation_binding(
            OperationBinding("Query", "getAllNotes", "NotesAppFunction"),
            {"api_id": "api123", "data_source": "LambdaDataSource"},
        )

        appsync.create_resolver.assert_called_once_with(
            apiId="api123", typeName="Query", fieldName="getAllNotes", dataSourceName="LambdaDataSource"
        )
        appsync.update_resolver.assert_not_called()

    def test_updates_existing_resolver(self, boto_provider, clients):
        appsync = clients["appsync"]

        boto_provider.ensure_operation_binding(
            OperationBinding("Mutation", "deleteNote", "NotesAppFunction"),
            {"api_id": "api123", "data_source": "LambdaDataSource"},
        )

        appsync.update_resolver.assert_called_once()
        appsync.create_resolver.assert_not_called()


class TestApplyWithBotoProvider:
    """Full apply through the boto provider."""

    def test_failure_is_reported_as_provisioning_error(self, boto_provider, clients, graph, logger):
        clients["dynamodb"].describe_table.return_value = table_response()
        clients["dynamodb"].describe_table.side_effect = None
        clients["lambda"].get_function_configuration.return_value = {"State": "Active"}
        clients["iam"].get_role.side_effect = client_error("AccessDenied", "iam:GetRole denied")

        with pytest.raises(ProvisioningError) as exc_info:
            apply(graph, boto_provider, logger)

        assert exc_info.value.operation == "ensure_compute_unit"
        assert exc_info.value.resource == "NotesAppFunction"
        clients["appsync"].create_graphql_api.assert_not_called()


@pytest.fixture
def aws_credentials():
    """Set fake AWS credentials for moto."""
    os.environ["AWS_ACCESS_KEY_ID"] = "testing"
    os.environ["AWS_SECRET_ACCESS_KEY"] = "testing"
    os.environ["AWS_SECURITY_TOKEN"] = "testing"
    os.environ["AWS_SESSION_TOKEN"] = "testing"
    os.environ["AWS_DEFAULT_REGION"] = "us-east-1"


class TestDynamoDbWithMoto:
    """Table and index creation against moto."""

    def test_creates_tables_with_indexes_once(self, aws_credentials, graph, logger):
        with mock_aws():
            provider = BotoProvider("us-east-1", poll_interval=0, logger=logger)

            for _ in range(2):
                for spec in graph.collections:
                    live = provider.ensure_collection(spec)
                    for index in spec.secondary_indexes:
                        provider.ensure_secondary_index(live, index)

            client = boto3.client("dynamodb", region_name="us-east-1")
            assert sorted(client.list_tables()["TableNames"]) == ["Notes", "Users"]
            users = client.describe_table(TableName="Users")["Table"]
            assert sorted(i["IndexName"] for i in users["GlobalSecondaryIndexes"]) == ["EmailIndex", "UsernameIndex"]
            assert users["KeySchema"] == [{"AttributeName": "Id", "KeyType": "HASH"}]
            notes = client.describe_table(TableName="Notes")["Table"]
            assert [i["IndexName"] for i in notes["GlobalSecondaryIndexes"]] == ["UserIdIndex"]

    def test_grant_writes_role_policy(self, aws_credentials, graph, logger):
        with mock_aws():
            provider = BotoProvider("us-east-1", poll_interval=0, logger=logger)
            iam = boto3.client("iam", region_name="us-east-1")
            iam.create_role(RoleName="NotesAppFunction-execution-role", AssumeRolePolicyDocument="{}")
            users = provider.ensure_collection(graph.collection("Users"))

            provider.grant_access(
                graph.grants[0], {"name": "NotesAppFunction", "role_name": "NotesAppFunction-execution-role"}, users
            )
            provider.grant_access(
                graph.grants[0], {"name": "NotesAppFunction", "role_name": "NotesAppFunction-execution-role"}, users
            )

            policies = iam.list_role_policies(RoleName="NotesAppFunction-execution-role")["PolicyNames"]
            assert policies == ["Users-read_write"]
