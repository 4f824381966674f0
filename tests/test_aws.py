"""Tests for the boto3 adapters.

Real clients are used with botocore's Stubber, so request parameters and
response shapes are checked against the service models.
"""

from __future__ import annotations

import json
from collections.abc import Generator
from datetime import UTC, datetime
from urllib.parse import quote

import pytest
from boto3.session import Session
from botocore.exceptions import ClientError, EndpointConnectionError, NoCredentialsError
from botocore.stub import ANY, Stubber

from provisioner.aws import (
    AwsIdentityProvider,
    AwsPolicyStore,
    AwsSecretStore,
    aws_errors,
    parse_policy_document,
    parse_trust_document,
    translate_client_error,
)
from provisioner.errors import PreconditionUnmet, TransientUnavailable
from provisioner.models import DescriptorSet

ACCOUNT = "123456789012"
ISSUER = "oidc.eks.us-east-1.amazonaws.com/id/EXAMPLED539D4633E53DE1B71EXAMPLE"
POLICY_ARN = f"arn:aws:iam::{ACCOUNT}:policy/ExternalSecretsPolicy-app"
ROLE_ARN = f"arn:aws:iam::{ACCOUNT}:role/app-external-secrets"
SECRET_ARN = f"arn:aws:secretsmanager:us-east-1:{ACCOUNT}:secret:app/db-url-AbCdEf"
CREATED = datetime(2024, 1, 1, tzinfo=UTC)


def client_error(code: str, status: int = 400) -> ClientError:
    return ClientError(
        {"Error": {"Code": code, "Message": code}, "ResponseMetadata": {"HTTPStatusCode": status}},
        "Operation",
    )


def trust_document(operator: str, subject: str) -> dict[str, object]:
    conditions: dict[str, dict[str, str]] = {"StringEquals": {f"{ISSUER}:aud": "sts.amazonaws.com"}}
    conditions.setdefault(operator, {})[f"{ISSUER}:sub"] = subject
    return {
        "Version": "2012-10-17",
        "Statement": [
            {
                "Effect": "Allow",
                "Principal": {"Federated": f"arn:aws:iam::{ACCOUNT}:oidc-provider/{ISSUER}"},
                "Action": "sts:AssumeRoleWithWebIdentity",
                "Condition": conditions,
            }
        ],
    }


@pytest.fixture
def session() -> Session:
    return Session(
        region_name="us-east-1",
        aws_access_key_id="testing",
        aws_secret_access_key="testing",
    )


def stub(client: object) -> Stubber:
    stubber = Stubber(client)
    stubber.activate()
    return stubber


# =============================================================================
# Error translation
# =============================================================================


class TestErrorTranslation:
    @pytest.mark.parametrize(
        ("code", "status"),
        [("ThrottlingException", 400), ("Anything", 503), ("Anything", 429)],
    )
    def test_transient(self, code: str, status: int) -> None:
        translated = translate_client_error(client_error(code, status), "key")

        assert isinstance(translated, TransientUnavailable)

    @pytest.mark.parametrize(
        "code", ["EntityAlreadyExists", "ResourceExistsException", "ConcurrentModification"]
    )
    def test_creation_race_is_transient(self, code: str) -> None:
        assert isinstance(translate_client_error(client_error(code), "key"), TransientUnavailable)

    def test_access_denied(self) -> None:
        translated = translate_client_error(client_error("AccessDeniedException"), "key")

        assert isinstance(translated, PreconditionUnmet)
        assert translated.suggestion == "aws sts get-caller-identity"

    def test_other_errors_propagate(self) -> None:
        assert translate_client_error(client_error("MalformedPolicyDocument"), "key") is None

        with pytest.raises(ClientError):
            with aws_errors("key"):
                raise client_error("MalformedPolicyDocument")

    def test_connection_errors(self) -> None:
        with pytest.raises(TransientUnavailable):
            with aws_errors("key"):
                raise EndpointConnectionError(endpoint_url="https://iam.amazonaws.com")

    def test_missing_credentials(self) -> None:
        with pytest.raises(PreconditionUnmet, match="credentials"):
            with aws_errors("key"):
                raise NoCredentialsError()


# =============================================================================
# Document parsing
# =============================================================================


class TestParsePolicyDocument:
    def test_single_statement(self) -> None:
        actions, resources = parse_policy_document(
            {
                "Statement": {
                    "Effect": "Allow",
                    "Action": "secretsmanager:GetSecretValue",
                    "Resource": ["arn:aws:secretsmanager:us-east-1:*:secret:app/db*"],
                }
            }
        )

        assert actions == frozenset({"secretsmanager:GetSecretValue"})
        assert resources == frozenset({"arn:aws:secretsmanager:us-east-1:*:secret:app/db*"})

    def test_url_encoded_document(self) -> None:
        document = {"Statement": [{"Effect": "Allow", "Action": ["a:B"], "Resource": "r"}]}

        actions, resources = parse_policy_document(quote(json.dumps(document)))

        assert actions == frozenset({"a:B"})
        assert resources == frozenset({"r"})

    def test_deny_ignored_and_not_resource_is_wildcard(self) -> None:
        actions, resources = parse_policy_document(
            {
                "Statement": [
                    {"Effect": "Deny", "Action": "*", "Resource": "*"},
                    {"Effect": "Allow", "Action": "a:B", "NotResource": "r"},
                ]
            }
        )

        assert actions == frozenset({"a:B"})
        assert resources == frozenset({"*"})


class TestParseTrustDocument:
    def test_exact_subject(self) -> None:
        subjects, audiences, loose = parse_trust_document(
            trust_document("StringEquals", "system:serviceaccount:default:eso")
        )

        assert subjects == frozenset({"system:serviceaccount:default:eso"})
        assert audiences == frozenset({"sts.amazonaws.com"})
        assert loose is False

    def test_string_like_is_loose(self) -> None:
        _, _, loose = parse_trust_document(
            trust_document("StringLike", "system:serviceaccount:default:*")
        )

        assert loose is True

    def test_missing_subject_condition_is_loose(self) -> None:
        document = {"Statement": [{"Effect": "Allow", "Action": "sts:AssumeRoleWithWebIdentity"}]}

        assert parse_trust_document(document)[2] is True


# =============================================================================
# Secrets Manager
# =============================================================================


class TestAwsSecretStore:
    @pytest.fixture
    def store(self, session: Session) -> Generator[tuple[AwsSecretStore, Stubber], None, None]:
        store = AwsSecretStore(session, "us-east-1")
        stubber = stub(store._client)
        yield store, stubber
        stubber.deactivate()

    def test_describe_missing(self, store: tuple[AwsSecretStore, Stubber]) -> None:
        adapter, stubber = store
        stubber.add_client_error(
            "describe_secret",
            service_error_code="ResourceNotFoundException",
            http_status_code=400,
            expected_params={"SecretId": "app/db-url"},
        )

        assert adapter.describe_secret("app/db-url") is None
        stubber.assert_no_pending_responses()

    def test_describe_existing(self, store: tuple[AwsSecretStore, Stubber]) -> None:
        adapter, stubber = store
        stubber.add_response(
            "describe_secret",
            {"Name": "app/db-url", "ARN": SECRET_ARN, "Description": "Database URL"},
            {"SecretId": "app/db-url"},
        )

        record = adapter.describe_secret("app/db-url")

        assert record is not None
        assert record.arn == SECRET_ARN

    def test_create_is_tagged(self, store: tuple[AwsSecretStore, Stubber]) -> None:
        adapter, stubber = store
        stubber.add_response(
            "create_secret",
            {"Name": "app/db-url", "ARN": SECRET_ARN},
            {
                "Name": "app/db-url",
                "Description": "Database URL",
                "SecretString": "postgres://x",
                "Tags": [{"Key": "managed-by", "Value": "secprov"}],
            },
        )

        record = adapter.create_secret("app/db-url", "postgres://x", "Database URL")

        assert record.name == "app/db-url"
        stubber.assert_no_pending_responses()

    def test_create_race_is_transient(self, store: tuple[AwsSecretStore, Stubber]) -> None:
        adapter, stubber = store
        stubber.add_client_error("create_secret", service_error_code="ResourceExistsException")

        with pytest.raises(TransientUnavailable):
            adapter.create_secret("app/db-url", "postgres://x", "")

    def test_get_value_of_missing_secret(self, store: tuple[AwsSecretStore, Stubber]) -> None:
        adapter, stubber = store
        stubber.add_client_error(
            "get_secret_value", service_error_code="ResourceNotFoundException"
        )

        with pytest.raises(PreconditionUnmet):
            adapter.get_secret_value("app/db-url")

    def test_put_value(self, store: tuple[AwsSecretStore, Stubber]) -> None:
        adapter, stubber = store
        stubber.add_response(
            "put_secret_value",
            {"ARN": SECRET_ARN, "Name": "app/db-url"},
            {"SecretId": "app/db-url", "SecretString": "postgres://new"},
        )

        adapter.put_secret_value("app/db-url", "postgres://new")

        stubber.assert_no_pending_responses()


# =============================================================================
# IAM policies
# =============================================================================


class TestAwsPolicyStore:
    @pytest.fixture
    def policies(
        self, session: Session
    ) -> Generator[tuple[AwsPolicyStore, Stubber, Stubber], None, None]:
        store = AwsPolicyStore(session)
        iam = stub(store._iam)
        sts = stub(store._sts)
        sts.add_response("get_caller_identity", {"Account": ACCOUNT})
        yield store, iam, sts
        iam.deactivate()
        sts.deactivate()

    def test_get_missing_policy(self, policies: tuple[AwsPolicyStore, Stubber, Stubber]) -> None:
        adapter, iam, _ = policies
        iam.add_client_error(
            "get_policy",
            service_error_code="NoSuchEntity",
            expected_params={"PolicyArn": POLICY_ARN},
        )

        assert adapter.get_policy("ExternalSecretsPolicy-app") is None

    def test_get_policy_reads_default_version(
        self, policies: tuple[AwsPolicyStore, Stubber, Stubber]
    ) -> None:
        adapter, iam, _ = policies
        document = {
            "Version": "2012-10-17",
            "Statement": [
                {
                    "Effect": "Allow",
                    "Action": ["secretsmanager:GetSecretValue"],
                    "Resource": "arn:aws:secretsmanager:us-east-1:*:secret:app/db-url*",
                }
            ],
        }
        iam.add_response(
            "get_policy",
            {"Policy": {"PolicyName": "ExternalSecretsPolicy-app", "Arn": POLICY_ARN,
                        "DefaultVersionId": "v3"}},
            {"PolicyArn": POLICY_ARN},
        )
        iam.add_response(
            "get_policy_version",
            {"PolicyVersion": {"Document": quote(json.dumps(document)), "VersionId": "v3",
                               "IsDefaultVersion": True}},
            {"PolicyArn": POLICY_ARN, "VersionId": "v3"},
        )

        observed = adapter.get_policy("ExternalSecretsPolicy-app")

        assert observed is not None
        assert observed.version_id == "v3"
        assert observed.actions == frozenset({"secretsmanager:GetSecretValue"})

    def test_update_prunes_oldest_version(
        self,
        policies: tuple[AwsPolicyStore, Stubber, Stubber],
        descriptors: DescriptorSet,
    ) -> None:
        """Test that the oldest non-default version is deleted at the version limit."""
        adapter, iam, _ = policies
        versions = [
            {
                "VersionId": f"v{n}",
                "IsDefaultVersion": n == 5,
                "CreateDate": datetime(2024, 1, n, tzinfo=UTC),
            }
            for n in (3, 1, 5, 2, 4)
        ]
        iam.add_response("list_policy_versions", {"Versions": versions}, {"PolicyArn": POLICY_ARN})
        iam.add_response(
            "delete_policy_version", {}, {"PolicyArn": POLICY_ARN, "VersionId": "v1"}
        )
        iam.add_response(
            "create_policy_version",
            {"PolicyVersion": {"VersionId": "v6", "IsDefaultVersion": True}},
            {"PolicyArn": POLICY_ARN, "PolicyDocument": ANY, "SetAsDefault": True},
        )

        observed = adapter.update_policy(descriptors.policy)

        assert observed.version_id == "v6"
        iam.assert_no_pending_responses()


# =============================================================================
# IRSA roles
# =============================================================================


class TestAwsIdentityProvider:
    @pytest.fixture
    def identities(
        self, session: Session
    ) -> Generator[tuple[AwsIdentityProvider, Stubber, Stubber], None, None]:
        provider = AwsIdentityProvider(session, "us-east-1")
        iam = stub(provider._iam)
        eks = stub(provider._eks)
        sts = stub(provider._sts)
        sts.add_response("get_caller_identity", {"Account": ACCOUNT})
        yield provider, iam, eks
        for stubber in (iam, eks, sts):
            stubber.deactivate()

    def test_get_role_with_attachments(
        self,
        identities: tuple[AwsIdentityProvider, Stubber, Stubber],
        descriptors: DescriptorSet,
    ) -> None:
        adapter, iam, _ = identities
        subject = descriptors.identity.subject or ""
        iam.add_response(
            "get_role",
            {
                "Role": {
                    "Path": "/",
                    "RoleName": "app-external-secrets",
                    "RoleId": "AROAEXAMPLEEXAMPLE01",
                    "Arn": ROLE_ARN,
                    "CreateDate": CREATED,
                    "AssumeRolePolicyDocument": quote(
                        json.dumps(trust_document("StringEquals", subject))
                    ),
                }
            },
            {"RoleName": "app-external-secrets"},
        )
        iam.add_response(
            "list_attached_role_policies",
            {
                "AttachedPolicies": [
                    {"PolicyName": "ExternalSecretsPolicy-app", "PolicyArn": POLICY_ARN}
                ],
                "IsTruncated": False,
            },
            {"RoleName": "app-external-secrets"},
        )

        role = adapter.get_role("app-external-secrets")

        assert role is not None
        assert role.trust_subjects == frozenset({subject})
        assert role.attached_policy_arns == frozenset({POLICY_ARN})
        assert role.loose_trust is False

    def test_get_missing_role(
        self, identities: tuple[AwsIdentityProvider, Stubber, Stubber]
    ) -> None:
        adapter, iam, _ = identities
        iam.add_client_error("get_role", service_error_code="NoSuchEntity")

        assert adapter.get_role("app-external-secrets") is None

    def test_create_role_requires_oidc_provider(
        self,
        identities: tuple[AwsIdentityProvider, Stubber, Stubber],
        descriptors: DescriptorSet,
    ) -> None:
        adapter, iam, eks = identities
        eks.add_response(
            "describe_cluster",
            {"cluster": {"name": "tiles", "identity": {"oidc": {"issuer": f"https://{ISSUER}"}}}},
            {"name": "tiles"},
        )
        iam.add_client_error(
            "get_open_id_connect_provider",
            service_error_code="NoSuchEntity",
            expected_params={
                "OpenIDConnectProviderArn": f"arn:aws:iam::{ACCOUNT}:oidc-provider/{ISSUER}"
            },
        )

        with pytest.raises(PreconditionUnmet) as exc_info:
            adapter.create_role(descriptors.identity)

        assert exc_info.value.suggestion is not None
        assert "associate-iam-oidc-provider" in exc_info.value.suggestion
        iam.assert_no_pending_responses()

    def test_create_role_with_exact_trust(
        self,
        identities: tuple[AwsIdentityProvider, Stubber, Stubber],
        descriptors: DescriptorSet,
    ) -> None:
        adapter, iam, eks = identities
        binding = descriptors.identity
        provider_arn = f"arn:aws:iam::{ACCOUNT}:oidc-provider/{ISSUER}"
        eks.add_response(
            "describe_cluster",
            {"cluster": {"name": "tiles", "identity": {"oidc": {"issuer": f"https://{ISSUER}"}}}},
            {"name": "tiles"},
        )
        iam.add_response(
            "get_open_id_connect_provider",
            {"Url": ISSUER},
            {"OpenIDConnectProviderArn": provider_arn},
        )
        iam.add_response(
            "create_role",
            {
                "Role": {
                    "Path": "/",
                    "RoleName": binding.role_name,
                    "RoleId": "AROAEXAMPLEEXAMPLE01",
                    "Arn": ROLE_ARN,
                    "CreateDate": CREATED,
                }
            },
            {
                "RoleName": binding.role_name,
                "AssumeRolePolicyDocument": json.dumps(
                    binding.trust_document(provider_arn, ISSUER)
                ),
                "Description": ANY,
                "Tags": [{"Key": "managed-by", "Value": "secprov"}],
            },
        )

        role = adapter.create_role(binding)

        assert role.arn == ROLE_ARN
        assert role.trust_subjects == frozenset({binding.subject})
        iam.assert_no_pending_responses()

    def test_cluster_without_issuer(
        self,
        identities: tuple[AwsIdentityProvider, Stubber, Stubber],
    ) -> None:
        adapter, _, eks = identities
        eks.add_response("describe_cluster", {"cluster": {"name": "tiles"}}, {"name": "tiles"})

        with pytest.raises(PreconditionUnmet, match="no OIDC issuer"):
            adapter.issuer_host("tiles")
