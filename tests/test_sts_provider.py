"""Tests for the boto3-backed identity provider."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from urllib.parse import quote

import pytest
from botocore.exceptions import ClientError

from fakes import ACCOUNT, CALLER_ARN
from no_wing.aws_credentials.sts_provider import (
    AssumptionFailure,
    AWSIdentityProvider,
    DiscoveryError,
    sanitize_session_name,
)


def _trust(*principals: str) -> dict[str, object]:
    return {
        "Version": "2012-10-17",
        "Statement": [
            {
                "Effect": "Allow",
                "Principal": {"AWS": list(principals)},
                "Action": "sts:AssumeRole",
            }
        ],
    }


def _entry(name: str, trust: object, tags: list[dict[str, str]] | None = None) -> dict:
    entry = {
        "RoleName": name,
        "Arn": f"arn:aws:iam::{ACCOUNT}:role/{name}",
        "AssumeRolePolicyDocument": trust,
        "MaxSessionDuration": 7200,
    }
    if tags is not None:
        entry["Tags"] = tags
    return entry


def _client_error(code: str, operation: str) -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": f"{code} happened"}}, operation)


class _FakeIAMClient:
    def __init__(self, pages: list[dict], fail_on_page: int | None = None) -> None:
        self.pages = pages
        self.fail_on_page = fail_on_page
        self.list_calls: list[dict[str, object]] = []

    def list_roles(self, **kwargs: object) -> dict:
        self.list_calls.append(kwargs)
        index = len(self.list_calls) - 1
        if index == self.fail_on_page:
            raise _client_error("Throttling", "ListRoles")
        return self.pages[index]

    def list_role_tags(self, RoleName: str) -> dict:
        return {"Tags": [{"Key": "no-wing:actions", "Value": "s3:GetObject"}]}


class _FakeSTSClient:
    def __init__(self, error: ClientError | None = None) -> None:
        self.error = error
        self.calls: list[dict[str, object]] = []

    def assume_role(self, **kwargs: object) -> dict:
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error
        return {
            "Credentials": {
                "AccessKeyId": "ASIAXXXXXXXX",
                "SecretAccessKey": "secret",
                "SessionToken": "session-token",
                "Expiration": datetime(2026, 1, 1, tzinfo=timezone.utc),
            },
            "AssumedRoleUser": {
                "Arn": f"arn:aws:sts::{ACCOUNT}:assumed-role/Deploy/{kwargs['RoleSessionName']}",
                "AssumedRoleId": "AROAXXXX:session",
            },
        }

    def get_caller_identity(self) -> dict:
        return {"Account": ACCOUNT, "Arn": CALLER_ARN, "UserId": "AIDAXXXX"}


def _provider(**clients: object) -> AWSIdentityProvider:
    provider = AWSIdentityProvider(region="us-east-1")
    provider._clients.update(clients)
    return provider


@pytest.mark.asyncio
async def test_lists_only_roles_trusting_the_caller() -> None:
    iam = _FakeIAMClient(
        [
            {
                "Roles": [
                    _entry("Deploy", quote(json.dumps(_trust(CALLER_ARN))), tags=[]),
                    _entry("Other", _trust(f"arn:aws:iam::{ACCOUNT}:user/someone-else")),
                    _entry("Broken", "%7Bnot-json"),
                ],
                "IsTruncated": True,
                "Marker": "m1",
            },
            {"Roles": [_entry("Reader", _trust(f"arn:aws:iam::{ACCOUNT}:root"))]},
        ]
    )
    provider = _provider(iam=iam)

    roles = await provider.list_assumable_roles(CALLER_ARN)

    assert [r.role_name for r in roles] == ["Deploy", "Reader"]
    assert roles[0].max_session_duration_seconds == 7200
    assert roles[0].tags == {}
    assert roles[1].tags == {"no-wing:actions": "s3:GetObject"}
    assert iam.list_calls[1]["Marker"] == "m1"


@pytest.mark.asyncio
async def test_discovery_failure_keeps_partial_roles() -> None:
    iam = _FakeIAMClient(
        [{"Roles": [_entry("Deploy", _trust(CALLER_ARN), tags=[])], "IsTruncated": True}],
        fail_on_page=1,
    )
    provider = _provider(iam=iam)

    with pytest.raises(DiscoveryError) as exc_info:
        await provider.list_assumable_roles(CALLER_ARN)

    assert exc_info.value.code == "discovery_failed"
    assert [r.role_name for r in exc_info.value.partial_roles] == ["Deploy"]


@pytest.mark.asyncio
async def test_assume_role_sanitizes_session_name() -> None:
    sts = _FakeSTSClient()
    provider = _provider(sts=sts)

    creds = await provider.assume_role(
        f"arn:aws:iam::{ACCOUNT}:role/Deploy", "no-wing s3:GetObject", 3600
    )

    assert sts.calls[0]["RoleSessionName"] == "no-wing-s3-GetObject"
    assert sts.calls[0]["DurationSeconds"] == 3600
    assert creds.assumed_role_arn.endswith("/no-wing-s3-GetObject")
    assert "secret" not in repr(creds)


@pytest.mark.asyncio
async def test_assume_role_maps_sts_errors() -> None:
    provider = _provider(sts=_FakeSTSClient(error=_client_error("AccessDenied", "AssumeRole")))

    with pytest.raises(AssumptionFailure) as exc_info:
        await provider.assume_role(f"arn:aws:iam::{ACCOUNT}:role/Deploy", "session", 3600)

    assert exc_info.value.code == "access_denied"
    assert "AccessDenied happened" in str(exc_info.value)


@pytest.mark.asyncio
async def test_caller_identity() -> None:
    identity = await _provider(sts=_FakeSTSClient()).get_caller_identity()

    assert identity.account_id == ACCOUNT
    assert identity.arn == CALLER_ARN


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("simple", "simple"),
        ("a b/c", "a-b-c"),
        ("x", "no-wing-x"),
    ],
)
def test_sanitize_session_name(raw: str, expected: str) -> None:
    assert sanitize_session_name(raw) == expected


def test_long_session_names_are_hashed() -> None:
    name = sanitize_session_name("s" * 100)

    assert len(name) == 64
    assert name != sanitize_session_name("s" * 99)
