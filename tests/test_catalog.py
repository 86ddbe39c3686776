from __future__ import annotations

import pytest

from fakes import FakeIdentityProvider, make_role
from no_wing.aws_credentials.sts_provider import CallerIdentityError, DiscoveryError
from no_wing.domain.operations import OperationContext
from no_wing.permissions.catalog import RoleCatalog

PATTERNS = {"lambda": ["no-wing-lambda-*"], "*": ["no-wing-*"]}


@pytest.mark.asyncio
async def test_provider_timeout_yields_tagged_error_listing() -> None:
    provider = FakeIdentityProvider(roles=[make_role("no-wing-s3")], discovery_delay=1.0)
    catalog = RoleCatalog(provider, PATTERNS, timeout_seconds=0.05)

    listing = await catalog.list_roles()

    assert not listing.ok
    assert isinstance(listing.error, DiscoveryError)
    assert listing.error.code == "timeout"
    assert listing.roles == []
    with pytest.raises(DiscoveryError):
        listing.raise_for_error()


@pytest.mark.asyncio
async def test_partial_discovery_keeps_roles_with_warning() -> None:
    partial = [make_role("no-wing-b"), make_role("no-wing-a")]
    provider = FakeIdentityProvider(
        discovery_error=DiscoveryError("throttled", partial_roles=partial)
    )
    catalog = RoleCatalog(provider, PATTERNS)

    listing = await catalog.list_roles()
    await catalog.list_roles()

    assert listing.ok
    assert [r.role_name for r in listing.roles] == ["no-wing-a", "no-wing-b"]
    assert listing.warnings and "incomplete" in listing.warnings[0]
    # Incomplete listings are fetched again.
    assert len(provider.list_calls) == 2


@pytest.mark.asyncio
async def test_discovery_failure_without_roles_is_an_error() -> None:
    provider = FakeIdentityProvider(
        discovery_error=DiscoveryError("AccessDenied", code="access_denied")
    )
    listing = await RoleCatalog(provider, PATTERNS).list_roles()

    assert listing.error is provider.discovery_error
    assert len(listing) == 0


@pytest.mark.asyncio
async def test_identity_failure_is_reported_as_discovery_error() -> None:
    provider = FakeIdentityProvider(
        identity_error=CallerIdentityError("expired token", code="identity_unavailable")
    )
    listing = await RoleCatalog(provider, PATTERNS).list_roles()

    assert isinstance(listing.error, DiscoveryError)
    assert listing.error.code == "identity_unavailable"


@pytest.mark.asyncio
async def test_complete_listing_is_cached_until_refresh() -> None:
    provider = FakeIdentityProvider(roles=[make_role("no-wing-s3")])
    catalog = RoleCatalog(provider, PATTERNS)

    await catalog.list_roles()
    await catalog.list_roles()
    assert len(provider.list_calls) == 1

    await catalog.list_roles(refresh=True)
    assert len(provider.list_calls) == 2

    catalog.invalidate()
    assert await catalog.get_role(make_role("no-wing-s3").role_arn) is not None
    assert len(provider.list_calls) == 3


def test_covers_prefers_actions_tag_over_name() -> None:
    catalog = RoleCatalog(FakeIdentityProvider(), PATTERNS)
    context = OperationContext(service="lambda", action="UpdateFunctionCode")

    assert catalog.covers(make_role("no-wing-lambda-deployer"), context)
    assert catalog.covers(make_role("no-wing-generic"), context)
    assert not catalog.covers(make_role("team-lambda-role"), context)
    assert not catalog.covers(
        make_role("no-wing-lambda-readonly", actions="lambda:Get*,lambda:List*"), context
    )
    assert catalog.covers(make_role("team-deployer", actions="lambda:*"), context)


def test_candidates_match_resource_scope() -> None:
    catalog = RoleCatalog(FakeIdentityProvider(), PATTERNS)
    context = OperationContext(
        service="lambda",
        action="UpdateFunctionCode",
        resources=("arn:aws:lambda:us-east-1:111111111111:function:team-foo",),
    )
    roles = [
        make_role("no-wing-lambda-team", scope="arn:aws:lambda:*:*:function:team-*"),
        make_role("no-wing-lambda-other", scope="arn:aws:lambda:*:*:function:other-*"),
        make_role("no-wing-lambda-any"),
    ]

    matched = catalog.candidates(roles, context)

    assert [(role.role_name, scope) for role, scope in matched] == [
        ("no-wing-lambda-team", "arn:aws:lambda:*:*:function:team-*"),
        ("no-wing-lambda-any", "*"),
    ]
