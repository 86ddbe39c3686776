from __future__ import annotations

import asyncio

import pytest

from fakes import FakeIdentityProvider, make_role
from no_wing.audit.log import AuditLog
from no_wing.audit.models import AuditQuery, EventType
from no_wing.aws_credentials.cache import SessionCache
from no_wing.aws_credentials.sts_provider import AssumptionFailure, DiscoveryError
from no_wing.domain.operations import OperationContext
from no_wing.permissions.catalog import RoleCatalog
from no_wing.permissions.role_manager import RoleManager

PATTERNS = {"lambda": ["no-wing-lambda-*"], "*": ["no-wing-*"]}
FUNCTION = "arn:aws:lambda:us-east-1:111111111111:function:team-foo"


def _manager(
    provider: FakeIdentityProvider,
    audit_log: AuditLog,
    timeout_seconds: float = 15.0,
    session_duration_seconds: int = 3600,
) -> RoleManager:
    return RoleManager(
        RoleCatalog(provider, PATTERNS, timeout_seconds=timeout_seconds),
        provider,
        SessionCache(),
        audit_log,
        session_duration_seconds=session_duration_seconds,
        timeout_seconds=timeout_seconds,
    )


def _context(resource: str = FUNCTION) -> OperationContext:
    return OperationContext(service="lambda", action="UpdateFunctionCode", resources=(resource,))


def _assumption_events(audit_log: AuditLog) -> list:
    return audit_log.query(AuditQuery(event_types=[EventType.ROLE_ASSUMPTION.value]))


@pytest.mark.asyncio
async def test_narrower_scope_wins_over_duration(audit_log: AuditLog) -> None:
    role_a = make_role(
        "no-wing-role-a", scope="arn:aws:lambda:*:*:function:team-*", duration=3600
    )
    role_b = make_role(
        "no-wing-role-b", scope="arn:aws:lambda:*:*:function:team-foo", duration=900
    )
    manager = _manager(FakeIdentityProvider(roles=[role_a, role_b]), audit_log)

    assert await manager.find_best_role(_context()) == role_b


@pytest.mark.asyncio
async def test_equal_scope_prefers_longest_duration_consistently(audit_log: AuditLog) -> None:
    short = make_role("no-wing-lambda-short", duration=1800)
    long = make_role("no-wing-lambda-long", duration=7200)
    manager = _manager(FakeIdentityProvider(roles=[short, long]), audit_log)

    picks = {(await manager.find_best_role(_context())).role_arn for _ in range(5)}

    assert picks == {long.role_arn}


@pytest.mark.asyncio
async def test_equal_scope_prefers_role_with_active_session(audit_log: AuditLog) -> None:
    short = make_role("no-wing-lambda-short", duration=1800)
    long = make_role("no-wing-lambda-long", duration=7200)
    manager = _manager(FakeIdentityProvider(roles=[short, long]), audit_log)

    assert await manager.assume_role_for_operation(_context(), role=short) is not None

    assert await manager.find_best_role(_context()) == short


@pytest.mark.asyncio
async def test_full_tie_falls_back_to_role_arn(audit_log: AuditLog) -> None:
    second = make_role("no-wing-lambda-b")
    first = make_role("no-wing-lambda-a")
    manager = _manager(FakeIdentityProvider(roles=[second, first]), audit_log)

    assert await manager.find_best_role(_context()) == first


@pytest.mark.asyncio
async def test_find_best_role_raises_on_discovery_failure(audit_log: AuditLog) -> None:
    provider = FakeIdentityProvider(discovery_error=DiscoveryError("unreachable"))
    manager = _manager(provider, audit_log)

    with pytest.raises(DiscoveryError):
        await manager.find_best_role(_context())


@pytest.mark.asyncio
async def test_second_assumption_reuses_session(audit_log: AuditLog) -> None:
    provider = FakeIdentityProvider(roles=[make_role("no-wing-lambda-deployer")])
    manager = _manager(provider, audit_log)

    first = await manager.assume_role_for_operation(_context())
    second = await manager.assume_role_for_operation(_context())

    assert first is not None
    assert second is first
    assert len(provider.assume_calls) == 1

    events = _assumption_events(audit_log)
    assert len(events) == 2
    assert sorted(e.operation.parameters["reused"] for e in events) == [False, True]
    assert all(e.result.success for e in events)


@pytest.mark.asyncio
async def test_concurrent_assumptions_call_provider_once(audit_log: AuditLog) -> None:
    provider = FakeIdentityProvider(
        roles=[make_role("no-wing-lambda-deployer")], assume_delay=0.05
    )
    manager = _manager(provider, audit_log)

    sessions = await asyncio.gather(*(manager.assume_role_for_operation(_context()) for _ in range(4)))

    assert len(provider.assume_calls) == 1
    assert len({id(s) for s in sessions}) == 1
    assert len(_assumption_events(audit_log)) == 4


@pytest.mark.asyncio
async def test_failed_assumption_returns_none_with_one_event(audit_log: AuditLog) -> None:
    role = make_role("no-wing-lambda-deployer")
    provider = FakeIdentityProvider(
        roles=[role],
        assume_errors={role.role_arn: AssumptionFailure("not trusted", code="access_denied")},
    )
    manager = _manager(provider, audit_log)

    assert await manager.assume_role_for_operation(_context()) is None

    events = _assumption_events(audit_log)
    assert len(events) == 1
    assert events[0].result.success is False
    assert events[0].operation.resources == (role.role_arn,)
    assert "not trusted" in events[0].result.error_message


@pytest.mark.asyncio
async def test_no_covering_role_is_audited(audit_log: AuditLog) -> None:
    manager = _manager(FakeIdentityProvider(roles=[make_role("team-unrelated")]), audit_log)

    assert await manager.assume_role_for_operation(_context(), request_id="req-1") is None

    events = _assumption_events(audit_log)
    assert len(events) == 1
    assert events[0].operation.resources == ()
    assert events[0].context.request_id == "req-1"
    assert "No assumable role" in events[0].result.error_message


@pytest.mark.asyncio
async def test_discovery_failure_during_assumption_is_audited(audit_log: AuditLog) -> None:
    provider = FakeIdentityProvider(discovery_error=DiscoveryError("unreachable"))
    manager = _manager(provider, audit_log)

    assert await manager.assume_role_for_operation(_context()) is None

    events = _assumption_events(audit_log)
    assert len(events) == 1
    assert "Role discovery failed" in events[0].result.error_message


@pytest.mark.asyncio
async def test_assumption_timeout_returns_none(audit_log: AuditLog) -> None:
    role = make_role("no-wing-lambda-deployer")
    provider = FakeIdentityProvider(roles=[role], assume_delay=1.0)
    manager = _manager(provider, audit_log, timeout_seconds=0.05)

    assert await manager.assume_role_for_operation(_context(), role=role) is None

    events = _assumption_events(audit_log)
    assert len(events) == 1
    assert "timed out" in events[0].result.error_message


@pytest.mark.asyncio
async def test_session_duration_is_clamped_to_role_maximum(audit_log: AuditLog) -> None:
    short = make_role("no-wing-lambda-short", duration=1200)
    long = make_role("no-wing-lambda-long", duration=43200)
    provider = FakeIdentityProvider(roles=[short, long])
    manager = _manager(provider, audit_log, session_duration_seconds=3600)

    await manager.assume_role_for_operation(_context(), role=short)
    await manager.assume_role_for_operation(_context(), role=long)

    assert [call[2] for call in provider.assume_calls] == [1200, 3600]
    assert all(call[1].startswith("no-wing-lambda-") for call in provider.assume_calls)


@pytest.mark.asyncio
async def test_release_and_active_sessions(audit_log: AuditLog) -> None:
    role = make_role("no-wing-lambda-deployer")
    provider = FakeIdentityProvider(roles=[role])
    manager = _manager(provider, audit_log)

    await manager.assume_role_for_operation(_context())
    assert [s.role_arn for s in manager.get_active_sessions()] == [role.role_arn]

    assert await manager.release_session(role.role_arn) is True
    assert manager.get_active_sessions() == []

    await manager.assume_role_for_operation(_context())
    assert len(provider.assume_calls) == 2
    assert await manager.clear_cache() == 1


@pytest.mark.asyncio
async def test_test_role_assumption_reports_identity(audit_log: AuditLog) -> None:
    role = make_role("no-wing-lambda-deployer")
    provider = FakeIdentityProvider(roles=[role])
    manager = _manager(provider, audit_log)

    result = await manager.test_role_assumption(role.role_arn)

    assert result.success
    assert result.identity is not None
    assert "assumed-role/no-wing-lambda-deployer/" in result.identity.arn
    assert manager.get_active_sessions() == []
    assert len(_assumption_events(audit_log)) == 1


@pytest.mark.asyncio
async def test_test_role_assumption_failure(audit_log: AuditLog) -> None:
    arn = "arn:aws:iam::111111111111:role/unknown"
    provider = FakeIdentityProvider(
        assume_errors={arn: AssumptionFailure("no such role", code="sts_error")}
    )
    manager = _manager(provider, audit_log)

    result = await manager.test_role_assumption(arn)

    assert not result.success
    assert result.error_code == "sts_error"
    events = _assumption_events(audit_log)
    assert len(events) == 1 and events[0].result.success is False
