from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from no_wing.audit.db import SqliteStore
from no_wing.audit.log import AuditLog
from no_wing.audit.models import AuditQuery
from no_wing.permissions.approval import ApprovalWorkflow
from no_wing.permissions.models import (
    Commit,
    OperationLog,
    OperationStatus,
    PermissionRequest,
    RequestStatus,
    RiskTier,
)

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def db_path(tmp_path: Path) -> str:
    return str(tmp_path / "state" / "state.sqlite")


@pytest.fixture
def sqlite_store(db_path: str):
    sqlite_store = SqliteStore(db_path)
    yield sqlite_store
    sqlite_store.close()


def _request(request_id: str, offset: int = 0) -> PermissionRequest:
    return PermissionRequest(
        request_id=request_id,
        requested_action="s3:PutObject",
        target_resource_pattern="arn:aws:s3:::bucket/prod/*",
        justification="deploy",
        risk_tier=RiskTier.HIGH,
        created_at=T0 + timedelta(seconds=offset),
        service="s3",
    )


def test_request_round_trip(sqlite_store: SqliteStore) -> None:
    sqlite_store.put(_request("req-1"))

    assert sqlite_store.get("req-1") == _request("req-1")
    assert sqlite_store.get("req-missing") is None


def test_transition_is_compare_and_set(sqlite_store: SqliteStore) -> None:
    sqlite_store.put(_request("req-1"))

    won = sqlite_store.transition(
        "req-1", RequestStatus.PENDING, RequestStatus.DENIED, approver="bob", decided_at=T0
    )
    lost = sqlite_store.transition(
        "req-1", RequestStatus.PENDING, RequestStatus.APPROVED, approver="alice", decided_at=T0
    )

    assert won is not None and won.status is RequestStatus.DENIED and won.approver == "bob"
    assert lost is None
    assert sqlite_store.get("req-1").approver == "bob"


def test_two_connections_see_one_winner(sqlite_store: SqliteStore, db_path: str) -> None:
    other = SqliteStore(db_path)
    try:
        sqlite_store.put(_request("req-1"))
        assert other.transition("req-1", RequestStatus.PENDING, RequestStatus.APPROVED, "alice")
        assert (
            sqlite_store.transition("req-1", RequestStatus.PENDING, RequestStatus.DENIED, "bob")
            is None
        )
    finally:
        other.close()


def test_list_by_status_and_delete(sqlite_store: SqliteStore) -> None:
    sqlite_store.put(_request("req-2", offset=10))
    sqlite_store.put(_request("req-1"))
    sqlite_store.transition("req-2", RequestStatus.PENDING, RequestStatus.APPROVED, "alice")

    assert [r.request_id for r in sqlite_store.list()] == ["req-1", "req-2"]
    assert [r.request_id for r in sqlite_store.list(RequestStatus.PENDING)] == ["req-1"]
    assert sqlite_store.delete("req-1") is True
    assert sqlite_store.delete("req-1") is False


def test_operation_logs(sqlite_store: SqliteStore) -> None:
    for index in range(3):
        sqlite_store.put_operation(
            OperationLog(
                request_id=f"req-{index}",
                action="lambda:CreateFunction",
                resource="*",
                status=OperationStatus.FAILED,
                started_at=T0 + timedelta(minutes=index),
                duration_ms=10 * index,
                rollback_required=index == 2,
            )
        )

    latest = sqlite_store.list_operations(limit=2)

    assert [op.request_id for op in latest] == ["req-2", "req-1"]
    assert latest[0].rollback_required is True
    assert len(sqlite_store.list_operations()) == 3
    assert sqlite_store.get_operation("req-0").duration_ms == 0


def test_commits_by_branch(sqlite_store: SqliteStore) -> None:
    sqlite_store.put_commit(Commit("feat/a", "abc123", "first", ("a.py", "b.py"), T0))
    sqlite_store.put_commit(Commit("feat/b", "def456", "other", (), T0))

    commits = sqlite_store.list_commits("feat/a")

    assert [c.commit_hash for c in commits] == ["abc123"]
    assert commits[0].files == ("a.py", "b.py")
    assert len(sqlite_store.list_commits()) == 2


def test_workflow_on_sqlite(sqlite_store: SqliteStore, tmp_path: Path) -> None:
    audit_log = AuditLog(str(tmp_path / "audit.jsonl"))
    workflow = ApprovalWorkflow(sqlite_store, audit_log)
    sqlite_store.put(_request("req-123"))

    assert workflow.deny("req-123", "bob") is True
    assert workflow.approve("req-123", "alice") is False
    assert len(audit_log.query(AuditQuery(request_id="req-123"))) == 1
