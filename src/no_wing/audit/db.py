"""SQLite access layer for permission requests, operation logs and commits."""

from __future__ import annotations

import json
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Mapping, Sequence

from no_wing.permissions.models import (
    Commit,
    OperationLog,
    PermissionRequest,
    RequestStatus,
)

_SqlValue = str | bytes | int | float | None
_SqlParams = Sequence[_SqlValue] | Mapping[str, _SqlValue]


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


class SqliteStore:
    """Durable :class:`~no_wing.permissions.store.RequestStore`.

    Safe for several CLI processes sharing one file: status changes are a
    single ``UPDATE ... WHERE status = ?`` whose row count tells the caller
    whether it won.
    """

    def __init__(self, path: str, wal: bool = True) -> None:
        Path(path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(path, check_same_thread=False, timeout=10.0)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._closed = False
        if wal:
            self._conn.execute("PRAGMA journal_mode=WAL")
        self._init_schema()

    def _init_schema(self) -> None:
        self._conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS permission_requests (
                request_id TEXT PRIMARY KEY,
                requested_action TEXT NOT NULL,
                target_resource_pattern TEXT NOT NULL,
                justification TEXT NOT NULL,
                risk_tier TEXT NOT NULL,
                requires_approval INTEGER NOT NULL,
                created_at TEXT NOT NULL,
                status TEXT NOT NULL,
                approver TEXT,
                decided_at TEXT,
                service TEXT NOT NULL DEFAULT ''
            );

            CREATE TABLE IF NOT EXISTS operation_logs (
                request_id TEXT PRIMARY KEY,
                action TEXT NOT NULL,
                resource TEXT NOT NULL,
                status TEXT NOT NULL,
                started_at TEXT NOT NULL,
                approver TEXT,
                duration_ms INTEGER,
                error_message TEXT,
                rollback_required INTEGER NOT NULL DEFAULT 0
            );

            CREATE TABLE IF NOT EXISTS commits (
                branch TEXT NOT NULL,
                commit_hash TEXT NOT NULL,
                message TEXT NOT NULL,
                files TEXT NOT NULL,
                created_at TEXT NOT NULL,
                verified INTEGER NOT NULL DEFAULT 0,
                approver TEXT,
                verified_at TEXT,
                PRIMARY KEY (branch, commit_hash)
            );

            CREATE INDEX IF NOT EXISTS idx_requests_status ON permission_requests(status);
            CREATE INDEX IF NOT EXISTS idx_operation_logs_started_at
                ON operation_logs(started_at);
            CREATE INDEX IF NOT EXISTS idx_commits_branch ON commits(branch);
            """
        )
        self._conn.commit()

    def execute(
        self,
        query: str,
        params: _SqlParams,
    ) -> int:
        with self._lock:
            cursor = self._conn.execute(query, params)
            self._conn.commit()
            return cursor.rowcount

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._conn.close()
            self._closed = True

    def fetch_one(
        self,
        query: str,
        params: _SqlParams,
    ) -> sqlite3.Row | None:
        with self._lock:
            cur = self._conn.execute(query, params)
            return cur.fetchone()

    def fetch_all(
        self,
        query: str,
        params: _SqlParams,
    ) -> list[sqlite3.Row]:
        with self._lock:
            cur = self._conn.execute(query, params)
            return cur.fetchall()

    # Permission requests

    def get(self, request_id: str) -> PermissionRequest | None:
        row = self.fetch_one(
            "SELECT * FROM permission_requests WHERE request_id = ?", (request_id,)
        )
        return _request_from_row(row) if row is not None else None

    def put(self, request: PermissionRequest) -> None:
        self.execute(
            """
            INSERT OR REPLACE INTO permission_requests (
                request_id, requested_action, target_resource_pattern, justification,
                risk_tier, requires_approval, created_at, status, approver, decided_at,
                service
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                request.request_id,
                request.requested_action,
                request.target_resource_pattern,
                request.justification,
                request.risk_tier.value,
                int(request.requires_approval),
                _iso(request.created_at),
                request.status.value,
                request.approver,
                _iso(request.decided_at),
                request.service,
            ),
        )

    def delete(self, request_id: str) -> bool:
        return (
            self.execute("DELETE FROM permission_requests WHERE request_id = ?", (request_id,))
            == 1
        )

    def list(self, status: RequestStatus | None = None) -> list[PermissionRequest]:
        if status is None:
            rows = self.fetch_all(
                "SELECT * FROM permission_requests ORDER BY created_at, request_id", ()
            )
        else:
            rows = self.fetch_all(
                "SELECT * FROM permission_requests WHERE status = ? "
                "ORDER BY created_at, request_id",
                (status.value,),
            )
        return [_request_from_row(row) for row in rows]

    def transition(
        self,
        request_id: str,
        expected: RequestStatus,
        new_status: RequestStatus,
        approver: str | None = None,
        decided_at: datetime | None = None,
    ) -> PermissionRequest | None:
        """Atomically move ``request_id`` from ``expected`` to ``new_status``.

        Returns the updated request if exactly one row changed (the caller won
        the race), ``None`` otherwise.
        """
        with self._lock:
            cursor = self._conn.execute(
                "UPDATE permission_requests SET status = ?, approver = ?, decided_at = ? "
                "WHERE request_id = ? AND status = ?",
                (new_status.value, approver, _iso(decided_at), request_id, expected.value),
            )
            self._conn.commit()
            if cursor.rowcount != 1:
                return None
            row = self._conn.execute(
                "SELECT * FROM permission_requests WHERE request_id = ?", (request_id,)
            ).fetchone()
        return _request_from_row(row)

    # Operation logs

    def put_operation(self, log: OperationLog) -> None:
        self.execute(
            """
            INSERT OR REPLACE INTO operation_logs (
                request_id, action, resource, status, started_at, approver,
                duration_ms, error_message, rollback_required
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                log.request_id,
                log.action,
                log.resource,
                log.status.value,
                _iso(log.started_at),
                log.approver,
                log.duration_ms,
                log.error_message,
                int(log.rollback_required),
            ),
        )

    def get_operation(self, request_id: str) -> OperationLog | None:
        row = self.fetch_one("SELECT * FROM operation_logs WHERE request_id = ?", (request_id,))
        return OperationLog.from_dict(dict(row)) if row is not None else None

    def list_operations(self, limit: int | None = None) -> list[OperationLog]:
        rows = self.fetch_all(
            "SELECT * FROM operation_logs ORDER BY started_at DESC, request_id DESC LIMIT ?",
            (-1 if limit is None else limit,),
        )
        return [OperationLog.from_dict(dict(row)) for row in rows]

    # Commits

    def put_commit(self, commit: Commit) -> None:
        self.execute(_UPSERT_COMMIT, _commit_params(commit))

    def add_commit(self, commit: Commit, max_unverified: int) -> bool:
        """Insert ``commit`` unless its branch is already at ``max_unverified``.

        The count and the insert share one ``BEGIN IMMEDIATE`` transaction, so
        the write lock is held from the count onwards.
        """
        with self._lock:
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                (unverified,) = self._conn.execute(
                    "SELECT COUNT(*) FROM commits "
                    "WHERE branch = ? AND verified = 0 AND commit_hash != ?",
                    (commit.branch, commit.commit_hash),
                ).fetchone()
                if unverified >= max_unverified:
                    self._conn.rollback()
                    return False
                self._conn.execute(_UPSERT_COMMIT, _commit_params(commit))
                self._conn.commit()
                return True
            except sqlite3.Error:
                self._conn.rollback()
                raise

    def list_commits(self, branch: str | None = None) -> list[Commit]:
        if branch is None:
            rows = self.fetch_all("SELECT * FROM commits ORDER BY created_at, commit_hash", ())
        else:
            rows = self.fetch_all(
                "SELECT * FROM commits WHERE branch = ? ORDER BY created_at, commit_hash",
                (branch,),
            )
        commits = []
        for row in rows:
            data = dict(row)
            data["files"] = json.loads(data["files"] or "[]")
            commits.append(Commit.from_dict(data))
        return commits


_UPSERT_COMMIT = """
INSERT OR REPLACE INTO commits (
    branch, commit_hash, message, files, created_at, verified, approver, verified_at
) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
"""


def _commit_params(commit: Commit) -> tuple[_SqlValue, ...]:
    return (
        commit.branch,
        commit.commit_hash,
        commit.message,
        json.dumps(list(commit.files)),
        _iso(commit.created_at),
        int(commit.verified),
        commit.approver,
        _iso(commit.verified_at),
    )


def _request_from_row(row: sqlite3.Row) -> PermissionRequest:
    return PermissionRequest.from_dict(dict(row))
