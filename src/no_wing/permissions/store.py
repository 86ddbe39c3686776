"""Working-state store for permission requests, operation logs and commits.

The audit log is the source of truth; this store keeps the denormalised
working state. Status changes go through :meth:`RequestStore.transition`,
an atomic compare-and-set: it succeeds only when the stored status still
equals ``expected``, so two racing approvers cannot both win.
:meth:`RequestStore.add_commit` counts unverified commits and inserts in
one step, so concurrent writers cannot overrun the per-branch cap.
"""

from __future__ import annotations

import dataclasses
import threading
from datetime import datetime
from typing import Protocol

from no_wing.permissions.models import Commit, OperationLog, PermissionRequest, RequestStatus


class RequestStore(Protocol):
    def get(self, request_id: str) -> PermissionRequest | None: ...

    def put(self, request: PermissionRequest) -> None: ...

    def delete(self, request_id: str) -> bool: ...

    def list(self, status: RequestStatus | None = None) -> list[PermissionRequest]: ...

    def transition(
        self,
        request_id: str,
        expected: RequestStatus,
        new_status: RequestStatus,
        approver: str | None = None,
        decided_at: datetime | None = None,
    ) -> PermissionRequest | None: ...

    def put_operation(self, log: OperationLog) -> None: ...

    def get_operation(self, request_id: str) -> OperationLog | None: ...

    def list_operations(self, limit: int | None = None) -> list[OperationLog]: ...

    def put_commit(self, commit: Commit) -> None: ...

    def add_commit(self, commit: Commit, max_unverified: int) -> bool: ...

    def list_commits(self, branch: str | None = None) -> list[Commit]: ...


class InMemoryRequestStore:
    def __init__(self) -> None:
        self._requests: dict[str, PermissionRequest] = {}
        self._operations: dict[str, OperationLog] = {}
        self._commits: dict[tuple[str, str], Commit] = {}
        self._lock = threading.Lock()

    def get(self, request_id: str) -> PermissionRequest | None:
        return self._requests.get(request_id)

    def put(self, request: PermissionRequest) -> None:
        with self._lock:
            self._requests[request.request_id] = request

    def delete(self, request_id: str) -> bool:
        with self._lock:
            return self._requests.pop(request_id, None) is not None

    def list(self, status: RequestStatus | None = None) -> list[PermissionRequest]:
        requests = list(self._requests.values())
        if status is not None:
            requests = [r for r in requests if r.status is status]
        return sorted(requests, key=lambda r: (r.created_at, r.request_id))

    def transition(
        self,
        request_id: str,
        expected: RequestStatus,
        new_status: RequestStatus,
        approver: str | None = None,
        decided_at: datetime | None = None,
    ) -> PermissionRequest | None:
        with self._lock:
            current = self._requests.get(request_id)
            if current is None or current.status is not expected:
                return None
            updated = dataclasses.replace(
                current, status=new_status, approver=approver, decided_at=decided_at
            )
            self._requests[request_id] = updated
            return updated

    def put_operation(self, log: OperationLog) -> None:
        with self._lock:
            self._operations[log.request_id] = log

    def get_operation(self, request_id: str) -> OperationLog | None:
        return self._operations.get(request_id)

    def list_operations(self, limit: int | None = None) -> list[OperationLog]:
        logs = sorted(
            self._operations.values(), key=lambda op: (op.started_at, op.request_id), reverse=True
        )
        return logs[:limit] if limit is not None else logs

    def put_commit(self, commit: Commit) -> None:
        with self._lock:
            self._commits[(commit.branch, commit.commit_hash)] = commit

    def add_commit(self, commit: Commit, max_unverified: int) -> bool:
        with self._lock:
            unverified = sum(
                1
                for c in self._commits.values()
                if c.branch == commit.branch
                and not c.verified
                and c.commit_hash != commit.commit_hash
            )
            if unverified >= max_unverified:
                return False
            self._commits[(commit.branch, commit.commit_hash)] = commit
            return True

    def list_commits(self, branch: str | None = None) -> list[Commit]:
        commits = [c for c in self._commits.values() if branch is None or c.branch == branch]
        return sorted(commits, key=lambda c: (c.created_at, c.commit_hash))
