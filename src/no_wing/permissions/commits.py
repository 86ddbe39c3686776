"""Verification ledger for the agent's commits.

Commits are grouped per feature branch. A branch may hold at most
``max_unverified`` unverified commits, each touching at most
``max_files_per_commit`` files, and a pull request can only be opened once
every commit on the branch has been verified by a human.
"""

from __future__ import annotations

import dataclasses
import logging
from datetime import datetime
from typing import Any, Callable, Iterable

from no_wing.errors import NoWingError
from no_wing.permissions.models import Commit
from no_wing.permissions.store import RequestStore
from no_wing.utils.time import utc_now

logger = logging.getLogger(__name__)


class CommitLimitError(NoWingError):
    default_hint = "verify the pending commits or open a pull request before committing more"


class UnverifiedCommitsError(NoWingError):
    default_hint = "run `no-wing commits verify <hash>...` for the listed commits"

    def __init__(self, message: str, unverified: list[Commit]) -> None:
        super().__init__(message, code="unverified_commits")
        self.unverified = unverified


class CommitLedger:
    def __init__(
        self,
        store: RequestStore,
        max_unverified: int = 10,
        max_files_per_commit: int = 5,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._max_unverified = max_unverified
        self._max_files_per_commit = max_files_per_commit
        self._clock = clock

    def add(self, branch: str, commit_hash: str, message: str, files: Iterable[str]) -> Commit:
        files = tuple(files)
        if not branch or not commit_hash:
            raise ValueError("branch and commit hash are required")
        if len(files) > self._max_files_per_commit:
            raise CommitLimitError(
                f"Commits must be small: {len(files)} files exceeds the limit of "
                f"{self._max_files_per_commit}",
                code="too_many_files",
                hint="split the change into smaller commits",
            )
        commit = Commit(
            branch=branch,
            commit_hash=commit_hash,
            message=message,
            files=files,
            created_at=self._clock(),
        )
        if not self._store.add_commit(commit, self._max_unverified):
            raise CommitLimitError(
                f"Branch {branch} already has the maximum of {self._max_unverified} "
                "unverified commits",
                code="branch_limit",
            )
        logger.info("Recorded commit %s on %s", commit.short_hash, branch)
        return commit

    def verify(self, hashes: Iterable[str], approver: str, branch: str | None = None) -> list[Commit]:
        """Mark commits verified; each hash may be a unique prefix."""
        if not approver:
            raise ValueError("approver is required")
        commits = self._store.list_commits(branch)
        verified: list[Commit] = []
        verified_hashes: set[str] = set()
        for prefix in hashes:
            matches = [c for c in commits if c.commit_hash.startswith(prefix)]
            if len(matches) > 1:
                raise ValueError(f"Commit prefix {prefix!r} is ambiguous")
            if not matches or matches[0].verified or matches[0].commit_hash in verified_hashes:
                continue
            updated = dataclasses.replace(
                matches[0], verified=True, approver=approver, verified_at=self._clock()
            )
            self._store.put_commit(updated)
            verified.append(updated)
            verified_hashes.add(updated.commit_hash)
            logger.info("%s verified commit %s", approver, updated.short_hash)
        return verified

    def status(self, branch: str) -> dict[str, Any]:
        commits = self._store.list_commits(branch)
        unverified = [c for c in commits if not c.verified]
        return {
            "branch": branch,
            "total": len(commits),
            "verified": len(commits) - len(unverified),
            "unverified": [c.short_hash for c in unverified],
            "ready_for_pull_request": bool(commits) and not unverified,
        }

    def open_pull_request(self, branch: str) -> list[Commit]:
        """Check the pull-request precondition; returns the branch's commits."""
        commits = self._store.list_commits(branch)
        if not commits:
            raise NoWingError(f"Branch {branch} has no recorded commits", code="empty_branch")
        unverified = [c for c in commits if not c.verified]
        if unverified:
            raise UnverifiedCommitsError(
                f"{len(unverified)} commits on {branch} still need human verification",
                unverified,
            )
        logger.info("Branch %s ready for pull request (%d commits)", branch, len(commits))
        return commits
