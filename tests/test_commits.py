from __future__ import annotations

import threading
from pathlib import Path

import pytest

from fakes import FakeClock
from no_wing.audit.db import SqliteStore
from no_wing.errors import NoWingError
from no_wing.permissions.commits import CommitLedger, CommitLimitError, UnverifiedCommitsError
from no_wing.permissions.store import InMemoryRequestStore


@pytest.fixture
def ledger(store: InMemoryRequestStore) -> CommitLedger:
    return CommitLedger(store, max_unverified=2, max_files_per_commit=3, clock=FakeClock())


def test_commit_size_is_limited(ledger: CommitLedger) -> None:
    with pytest.raises(CommitLimitError) as exc_info:
        ledger.add("feat/x", "a1b2c3d4e5", "too big", ["a", "b", "c", "d"])
    assert exc_info.value.code == "too_many_files"
    assert "split" in exc_info.value.hint


def test_unverified_commits_per_branch_are_limited(ledger: CommitLedger) -> None:
    ledger.add("feat/x", "aaaa1111", "one", ["a.py"])
    ledger.add("feat/x", "bbbb2222", "two", ["b.py"])
    ledger.add("feat/y", "cccc3333", "other branch", ["c.py"])

    with pytest.raises(CommitLimitError) as exc_info:
        ledger.add("feat/x", "dddd4444", "three", ["d.py"])
    assert exc_info.value.code == "branch_limit"

    ledger.verify(["aaaa"], approver="alice")
    assert ledger.add("feat/x", "dddd4444", "three", ["d.py"]).short_hash == "dddd4444"


def test_readding_a_commit_does_not_count_against_the_cap(ledger: CommitLedger) -> None:
    ledger.add("feat/x", "aaaa1111", "one", ["a.py"])
    ledger.add("feat/x", "bbbb2222", "two", ["b.py"])

    ledger.add("feat/x", "bbbb2222", "two, amended", ["b.py"])

    assert ledger.status("feat/x")["total"] == 2


def _race(ledgers: list[CommitLedger]) -> list[str]:
    barrier = threading.Barrier(len(ledgers))
    outcomes: list[str] = []
    outcome_lock = threading.Lock()

    def add(index: int, ledger: CommitLedger) -> None:
        barrier.wait()
        try:
            ledger.add("feat/race", f"{index:08x}", f"commit {index}", ["a.py"])
            outcome = "added"
        except CommitLimitError:
            outcome = "refused"
        with outcome_lock:
            outcomes.append(outcome)

    threads = [
        threading.Thread(target=add, args=(index, ledger)) for index, ledger in enumerate(ledgers)
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    return outcomes


def test_concurrent_adds_respect_the_cap_in_memory(store: InMemoryRequestStore) -> None:
    ledgers = [CommitLedger(store, max_unverified=3) for _ in range(8)]

    outcomes = _race(ledgers)

    assert outcomes.count("added") == 3
    assert outcomes.count("refused") == 5
    assert len(store.list_commits("feat/race")) == 3


def test_concurrent_adds_respect_the_cap_across_connections(tmp_path: Path) -> None:
    path = str(tmp_path / "state.sqlite")
    stores = [SqliteStore(path) for _ in range(6)]
    try:
        outcomes = _race([CommitLedger(s, max_unverified=2) for s in stores])

        assert outcomes.count("added") == 2
        assert len(stores[0].list_commits("feat/race")) == 2
    finally:
        for s in stores:
            s.close()


def test_verify_by_prefix(ledger: CommitLedger) -> None:
    ledger.add("feat/x", "abc12345", "one", [])
    ledger.add("feat/x", "abd67890", "two", [])

    with pytest.raises(ValueError, match="ambiguous"):
        ledger.verify(["ab"], approver="alice")

    verified = ledger.verify(["abc", "abc1", "zzz"], approver="alice")

    assert [c.commit_hash for c in verified] == ["abc12345"]
    assert verified[0].approver == "alice"
    assert verified[0].verified_at is not None


def test_pull_request_needs_every_commit_verified(ledger: CommitLedger) -> None:
    with pytest.raises(NoWingError) as empty:
        ledger.open_pull_request("feat/x")
    assert empty.value.code == "empty_branch"

    ledger.add("feat/x", "abc12345", "one", ["a.py"])
    ledger.add("feat/x", "def67890", "two", ["b.py"])
    ledger.verify(["abc"], approver="alice")

    with pytest.raises(UnverifiedCommitsError) as exc_info:
        ledger.open_pull_request("feat/x")
    assert [c.commit_hash for c in exc_info.value.unverified] == ["def67890"]
    assert ledger.status("feat/x") == {
        "branch": "feat/x",
        "total": 2,
        "verified": 1,
        "unverified": ["def67890"],
        "ready_for_pull_request": False,
    }

    ledger.verify(["def"], approver="alice")
    assert len(ledger.open_pull_request("feat/x")) == 2
    assert ledger.status("feat/x")["ready_for_pull_request"] is True
