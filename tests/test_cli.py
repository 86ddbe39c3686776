from __future__ import annotations

import json
from datetime import timedelta
from pathlib import Path

import pytest
from typer.testing import CliRunner

from fakes import ACCOUNT, FakeIdentityProvider, FakeTrailProvider, make_role
from no_wing import __version__
from no_wing.app import AppContext, build_app_context
from no_wing.cli import main
from no_wing.config import Settings
from no_wing.permissions.models import PermissionRequest, RiskTier
from no_wing.permissions.store import InMemoryRequestStore
from no_wing.utils.time import utc_now

runner = CliRunner()

AGENT_ARN = f"arn:aws:iam::{ACCOUNT}:user/no-wing-agent"


def _settings(tmp_path: Path) -> Settings:
    return Settings.model_validate(
        {
            "storage": {
                "state_dir": str(tmp_path),
                "audit_log_path": str(tmp_path / "audit.jsonl"),
                "sqlite_path": str(tmp_path / "state.sqlite"),
                "context_path": str(tmp_path / "context.json"),
            },
            "aws": {"user_profile": "dev", "agent_profile": "agent"},
            "governance": {"policy_path": str(tmp_path / "missing-policy.yaml")},
        }
    )


def _build(tmp_path: Path, trail: FakeTrailProvider | None = None) -> AppContext:
    providers = {
        "dev": FakeIdentityProvider(
            roles=[make_role("no-wing-lambda-deployer"), make_role("no-wing-s3-reader")]
        ),
        "agent": FakeIdentityProvider(caller_arn=AGENT_ARN),
    }
    return build_app_context(
        _settings(tmp_path),
        provider_factory=lambda profile: providers[profile],
        trail_provider=trail or FakeTrailProvider(),
        store=InMemoryRequestStore(),
    )


@pytest.fixture
def ctx(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> AppContext:
    context = _build(tmp_path)
    monkeypatch.setattr(main, "get_app_context", lambda: context)
    monkeypatch.setattr(main, "configure_logging", lambda level=None: None)
    return context


def _submit(ctx: AppContext, request_id: str = "req-1") -> PermissionRequest:
    return ctx.workflow.submit(
        PermissionRequest(
            request_id=request_id,
            requested_action="s3:PutObject",
            target_resource_pattern="arn:aws:s3:::bucket/prod-data/*",
            justification="upload build artifacts",
            risk_tier=RiskTier.HIGH,
            created_at=utc_now(),
            requires_approval=True,
            service="s3",
        )
    )


def test_version() -> None:
    result = runner.invoke(main.app, ["--version"])

    assert result.exit_code == 0
    assert __version__ in result.output


def test_requests_and_approval(ctx: AppContext) -> None:
    empty = runner.invoke(main.app, ["permissions", "requests"])
    assert "No permission requests." in empty.output

    _submit(ctx)
    listed = runner.invoke(main.app, ["permissions", "requests", "--status", "pending"])
    assert "req-1" in listed.output and "s3:PutObject" in listed.output

    approved = runner.invoke(main.app, ["permissions", "approve", "req-1", "--approver", "alice"])
    assert approved.exit_code == 0
    assert "req-1 approved by alice" in approved.output

    again = runner.invoke(main.app, ["permissions", "deny", "req-1", "--approver", "bob"])
    assert again.exit_code == 1
    assert "already approved" in again.output
    assert ctx.workflow.get("req-1").approver == "alice"


def test_unknown_request_prints_hint(ctx: AppContext) -> None:
    result = runner.invoke(main.app, ["permissions", "approve", "req-missing", "--approver", "alice"])

    assert result.exit_code == 1
    assert "Error: Permission request req-missing not found" in result.output
    assert "Hint:" in result.output


def test_audit_events_json(ctx: AppContext) -> None:
    _submit(ctx)

    result = runner.invoke(main.app, ["audit", "events", "--format", "json"])

    assert result.exit_code == 0
    events = json.loads(result.output)
    assert len(events) == 1
    assert events[0]["event_type"] == "permission-request"


def test_audit_events_rejects_bad_timestamps(ctx: AppContext) -> None:
    result = runner.invoke(main.app, ["audit", "events", "--start", "yesterday-ish"])

    assert result.exit_code == 2


def test_report_flags_unapproved_high_risk(ctx: AppContext) -> None:
    ctx.audit_log.log_aws_operation(
        "iam", "DeleteRole", ["arn:aws:iam::111111111111:role/x"], success=True
    )

    clean_window = runner.invoke(
        main.app,
        ["audit", "report", "--end", (utc_now() - timedelta(hours=2)).isoformat()],
    )
    assert "No violations found." in clean_window.output

    report = runner.invoke(main.app, ["audit", "report", "--format", "json"])
    data = json.loads(report.output)
    assert data["summary"]["total_events"] == 1
    assert [v["type"] for v in data["violations"]] == ["permission-escalation"]


def test_verify_cloudtrail_failure_exits_nonzero(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    context = _build(tmp_path, trail=FakeTrailProvider(error=RuntimeError("no trail")))
    monkeypatch.setattr(main, "get_app_context", lambda: context)
    monkeypatch.setattr(main, "configure_logging", lambda level=None: None)

    result = runner.invoke(main.app, ["audit", "verify-cloudtrail"])

    assert result.exit_code == 1
    assert "NOT reachable" in result.output
    assert "no trail" in result.output


def test_list_roles_with_pattern(ctx: AppContext) -> None:
    result = runner.invoke(main.app, ["permissions", "list-roles", "--pattern", "*lambda*"])

    assert result.exit_code == 0
    assert "no-wing-lambda-deployer" in result.output
    assert "no-wing-s3-reader" not in result.output


def test_credentials_switch_and_whoami(ctx: AppContext) -> None:
    assert "user context (profile dev)" in runner.invoke(
        main.app, ["credentials", "whoami"]
    ).output

    switched = runner.invoke(main.app, ["credentials", "switch", "agent"])
    assert switched.exit_code == 0
    assert f"Switched to agent credentials ({AGENT_ARN})" in switched.output

    whoami = runner.invoke(main.app, ["credentials", "whoami", "--format", "json"])
    assert json.loads(whoami.output)["identity"]["arn"] == AGENT_ARN

    invalid = runner.invoke(main.app, ["credentials", "switch", "root"])
    assert invalid.exit_code == 2


def test_commit_verification_flow(ctx: AppContext) -> None:
    added = runner.invoke(
        main.app, ["commits", "add", "feat/x", "abc1234567", "-m", "fix", "-f", "a.py"]
    )
    assert "Recorded abc12345 on feat/x (1 files)" in added.output

    blocked = runner.invoke(main.app, ["commits", "open-pr", "feat/x"])
    assert blocked.exit_code == 1
    assert "still need human verification" in blocked.output

    status = runner.invoke(main.app, ["commits", "status", "feat/x"])
    assert "0/1 commits verified" in status.output
    assert "Unverified: abc12345" in status.output

    runner.invoke(main.app, ["commits", "verify", "abc1", "--approver", "alice"])
    ready = runner.invoke(main.app, ["commits", "open-pr", "feat/x"])
    assert ready.exit_code == 0
    assert "feat/x is ready: 1 verified commits" in ready.output


def test_expire_without_ttl(ctx: AppContext) -> None:
    result = runner.invoke(main.app, ["permissions", "expire"])

    assert "requests never expire" in result.output


def _broken_context(monkeypatch: pytest.MonkeyPatch, factory) -> None:
    monkeypatch.setattr(main, "get_app_context", factory)
    monkeypatch.setattr(main, "configure_logging", lambda level=None: None)


@pytest.mark.parametrize(
    "args",
    [
        ["audit", "report"],
        ["audit", "verify-cloudtrail"],
        ["permissions", "test-role", f"arn:aws:iam::{ACCOUNT}:role/no-wing-s3-reader"],
        ["permissions", "approve", "req-1", "--approver", "alice"],
        ["permissions", "deny", "req-1", "--approver", "bob"],
        ["permissions", "expire"],
        ["permissions", "metrics"],
        ["credentials", "whoami"],
    ],
)
def test_corrupt_context_file_is_an_operator_error(
    args: list[str], tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    (tmp_path / "context.json").write_text("{not json", encoding="utf-8")
    _broken_context(monkeypatch, lambda: _build(tmp_path))

    result = runner.invoke(main.app, args)

    assert result.exit_code == 1
    assert isinstance(result.exception, SystemExit)
    assert "Error: Credential context file" in result.output
    assert "Hint:" in result.output


def test_invalid_configuration_is_an_operator_error(monkeypatch: pytest.MonkeyPatch) -> None:
    def invalid() -> AppContext:
        raise RuntimeError("Invalid configuration: capability_level must be <= 100")

    _broken_context(monkeypatch, invalid)

    result = runner.invoke(main.app, ["audit", "report"])

    assert result.exit_code == 1
    assert isinstance(result.exception, SystemExit)
    assert "Error: Invalid configuration" in result.output
    assert "Hint: check the NO_WING_*" in result.output
