"""``no-wing`` command line.

Every command prints human-readable text by default and JSON with
``--format json``. Operator-facing failures exit with status 1 after one
error line and, when available, a remediation hint on stderr.
"""

from __future__ import annotations

import asyncio
import json
from contextlib import contextmanager
from datetime import datetime, timedelta
from enum import Enum
from fnmatch import fnmatchcase
from typing import Any, Coroutine, Iterator, List, Optional, TypeVar

import typer

from no_wing import __version__
from no_wing.app import AppContext, get_app_context
from no_wing.audit.cloudtrail import verify_cloudtrail_integration
from no_wing.audit.models import AuditEvent, AuditQuery
from no_wing.aws_credentials.context import CONTEXT_TYPES
from no_wing.domain.roles import CallerIdentity
from no_wing.errors import NoWingError
from no_wing.logging_utils import configure_logging
from no_wing.permissions.approval import RequestNotFound
from no_wing.permissions.models import PermissionRequest, RequestStatus
from no_wing.utils.serialization import json_default
from no_wing.utils.time import parse_timestamp, utc_now

T = TypeVar("T")


class OutputFormat(str, Enum):
    TEXT = "text"
    JSON = "json"


app = typer.Typer(
    name="no-wing",
    help="Permission governance for an AI agent acting in AWS.",
    no_args_is_help=True,
    add_completion=False,
)
audit_app = typer.Typer(
    help="Query the audit log and build compliance reports.", no_args_is_help=True
)
permissions_app = typer.Typer(help="Roles and permission requests.", no_args_is_help=True)
credentials_app = typer.Typer(
    help="Switch between user and agent credentials.", no_args_is_help=True
)
commits_app = typer.Typer(help="Human verification of agent commits.", no_args_is_help=True)

app.add_typer(audit_app, name="audit")
app.add_typer(permissions_app, name="permissions")
app.add_typer(credentials_app, name="credentials")
app.add_typer(commits_app, name="commits")

_FORMAT_OPTION = typer.Option(OutputFormat.TEXT, "--format", help="Output format")


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"no-wing {__version__}")
        raise typer.Exit(code=0)


@app.callback()
def app_callback(
    log_level: Optional[str] = typer.Option(None, "--log-level", help="Override LOG_LEVEL"),
    version: bool = typer.Option(False, "--version", callback=_version_callback, is_eager=True),
) -> None:
    del version
    configure_logging(log_level)


@contextmanager
def _operator_errors() -> Iterator[None]:
    try:
        yield
    except NoWingError as exc:
        typer.echo(f"Error: {exc}", err=True)
        if exc.hint:
            typer.echo(f"Hint: {exc.hint}", err=True)
        raise typer.Exit(code=1) from exc
    except ValueError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from exc


def _run(coro: Coroutine[Any, Any, T]) -> T:
    return asyncio.run(coro)


def _context() -> AppContext:
    try:
        return get_app_context()
    except RuntimeError as exc:
        raise NoWingError(
            str(exc),
            code="invalid_config",
            hint="check the NO_WING_* and LOG_* environment variables and your .env file",
        ) from exc


def _print_json(data: Any) -> None:
    typer.echo(json.dumps(data, indent=2, default=json_default))


def _parse_time(value: Optional[str], option: str) -> Optional[datetime]:
    if value is None:
        return None
    try:
        return parse_timestamp(value)
    except ValueError as exc:
        raise typer.BadParameter(f"invalid ISO-8601 timestamp: {value}", param_hint=option) from exc


def _event_line(event: AuditEvent) -> str:
    status = "ok" if event.result.success else f"FAILED ({event.result.error_message})"
    when = event.timestamp.isoformat() if event.timestamp else "-"
    return (
        f"{when}  {event.event_type.value:<18} "
        f"{event.actor.type.value}:{event.actor.identity}  "
        f"{event.operation.service}:{event.operation.action}  {status}"
    )


def _request_line(request: PermissionRequest) -> str:
    decided = f" by {request.approver}" if request.approver else ""
    return (
        f"{request.request_id}  {request.status.value:<8}{decided}  "
        f"{request.risk_tier.value:<6} {request.requested_action} on "
        f"{request.target_resource_pattern}"
    )


def _identity_dict(identity: CallerIdentity | None) -> dict[str, str] | None:
    if identity is None:
        return None
    return {"account_id": identity.account_id, "arn": identity.arn, "user_id": identity.user_id}


# ---------------------------------------------------------------------------
# audit
# ---------------------------------------------------------------------------


@audit_app.command("events")
def audit_events(
    start: Optional[str] = typer.Option(None, "--start", help="Inclusive ISO-8601 start"),
    end: Optional[str] = typer.Option(None, "--end", help="Exclusive ISO-8601 end"),
    event_type: Optional[List[str]] = typer.Option(None, "--type", help="Event type filter"),
    limit: Optional[int] = typer.Option(None, "--limit", min=0, help="Newest N events"),
    output: OutputFormat = _FORMAT_OPTION,
) -> None:
    """List audit events, newest first."""
    query = AuditQuery(
        event_types=list(event_type) if event_type else None,
        start=_parse_time(start, "--start"),
        end=_parse_time(end, "--end"),
        limit=limit,
    )
    with _operator_errors():
        events = _context().audit_log.query(query)
    if output is OutputFormat.JSON:
        _print_json([event.to_dict() for event in events])
        return
    if not events:
        typer.echo("No audit events found.")
        return
    for event in events:
        typer.echo(_event_line(event))


@audit_app.command("report")
def audit_report(
    start: Optional[str] = typer.Option(None, "--start", help="Defaults to 24 hours ago"),
    end: Optional[str] = typer.Option(None, "--end", help="Defaults to now"),
    include_events: bool = typer.Option(False, "--include-events", help="Embed events in JSON"),
    output: OutputFormat = _FORMAT_OPTION,
) -> None:
    """Build a compliance report for a time window."""
    window_end = _parse_time(end, "--end") or utc_now()
    window_start = _parse_time(start, "--start") or window_end - timedelta(hours=24)
    if window_start >= window_end:
        raise typer.BadParameter("--start must be before --end", param_hint="--start")

    with _operator_errors():
        ctx = _context()
        report = ctx.audit_log.generate_compliance_report(
            window_start, window_end, analyzer=ctx.analyzer
        )
    if output is OutputFormat.JSON:
        _print_json(report.to_dict(include_events=include_events))
        return

    summary = report.summary
    typer.echo(f"Compliance report {report.report_id}")
    typer.echo(f"Window: {report.start.isoformat()} -> {report.end.isoformat()}")
    typer.echo(
        f"Events: {summary.total_events} (human {summary.human_actions}, "
        f"agent {summary.agent_actions}, errors {summary.errors}, "
        f"permission requests {summary.permission_requests})"
    )
    if not report.violations:
        typer.echo("No violations found.")
        return
    typer.echo(f"Violations: {len(report.violations)}")
    for violation in report.violations:
        typer.echo(f"  [{violation.severity}] {violation.type}: {violation.description}")
        typer.echo(f"      -> {violation.recommendation}")


@audit_app.command("verify-cloudtrail")
def audit_verify_cloudtrail(
    window_hours: Optional[int] = typer.Option(None, "--window-hours", min=1),
    output: OutputFormat = _FORMAT_OPTION,
) -> None:
    """Check local role assumptions against CloudTrail."""
    with _operator_errors():
        ctx = _context()
    settings = ctx.settings.cloudtrail
    status = _run(
        verify_cloudtrail_integration(
            ctx.audit_log,
            ctx.trail_provider,
            window=timedelta(hours=window_hours or settings.window_hours),
            grace=timedelta(seconds=settings.grace_seconds),
            timeout_seconds=ctx.settings.aws.provider_timeout_seconds,
        )
    )
    if output is OutputFormat.JSON:
        _print_json(status.to_dict())
    else:
        state = "reachable" if status.is_configured else "NOT reachable"
        typer.echo(f"CloudTrail {state}: {status.recent_events} recent AssumeRole events")
        if status.last_event_time:
            typer.echo(f"Last event: {status.last_event_time.isoformat()}")
        typer.echo(
            f"Checked {status.checked_assumptions} local assumptions, "
            f"{status.mismatches} missing from CloudTrail"
        )
        for error in status.errors:
            typer.echo(f"Error: {error}", err=True)
        for warning in status.warnings:
            typer.echo(f"Warning: {warning}", err=True)
    if status.errors:
        raise typer.Exit(code=1)


# ---------------------------------------------------------------------------
# permissions
# ---------------------------------------------------------------------------


@permissions_app.command("list-roles")
def permissions_list_roles(
    pattern: Optional[str] = typer.Option(None, "--pattern", help="Glob on the role name"),
    refresh: bool = typer.Option(False, "--refresh", help="Bypass the discovery cache"),
    output: OutputFormat = _FORMAT_OPTION,
) -> None:
    """List roles the current identity can assume."""
    with _operator_errors():
        listing = _run(_context().role_manager.list_available_roles(refresh=refresh))
        if not listing.ok and not listing.roles:
            listing.raise_for_error()

    roles = [r for r in listing.roles if pattern is None or fnmatchcase(r.role_name, pattern)]
    for warning in listing.warnings:
        typer.echo(f"Warning: {warning}", err=True)

    if output is OutputFormat.JSON:
        _print_json(
            {
                "roles": [
                    {
                        "role_arn": r.role_arn,
                        "role_name": r.role_name,
                        "max_session_duration_seconds": r.max_session_duration_seconds,
                        "resource_scopes": list(r.resource_scopes),
                        "description": r.description,
                    }
                    for r in roles
                ],
                "warnings": list(listing.warnings),
                "error": str(listing.error) if listing.error else None,
            }
        )
        return
    if not roles:
        typer.echo("No assumable roles found.")
        return
    for role in roles:
        typer.echo(f"{role.role_name:<40} {role.role_arn}  max={role.max_session_duration_seconds}s")


@permissions_app.command("test-role")
def permissions_test_role(
    role_arn: str = typer.Argument(..., help="ARN of the role to assume"),
    output: OutputFormat = _FORMAT_OPTION,
) -> None:
    """Assume a role once and report the resulting identity."""
    with _operator_errors():
        result = _run(_context().role_manager.test_role_assumption(role_arn))
    if output is OutputFormat.JSON:
        _print_json(
            {
                "role_arn": result.role_arn,
                "success": result.success,
                "identity": _identity_dict(result.identity),
                "session_name": result.session_name,
                "expiration": result.expiration,
                "error": result.error,
                "error_code": result.error_code,
            }
        )
    elif result.success and result.identity is not None:
        typer.echo(f"Assumed {role_arn} as {result.identity.arn}")
        expires = result.expiration.isoformat() if result.expiration else "unknown"
        typer.echo(f"Session {result.session_name} expires {expires}")
    else:
        typer.echo(f"Error: could not assume {role_arn}: {result.error}", err=True)
    if not result.success:
        raise typer.Exit(code=1)


@permissions_app.command("requests")
def permissions_requests(
    status: Optional[RequestStatus] = typer.Option(None, "--status", help="Filter by status"),
    output: OutputFormat = _FORMAT_OPTION,
) -> None:
    """List permission requests."""
    with _operator_errors():
        requests = _context().workflow.list_requests(status)
    if output is OutputFormat.JSON:
        _print_json([r.to_dict() for r in requests])
        return
    if not requests:
        typer.echo("No permission requests.")
        return
    for request in requests:
        typer.echo(_request_line(request))


def _decide(request_id: str, approver: str, approve: bool, output: OutputFormat) -> None:
    with _operator_errors():
        workflow = _context().workflow
        decided = workflow.approve(request_id, approver) if approve else workflow.deny(
            request_id, approver
        )
        request = workflow.get(request_id)
        if request is None:
            raise RequestNotFound(f"Permission request {request_id} not found", code="not_found")

    if output is OutputFormat.JSON:
        _print_json({"changed": decided, "request": request.to_dict()})
    elif decided:
        typer.echo(f"{request_id} {request.status.value} by {approver}")
    else:
        typer.echo(
            f"Error: {request_id} is already {request.status.value}; nothing changed", err=True
        )
    if not decided:
        raise typer.Exit(code=1)


@permissions_app.command("approve")
def permissions_approve(
    request_id: str = typer.Argument(...),
    approver: str = typer.Option(..., "--approver", help="Name of the approving human"),
    output: OutputFormat = _FORMAT_OPTION,
) -> None:
    """Approve a pending permission request."""
    _decide(request_id, approver, True, output)


@permissions_app.command("deny")
def permissions_deny(
    request_id: str = typer.Argument(...),
    approver: str = typer.Option(..., "--approver", help="Name of the denying human"),
    output: OutputFormat = _FORMAT_OPTION,
) -> None:
    """Deny a pending permission request."""
    _decide(request_id, approver, False, output)


@permissions_app.command("expire")
def permissions_expire(output: OutputFormat = _FORMAT_OPTION) -> None:
    """Expire pending requests older than the configured TTL."""
    with _operator_errors():
        workflow = _context().workflow
        expired = workflow.expire_stale_requests()
    if output is OutputFormat.JSON:
        _print_json(
            {
                "pending_ttl_seconds": workflow.pending_ttl_seconds,
                "expired": [r.request_id for r in expired],
            }
        )
        return
    if workflow.pending_ttl_seconds is None:
        typer.echo("No pending TTL configured; requests never expire.")
        return
    typer.echo(f"Expired {len(expired)} request(s).")
    for request in expired:
        typer.echo(f"  {request.request_id}")


@permissions_app.command("metrics")
def permissions_metrics(output: OutputFormat = _FORMAT_OPTION) -> None:
    """Show operation outcomes and request counts."""
    with _operator_errors():
        ctx = _context()
        metrics = ctx.workflow.get_success_metrics()
        requests = ctx.elevator.get_request_statistics()
    if output is OutputFormat.JSON:
        _print_json({"operations": metrics, "requests": requests})
        return
    typer.echo(
        f"Operations: {metrics['total_operations']} "
        f"(success {metrics['success_rate']:.1f}%, error {metrics['error_rate']:.1f}%, "
        f"avg {metrics['average_duration_ms']:.0f}ms, "
        f"rollbacks required {metrics['rollbacks_required']})"
    )
    typer.echo(
        "Requests: " + ", ".join(f"{key} {value}" for key, value in requests.items())
    )


# ---------------------------------------------------------------------------
# credentials
# ---------------------------------------------------------------------------


@credentials_app.command("switch")
def credentials_switch(
    context_type: str = typer.Argument(..., help="user or agent"),
    output: OutputFormat = _FORMAT_OPTION,
) -> None:
    """Switch the active credential context."""
    if context_type not in CONTEXT_TYPES:
        raise typer.BadParameter(
            f"must be one of: {', '.join(CONTEXT_TYPES)}", param_hint="CONTEXT_TYPE"
        )
    with _operator_errors():
        context = _run(_context().credentials.switch(context_type))
    if output is OutputFormat.JSON:
        _print_json(context.to_dict())
        return
    arn = context.identity.arn if context.identity else "unknown identity"
    typer.echo(f"Switched to {context.context_type} credentials ({arn})")


@credentials_app.command("whoami")
def credentials_whoami(output: OutputFormat = _FORMAT_OPTION) -> None:
    """Show the active credential context and identity."""
    with _operator_errors():
        context = _run(_context().credentials.whoami())
    if output is OutputFormat.JSON:
        _print_json(context.to_dict())
        return
    arn = context.identity.arn if context.identity else "unknown identity"
    profile = context.profile or "default"
    typer.echo(f"{context.context_type} context (profile {profile}): {arn}")


@credentials_app.command("test")
def credentials_test(output: OutputFormat = _FORMAT_OPTION) -> None:
    """Resolve both credential contexts without switching."""
    with _operator_errors():
        results = _run(_context().credentials.test())
    failed = [name for name, value in results.items() if isinstance(value, NoWingError)]

    if output is OutputFormat.JSON:
        _print_json(
            {
                name: (
                    {"ok": False, "error": str(value), "code": value.code}
                    if isinstance(value, NoWingError)
                    else {"ok": True, "identity": _identity_dict(value)}
                )
                for name, value in results.items()
            }
        )
    else:
        for name, value in results.items():
            if isinstance(value, NoWingError):
                typer.echo(f"{name:<6} FAILED  {value}")
            else:
                typer.echo(f"{name:<6} ok      {value.arn}")
    if failed:
        raise typer.Exit(code=1)


# ---------------------------------------------------------------------------
# commits
# ---------------------------------------------------------------------------


@commits_app.command("add")
def commits_add(
    branch: str = typer.Argument(...),
    commit_hash: str = typer.Argument(...),
    message: str = typer.Option("", "--message", "-m"),
    files: Optional[List[str]] = typer.Option(None, "--file", "-f", help="Changed file"),
    output: OutputFormat = _FORMAT_OPTION,
) -> None:
    """Record an agent commit awaiting verification."""
    with _operator_errors():
        commit = _context().commits.add(branch, commit_hash, message, files or [])
    if output is OutputFormat.JSON:
        _print_json(commit.to_dict())
        return
    typer.echo(f"Recorded {commit.short_hash} on {branch} ({len(commit.files)} files)")


@commits_app.command("verify")
def commits_verify(
    hashes: List[str] = typer.Argument(..., help="Commit hashes or unique prefixes"),
    approver: str = typer.Option(..., "--approver"),
    branch: Optional[str] = typer.Option(None, "--branch"),
    output: OutputFormat = _FORMAT_OPTION,
) -> None:
    """Mark commits as verified by a human."""
    with _operator_errors():
        verified = _context().commits.verify(hashes, approver, branch)
    if output is OutputFormat.JSON:
        _print_json([c.to_dict() for c in verified])
        return
    if not verified:
        typer.echo("No unverified commits matched.")
        return
    for commit in verified:
        typer.echo(f"Verified {commit.short_hash} ({commit.branch})")


@commits_app.command("status")
def commits_status(
    branch: str = typer.Argument(...),
    output: OutputFormat = _FORMAT_OPTION,
) -> None:
    """Show verification status of a branch."""
    with _operator_errors():
        status = _context().commits.status(branch)
    if output is OutputFormat.JSON:
        _print_json(status)
        return
    typer.echo(f"{branch}: {status['verified']}/{status['total']} commits verified")
    if status["unverified"]:
        typer.echo("Unverified: " + " ".join(status["unverified"]))
    elif status["ready_for_pull_request"]:
        typer.echo("Ready for pull request.")


@commits_app.command("open-pr")
def commits_open_pr(
    branch: str = typer.Argument(...),
    output: OutputFormat = _FORMAT_OPTION,
) -> None:
    """Check that a branch may be proposed as a pull request."""
    with _operator_errors():
        commits = _context().commits.open_pull_request(branch)
    if output is OutputFormat.JSON:
        _print_json({"branch": branch, "commits": [c.to_dict() for c in commits]})
        return
    typer.echo(f"{branch} is ready: {len(commits)} verified commits")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
