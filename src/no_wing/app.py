"""Application context assembly."""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache

from no_wing.audit.cloudtrail import CloudTrailProvider, TrailProvider
from no_wing.audit.compliance import ComplianceAnalyzer
from no_wing.audit.db import SqliteStore
from no_wing.audit.log import AuditLog
from no_wing.aws_credentials.cache import SessionCache
from no_wing.aws_credentials.context import CredentialManager, ProviderFactory
from no_wing.aws_credentials.sts_provider import AWSIdentityProvider, IdentityProvider
from no_wing.config import Settings, load_settings
from no_wing.permissions.approval import ApprovalWorkflow
from no_wing.permissions.catalog import RoleCatalog
from no_wing.permissions.commits import CommitLedger
from no_wing.permissions.elevator import PermissionElevator
from no_wing.permissions.risk import RiskClassifier
from no_wing.permissions.role_manager import RoleManager
from no_wing.permissions.store import RequestStore
from no_wing.policy.capabilities import CapabilityTable
from no_wing.policy.loader import load_policy_or_default
from no_wing.policy.models import GovernancePolicy


def _aws_provider_factory(settings: Settings, region: str) -> ProviderFactory:
    read_timeout = max(1, int(settings.aws.provider_timeout_seconds))

    def factory(profile: str | None) -> IdentityProvider:
        return AWSIdentityProvider(region=region, profile=profile, read_timeout=read_timeout)

    return factory


@dataclass
class AppContext:
    """Dependency container for the governance components.

    Built once per process by :func:`get_app_context`; tests assemble their
    own with :func:`build_app_context` and fake providers.
    """

    settings: Settings
    policy: GovernancePolicy
    store: RequestStore
    audit_log: AuditLog
    credentials: CredentialManager
    classifier: RiskClassifier
    analyzer: ComplianceAnalyzer
    role_manager: RoleManager
    workflow: ApprovalWorkflow
    elevator: PermissionElevator
    commits: CommitLedger
    trail_provider: TrailProvider


def build_app_context(
    settings: Settings,
    provider_factory: ProviderFactory | None = None,
    trail_provider: TrailProvider | None = None,
    store: RequestStore | None = None,
) -> AppContext:
    policy = load_policy_or_default(settings.governance.policy_path)
    region = settings.aws.default_region or settings.aws.sts_region

    audit_log = AuditLog(settings.storage.audit_log_path)
    if store is None:
        store = SqliteStore(settings.storage.sqlite_path, wal=settings.storage.sqlite_wal)

    if provider_factory is None:
        provider_factory = _aws_provider_factory(settings, region)

    credentials = CredentialManager(
        settings.storage.context_path,
        audit_log,
        user_profile=settings.aws.user_profile,
        agent_profile=settings.aws.agent_profile,
        region=region,
        provider_factory=provider_factory,
    )
    provider = credentials.current_provider()
    timeout = settings.aws.provider_timeout_seconds

    classifier = RiskClassifier(policy.risk)
    catalog = RoleCatalog(provider, policy.role_patterns, timeout_seconds=timeout)
    role_manager = RoleManager(
        catalog,
        provider,
        SessionCache(settings.governance.session_refresh_buffer_seconds),
        audit_log,
        session_duration_seconds=settings.governance.session_duration_seconds,
        timeout_seconds=timeout,
    )

    pending_ttl = settings.governance.pending_ttl_seconds
    if pending_ttl is None:
        pending_ttl = policy.approval.pending_ttl_seconds
    workflow = ApprovalWorkflow(store, audit_log, pending_ttl_seconds=pending_ttl)

    elevator = PermissionElevator(
        role_manager,
        classifier,
        CapabilityTable(policy.capabilities),
        workflow,
        capability_level=settings.governance.capability_level,
        learned_cache_size=settings.governance.learned_cache_size,
        fallback_strategies=policy.fallback_strategies,
    )
    commits = CommitLedger(
        store,
        max_unverified=settings.governance.max_commits_per_branch,
        max_files_per_commit=policy.approval.max_files_per_commit,
    )

    if trail_provider is None:
        trail_provider = CloudTrailProvider(
            region=region,
            profile=credentials.profile_for(credentials.current_type()),
            max_events=settings.cloudtrail.max_events,
        )

    return AppContext(
        settings=settings,
        policy=policy,
        store=store,
        audit_log=audit_log,
        credentials=credentials,
        classifier=classifier,
        analyzer=ComplianceAnalyzer(classifier, policy.admin_role_markers),
        role_manager=role_manager,
        workflow=workflow,
        elevator=elevator,
        commits=commits,
        trail_provider=trail_provider,
    )


@lru_cache(maxsize=1)
def get_app_context() -> AppContext:
    """Get or create the process-wide application context."""
    return build_app_context(load_settings())
