"""Governance policy models."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field, field_validator


def _ensure_list(v: Any) -> list:
    """Convert None to empty list, pass through lists."""
    if v is None:
        return []
    return v


class CapabilityLevel(BaseModel):
    name: str = Field(default="")
    actions: list[str] = Field(default_factory=list)

    @field_validator("actions", mode="before")
    @classmethod
    def _validate_actions(cls, v: Any) -> list:
        return _ensure_list(v)


class RiskTables(BaseModel):
    high_actions: list[str] = Field(
        default_factory=lambda: [
            "iam:DeleteRole",
            "iam:Attach*Policy",
            "iam:PutRolePolicy",
            "iam:CreateRole",
            "s3:DeleteBucket",
            "dynamodb:DeleteTable",
            "lambda:DeleteFunction",
        ]
    )
    mutation_verbs: list[str] = Field(
        default_factory=lambda: [
            "Put",
            "Update",
            "Create",
            "Delete",
            "Modify",
            "Attach",
            "Detach",
            "Tag",
            "Untag",
            "Set",
            "Publish",
            "Invoke",
        ]
    )
    production_markers: list[str] = Field(default_factory=lambda: ["prod", "production"])

    @field_validator("high_actions", "mutation_verbs", "production_markers", mode="before")
    @classmethod
    def _validate_lists(cls, v: Any) -> list:
        return _ensure_list(v)


class ApprovalSettings(BaseModel):
    pending_ttl_seconds: int | None = Field(default=None, ge=60, le=30 * 86400)
    max_files_per_commit: int = Field(default=5, ge=1, le=100)


def _default_role_patterns() -> dict[str, list[str]]:
    return {
        "cloudformation": ["no-wing-deploy-*", "no-wing-cloudformation-*", "*-deployment-role"],
        "s3": ["no-wing-s3-*", "no-wing-storage-*", "*-s3-access-role"],
        "lambda": ["no-wing-lambda-*", "no-wing-function-*", "*-lambda-execution-role"],
        "cloudwatch": ["no-wing-monitoring-*", "no-wing-cloudwatch-*", "*-monitoring-role"],
        "*": ["no-wing-*"],
    }


def _default_fallback_strategies() -> dict[str, list[str]]:
    return {
        "cloudformation": ["read-only-validation", "dry-run", "manual-approval"],
        "lambda": ["function-validation", "code-analysis", "staged-deployment"],
        "s3": ["read-only-access", "presigned-urls", "manual-upload"],
        "*": ["manual-execution"],
    }


def _default_capabilities() -> dict[int, CapabilityLevel]:
    return {
        1: CapabilityLevel(
            name="observer",
            actions=[
                "cloudformation:DescribeStacks",
                "cloudformation:ListStacks",
                "lambda:GetFunction",
                "lambda:ListFunctions",
                "logs:FilterLogEvents",
                "s3:GetObject",
                "s3:ListBucket",
            ],
        ),
        2: CapabilityLevel(
            name="contributor",
            actions=[
                "lambda:UpdateFunctionCode",
                "lambda:UpdateFunctionConfiguration",
                "s3:PutObject",
                "cloudformation:UpdateStack",
            ],
        ),
        3: CapabilityLevel(
            name="deployer",
            actions=[
                "cloudformation:CreateStack",
                "lambda:CreateFunction",
                "apigateway:*",
            ],
        ),
    }


class GovernancePolicy(BaseModel):
    version: int = Field(default=1)
    capabilities: dict[int, CapabilityLevel] = Field(default_factory=_default_capabilities)
    risk: RiskTables = Field(default_factory=RiskTables)
    role_patterns: dict[str, list[str]] = Field(default_factory=_default_role_patterns)
    fallback_strategies: dict[str, list[str]] = Field(
        default_factory=_default_fallback_strategies
    )
    admin_role_markers: list[str] = Field(default_factory=lambda: ["admin", "administrator"])
    approval: ApprovalSettings = Field(default_factory=ApprovalSettings)

    @field_validator("capabilities", mode="before")
    @classmethod
    def _validate_capabilities(cls, v: Any) -> dict:
        if v is None:
            return {}
        if isinstance(v, dict):
            normalised: dict[int, Any] = {}
            for level, entry in v.items():
                if isinstance(entry, list):
                    entry = {"actions": entry}
                normalised[int(level)] = entry
            return normalised
        return v

    @field_validator("role_patterns", "fallback_strategies", mode="before")
    @classmethod
    def _validate_pattern_tables(cls, v: Any) -> dict:
        if v is None:
            return {}
        if isinstance(v, dict):
            return {k: _ensure_list(val) for k, val in v.items()}
        return v

    @field_validator("admin_role_markers", mode="before")
    @classmethod
    def _validate_lists(cls, v: Any) -> list:
        return _ensure_list(v)

    @classmethod
    def from_yaml(cls, data: dict[str, object]) -> "GovernancePolicy":
        return cls.model_validate(data)
