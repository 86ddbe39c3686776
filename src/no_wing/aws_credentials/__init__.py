"""AWS identity utilities: STS/IAM provider and assumed-session cache."""

from no_wing.aws_credentials.cache import AssumedSession, SessionCache
from no_wing.aws_credentials.sts_provider import (
    AssumptionFailure,
    AWSIdentityProvider,
    DiscoveryError,
    TemporaryCredentials,
)

__all__ = [
    "AWSIdentityProvider",
    "AssumedSession",
    "AssumptionFailure",
    "DiscoveryError",
    "SessionCache",
    "TemporaryCredentials",
]
