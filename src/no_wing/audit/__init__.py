"""Append-only audit log, compliance reporting and CloudTrail cross-checks."""
