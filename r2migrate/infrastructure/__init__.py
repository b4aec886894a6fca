"""
Infrastructure layer - external service integrations.

Each subdirectory wraps an external dependency:
- legacy: HTTP downloads from the old storage host
- snowflake: Database persistence for migration records
- storage: Object storage (R2/S3) with SigV4 signing

These wrappers translate between external formats and our domain models.
"""
