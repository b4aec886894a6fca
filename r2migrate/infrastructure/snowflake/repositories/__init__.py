"""
Repository pattern implementations for Snowflake.

Repositories translate between domain models and database representations.
"""

from .migrations import MigrationRepository

__all__ = ["MigrationRepository"]
