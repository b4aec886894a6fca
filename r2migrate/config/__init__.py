"""
Migration service configuration.

Everything is read from environment variables (or .env). R2 and Snowflake
each have a mock mode so the API and CLI run without credentials.
"""

from .settings import Settings, get_settings

__all__ = ["Settings", "get_settings"]
