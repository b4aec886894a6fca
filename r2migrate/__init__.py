"""
r2migrate - moves legacy media into Cloudflare R2.

This package contains the complete application:
- core: Framework-agnostic migration engine
- infrastructure: Object store, legacy host and Snowflake integrations
- api: FastAPI routes and dependencies
- config: Application configuration
"""

__version__ = "0.1.0"
