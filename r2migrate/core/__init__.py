"""
Core business logic for moving media into the object store.

This module doesn't import FastAPI or Snowflake. The coordinator talks to
persistence and the legacy host through small protocols, so the migration
logic can be tested against in-memory fakes.
"""
