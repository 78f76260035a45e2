"""Database-agnostic type definitions for SQLAlchemy models.

Every model in the engine runs against PostgreSQL in production and a
file-backed SQLite database in development and tests, so column types are
taken from here rather than from a dialect module.
"""
from sqlalchemy import JSON, Uuid

# JSONB is PostgreSQL-specific, JSON works with both SQLite and PostgreSQL
JSONType = JSON

# Native UUID on PostgreSQL, CHAR(32) on SQLite
UUIDType = Uuid
