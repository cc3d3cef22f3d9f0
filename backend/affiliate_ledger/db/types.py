"""Column types that work on both PostgreSQL and SQLite.

PostgreSQL is the production store; SQLite backs the local test run.
JSONB and ARRAY are PostgreSQL-only, so tags and metadata use plain JSON.
"""
from sqlalchemy import JSON
from sqlalchemy.dialects.postgresql import UUID as PG_UUID

JSONType = JSON

# SQLAlchemy 2.x renders this as CHAR(32) where there is no native UUID type
UUIDType = PG_UUID(as_uuid=True)
