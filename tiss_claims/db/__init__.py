"""Database layer for the TISS claims engine."""

from tiss_claims.db.connection import create_engine_from_config, create_sqlite_engine
from tiss_claims.db.initialize import init_database, create_schema, drop_schema, check_database_exists
from tiss_claims.db.repository import TissRepository

__all__ = [
    "create_engine_from_config",
    "create_sqlite_engine",
    "init_database",
    "create_schema",
    "drop_schema",
    "check_database_exists",
    "TissRepository",
]
