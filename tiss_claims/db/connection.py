"""
Database connection management for the TISS claims engine.

Provides engine factory functions for the API process and CLI commands.
"""

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool

from tiss_claims.config.models import DatabaseConfig


def get_connection_string(config: DatabaseConfig) -> str:
    """
    Build the SQLAlchemy connection string.

    Args:
        config: Database configuration

    Returns:
        Connection string (psycopg3 for PostgreSQL unless ``url`` overrides it)
    """
    return config.connection_string


def create_engine_from_config(config: DatabaseConfig, application_name: str = "tiss_claims") -> Engine:
    """
    Create SQLAlchemy engine from configuration.

    SQLite URLs get a single shared connection so in-memory databases
    survive across transactions.

    Args:
        config: Database configuration
        application_name: Label attached to PostgreSQL connections

    Returns:
        SQLAlchemy Engine instance
    """
    connection_string = get_connection_string(config)

    if connection_string.startswith("sqlite"):
        return create_sqlite_engine(connection_string)

    engine = create_engine(
        connection_string,
        pool_size=config.pool_size,
        pool_pre_ping=True,
        # Label connections for debugging
        connect_args={"application_name": application_name},
    )

    return engine


def create_sqlite_engine(url: str = "sqlite://") -> Engine:
    """Create a SQLite engine usable from worker threads and background tasks."""
    return create_engine(
        url,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
