"""
Database initialization for the TISS claims engine.

Creates all required tables.
"""

import structlog
from sqlalchemy import inspect
from sqlalchemy.engine import Engine

from tiss_claims.config import load_config
from tiss_claims.db.connection import create_engine_from_config
from tiss_claims.db.schema import metadata, TABLES_IN_ORDER

logger = structlog.get_logger()


def init_database(
    config_path: str | None = None,
    drop_existing: bool = False,
) -> None:
    """
    Initialize the database with all required tables.

    Args:
        config_path: Path to configuration file
        drop_existing: If True, drop all tables before creating
    """
    logger.info("loading_configuration")
    config = load_config(config_path)

    logger.info(
        "connecting_to_database",
        host=config.database.host,
        database=config.database.database,
    )
    engine = create_engine_from_config(config.database)
    create_schema(engine, drop_existing=drop_existing)
    logger.info("database_initialized_successfully")


def create_schema(engine: Engine, drop_existing: bool = False) -> None:
    """Create (and optionally drop first) every engine table."""
    if drop_existing:
        logger.warning("dropping_existing_tables")
        drop_schema(engine)

    logger.info("creating_tables", tables=[t.name for t in TABLES_IN_ORDER])
    metadata.create_all(engine)


def drop_schema(engine: Engine) -> None:
    """Drop all engine tables in reverse dependency order."""
    existing = set(inspect(engine).get_table_names())
    for table in reversed(TABLES_IN_ORDER):
        if table.name in existing:
            logger.info("dropping_table", table=table.name)
            table.drop(engine)


def check_database_exists(engine: Engine) -> bool:
    """
    Check if the engine tables exist.

    Args:
        engine: SQLAlchemy engine

    Returns:
        True if every table exists
    """
    existing = set(inspect(engine).get_table_names())
    return all(t.name in existing for t in TABLES_IN_ORDER)
