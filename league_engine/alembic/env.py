"""
Alembic environment configuration for async migrations.

This file is the standard Alembic entry point for CLI commands (alembic upgrade, etc.)
and can also be driven programmatically via ``run_migrations_online_programmatic``.
"""

from logging.config import fileConfig
import asyncio
import logging
from pathlib import Path
from sqlalchemy import pool
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import async_engine_from_config
from alembic import context, config as alembic_config, command

# Import all models so Alembic can detect them
from league_engine.database.db import Base, DATABASE_URL
from league_engine.database import models  # noqa: F401

logger = logging.getLogger(__name__)

# Only available when run by Alembic CLI (not when imported programmatically)
config = None
try:
    config = context.config
    if config.config_file_name is not None:
        fileConfig(config.config_file_name)
except AttributeError:
    pass

# Metadata for autogenerate support
target_metadata = Base.metadata


def run_migrations_offline() -> None:
    """Run migrations in 'offline' mode (generates SQL without connecting)."""
    context.configure(
        url=DATABASE_URL,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )

    with context.begin_transaction():
        context.run_migrations()


def do_run_migrations(connection: Connection) -> None:
    """Execute migrations using the provided connection."""
    context.configure(connection=connection, target_metadata=target_metadata)

    with context.begin_transaction():
        context.run_migrations()


async def run_async_migrations() -> None:
    """Run migrations in async mode against DATABASE_URL."""
    configuration = config.get_section(config.config_ini_section)
    configuration["sqlalchemy.url"] = DATABASE_URL

    connectable = async_engine_from_config(
        configuration,
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )

    try:
        logger.info("Executing migrations...")
        async with connectable.connect() as connection:
            await connection.run_sync(do_run_migrations)
        logger.info("Migrations executed successfully")
    except Exception as e:
        logger.error(f"Error during migration execution: {e}", exc_info=True)
        raise
    finally:
        await connectable.dispose()


def run_migrations_online() -> None:
    """Run migrations in 'online' mode (called by Alembic CLI)."""
    logger.info(
        f"Database URL: {DATABASE_URL.split('@')[1] if '@' in DATABASE_URL else 'configured'}"
    )
    asyncio.run(run_async_migrations())


async def run_migrations_online_programmatic() -> None:
    """Upgrade to head from inside a running event loop."""
    alembic_ini_path = Path(__file__).parent.parent / "alembic.ini"
    if not alembic_ini_path.exists():
        raise FileNotFoundError(f"Alembic config file not found: {alembic_ini_path}")

    alembic_cfg = alembic_config.Config(str(alembic_ini_path))
    alembic_cfg.set_main_option("sqlalchemy.url", DATABASE_URL)

    # command.upgrade is sync and starts its own event loop
    await asyncio.to_thread(command.upgrade, alembic_cfg, "head")
    logger.info("Migrations completed successfully")


# Only execute when run by Alembic CLI (config is set)
if config is not None:
    try:
        if context.is_offline_mode():
            run_migrations_offline()
        else:
            run_migrations_online()
    except AttributeError:
        pass
