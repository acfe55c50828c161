"""
Migration environment for the suspicion, exclusion and rule tables.

The database URL always comes from the worker settings. The identity store
may share the database, so autogenerate only looks at tables declared on
Base.metadata. Tests and tooling can hand over an open connection through
config.attributes["connection"].
"""

from logging.config import fileConfig

from alembic import context
from sqlalchemy import create_engine, pool

from identity_quality.core.config import get_settings
from identity_quality.core.models import Base

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

OWNED_TABLES = frozenset(Base.metadata.tables)


def owned_only(name, type_, parent_names) -> bool:
    return type_ != "table" or name in OWNED_TABLES


def _context_options() -> dict:
    return {
        "target_metadata": Base.metadata,
        "include_name": owned_only,
        "compare_type": True,
    }


def migrate_offline() -> None:
    """Emit the migration SQL to stdout."""
    context.configure(
        url=get_settings().database_url,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        **_context_options(),
    )
    with context.begin_transaction():
        context.run_migrations()


def _migrate(connection) -> None:
    context.configure(connection=connection, **_context_options())
    with context.begin_transaction():
        context.run_migrations()


def migrate_online() -> None:
    connection = config.attributes.get("connection")
    if connection is not None:
        _migrate(connection)
        return

    engine = create_engine(get_settings().database_url, poolclass=pool.NullPool)
    try:
        with engine.connect() as connection:
            _migrate(connection)
    finally:
        engine.dispose()


if context.is_offline_mode():
    migrate_offline()
else:
    migrate_online()
