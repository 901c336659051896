"""Migration environment for the QuickBooks connection tables.

Migrations and the service resolve the database through ``qbo_connect.db``,
so ``DATABASE_URL`` (or the ``DB_*`` variables) drive both.
"""

from __future__ import annotations

import sys
from logging.config import fileConfig
from pathlib import Path

from alembic import context
from sqlalchemy import engine_from_config, pool

_backend_dir = Path(__file__).resolve().parents[1]
if str(_backend_dir) not in sys.path:
    sys.path.insert(0, str(_backend_dir))

from qbo_connect.db import Base, DATABASE_URL  # noqa: E402
from qbo_connect import db_models  # noqa: F401,E402 - registers the tables on Base

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

config.set_main_option("sqlalchemy.url", DATABASE_URL)


def _context_options(dialect_name: str) -> dict:
    return {
        "target_metadata": Base.metadata,
        "compare_type": True,
        # SQLite rebuilds tables instead of altering constraints in place.
        "render_as_batch": dialect_name == "sqlite",
        "transaction_per_migration": True,
    }


def run_offline() -> None:
    """Emit SQL for the credential, team, audit and OAuth state tables."""
    url = config.get_main_option("sqlalchemy.url")
    context.configure(
        url=url,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        **_context_options(url.split(":", 1)[0].split("+", 1)[0]),
    )
    with context.begin_transaction():
        context.run_migrations()


def run_online() -> None:
    engine = engine_from_config(
        config.get_section(config.config_ini_section) or {},
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )
    with engine.connect() as connection:
        context.configure(connection=connection, **_context_options(connection.dialect.name))
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_offline()
else:
    run_online()
