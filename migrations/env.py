"""Alembic environment for the TradeMaster tables (user, trade, user_insights)."""
import logging
import sys
from logging.config import fileConfig
from pathlib import Path

from alembic import context
from sqlalchemy import engine_from_config, pool
from sqlmodel import SQLModel

# Repo root, so `alembic` works without an editable install
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.append(str(ROOT))

# Registers every table on SQLModel.metadata
from trademaster import models  # noqa: E402,F401
from trademaster.core.database import DATABASE_URL  # noqa: E402

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)
log = logging.getLogger("alembic.env")

# DATABASE_URL from the environment / .env always wins over alembic.ini
config.set_main_option("sqlalchemy.url", str(DATABASE_URL))

target_metadata = SQLModel.metadata
MANAGED_TABLES = frozenset(target_metadata.tables)


def include_object(obj, name, type_, reflected, compare_to) -> bool:
    # Shared Postgres databases may hold tables owned by other services
    if type_ == "table" and reflected and name not in MANAGED_TABLES:
        return False
    return True


def skip_empty_revisions(ctx, revision, directives) -> None:
    # `alembic revision --autogenerate` with no model changes writes nothing
    if getattr(config.cmd_opts, "autogenerate", False) and directives[0].upgrade_ops.is_empty():
        directives[:] = []
        log.info("No model changes detected; no revision written.")


def _configure(**kwargs) -> None:
    url = config.get_main_option("sqlalchemy.url") or ""
    context.configure(
        target_metadata=target_metadata,
        compare_type=True,
        include_object=include_object,
        process_revision_directives=skip_empty_revisions,
        # SQLite cannot ALTER most columns in place
        render_as_batch=url.startswith("sqlite"),
        **kwargs,
    )


def run_migrations_offline() -> None:
    """SQL script output, no connection."""
    _configure(url=config.get_main_option("sqlalchemy.url"), literal_binds=True)
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    connectable = engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )
    with connectable.connect() as connection:
        _configure(connection=connection)
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
