import os
import re
from logging.config import fileConfig

from alembic import context
from sqlalchemy import engine_from_config, pool

# -------------------------
# Alembic Config
# -------------------------
config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

# -------------------------
# Models metadata
# -------------------------
from agenda.app.domain.models import Base  # noqa: E402

target_metadata = Base.metadata


def _sync_url() -> str:
    database_url = os.getenv("DATABASE_URL") or config.get_main_option("sqlalchemy.url")
    if not database_url:
        raise RuntimeError(
            "DATABASE_URL is not set. Example: "
            "DATABASE_URL=postgresql+asyncpg://agenda:change_me@db:5432/agenda"
        )
    # Alembic runs synchronously: postgresql+asyncpg:// -> postgresql://, sqlite+aiosqlite:// -> sqlite://
    return re.sub(r"^(postgresql|sqlite)\+[^:]+", r"\1", database_url)


def run_migrations_offline() -> None:
    """Run migrations without DB connection (generate SQL only)."""
    context.configure(
        url=_sync_url(),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        compare_type=True,
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Run migrations with sync DB engine."""
    config.set_main_option("sqlalchemy.url", _sync_url())

    connectable = engine_from_config(
        config.get_section(config.config_ini_section),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )

    with connectable.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            compare_type=True,
        )

        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
