"""Alembic environment for the seller-metrics schema.

Migrations run synchronously, so the async driver in DATABASE_URL is swapped
for its sync counterpart before connecting.
"""

from logging.config import fileConfig

from sqlalchemy import create_engine, pool
from sqlalchemy.engine import make_url

from alembic import context
from seller_metrics_server.core.config import settings
from seller_metrics_server.models import Base

SYNC_DRIVERS = {"asyncpg": "psycopg", "aiosqlite": "pysqlite"}

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def migration_url() -> str:
    """DATABASE_URL rewritten to a driver Alembic can use synchronously."""
    url = make_url(settings.database_url)
    backend, _, driver = url.drivername.partition("+")
    if driver in SYNC_DRIVERS:
        url = url.set(drivername=f"{backend}+{SYNC_DRIVERS[driver]}")
    return url.render_as_string(hide_password=False)


def _configure(**options: object) -> None:
    url = migration_url()
    context.configure(
        target_metadata=target_metadata,
        compare_type=True,
        # SQLite can only alter tables by copying them
        render_as_batch=url.startswith("sqlite"),
        **options,
    )


if context.is_offline_mode():
    _configure(url=migration_url(), literal_binds=True, dialect_opts={"paramstyle": "named"})
    with context.begin_transaction():
        context.run_migrations()
else:
    connectable = create_engine(migration_url(), poolclass=pool.NullPool)
    with connectable.connect() as connection:
        _configure(connection=connection)
        with context.begin_transaction():
            context.run_migrations()
