"""Alembic environment for the dispensary schema.

The database URL is taken, in order, from ``alembic -x db_url=...``, from
``sqlalchemy.url`` in alembic.ini (``env://NAME`` reads that environment
variable), and finally from the application's ``Config``.
"""

import logging
import os
from logging.config import fileConfig

from alembic import context
from sqlalchemy import engine_from_config, pool

from config import Config
from dispensary.extensions import db
from dispensary import models  # noqa: F401  populate db.Model.metadata

alembic_config = context.config

if alembic_config.config_file_name is not None:
    fileConfig(alembic_config.config_file_name)

logger = logging.getLogger("alembic.env")

target_metadata = db.Model.metadata


def _resolve_url() -> str:
    override = context.get_x_argument(as_dictionary=True).get("db_url")
    if override:
        return override

    configured = alembic_config.get_main_option("sqlalchemy.url") or ""
    if configured.startswith("env://"):
        from_env = os.getenv(configured[len("env://"):] or "DB_URL")
        if from_env:
            return from_env
    elif configured:
        return configured

    return Config.SQLALCHEMY_DATABASE_URI


def _configure(**options) -> None:
    context.configure(
        target_metadata=target_metadata,
        compare_type=True,
        render_as_batch=options.pop("sqlite", False),
        **options,
    )
    with context.begin_transaction():
        context.run_migrations()


def run_offline(url: str) -> None:
    logger.info("Generating SQL for %s", url.split("@")[-1])
    _configure(
        url=url,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        sqlite=url.startswith("sqlite"),
    )


def run_online(url: str) -> None:
    section = dict(alembic_config.get_section(alembic_config.config_ini_section) or {})
    section["sqlalchemy.url"] = url
    engine = engine_from_config(section, prefix="sqlalchemy.", poolclass=pool.NullPool)

    with engine.connect() as connection:
        _configure(connection=connection, sqlite=connection.dialect.name == "sqlite")


database_url = _resolve_url()
if context.is_offline_mode():
    run_offline(database_url)
else:
    run_online(database_url)
