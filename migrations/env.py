import importlib
import logging
import os
import pkgutil
from logging.config import fileConfig

from alembic import context
from flask import current_app
from sqlalchemy import create_engine, text

# this is the Alembic Config object, which provides
# access to the values within the .ini file in use.
config = context.config

# Interpret the config file for Python logging.
fileConfig(config.config_file_name)
logger = logging.getLogger('alembic.env')


def _normalize_db_url(url: str | None) -> str | None:
    if not url:
        return None
    # SQLAlchemy 2.x prefers postgresql:// over postgres://
    if url.startswith('postgres://'):
        return 'postgresql://' + url[len('postgres://'):]
    return url


def get_engine():
    preferred_env_url = (
        _normalize_db_url(os.environ.get('ALEMBIC_DATABASE_URL'))
        or _normalize_db_url(os.environ.get('DATABASE_URL'))
    )
    if preferred_env_url:
        return create_engine(preferred_env_url)
    return current_app.extensions['migrate'].db.engine


def get_engine_url():
    return get_engine().url.render_as_string(hide_password=False).replace('%', '%%')


def import_all_models():
    """Import every module under stockledger.models so autogenerate sees all tables."""
    from stockledger import models

    models_dir = os.path.dirname(models.__file__)
    for _finder, name, _ispkg in pkgutil.iter_modules([models_dir]):
        if name.startswith('_'):
            continue
        importlib.import_module(f'stockledger.models.{name}')
        logger.debug('Imported model module: stockledger.models.%s', name)


import_all_models()

config.set_main_option('sqlalchemy.url', get_engine_url())
target_db = current_app.extensions['migrate'].db


def get_metadata():
    if hasattr(target_db, 'metadatas'):
        return target_db.metadatas[None]
    return target_db.metadata


def run_migrations_offline():
    """Run migrations in 'offline' mode, emitting SQL to the script output."""
    url = config.get_main_option("sqlalchemy.url")
    context.configure(
        url=url, target_metadata=get_metadata(), literal_binds=True
    )

    with context.begin_transaction():
        context.run_migrations()


def _drop_sqlite_temp_tables(connection):
    # Batch mode leaves _alembic_tmp_* tables behind when a migration fails midway
    result = connection.execute(text(
        "SELECT name FROM sqlite_master WHERE type='table' AND name LIKE '_alembic_tmp_%'"
    ))
    temp_tables = [row[0] for row in result.fetchall()]
    if not temp_tables:
        return
    logger.info("Cleaning up %s temporary tables from failed migrations", len(temp_tables))
    for table_name in temp_tables:
        connection.execute(text(f'DROP TABLE IF EXISTS "{table_name}"'))
    connection.commit()


def run_migrations_online():
    """Run migrations in 'online' mode against a live connection."""

    def process_revision_directives(context, revision, directives):
        """Suppress file creation when no changes are detected."""
        if getattr(config.cmd_opts, 'autogenerate', False):
            script = directives[0]
            if script.upgrade_ops.is_empty():
                directives[:] = []
                logger.info('No changes in schema detected.')

    conf_args = current_app.extensions['migrate'].configure_args
    conf_args["transaction_per_migration"] = True
    if conf_args.get("process_revision_directives") is None:
        conf_args["process_revision_directives"] = process_revision_directives

    connectable = get_engine()

    with connectable.connect() as connection:
        if connection.dialect.name == 'sqlite':
            _drop_sqlite_temp_tables(connection)

        context.configure(
            connection=connection,
            target_metadata=get_metadata(),
            **conf_args
        )

        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
