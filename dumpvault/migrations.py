"""
Database schema bootstrap for dumpvault.

Creates missing tables, adds model columns an existing database lacks and
seeds the system retention policy. Safe to run on every start.
"""

import logging
from sqlalchemy import text, inspect
from sqlalchemy.exc import SQLAlchemyError
from dumpvault import db

logger = logging.getLogger(__name__)


def init_database_schema(app):
    """
    Initialize database schema and run migrations.

    Tables are created if they don't exist, then migrations are applied.
    """
    with app.app_context():
        inspector = inspect(db.engine)
        existing_tables = set(inspector.get_table_names())

        logger.info("Ensuring database schema exists")
        db.create_all()

        if existing_tables:
            run_migrations(app, inspect(db.engine))

        seed_default_retention_policy()


def run_migrations(app, inspector=None):
    """
    Add model columns that an existing database is missing.

    Compares every mapped table with the live schema. Only nullable columns
    can be added in place; a missing NOT NULL column is logged and left for
    a manual migration.
    """
    if inspector is None:
        inspector = inspect(db.engine)

    tables = inspector.get_table_names()
    for table in db.metadata.sorted_tables:
        if table.name not in tables:
            continue
        existing = {col['name'] for col in inspector.get_columns(table.name)}

        for column in table.columns:
            if column.name in existing:
                continue
            if not column.nullable:
                logger.error(f"Cannot add NOT NULL column {column.name} to {table.name}, migrate it manually")
                continue
            _add_column(table.name, column)


def _add_column(table, column):
    ddl_type = column.type.compile(dialect=db.engine.dialect)

    logger.info(f"Running migration: Adding {column.name} column to {table} table")
    try:
        db.session.execute(text(f"ALTER TABLE {table} ADD COLUMN {column.name} {ddl_type}"))
        db.session.commit()
        logger.info(f"Successfully added {column.name} column")
    except SQLAlchemyError as e:
        logger.error(f"Failed to add {column.name} column to {table}: {e}")
        db.session.rollback()


def seed_default_retention_policy():
    """Create the system-wide 'default' policy (24/7/4/12/0) if it is missing."""
    from dumpvault.models import RetentionPolicy, DEFAULT_POLICY_ID

    if db.session.get(RetentionPolicy, DEFAULT_POLICY_ID) is not None:
        return

    db.session.add(RetentionPolicy(
        id=DEFAULT_POLICY_ID,
        name='Default',
        description='Keep 24 hourly, 7 daily, 4 weekly and 12 monthly backups',
        keep_hourly=24,
        keep_daily=7,
        keep_weekly=4,
        keep_monthly=12,
        keep_yearly=0,
    ))
    try:
        db.session.commit()
        logger.info("Seeded default retention policy")
    except Exception as e:
        # Another worker may have inserted it first
        logger.warning(f"Failed to seed default retention policy: {e}")
        db.session.rollback()
