import logging
import hashlib

import sqlalchemy as sa
from sqlalchemy import inspect

from plugin_console.db.base_session import Base
import plugin_console.db.models  # noqa: F401

logger = logging.getLogger(__name__)

# --- Schema Fingerprinting ---


def compute_schema_fingerprint(eng: sa.Engine) -> str:
    """
    Compute a fingerprint of the database schema by inspecting live structure.

    Returns a SHA-256 hash of: sorted(table_name:column_name:column_type)
    """
    inspector = inspect(eng)
    schema_parts = []

    for table_name in sorted(inspector.get_table_names()):
        columns = inspector.get_columns(table_name)
        for col in sorted(columns, key=lambda c: c["name"]):
            col_type = str(col["type"]).upper()
            schema_parts.append(f"{table_name}:{col['name']}:{col_type}")

    canonical = "\n".join(schema_parts)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def verify_database_state(eng: sa.Engine):
    """
    Check that all expected tables and columns exist in the database.
    This validates code models match the live database.
    """
    inspector = inspect(eng)
    db_tables = set(inspector.get_table_names())

    missing_tables = []
    missing_columns = []

    for table in Base.metadata.tables.values():
        if table.name not in db_tables:
            missing_tables.append(table.name)
            continue

        db_cols = {c["name"] for c in inspector.get_columns(table.name)}
        for column in table.columns:
            if column.name not in db_cols:
                missing_columns.append(f"{table.name}.{column.name}")

    if missing_tables or missing_columns:
        logger.critical("CRITICAL: Database schema drift detected!")
        if missing_tables:
            logger.critical(f"Missing Tables: {missing_tables}")
        if missing_columns:
            logger.critical(f"Missing Columns: {missing_columns}")

        raise RuntimeError(
            "Database integrity violation. Schema does not match application version."
        )

    logger.info("Database schema validated successfully.")


# --- Initialization ---


def initialize_database(eng: sa.Engine, reset_tables: bool = False):
    """
    Ensures all tables exist and optionally resets them.
    """
    if reset_tables:
        logger.info("Resetting and creating database tables...")
        Base.metadata.drop_all(eng)
        Base.metadata.create_all(eng)
    else:
        logger.info("Ensuring all tables exist (create if not present)...")
        Base.metadata.create_all(eng)

    verify_database_state(eng)

    fingerprint = compute_schema_fingerprint(eng)
    logger.info(f"Schema fingerprint: {fingerprint[:16]}...")
