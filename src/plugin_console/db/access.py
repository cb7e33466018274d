import logging

from sqlalchemy import create_engine, event
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)


def get_engine(db_settings, echo: bool = False):
    """
    Creates and returns a SQLAlchemy engine based on the loaded pydantic settings.

    The API threads and the worker thread share the engine, so SQLite
    connections are opened with check_same_thread disabled.
    """
    engine_args = {
        "echo": echo,
        "connect_args": {"check_same_thread": False},
    }

    match db_settings.type:
        case "sqlite3":
            if db_settings.in_memory:
                url_object = "sqlite:///:memory:"
                # One shared connection, otherwise every session sees an empty DB
                engine_args["poolclass"] = StaticPool
            else:
                url_object = f"sqlite:///{db_settings.db_location}"

        case _:
            raise ValueError(f"Unsupported DB type: {db_settings.type}")

    engine = create_engine(url_object, **engine_args)
    event.listen(engine, "connect", _sqlite_pragmas)
    logger.debug(f"Created engine for {engine.url}")
    return engine


def _sqlite_pragmas(dbapi_conn, connection_record):
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA busy_timeout=5000")
    cursor.close()
