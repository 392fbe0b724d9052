"""
SQLAlchemy engine construction for every service store
"""
import logging
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from common.settings import settings

logger = logging.getLogger(__name__)

def _enable_sqlite_write_serialization(engine: Engine) -> None:
    # pysqlite opens transactions lazily and SQLite ignores FOR UPDATE, so take
    # the database write lock at BEGIN; concurrent units then serialize.
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

def create_store_engine(url: str, **kwargs) -> Engine:
    if url.startswith("sqlite"):
        connect_args = {
            "check_same_thread": False,
            "timeout": settings.sqlite_busy_timeout_seconds,
        }
        engine = create_engine(url, connect_args=connect_args, **kwargs)
        _enable_sqlite_write_serialization(engine)
    else:
        engine = create_engine(
            url,
            pool_pre_ping=True,
            isolation_level=settings.database_isolation_level,
            **kwargs,
        )
    logger.info(f"Store engine ready: {engine.url.render_as_string(hide_password=True)}")
    return engine
