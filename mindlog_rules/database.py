from sqlalchemy import create_engine, event
from sqlalchemy.orm import declarative_base, sessionmaker

from mindlog_rules.config import Settings

Base = declarative_base()


def create_db_engine(database_url: str):
    # SQLite doesn't support pool_size/max_overflow, PostgreSQL does
    if database_url.startswith("sqlite"):
        engine = create_engine(
            database_url,
            connect_args={"check_same_thread": False, "timeout": 30}
        )

        # pysqlite defers BEGIN on its own, which breaks SAVEPOINT; emit it ourselves
        @event.listens_for(engine, "connect")
        def _disable_pysqlite_begin(dbapi_connection, connection_record):
            dbapi_connection.isolation_level = None

        @event.listens_for(engine, "begin")
        def _emit_begin(conn):
            conn.exec_driver_sql("BEGIN")

        return engine

    return create_engine(
        database_url,
        pool_pre_ping=True,
        pool_size=10,
        max_overflow=20
    )


def create_session_factory(settings: Settings):
    """Build the session factory handed to the worker at process start"""
    settings.validate_database_url()
    engine = create_db_engine(settings.DATABASE_URL)
    return sessionmaker(autoflush=False, bind=engine)
