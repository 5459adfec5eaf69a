from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from marketplace.core.config import settings


def _engine_kwargs(url: str) -> dict:
    if url.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False}}
    return {
        "pool_pre_ping": True,
        "pool_size": 10,
        "max_overflow": 20,
        "pool_recycle": 1800,  # recycle connections every 30 min (avoid stale)
        "connect_args": {"connect_timeout": 5},
    }


def _enable_sqlite_savepoints(engine: Engine) -> None:
    # pysqlite defers BEGIN on its own; take over so SAVEPOINT works.
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")


def create_db_engine(url: str) -> Engine:
    engine = create_engine(url, **_engine_kwargs(url))
    if url.startswith("sqlite"):
        _enable_sqlite_savepoints(engine)
    return engine


engine = create_db_engine(settings.database_url)
SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)


def get_db():
    db = SessionLocal()
    try:
        yield db
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
