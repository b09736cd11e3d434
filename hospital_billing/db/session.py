# hospital_billing/db/session.py
from typing import Generator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from hospital_billing.core.config import settings


def _sqlite_savepoints(eng: Engine) -> None:
    # pysqlite defers BEGIN on its own; take over so SAVEPOINT nests correctly
    @event.listens_for(eng, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(eng, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")


def make_engine(db_uri: str, **kw) -> Engine:
    if db_uri.startswith("sqlite"):
        eng = create_engine(
            db_uri,
            connect_args={"check_same_thread": False},
            **kw,
        )
        _sqlite_savepoints(eng)
        return eng
    return create_engine(
        db_uri,
        pool_pre_ping=True,
        pool_recycle=280,
        pool_size=10,
        max_overflow=20,
        **kw,
    )


engine: Engine = make_engine(settings.SQLALCHEMY_DATABASE_URI)

SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
)


def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
