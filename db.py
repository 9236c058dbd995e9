from sqlalchemy import event
from sqlmodel import create_engine, Session
from sqlmodel import SQLModel

from config import settings

DATABASE_URL = settings.DATABASE_URL


def make_engine(url: str):
    if not url.startswith("sqlite"):
        return create_engine(url, echo=False, pool_pre_ping=True)

    # SQLite needs check_same_thread=False to be shared across request threads
    eng = create_engine(url, echo=False, connect_args={"check_same_thread": False})

    # Take the write lock when the transaction starts. With pysqlite's deferred
    # BEGIN two writers can each hold a read lock and then fail to upgrade.
    @event.listens_for(eng, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(eng, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return eng


engine = make_engine(DATABASE_URL)


def init_db():
    # models must be imported so every table is registered on the metadata
    import models  # noqa: F401

    SQLModel.metadata.create_all(engine)


def get_session():
    return Session(engine)


def rows_affected(session, stmt) -> int:
    """Run a conditional UPDATE and return how many rows it matched.

    Zero means another writer already moved the row out of the expected state.
    """
    result = session.exec(stmt.execution_options(synchronize_session=False))
    return result.rowcount
