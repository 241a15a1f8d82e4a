from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker, declarative_base
import os

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./minesite.db")

if DATABASE_URL.startswith("sqlite"):
    sqlite_args = {"check_same_thread": False, "timeout": 30}
else:
    sqlite_args = {}

engine = create_engine(DATABASE_URL, connect_args=sqlite_args)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def configure_sqlite(bind) -> None:
    """Make SQLite enforce FKs and take the write lock when a transaction begins.

    pysqlite defers BEGIN until the first write, so a guard read and its write
    would not share one transaction. ``BEGIN IMMEDIATE`` serialises writers the
    way ``SELECT ... FOR UPDATE`` does on row-locking backends.
    """

    if bind.dialect.name != "sqlite":
        return

    @event.listens_for(bind, "connect")
    def _on_connect(dbapi_connection, _record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(bind, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


configure_sqlite(engine)


def create_schema(bind=None) -> None:
    # models must be imported so every table is registered on Base.metadata
    from . import models  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
