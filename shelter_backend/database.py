from sqlalchemy import event
from sqlmodel import SQLModel, create_engine, Session
from dotenv import load_dotenv

import os

load_dotenv()

DATABASE_URL = os.getenv("POSTGRES_URI")
if not DATABASE_URL:
    raise ValueError("DATABASE URL not set")

SQL_ECHO = os.getenv("SQL_ECHO", "false").lower() in ("1", "true", "yes")


def make_engine(url: str, echo: bool = False):
    """Create the engine; SQLite gets one serialised writer at a time."""
    if not url.startswith("sqlite"):
        return create_engine(url, echo=echo)

    engine = create_engine(
        url, echo=echo, connect_args={"check_same_thread": False, "timeout": 30}
    )

    # pysqlite defers BEGIN until the first write, which lets two admissions
    # read the same bookings before either inserts. Take the write lock up front.
    @event.listens_for(engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


engine = make_engine(DATABASE_URL, echo=SQL_ECHO)


def create_db_and_tables():
    SQLModel.metadata.create_all(engine)


def get_session():
    with Session(engine) as session:
        yield session
