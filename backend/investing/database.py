from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

Base = declarative_base()


def engine_connect_args(database_url: str, statement_timeout: Optional[float] = None) -> dict:
    connect_args = {}
    if database_url.startswith("sqlite"):
        # Store calls run on executor threads
        connect_args["check_same_thread"] = False
    elif database_url.startswith("postgresql") and statement_timeout:
        # Server-side cap on every statement, in milliseconds
        connect_args["options"] = f"-c statement_timeout={int(statement_timeout * 1000)}"
    return connect_args


def make_engine(database_url: str, statement_timeout: Optional[float] = None):
    connect_args = engine_connect_args(database_url, statement_timeout)
    return create_engine(database_url, connect_args=connect_args, pool_pre_ping=True)


def make_session_factory(engine) -> sessionmaker:
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


def init_db(engine) -> None:
    """Create every table registered on Base."""
    from . import models  # noqa: F401

    Base.metadata.create_all(bind=engine)
