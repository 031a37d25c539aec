# mercadoboom/database.py
from contextlib import contextmanager
from typing import Iterator

from flask import g
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from mercadoboom.config import Config


def _engine_options(url: str) -> dict:
    options = {"echo": Config.SQL_ECHO, "future": True, "pool_pre_ping": True}
    if url.startswith("sqlite"):
        # Flask serves requests from several threads against the same file
        options["connect_args"] = {"check_same_thread": False}
    else:
        options["pool_size"] = Config.DB_POOL_SIZE
        options["max_overflow"] = Config.DB_MAX_OVERFLOW
    return options


engine = create_engine(Config.DATABASE_URL, **_engine_options(Config.DATABASE_URL))
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine, future=True)

Base = declarative_base()


@contextmanager
def session_scope() -> Iterator[Session]:
    """Standalone session for work outside a request (startup seeding, scripts)."""
    db = SessionLocal()
    try:
        yield db
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def get_db() -> Session:
    """Session bound to the current request, closed by ``close_db`` on teardown."""
    if "db" not in g:
        g.db = SessionLocal()
    return g.db


def close_db(e=None):
    try:
        db = g.pop("db", None)
    except RuntimeError:
        # Outside of an application context (test teardown)
        return
    if db is not None:
        if e is not None:
            db.rollback()
        db.close()
