from typing import Iterator

from fastapi import Request
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from .exceptions import DatabaseError

Base = declarative_base()


def build_engine(database_url: str) -> Engine:
    """Create an engine for ``database_url``.

    SQLite opens write transactions with ``BEGIN IMMEDIATE`` so concurrent
    writers queue on the busy timeout instead of failing on lock upgrade.
    """
    if database_url.startswith("sqlite"):
        return create_engine(
            database_url,
            future=True,
            connect_args={"check_same_thread": False, "timeout": 30, "isolation_level": "IMMEDIATE"},
        )

    return create_engine(database_url, pool_pre_ping=True, future=True)


def build_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, future=True)


def commit(db: Session, operation: str) -> None:
    """Commit, turning driver failures into :class:`DatabaseError`."""
    try:
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise DatabaseError(operation, str(e))


def get_db(request: Request) -> Iterator[Session]:
    db = request.app.state.session_factory()
    try:
        yield db
    finally:
        db.close()
