from collections.abc import Generator, Iterator
from contextlib import contextmanager
from typing import Annotated

from fastapi import Depends
from sqlmodel import SQLModel, Session, create_engine

import config


def build_engine(url: str = config.DATABASE_URL, echo: bool = config.SQL_ECHO):
    connect_args = {}
    if url.startswith("sqlite"):
        # sessions are handed across FastAPI's threadpool
        connect_args = {"check_same_thread": False, "timeout": 30}
    return create_engine(url, echo=echo, connect_args=connect_args)


engine = build_engine()


def create_db_and_tables(bind=None) -> None:
    """Create all tables in the database if they don't exist."""
    import models  # noqa: F401  registers the tables on SQLModel.metadata

    SQLModel.metadata.create_all(bind if bind is not None else engine)


def get_session() -> Generator[Session, None, None]:
    """Yield a database session for dependency injection."""
    with Session(engine) as session:
        yield session


SessionDep = Annotated[Session, Depends(get_session)]


@contextmanager
def unit_of_work(session: Session) -> Iterator[Session]:
    """
    Run a block of writes as one transaction.

    Commits when the block finishes, rolls everything back if it raises.
    """
    try:
        yield session
        session.commit()
    except BaseException:
        session.rollback()
        raise
