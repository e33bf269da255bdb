from __future__ import annotations

import logging
from collections.abc import Generator, Iterator
from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from carerota.errors import StorageError
from carerota.settings import get_settings

logger = logging.getLogger("carerota.db")


class Base(DeclarativeBase):
    pass


engine = create_engine(get_settings().database_url, pool_pre_ping=True)
SessionLocal = sessionmaker(bind=engine, autoflush=False)


def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def atomic(db: Session) -> Iterator[Session]:
    """Commit everything done inside the block, or roll all of it back.

    Unexpected SQLAlchemy failures surface as StorageError; domain errors are re-raised
    unchanged after the rollback.
    """
    try:
        yield db
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("transaction_failed", extra={"error_type": exc.__class__.__name__})
        raise StorageError() from exc
    except BaseException:
        db.rollback()
        raise
