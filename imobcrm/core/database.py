from __future__ import annotations

import logging
from collections.abc import Generator, Iterator
from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from imobcrm.core.config import get_settings
from imobcrm.core.errors import DependencyError


logger = logging.getLogger("imobcrm.db")


class Base(DeclarativeBase):
    pass


settings = get_settings()
engine = create_engine(settings.database_url, pool_pre_ping=True)
SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)


def get_db() -> Generator[Session, None, None]:
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@contextmanager
def transaction(session: Session) -> Iterator[Session]:
    """Commit everything done inside the block, or nothing at all.

    Store failures surface as DependencyError; any other exception is
    re-raised after the rollback.
    """

    try:
        yield session
        session.commit()
    except SQLAlchemyError as exc:
        session.rollback()
        logger.exception("db.transaction_failed", extra={"error": str(exc)[:500]})
        raise DependencyError("store unavailable, nothing was saved") from exc
    except Exception:
        session.rollback()
        raise
