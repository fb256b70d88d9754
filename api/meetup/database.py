import logging
import os
import time
from typing import Callable, TypeVar

from sqlalchemy import create_engine, text
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from .config import TXN_MAX_ATTEMPTS

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL", "postgresql+psycopg2://postgres:postgres@db:5432/meetup")

_connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}
engine = create_engine(DATABASE_URL, future=True, connect_args=_connect_args)
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)
Base = declarative_base()

T = TypeVar("T")

# Write conflicts that a fresh read can resolve.
RETRYABLE_ERRORS = (StaleDataError, IntegrityError, OperationalError)


def run_in_transaction(fn: Callable[[Session], T], max_attempts: int = TXN_MAX_ATTEMPTS) -> T:
    """Run ``fn(db)`` in its own transaction, retrying on write conflicts.

    All reads happen inside ``fn`` so each retry starts from fresh state. Domain
    errors raised by ``fn`` roll the transaction back and propagate unchanged.
    """
    attempt = 0
    while True:
        attempt += 1
        with SessionLocal() as db:
            try:
                result = fn(db)
                db.commit()
                return result
            except RETRYABLE_ERRORS as exc:
                db.rollback()
                if attempt >= max_attempts:
                    logger.error(f"[txn] giving up after {attempt} attempts: {exc.__class__.__name__}")
                    raise
                logger.warning(f"[txn] conflict on attempt {attempt}, retrying: {exc.__class__.__name__}")
                time.sleep(min(0.05 * attempt, 0.25))


def wait_for_db(max_attempts: int = 20, delay_seconds: float = 1.5) -> None:
    last_err: Exception | None = None
    for _ in range(max_attempts):
        try:
            with SessionLocal() as db:
                db.execute(text("SELECT 1"))
                db.commit()
            return
        except OperationalError as exc:
            last_err = exc
            time.sleep(delay_seconds)
    if last_err:
        raise last_err


def init_db() -> None:
    from . import models  # noqa: F401

    Base.metadata.create_all(bind=SessionLocal.kw["bind"])
