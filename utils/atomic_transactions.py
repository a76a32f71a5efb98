"""Atomic transaction utilities for ledger operations and admin actions"""

import logging
from contextlib import contextmanager
from typing import Generator, Optional
from sqlalchemy.orm import Session, sessionmaker

from utils.exception_handler import LedgerError

logger = logging.getLogger(__name__)


@contextmanager
def atomic_transaction(session_factory: Optional[sessionmaker] = None) -> Generator[Session, None, None]:
    """
    Run a block as one all-or-nothing ledger transaction.

    Commits when the block exits normally; any exception rolls back every
    write (balance, domain record and audit row together) and propagates.
    Commit failures are treated as "the operation did not happen".
    """
    if session_factory is None:
        from database import SessionLocal
        session_factory = SessionLocal

    session = session_factory()
    try:
        yield session
        session.commit()
        logger.debug("Atomic transaction committed successfully")
    except LedgerError as e:
        session.rollback()
        logger.debug(f"Atomic transaction rolled back: {e.code}")
        raise
    except Exception as e:
        session.rollback()
        logger.error(f"Atomic transaction rolled back due to error: {e}")
        raise
    finally:
        session.close()
