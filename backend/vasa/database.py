# backend/vasa/database.py
from typing import Optional, Tuple

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base, Session
from sqlalchemy.exc import SQLAlchemyError, IntegrityError, OperationalError

from vasa.config import settings  # OK: config should NOT import vasa.database
from vasa.utils.logger import logger


def _engine_kwargs(url: str) -> dict:
    if url.startswith("sqlite"):
        # handlers run in FastAPI's threadpool
        return {"connect_args": {"check_same_thread": False}}
    return {"pool_pre_ping": True, "pool_recycle": 3600}


engine = create_engine(settings.DATABASE_URL, **_engine_kwargs(settings.DATABASE_URL))

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def safe_commit(db: Session, operation: str = "database operation") -> Tuple[bool, Optional[str]]:
    """
    Safely commit a database transaction with rollback on failure.

    Args:
        db: SQLAlchemy Session
        operation: Description of the operation for logging

    Returns:
        Tuple of (success: bool, error_message: Optional[str])
    """
    try:
        db.commit()
        return True, None
    except IntegrityError as e:
        db.rollback()
        error_msg = f"Integrity error during {operation}: {str(e.orig)[:200]}"
        logger.error(error_msg)
        return False, error_msg
    except OperationalError as e:
        db.rollback()
        error_msg = f"Database operational error during {operation}: {str(e.orig)[:200]}"
        logger.error(error_msg)
        return False, error_msg
    except SQLAlchemyError as e:
        db.rollback()
        error_msg = f"Database error during {operation}: {str(e)[:200]}"
        logger.error(error_msg)
        return False, error_msg
