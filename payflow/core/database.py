import logging
from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker, DeclarativeBase

from payflow.core.config import settings
from payflow.core.exceptions import LifecycleError, PersistenceError

logger = logging.getLogger(__name__)

# -----------------------------------------------------
# Database Engine + Session
# -----------------------------------------------------

DATABASE_URL = settings.DATABASE_URL

# SQLite is used for local runs and tests; the connection is shared across threads there
connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(
    DATABASE_URL,
    echo=settings.SQL_ECHO,
    pool_pre_ping=True,
    connect_args=connect_args,
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db():
    """FastAPI dependency yielding one session per request."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def atomic(db: Session, action: str):
    """
    Commit the block as one unit of work.

    Domain and unexpected errors roll back and propagate unchanged; store
    failures roll back and surface as PersistenceError.
    """
    try:
        yield db
        db.commit()
    except LifecycleError:
        db.rollback()
        raise
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Database error while {action}: {str(e)}")
        raise PersistenceError(f"Storage failure while {action}") from e
    except Exception:
        db.rollback()
        raise


# -----------------------------------------------------
# Base Model
# -----------------------------------------------------
class Base(DeclarativeBase):
    pass
