import logging
from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, SQLModel, create_engine, text

from .errors import DatabaseError, POSError
from .settings import settings

logger = logging.getLogger(__name__)


def _connect_args(url: str) -> dict:
    # SQLite connections are shared across FastAPI's threadpool workers
    if url.startswith("sqlite"):
        return {"check_same_thread": False}
    return {}


engine = create_engine(
    settings.database_url,
    pool_pre_ping=True,
    connect_args=_connect_args(settings.database_url),
)


def create_db_and_tables() -> None:
    # Import models so SQLModel.metadata knows every table
    from . import models  # noqa: F401

    SQLModel.metadata.create_all(engine)


def check_db_connection() -> bool:
    try:
        with Session(engine) as session:
            session.execute(text("SELECT 1"))
        return True
    except SQLAlchemyError as e:
        logger.error(f"Database connection check failed: {e}")
        return False


def get_session() -> Iterator[Session]:
    with Session(engine) as session:
        yield session


@contextmanager
def atomic(session: Session, action: str = "complete database operation") -> Iterator[Session]:
    """
    Run a multi-step write as one unit of work.

    Commits when the block finishes, rolls back on any error. Engine errors
    propagate unchanged; SQLAlchemy errors are wrapped in DatabaseError with
    the original exception chained.
    """
    try:
        yield session
        session.commit()
    except POSError:
        session.rollback()
        raise
    except SQLAlchemyError as e:
        session.rollback()
        logger.error(f"Failed to {action}: {e}")
        raise DatabaseError(f"Failed to {action}", cause=e) from e
    except Exception:
        session.rollback()
        raise
