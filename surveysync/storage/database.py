from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from contextlib import contextmanager
from typing import Generator, Optional

from surveysync.config.settings import settings


def make_engine(url: Optional[str] = None, busy_timeout: Optional[float] = None):
    url = url or settings.database_url
    connect_args = {}
    if url.startswith("sqlite"):
        connect_args = {
            "check_same_thread": False,  # SQLite specific
            "timeout": settings.database_busy_timeout if busy_timeout is None else busy_timeout,
        }
    return create_engine(url, connect_args=connect_args, echo=False)


engine = make_engine()

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def init_db(bind=None):
    """Create all tables. Call once on startup."""
    import surveysync.models.survey  # noqa: F401  register models
    Base.metadata.create_all(bind=bind or engine)


@contextmanager
def get_db(session_factory=None) -> Generator[Session, None, None]:
    db = (session_factory or SessionLocal)()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
