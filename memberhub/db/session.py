from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from memberhub.core.config import settings

# Engine = the DB connection factory
engine = create_engine(
    settings.database_url,
    echo=settings.db_echo,
    future=True
)

# SessionLocal = the session factory
SessionLocal = sessionmaker(
    bind=engine,
    autoflush=False,
    autocommit=False
)


def get_db() -> Generator[Session, None, None]:
    """Dependency that provides a database session"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db() -> None:
    """Create tables (dev / sqlite). Production schemas are managed out of band."""
    # models must be imported so their tables are registered on Base.metadata
    import memberhub.models  # noqa: F401
    from memberhub.db.base import Base

    Base.metadata.create_all(bind=engine)
