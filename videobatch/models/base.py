from collections.abc import Generator
from typing import Any

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.pool import StaticPool

from videobatch.core.config import settings


class Base(DeclarativeBase):
    pass


def build_engine(url: str, pool_size: int | None = None, max_overflow: int | None = None) -> Engine:
    """Engine for ``url``. In-memory SQLite shares one connection across threads."""
    if url.startswith("sqlite"):
        return create_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )

    return create_engine(
        url,
        pool_pre_ping=True,
        pool_size=pool_size or settings.db_pool_size,
        max_overflow=max_overflow if max_overflow is not None else settings.db_max_overflow,
    )


engine = build_engine(settings.database_url)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db() -> Generator[Session, Any, None]:
    """One session per request; the ledger RPCs run on the same connection."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
