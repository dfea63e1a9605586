"""Database engine and session factory"""

from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from billing_gateway.config import settings


def build_engine(database_url: str) -> Engine:
    if database_url.startswith("sqlite"):
        # Local development database; sessions are shared across threads by the test client and sweeps
        return create_engine(database_url, connect_args={"check_same_thread": False})
    # Pooled connections, pre-pinged and recycled hourly so the processor path never waits on a dead socket
    return create_engine(
        database_url,
        pool_pre_ping=True,
        pool_size=10,
        max_overflow=10,
        pool_recycle=3600,
    )


engine = build_engine(settings.database_url)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db() -> Generator[Session, None, None]:
    """Request-scoped session for FastAPI dependencies"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
