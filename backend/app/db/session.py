"""Database engine and session factory

Reconciliation writes lean on ON CONFLICT clauses, so only SQLite (tests,
local dev) and PostgreSQL are supported.
"""
from sqlalchemy import create_engine
from sqlalchemy.engine import make_url
from sqlalchemy.orm import sessionmaker
from app.models.base import Base
from app.core.config import settings


def _engine_options(database_url: str) -> dict:
    url = make_url(database_url)
    if url.get_backend_name() == "sqlite":
        # Webhook and finalize requests may share one file from different threads
        return {"connect_args": {"check_same_thread": False, "timeout": 30}}
    if url.get_backend_name() != "postgresql":
        raise ValueError(f"Unsupported database backend: {url.get_backend_name()}")
    return {"pool_pre_ping": True, "pool_recycle": 3600, "pool_size": 10, "max_overflow": 20}


engine = create_engine(settings.DATABASE_URL, **_engine_options(settings.DATABASE_URL))

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db():
    """Request-scoped session for FastAPI dependencies"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db():
    """Create every billing table (dev/test only, production runs alembic)"""
    import app.models  # noqa: F401  registers every model on Base.metadata
    Base.metadata.create_all(bind=engine)
