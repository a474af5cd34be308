from typing import Generator, Optional
import logging

from fastapi import Request
from sqlalchemy.engine import Engine
from sqlmodel import SQLModel, create_engine, Session

logger = logging.getLogger(__name__)

SQLITE_FALLBACK_URL = "sqlite:///./leadzone.db"


# ============================================================
# ✅ Create SQLModel engine
# ============================================================
def create_db_engine(database_url: Optional[str]) -> Engine:
    """Build the engine once at startup; falls back to local SQLite."""
    if not database_url:
        database_url = SQLITE_FALLBACK_URL
        logger.warning("⚠️ DATABASE_URL not found — using local SQLite database.")
    else:
        logger.info("✅ Using database from environment.")

    connect_args = {}
    if database_url.startswith("sqlite"):
        # Sync endpoints run in the threadpool
        connect_args["check_same_thread"] = False

    # For PostgreSQL, pool_pre_ping avoids stale connections
    return create_engine(
        database_url,
        echo=False,
        pool_pre_ping=True,
        connect_args=connect_args,
    )


# ============================================================
# ✅ Create tables (called at startup)
# ============================================================
def create_db_and_tables(engine: Engine) -> None:
    """
    Create all database tables based on SQLModel models.
    This runs automatically at app startup.
    """
    # Register table metadata before create_all
    import models.models  # noqa: F401

    try:
        SQLModel.metadata.create_all(engine)
        logger.info("✅ All database tables created successfully.")
    except Exception as e:
        logger.error(f"❌ Failed to create tables: {e}")
        raise


# ============================================================
# ✅ Dependency: FastAPI session generator
# ============================================================
def get_session(request: Request) -> Generator[Session, None, None]:
    """
    Provides a SQLModel Session bound to the application's engine.
    Closes automatically after request completes.
    """
    with Session(request.app.state.engine) as session:
        yield session
