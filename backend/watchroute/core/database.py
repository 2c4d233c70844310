from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
import asyncio
import logging

from watchroute.core.config import settings

logger = logging.getLogger(__name__)


def build_engine(url: str):
    """Create an engine for the given URL.

    SQLite (tests, single-node installs) gets a shared static pool so an in-memory
    database survives across sessions; PostgreSQL gets the pooled settings.
    """
    if url.startswith("sqlite"):
        return create_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    # pool_recycle: recycle connections after N seconds to prevent stale connections
    # pool_pre_ping: verify connections before using them
    return create_engine(
        url,
        pool_size=10,
        max_overflow=20,
        pool_timeout=30,
        pool_recycle=3600,
        pool_pre_ping=True,
    )


_engine = None
_session_factory = None


def get_engine():
    global _engine
    if _engine is None:
        _engine = build_engine(settings.database_url)
    return _engine


def get_session_factory() -> sessionmaker:
    global _session_factory
    if _session_factory is None:
        _session_factory = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=get_engine())
    return _session_factory


def SessionLocal():
    return get_session_factory()()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def create_schema(engine) -> None:
    from watchroute.models import Base
    Base.metadata.create_all(bind=engine)


async def init_db():
    """Create tables on startup (idempotent)."""
    loop = asyncio.get_running_loop()

    def _create():
        try:
            create_schema(get_engine())
            logger.info("Database schema ensured")
        except Exception as e:
            # Startup continues; store calls will surface PersistenceError
            logger.warning(f"Schema creation failed: {e}", exc_info=True)

    await loop.run_in_executor(None, _create)
