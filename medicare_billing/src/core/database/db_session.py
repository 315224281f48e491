from typing import Optional, Callable
from sqlalchemy.ext.asyncio import create_async_engine, AsyncEngine, AsyncSession
from sqlalchemy.orm import sessionmaker, declarative_base
from ..config.settings import get_settings

Base = declarative_base()

_engine: Optional[AsyncEngine] = None
_session_factory: Optional[Callable[[], AsyncSession]] = None

def create_engine_from_settings(database_url: Optional[str] = None) -> AsyncEngine:
    settings = get_settings()
    url = database_url or settings.DATABASE_URL
    engine_kwargs = {"echo": settings.DB_ECHO}
    # SQLite drivers do not take pool sizing arguments
    if not url.startswith("sqlite"):
        engine_kwargs["pool_size"] = settings.DB_POOL_SIZE
        engine_kwargs["max_overflow"] = settings.DB_MAX_OVERFLOW
    return create_async_engine(url, **engine_kwargs)

def create_session_factory(engine: AsyncEngine) -> Callable[[], AsyncSession]:
    return sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )

def get_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        _engine = create_engine_from_settings()
    return _engine

def get_async_session_factory() -> Callable[[], AsyncSession]:
    """Returns the process-wide session factory, creating the engine on first use."""
    global _session_factory
    if _session_factory is None:
        _session_factory = create_session_factory(get_engine())
    return _session_factory

async def dispose_engine():
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None
