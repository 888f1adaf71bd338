# Database engine and session factory.
#
# FastAPI endpoints get a session via: Depends(sessionswap.api.deps.get_db)

from sqlalchemy import create_engine, text
from sqlalchemy.orm import sessionmaker

from sessionswap.core.config import get_settings

settings = get_settings()


def _engine_kwargs(database_url: str) -> dict:
    if database_url.startswith("sqlite"):
        # Request handlers run in a threadpool; SQLite connections must be shareable.
        return {"connect_args": {"check_same_thread": False}}
    return {
        "pool_pre_ping": True,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_recycle": 1800,
    }


engine = create_engine(
    settings.database_url,
    echo=settings.database_echo,
    **_engine_kwargs(settings.database_url),
)

SessionLocal = sessionmaker(
    bind=engine,
    autocommit=False,
    autoflush=False,
    expire_on_commit=False,  # Response building reads rows after commit
)


def check_db_connection() -> bool:
    """Used by the readiness probe; True when a trivial query succeeds."""
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception:
        return False
