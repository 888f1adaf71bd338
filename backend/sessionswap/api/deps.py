from collections.abc import Generator
from datetime import datetime

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.orm import Session

from sessionswap.core.config import Settings, get_settings
from sessionswap.db.session import SessionLocal
from sessionswap.services.locks import KeyedLockRegistry, get_lock_registry
from sessionswap.services.store import SqlAlchemyStore
from sessionswap.services.substitution import Clock, SubstitutionService, utc_now


def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_clock() -> Clock:
    return utc_now


def get_now(clock: Clock = Depends(get_clock)) -> datetime:
    return clock()


def get_store(db: Session = Depends(get_db)) -> SqlAlchemyStore:
    return SqlAlchemyStore(db)


def get_substitution_service(
    store: SqlAlchemyStore = Depends(get_store),
    locks: KeyedLockRegistry = Depends(get_lock_registry),
    settings: Settings = Depends(get_settings),
    clock: Clock = Depends(get_clock),
) -> SubstitutionService:
    return SubstitutionService(store, locks=locks, settings=settings, clock=clock)


def get_requester_id(x_user_id: str | None = Header(default=None)) -> str:
    # Identity is asserted by the gateway in front of this service.
    requester_id = (x_user_id or "").strip()
    if not requester_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-User-Id header",
        )
    return requester_id
