from typing import Iterator

from fastapi import Depends, Header
from sqlalchemy.orm import Session

from core.audit_trail import SYSTEM_ACTOR
from core.db import SessionLocal
from core.lifecycle import ContractLifecycleManager, build_lifecycle_manager
from core.notifications import build_notification_sink

ACTOR_HEADER = "X-Actor-Id"


def get_db() -> Iterator[Session]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_actor_id(x_actor_id: str | None = Header(default=None, alias=ACTOR_HEADER)) -> str:
    # Authentication happens upstream; the gateway forwards the resolved user id.
    actor_id = (x_actor_id or "").strip()
    return actor_id[:64] if actor_id else SYSTEM_ACTOR


def get_lifecycle_manager(db: Session = Depends(get_db)) -> ContractLifecycleManager:
    return build_lifecycle_manager(db, notifier=build_notification_sink())
