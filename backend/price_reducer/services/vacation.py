"""Per-user pause gate for the reduction scheduler.

The flag lives on ``users.vacation_mode`` and is committed before returning,
so the next scheduler cycle (in any process) sees it. Listing-level
``enable_auto_reduction`` flags are never touched, which makes the pause
fully reversible.
"""
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from price_reducer.models_sqlalchemy.models import User
from price_reducer.utils.dates import utc_now
from price_reducer.utils.logger import logger


def set_vacation_mode(db: Session, user_id: str, enabled: bool, *, now: Optional[datetime] = None) -> User:
    user = db.query(User).filter(User.id == user_id).first()
    if user is None:
        raise LookupError(f"User {user_id} not found")

    if user.vacation_mode != enabled:
        user.vacation_mode = enabled
        user.vacation_mode_since = (now or utc_now()) if enabled else None
        db.commit()
        db.refresh(user)
        logger.info("[vacation] user_id=%s vacation_mode=%s", user_id, enabled)
    return user


def is_paused(db: Session, user_id: str) -> bool:
    paused = db.query(User.vacation_mode).filter(User.id == user_id).scalar()
    return bool(paused)
