"""Database bootstrapping utilities."""

from __future__ import annotations

import logging

from sqlalchemy.orm import Session

from app.packages.drive.core.config import get_settings
from app.packages.drive.core.enums import UserRoleEnum
from app.packages.drive.core.security import get_password_hash
from app.packages.drive.db import session as db_session
from app.packages.drive.models import Base, User

logger = logging.getLogger("app.init_db")


def init_db() -> None:
    """Create all database tables if they do not exist and seed the platform super admin."""
    Base.metadata.create_all(bind=db_session.engine)

    session = db_session.SessionLocal()
    try:
        _seed_super_admin(session)
        session.commit()
    except Exception:
        session.rollback()
        logger.exception("Failed to seed default data during database initialization")
        raise
    finally:
        session.close()


def _seed_super_admin(db: Session) -> None:
    """Ensure the configured super admin exists; idempotent across restarts."""
    settings = get_settings()
    existing = db.query(User).filter(User.username == settings.default_superadmin_username).first()
    if existing is not None:
        if existing.role != UserRoleEnum.SUPER_ADMIN.value:
            logger.warning("User %s exists but is not a super admin", existing.username)
        return

    db.add(
        User(
            username=settings.default_superadmin_username,
            hashed_password=get_password_hash(settings.default_superadmin_password),
            role=UserRoleEnum.SUPER_ADMIN.value,
            company_id=None,
            storage_allocated=settings.default_user_storage,
            is_active=True,
        )
    )
    db.flush()
    logger.info("Seeded super admin %s", settings.default_superadmin_username)
