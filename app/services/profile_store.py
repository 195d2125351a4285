from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator, Optional

from sqlalchemy import text
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.logging_config import get_logger
from app.models import CompletedEnrollment, UserProfile
from app.schemas.enrollment import FinalSnapshot
from app.services.enrollment_state import NOT_STARTED

logger = get_logger("profile_store")

# Columns each module may write.
ENROLLMENT_COLUMNS = frozenset({"platform", "inscription_status", "inscription_data", "payment"})
HISTORY_COLUMNS = frozenset({"history"})


class StoreUnavailableError(Exception):
    """The profile store could not complete the operation."""


def _fail(db: Session, action: str, user_id: str, exc: SQLAlchemyError) -> StoreUnavailableError:
    try:
        db.rollback()
    except SQLAlchemyError as rollback_exc:
        logger.error(f"Rollback failed after {action}: {rollback_exc}")
    logger.error(f"Profile store {action} failed", extra={"context": {"user_id": user_id, "error": str(exc)}})
    return StoreUnavailableError(f"{action} failed for {user_id}: {exc}")


@contextmanager
def user_lock(db: Session, user_id: str) -> Iterator[None]:
    """Serialize processing per user with a PostgreSQL session advisory lock.

    The lock belongs to the database connection, and ``db.commit()`` hands the
    session's connection back to the pool, so the lock is taken and released on
    a separate connection that stays checked out until the block exits.
    """
    try:
        conn = db.get_bind().connect()
    except SQLAlchemyError as exc:
        logger.error("Profile store lock failed", extra={"context": {"user_id": user_id, "error": str(exc)}})
        raise StoreUnavailableError(f"lock failed for {user_id}: {exc}") from exc
    try:
        try:
            conn.execute(text("SELECT pg_advisory_lock(hashtext(:key))"), {"key": user_id})
            conn.commit()
        except SQLAlchemyError as exc:
            logger.error("Profile store lock failed", extra={"context": {"user_id": user_id, "error": str(exc)}})
            raise StoreUnavailableError(f"lock failed for {user_id}: {exc}") from exc
        try:
            yield
        finally:
            try:
                conn.execute(text("SELECT pg_advisory_unlock(hashtext(:key))"), {"key": user_id})
                conn.commit()
            except SQLAlchemyError as exc:
                # dropping the connection releases the lock server side
                logger.error(f"Advisory unlock failed: {exc}", extra={"context": {"user_id": user_id}})
                conn.invalidate()
    finally:
        conn.close()


def get_profile(db: Session, user_id: str) -> Optional[UserProfile]:
    try:
        return db.query(UserProfile).filter(UserProfile.id == user_id).first()
    except SQLAlchemyError as exc:
        raise _fail(db, "get", user_id, exc) from exc


def get_or_create_profile(db: Session, user_id: str, platform: str) -> UserProfile:
    """Load the profile, creating it as not_started on first contact."""
    now = datetime.now(timezone.utc)
    stmt = (
        insert(UserProfile)
        .values(
            id=user_id,
            platform=platform,
            inscription_status=NOT_STARTED.tag,
            inscription_data={},
            history=[],
            created_at=now,
            updated_at=now,
        )
        .on_conflict_do_nothing(index_elements=["id"])
    )
    try:
        result = db.execute(stmt)
        if result.rowcount:
            logger.info("Created profile", extra={"context": {"user_id": user_id, "platform": platform}})
        db.commit()
        profile = db.query(UserProfile).filter(UserProfile.id == user_id).first()
    except SQLAlchemyError as exc:
        raise _fail(db, "get_or_create", user_id, exc) from exc
    if profile is None:
        raise StoreUnavailableError(f"profile {user_id} vanished after insert")
    return profile


def _upsert_statement(user_id: str, values: dict, now: datetime):
    insert_values = {
        "id": user_id,
        "platform": values.get("platform", "whatsapp"),
        "inscription_status": values.get("inscription_status", NOT_STARTED.tag),
        "inscription_data": values.get("inscription_data", {}),
        "payment": values.get("payment"),
        "history": values.get("history", []),
        "created_at": now,
        "updated_at": now,
    }
    return (
        insert(UserProfile)
        .values(**insert_values)
        .on_conflict_do_update(index_elements=["id"], set_={**values, "updated_at": now})
    )


def upsert_profile(db: Session, user_id: str, values: dict) -> None:
    """Write enrollment-owned columns for one user in a single commit (last writer wins)."""
    unknown = set(values) - ENROLLMENT_COLUMNS
    if unknown:
        raise ValueError(f"enrollment may not write {sorted(unknown)}")
    try:
        db.execute(_upsert_statement(user_id, values, datetime.now(timezone.utc)))
        db.commit()
    except SQLAlchemyError as exc:
        raise _fail(db, "upsert", user_id, exc) from exc


def save_history(db: Session, user_id: str, history: list) -> None:
    """Write the information module's conversation history only."""
    try:
        db.execute(_upsert_statement(user_id, {"history": history}, datetime.now(timezone.utc)))
        db.commit()
    except SQLAlchemyError as exc:
        raise _fail(db, "save_history", user_id, exc) from exc


def complete_enrollment(db: Session, user_id: str, values: dict, snapshot: FinalSnapshot) -> None:
    """Move the profile to completed and store the finalized snapshot atomically."""
    unknown = set(values) - ENROLLMENT_COLUMNS
    if unknown:
        raise ValueError(f"enrollment may not write {sorted(unknown)}")
    now = datetime.now(timezone.utc)
    record = CompletedEnrollment(
        user_id=user_id,
        platform=snapshot.platform,
        snapshot=snapshot.model_dump(mode="json"),
        completed_at=now,
    )
    try:
        db.execute(_upsert_statement(user_id, values, now))
        db.add(record)
        db.commit()
    except SQLAlchemyError as exc:
        raise _fail(db, "complete_enrollment", user_id, exc) from exc
    logger.info("Enrollment completed", extra={"context": {"user_id": user_id, "method": snapshot.payment.method}})
