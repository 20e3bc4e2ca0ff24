"""Session lifecycle: Active -> Completed, exactly once.

Completion is a conditional UPDATE (`WHERE is_completed = false`) that sets
the flag, `completed_at` and `duration_seconds` together and bumps the
owner's completion tally in the same transaction. A second attempt finds no
row to update and fails with SessionCompletedError.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from maraum.errors import MaraumError, NotFoundError, PersistenceFailure, SessionCompletedError
from maraum.settings import CHANNEL_HELPER, CHANNEL_MAIN

from .invariants import insert_message
from .models import ROLE_HELPER_ASSISTANT, ROLE_MAIN_ASSISTANT, ChatSession, CompletionTally
from .scenarios import get_active_scenario
from .types import utcnow

logger = logging.getLogger("maraum.store")


def get_session(db: Session, session_id: str) -> ChatSession:
    session = db.get(ChatSession, session_id, populate_existing=True)
    if session is None:
        raise NotFoundError("session not found", {"session_id": session_id})
    return session


def require_active(db: Session, session_id: str) -> ChatSession:
    session = get_session(db, session_id)
    if session.is_completed:
        raise SessionCompletedError(
            "session is completed and accepts no further messages", {"session_id": session_id}
        )
    return session


def elapsed_seconds(started_at: datetime, completed_at: datetime) -> int:
    """Whole seconds between the two instants, rounded half up, never negative."""
    seconds = (completed_at - started_at).total_seconds()
    return max(0, int(seconds + 0.5))


def _ensure_tally(db: Session, owner_id: str) -> None:
    if db.get(CompletionTally, owner_id) is not None:
        return
    db.add(CompletionTally(owner_id=owner_id, completed_count=0, updated_at=utcnow()))
    try:
        db.commit()
    except IntegrityError:
        # Another request created it first
        db.rollback()


def _bump_tally(db: Session, owner_id: str, now: datetime) -> None:
    result = db.execute(
        update(CompletionTally)
        .where(CompletionTally.owner_id == owner_id)
        .values(completed_count=CompletionTally.completed_count + 1, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if not result.rowcount:
        db.add(CompletionTally(owner_id=owner_id, completed_count=1, updated_at=now))
        db.flush()


def start_session(db: Session, *, scenario_id: int, owner_id: Optional[str] = None) -> ChatSession:
    """Create a session for an active scenario and seed both opening messages."""
    scenario = get_active_scenario(db, scenario_id)
    try:
        if owner_id:
            _ensure_tally(db, owner_id)
        now = utcnow()
        session = ChatSession(
            scenario_id=scenario.id,
            owner_id=owner_id,
            is_completed=False,
            started_at=now,
            last_activity_at=now,
        )
        db.add(session)
        db.flush()
        session_id = session.id
        insert_message(
            db,
            session_id=session_id,
            role=ROLE_MAIN_ASSISTANT,
            channel=CHANNEL_MAIN,
            content=scenario.initial_message_main,
            commit=False,
        )
        insert_message(
            db,
            session_id=session_id,
            role=ROLE_HELPER_ASSISTANT,
            channel=CHANNEL_HELPER,
            content=scenario.initial_message_helper,
            commit=False,
        )
        db.commit()
    except MaraumError:
        db.rollback()
        raise
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error(json.dumps({
            "event": "session_start_failed",
            "scenarioId": scenario_id,
            "error": type(exc).__name__,
        }))
        raise PersistenceFailure("failed to start session", {"scenario_id": scenario_id}) from exc

    logger.info(json.dumps({
        "event": "session_started",
        "sessionId": session_id,
        "scenarioId": scenario_id,
        "hasOwner": bool(owner_id),
    }))
    return get_session(db, session_id)


def complete_session(db: Session, session_id: str, *, completed_at: Optional[datetime] = None) -> ChatSession:
    """Transition a session to Completed.

    Raises NotFoundError for an unknown session and SessionCompletedError if
    it is already completed (including losing a race with another caller).
    """
    try:
        row = db.execute(
            select(ChatSession.started_at, ChatSession.is_completed, ChatSession.owner_id).where(
                ChatSession.id == session_id
            )
        ).one_or_none()
        if row is None:
            raise NotFoundError("session not found", {"session_id": session_id})
        if row.is_completed:
            raise SessionCompletedError("session is already completed", {"session_id": session_id})

        now = completed_at or utcnow()
        if now < row.started_at:
            now = row.started_at
        duration = elapsed_seconds(row.started_at, now)
        result = db.execute(
            update(ChatSession)
            .where(ChatSession.id == session_id, ChatSession.is_completed.is_(False))
            .values(is_completed=True, completed_at=now, duration_seconds=duration)
            .execution_options(synchronize_session=False)
        )
        if not result.rowcount:
            raise SessionCompletedError("session is already completed", {"session_id": session_id})
        if row.owner_id:
            _bump_tally(db, row.owner_id, now)
        db.commit()
    except MaraumError:
        db.rollback()
        raise
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error(json.dumps({
            "event": "session_complete_failed",
            "sessionId": session_id,
            "error": type(exc).__name__,
        }))
        raise PersistenceFailure("failed to complete session", {"session_id": session_id}) from exc

    logger.info(json.dumps({
        "event": "session_completed",
        "sessionId": session_id,
        "durationSeconds": duration,
    }))
    return get_session(db, session_id)


def session_to_dict(session: ChatSession) -> Dict[str, Any]:
    return {
        "id": session.id,
        "scenario_id": session.scenario_id,
        "owner_id": session.owner_id,
        "is_completed": session.is_completed,
        "started_at": session.started_at.isoformat(),
        "last_activity_at": session.last_activity_at.isoformat(),
        "completed_at": session.completed_at.isoformat() if session.completed_at else None,
        "duration_seconds": session.duration_seconds,
        "message_count_main": session.message_count_main,
        "message_count_helper": session.message_count_helper,
    }


def completion_summary(session: ChatSession) -> Dict[str, Any]:
    """The session block attached to a submission response."""
    return {
        "id": session.id,
        "is_completed": session.is_completed,
        "completed_at": session.completed_at.isoformat() if session.completed_at else None,
        "duration_seconds": session.duration_seconds,
        "message_count_main": session.message_count_main,
        "message_count_helper": session.message_count_helper,
    }


__all__ = [
    "complete_session",
    "completion_summary",
    "elapsed_seconds",
    "get_session",
    "require_active",
    "session_to_dict",
    "start_session",
]
