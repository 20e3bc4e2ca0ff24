"""The single write path for messages.

Every message row (scenario openers, human submissions, assistant replies) is
created through `insert_message`. In one transaction it:

  1. checks role/channel pairing and content size
  2. takes a conditional UPDATE on the session row
     (`WHERE is_completed = false`) that serializes concurrent writers and,
     for human messages, bumps the channel counter
  3. assigns a strictly increasing `sent_at` within the session
  4. inserts the row and refreshes `last_activity_at`

Database triggers and CHECK constraints (see `store.models`) back up the same
rules for writes that bypass this module.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from maraum.errors import (
    DuplicateSubmissionError,
    InvariantViolation,
    MaraumError,
    NotFoundError,
    PersistenceFailure,
    SessionCompletedError,
)
from maraum.settings import CHANNEL_HELPER, CHANNEL_MAIN, CHANNELS, CONTENT_MAX_CHARS

from .models import ROLE_HELPER_ASSISTANT, ROLE_MAIN_ASSISTANT, ROLE_USER, ChatSession, Message
from .types import utcnow

logger = logging.getLogger("maraum.store")

_ROLE_CHANNELS = {
    ROLE_USER: (CHANNEL_MAIN, CHANNEL_HELPER),
    ROLE_MAIN_ASSISTANT: (CHANNEL_MAIN,),
    ROLE_HELPER_ASSISTANT: (CHANNEL_HELPER,),
}

_COUNTER_COLUMNS = {
    CHANNEL_MAIN: "message_count_main",
    CHANNEL_HELPER: "message_count_helper",
}

_TICK = timedelta(microseconds=1)


def check_message_fields(role: str, channel: str, content: str, ended_scenario: bool = False) -> None:
    """Raise InvariantViolation unless the role/channel/content triple is storable."""
    problems = {}
    if channel not in CHANNELS:
        problems["channel"] = [f"must be one of {', '.join(CHANNELS)}"]
    allowed = _ROLE_CHANNELS.get(role)
    if allowed is None:
        problems["role"] = [f"unknown role {role!r}"]
    elif channel in CHANNELS and channel not in allowed:
        problems["role"] = [f"{role} is not allowed in the {channel} channel"]
    if not isinstance(content, str):
        problems["content"] = ["must be a string"]
    elif len(content) > CONTENT_MAX_CHARS:
        problems["content"] = [f"must be at most {CONTENT_MAX_CHARS} characters"]
    if ended_scenario and role != ROLE_MAIN_ASSISTANT:
        problems["ended_scenario"] = ["only a main_assistant reply can end the scenario"]
    if problems:
        raise InvariantViolation("message rejected by write rules", problems)


def next_sent_at(db: Session, session_id: str, now: Optional[datetime] = None) -> datetime:
    """Timestamp for the next message in `session_id`, strictly after the latest one."""
    now = now or utcnow()
    latest = db.execute(
        select(func.max(Message.sent_at)).where(Message.session_id == session_id)
    ).scalar()
    if latest is not None and now <= latest:
        return latest + _TICK
    return now


def _claim_slot(db: Session, session_id: str, channel: str, role: str) -> None:
    values = {}
    if role == ROLE_USER:
        counter = _COUNTER_COLUMNS[channel]
        values[counter] = getattr(ChatSession, counter) + 1
    else:
        # No counter change, but the row is still locked and the guard still applies
        values["last_activity_at"] = ChatSession.last_activity_at
    stmt = (
        update(ChatSession)
        .where(ChatSession.id == session_id, ChatSession.is_completed.is_(False))
        .values(values)
        .execution_options(synchronize_session=False)
    )
    result = db.execute(stmt)
    if result.rowcount:
        return
    completed = db.execute(
        select(ChatSession.is_completed).where(ChatSession.id == session_id)
    ).scalar_one_or_none()
    if completed is None:
        raise NotFoundError("session not found", {"session_id": session_id})
    raise SessionCompletedError(
        "session is completed and accepts no further messages", {"session_id": session_id}
    )


def _from_integrity_error(exc: IntegrityError, session_id: str) -> MaraumError:
    text = str(getattr(exc, "orig", exc)).lower()
    if "session is completed" in text:
        return SessionCompletedError(
            "session is completed and accepts no further messages", {"session_id": session_id}
        )
    if "unique" in text or "duplicate" in text:
        return DuplicateSubmissionError("message already recorded", {"session_id": session_id})
    return InvariantViolation("message rejected by storage constraints", {"session_id": session_id})


def insert_message(
    db: Session,
    *,
    session_id: str,
    role: str,
    channel: str,
    content: str,
    client_token: Optional[str] = None,
    reply_to_id: Optional[str] = None,
    ended_scenario: bool = False,
    commit: bool = True,
) -> Message:
    """Persist one message and maintain the session's derived fields.

    Raises NotFoundError, SessionCompletedError, DuplicateSubmissionError,
    InvariantViolation or PersistenceFailure. On any failure the transaction
    is rolled back.
    """
    check_message_fields(role, channel, content, ended_scenario)
    try:
        _claim_slot(db, session_id, channel, role)
        sent_at = next_sent_at(db, session_id)
        message = Message(
            session_id=session_id,
            role=role,
            channel=channel,
            content=content,
            sent_at=sent_at,
            client_token=client_token,
            reply_to_id=reply_to_id,
            ended_scenario=ended_scenario,
        )
        db.add(message)
        db.flush()
        db.execute(
            update(ChatSession)
            .where(ChatSession.id == session_id)
            .values(last_activity_at=sent_at)
            .execution_options(synchronize_session=False)
        )
        if commit:
            db.commit()
    except IntegrityError as exc:
        db.rollback()
        err = _from_integrity_error(exc, session_id)
        logger.info(json.dumps({
            "event": "message_insert_rejected",
            "sessionId": session_id,
            "channel": channel,
            "role": role,
            "kind": err.kind,
        }))
        raise err from exc
    except MaraumError:
        db.rollback()
        raise
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error(json.dumps({
            "event": "message_insert_failed",
            "sessionId": session_id,
            "channel": channel,
            "role": role,
            "error": type(exc).__name__,
        }))
        raise PersistenceFailure("failed to store message", {"session_id": session_id}) from exc

    logger.info(json.dumps({
        "event": "message_stored",
        "sessionId": session_id,
        "messageId": message.id,
        "channel": channel,
        "role": role,
        "contentChars": len(content),
        "replayable": client_token is not None,
    }))
    return message


__all__ = ["check_message_fields", "insert_message", "next_sent_at"]
