from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import and_, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from maraum.errors import PersistenceFailure

from .models import ROLE_USER, Message

logger = logging.getLogger("maraum.store")


@dataclass
class PriorSubmission:
    """What storage already holds for a (session, client token) pair.

    `reply` is None when the human message was stored but its answer never
    was (generation failed or the process died in between).
    """

    human: Message
    reply: Optional[Message] = None

    @property
    def complete(self) -> bool:
        return self.reply is not None


def find_reply(db: Session, human: Message) -> Optional[Message]:
    """Locate the assistant message answering `human`.

    A reply linked through `reply_to_id` wins. Otherwise the earliest
    non-human message in the same channel strictly after `human` under
    (sent_at, id) ordering, skipping replies linked to other messages.
    """
    linked = db.execute(
        select(Message).where(Message.reply_to_id == human.id)
    ).scalar_one_or_none()
    if linked is not None:
        return linked
    stmt = (
        select(Message)
        .where(
            Message.session_id == human.session_id,
            Message.channel == human.channel,
            Message.role != ROLE_USER,
            Message.reply_to_id.is_(None),
            or_(
                Message.sent_at > human.sent_at,
                and_(Message.sent_at == human.sent_at, Message.id > human.id),
            ),
        )
        .order_by(Message.sent_at.asc(), Message.id.asc())
        .limit(1)
    )
    return db.execute(stmt).scalars().first()


def find_prior_submission(db: Session, session_id: str, client_token: str) -> Optional[PriorSubmission]:
    """Look up an earlier submission carrying `client_token`.

    Returns None when the token is new. Storage errors surface as
    PersistenceFailure.
    """
    try:
        human = db.execute(
            select(Message).where(
                Message.session_id == session_id,
                Message.client_token == client_token,
            )
        ).scalar_one_or_none()
        if human is None:
            return None
        reply = find_reply(db, human)
    except SQLAlchemyError as exc:
        logger.error(json.dumps({
            "event": "idempotency_lookup_failed",
            "sessionId": session_id,
            "error": type(exc).__name__,
        }))
        raise PersistenceFailure("failed to check for a duplicate submission", {"session_id": session_id}) from exc

    logger.info(json.dumps({
        "event": "idempotency_hit",
        "sessionId": session_id,
        "messageId": human.id,
        "channel": human.channel,
        "complete": reply is not None,
    }))
    return PriorSubmission(human=human, reply=reply)


__all__ = ["PriorSubmission", "find_prior_submission", "find_reply"]
