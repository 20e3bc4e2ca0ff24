from __future__ import annotations

from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import and_, func, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from maraum.errors import PersistenceFailure, ValidationFailure
from maraum.settings import CHANNELS

from .models import Message

DEFAULT_PAGE_LIMIT = 100
MAX_PAGE_LIMIT = 500
CHANNEL_FILTERS = CHANNELS + ("all",)
ORDERS = ("asc", "desc")


def validate_page(channel: str, limit: int, offset: int, order: str) -> None:
    problems: Dict[str, List[str]] = {}
    if channel not in CHANNEL_FILTERS:
        problems["chat_type"] = [f"must be one of {', '.join(CHANNEL_FILTERS)}"]
    if not 1 <= limit <= MAX_PAGE_LIMIT:
        problems["limit"] = [f"must be between 1 and {MAX_PAGE_LIMIT}"]
    if offset < 0:
        problems["offset"] = ["must be >= 0"]
    if order not in ORDERS:
        problems["order"] = ["must be 'asc' or 'desc'"]
    if problems:
        raise ValidationFailure("invalid pagination parameters", problems)


def list_messages(
    db: Session,
    session_id: str,
    *,
    channel: str = "all",
    limit: int = DEFAULT_PAGE_LIMIT,
    offset: int = 0,
    order: str = "asc",
) -> Tuple[List[Message], int]:
    """One page of a session's messages under (sent_at, id) ordering, plus the total."""
    validate_page(channel, limit, offset, order)
    conditions = [Message.session_id == session_id]
    if channel != "all":
        conditions.append(Message.channel == channel)
    if order == "desc":
        ordering = (Message.sent_at.desc(), Message.id.desc())
    else:
        ordering = (Message.sent_at.asc(), Message.id.asc())
    try:
        total = db.execute(select(func.count()).select_from(Message).where(*conditions)).scalar_one()
        items = list(
            db.execute(
                select(Message).where(*conditions).order_by(*ordering).limit(limit).offset(offset)
            ).scalars()
        )
    except SQLAlchemyError as exc:
        raise PersistenceFailure("failed to read messages", {"session_id": session_id}) from exc
    return items, int(total)


def page_to_dict(items: List[Message], total: int, limit: int, offset: int) -> Dict[str, Any]:
    return {
        "messages": [m.to_dict() for m in items],
        "pagination": {
            "total": total,
            "limit": limit,
            "offset": offset,
            "has_more": offset + len(items) < total,
        },
    }


def recent_messages(
    db: Session,
    session_id: str,
    channel: str,
    limit: int,
    until: Optional[Message] = None,
) -> List[Message]:
    """The last `limit` messages of one channel, oldest first.

    With `until`, only messages at or before it under (sent_at, id) ordering.
    """
    if limit <= 0:
        return []
    stmt = select(Message).where(Message.session_id == session_id, Message.channel == channel)
    if until is not None:
        stmt = stmt.where(
            or_(
                Message.sent_at < until.sent_at,
                and_(Message.sent_at == until.sent_at, Message.id <= until.id),
            )
        )
    stmt = stmt.order_by(Message.sent_at.desc(), Message.id.desc()).limit(limit)
    rows = list(db.execute(stmt).scalars())
    rows.reverse()
    return rows


def all_messages(db: Session, session_id: str, channel: Optional[str] = None) -> List[Message]:
    stmt = select(Message).where(Message.session_id == session_id)
    if channel:
        stmt = stmt.where(Message.channel == channel)
    stmt = stmt.order_by(Message.sent_at.asc(), Message.id.asc())
    return list(db.execute(stmt).scalars())


__all__ = [
    "CHANNEL_FILTERS",
    "DEFAULT_PAGE_LIMIT",
    "MAX_PAGE_LIMIT",
    "all_messages",
    "list_messages",
    "page_to_dict",
    "recent_messages",
    "validate_page",
]
