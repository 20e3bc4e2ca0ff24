from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    DDL,
    Boolean,
    CheckConstraint,
    Column,
    ForeignKey,
    Index,
    Integer,
    SmallInteger,
    String,
    Text,
    UniqueConstraint,
    case,
    event,
    false,
    text,
    update,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, object_session, relationship

from maraum.errors import ImmutableMessageError
from maraum.settings import CONTENT_MAX_CHARS

from .types import UTCDateTime, utcnow

ROLE_USER = "user"
ROLE_MAIN_ASSISTANT = "main_assistant"
ROLE_HELPER_ASSISTANT = "helper_assistant"
ROLES = (ROLE_USER, ROLE_MAIN_ASSISTANT, ROLE_HELPER_ASSISTANT)


def _new_id() -> str:
    return str(uuid.uuid4())


class Base(DeclarativeBase):
    pass


class Scenario(Base):
    """Static scenario configuration. Read-only to the chat core."""

    __tablename__ = "scenarios"

    id: Mapped[int] = Column(Integer, primary_key=True, autoincrement=False)
    title: Mapped[str] = Column(String(200), nullable=False, unique=True)
    emoji: Mapped[str] = Column(String(16), nullable=False, server_default=text("''"))
    initial_message_main: Mapped[str] = Column(Text, nullable=False)
    initial_message_helper: Mapped[str] = Column(Text, nullable=False)
    is_active: Mapped[bool] = Column(Boolean, nullable=False, default=True)
    sort_order: Mapped[int] = Column(SmallInteger, nullable=False, default=0)


class ChatSession(Base):
    """One attempt at a scenario; owns both channels' messages.

    Every column except the identity/scenario/owner fields is written only by
    `store.invariants` (counters, last activity) and `store.lifecycle`
    (completion).
    """

    __tablename__ = "sessions"
    __table_args__ = (
        CheckConstraint(
            "(is_completed AND completed_at IS NOT NULL) OR (NOT is_completed AND completed_at IS NULL)",
            name="sessions_completed_at_required",
        ),
        CheckConstraint(
            "completed_at IS NULL OR completed_at >= started_at",
            name="sessions_completed_after_started",
        ),
        CheckConstraint(
            "message_count_main >= 0 AND message_count_helper >= 0",
            name="sessions_message_counts_non_negative",
        ),
        CheckConstraint(
            "duration_seconds IS NULL OR duration_seconds >= 0",
            name="sessions_duration_non_negative",
        ),
        Index("ix_sessions_scenario", "scenario_id", "is_completed"),
    )

    id: Mapped[str] = Column(String(36), primary_key=True, default=_new_id)
    scenario_id: Mapped[int] = Column(
        Integer, ForeignKey("scenarios.id", ondelete="RESTRICT"), nullable=False
    )
    owner_id: Mapped[Optional[str]] = Column(String(128), nullable=True, index=True)
    is_completed: Mapped[bool] = Column(Boolean, nullable=False, default=False)
    started_at: Mapped[datetime] = Column(UTCDateTime(), nullable=False, default=utcnow)
    last_activity_at: Mapped[datetime] = Column(UTCDateTime(), nullable=False, default=utcnow)
    completed_at: Mapped[Optional[datetime]] = Column(UTCDateTime(), nullable=True)
    duration_seconds: Mapped[Optional[int]] = Column(Integer, nullable=True)
    # Human messages only; openers and assistant replies are not counted
    message_count_main: Mapped[int] = Column(Integer, nullable=False, default=0)
    message_count_helper: Mapped[int] = Column(Integer, nullable=False, default=0)

    scenario: Mapped["Scenario"] = relationship("Scenario", lazy="joined")
    messages: Mapped[list["Message"]] = relationship(
        "Message",
        back_populates="session",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class Message(Base):
    """One utterance in one channel. Insert-only."""

    __tablename__ = "messages"
    __table_args__ = (
        CheckConstraint(
            f"length(content) <= {CONTENT_MAX_CHARS}", name="messages_content_size_limit"
        ),
        CheckConstraint("role IN ('user', 'main_assistant', 'helper_assistant')", name="messages_role_valid"),
        CheckConstraint("channel IN ('main', 'helper')", name="messages_channel_valid"),
        CheckConstraint(
            "(role = 'main_assistant' AND channel = 'main') OR "
            "(role = 'helper_assistant' AND channel = 'helper') OR "
            "(role = 'user' AND channel IN ('main', 'helper'))",
            name="messages_role_channel_valid",
        ),
        CheckConstraint(
            "NOT ended_scenario OR role = 'main_assistant'", name="messages_ended_scenario_main_only"
        ),
        # NULL tokens never collide, so this only constrains submissions that carry one
        UniqueConstraint("session_id", "client_token", name="uq_messages_session_client_token"),
        UniqueConstraint("reply_to_id", name="uq_messages_reply_to"),
        Index("ix_messages_session_time_id", "session_id", "sent_at", "id"),
        Index("ix_messages_session_channel_time", "session_id", "channel", "sent_at"),
    )

    id: Mapped[str] = Column(String(36), primary_key=True, default=_new_id)
    session_id: Mapped[str] = Column(
        String(36), ForeignKey("sessions.id", ondelete="CASCADE"), nullable=False
    )
    role: Mapped[str] = Column(String(32), nullable=False)
    channel: Mapped[str] = Column(String(16), nullable=False)
    content: Mapped[str] = Column(Text, nullable=False)
    sent_at: Mapped[datetime] = Column(UTCDateTime(), nullable=False)
    client_token: Mapped[Optional[str]] = Column(String(36), nullable=True)
    reply_to_id: Mapped[Optional[str]] = Column(
        String(36), ForeignKey("messages.id", ondelete="CASCADE"), nullable=True
    )
    # Set on the main reply whose generation carried the completion marker
    ended_scenario: Mapped[bool] = Column(Boolean, nullable=False, default=False, server_default=false())

    session: Mapped["ChatSession"] = relationship("ChatSession", back_populates="messages")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "role": self.role,
            "chat_type": self.channel,
            "content": self.content,
            "sent_at": self.sent_at.isoformat(),
        }


class CompletionTally(Base):
    """Completed-session count per owner, maintained on completion and deletion."""

    __tablename__ = "completion_tallies"
    __table_args__ = (
        CheckConstraint("completed_count >= 0", name="completion_tallies_non_negative"),
    )

    owner_id: Mapped[str] = Column(String(128), primary_key=True)
    completed_count: Mapped[int] = Column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = Column(UTCDateTime(), nullable=False, default=utcnow)


# ---------------------------------------------------------------------------
# Write guards
# ---------------------------------------------------------------------------

@event.listens_for(Message, "before_update")
def _reject_message_update(mapper, connection, target):
    db = object_session(target)
    if db is not None and not db.is_modified(target, include_collections=False):
        return
    raise ImmutableMessageError(
        "stored messages cannot be modified",
        {"message_id": target.id, "session_id": target.session_id},
    )


@event.listens_for(ChatSession, "after_delete")
def _decrement_tally_on_delete(mapper, connection, target):
    if not target.is_completed or not target.owner_id:
        return
    connection.execute(
        update(CompletionTally)
        .where(CompletionTally.owner_id == target.owner_id)
        .values(
            completed_count=case(
                (CompletionTally.completed_count > 0, CompletionTally.completed_count - 1),
                else_=0,
            ),
            updated_at=utcnow(),
        )
    )


# Database-side backstops for writes that bypass the ORM.
_SQLITE_TRIGGERS = (
    """
    CREATE TRIGGER IF NOT EXISTS messages_immutable
    BEFORE UPDATE ON messages
    BEGIN
        SELECT RAISE(ABORT, 'messages are immutable');
    END
    """,
    """
    CREATE TRIGGER IF NOT EXISTS messages_reject_completed_session
    BEFORE INSERT ON messages
    WHEN (SELECT is_completed FROM sessions WHERE id = NEW.session_id) = 1
    BEGIN
        SELECT RAISE(ABORT, 'session is completed');
    END
    """,
)

_POSTGRES_TRIGGERS = (
    """
    CREATE OR REPLACE FUNCTION maraum_reject_message_update() RETURNS trigger AS $$
    BEGIN
        RAISE EXCEPTION 'messages are immutable' USING ERRCODE = 'integrity_constraint_violation';
    END;
    $$ LANGUAGE plpgsql
    """,
    """
    CREATE OR REPLACE TRIGGER messages_immutable
    BEFORE UPDATE ON messages
    FOR EACH ROW EXECUTE FUNCTION maraum_reject_message_update()
    """,
    """
    CREATE OR REPLACE FUNCTION maraum_reject_completed_insert() RETURNS trigger AS $$
    BEGIN
        IF EXISTS (SELECT 1 FROM sessions WHERE id = NEW.session_id AND is_completed) THEN
            RAISE EXCEPTION 'session is completed' USING ERRCODE = 'integrity_constraint_violation';
        END IF;
        RETURN NEW;
    END;
    $$ LANGUAGE plpgsql
    """,
    """
    CREATE OR REPLACE TRIGGER messages_reject_completed_session
    BEFORE INSERT ON messages
    FOR EACH ROW EXECUTE FUNCTION maraum_reject_completed_insert()
    """,
)

for _stmt in _SQLITE_TRIGGERS:
    event.listen(Message.__table__, "after_create", DDL(_stmt).execute_if(dialect="sqlite"))
for _stmt in _POSTGRES_TRIGGERS:
    event.listen(Message.__table__, "after_create", DDL(_stmt).execute_if(dialect="postgresql"))


__all__ = [
    "Base",
    "ChatSession",
    "CompletionTally",
    "Message",
    "ROLES",
    "ROLE_HELPER_ASSISTANT",
    "ROLE_MAIN_ASSISTANT",
    "ROLE_USER",
    "Scenario",
]
