from .engine import build_engine, build_session_factory, init_db
from .idempotency import PriorSubmission, find_prior_submission, find_reply
from .invariants import insert_message
from .lifecycle import complete_session, get_session, require_active, start_session
from .models import (
    ROLE_HELPER_ASSISTANT,
    ROLE_MAIN_ASSISTANT,
    ROLE_USER,
    Base,
    ChatSession,
    CompletionTally,
    Message,
    Scenario,
)

__all__ = [
    "Base",
    "ChatSession",
    "CompletionTally",
    "Message",
    "PriorSubmission",
    "ROLE_HELPER_ASSISTANT",
    "ROLE_MAIN_ASSISTANT",
    "ROLE_USER",
    "Scenario",
    "build_engine",
    "build_session_factory",
    "complete_session",
    "find_prior_submission",
    "find_reply",
    "get_session",
    "init_db",
    "insert_message",
    "require_active",
    "start_session",
]
