"""One inbound message, end to end.

validate -> session exists -> idempotency lookup (replay short-circuits) ->
session active -> store human message -> generate (no DB session held) ->
store assistant message -> complete the session if the scenario channel
reported the completion marker -> envelope.

If generation fails the human message stays stored; retrying with the same
client token re-attempts generation for it.
"""

import json
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from sqlalchemy.orm import Session, sessionmaker

from maraum.errors import (
    DuplicateSubmissionError,
    GenerationFailure,
    MaraumError,
    SessionCompletedError,
    ValidationFailure,
)
from maraum.gateway import GenerationGateway, GenerationReport
from maraum.metrics import SESSION_COMPLETIONS_TOTAL, SUBMISSION_SECONDS, SUBMISSIONS_TOTAL
from maraum.prompts import build_prompt
from maraum.settings import CHANNEL_MAIN, CHANNELS, CONTENT_MAX_CHARS, Settings
from maraum.store.idempotency import PriorSubmission, find_prior_submission
from maraum.store.invariants import insert_message
from maraum.store.lifecycle import complete_session, completion_summary, get_session, require_active
from maraum.store.models import ROLE_HELPER_ASSISTANT, ROLE_MAIN_ASSISTANT, ROLE_USER, ChatSession, Message

logger = logging.getLogger("maraum.chat")


@dataclass
class SubmissionOutcome:
    user_message: Message
    assistant_message: Message
    session_complete: bool
    completion_flag_detected: bool
    replayed: bool
    session: Optional[ChatSession] = None
    report: Optional[GenerationReport] = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "user_message": self.user_message.to_dict(),
            "assistant_message": self.assistant_message.to_dict(),
            "session_complete": self.session_complete,
            "completion_flag_detected": self.completion_flag_detected,
            "replayed": self.replayed,
        }
        if self.session_complete and self.session is not None:
            out["session"] = completion_summary(self.session)
        return out


def validate_submission(channel: Any, content: Any, client_token: Any) -> Tuple[str, str, Optional[str]]:
    """Check a raw submission; returns (channel, content, normalized token).

    Raises ValidationFailure with per-field problems.
    """
    problems: Dict[str, list] = {}
    if channel not in CHANNELS:
        problems["chat_type"] = [f"must be one of {', '.join(CHANNELS)}"]
    if not isinstance(content, str):
        problems["content"] = ["must be a string"]
    elif not content.strip():
        problems["content"] = ["must not be empty"]
    elif len(content) > CONTENT_MAX_CHARS:
        problems["content"] = [f"must be at most {CONTENT_MAX_CHARS} characters"]
    token: Optional[str] = None
    if client_token is not None:
        try:
            token = str(uuid.UUID(str(client_token)))
        except ValueError:
            problems["client_message_id"] = ["must be a UUID"]
    if problems:
        raise ValidationFailure("invalid message submission", problems)
    return channel, content, token


class MessageOrchestrator:
    def __init__(self, session_factory: sessionmaker, gateway: GenerationGateway, settings: Settings):
        self._session_factory = session_factory
        self.gateway = gateway
        self.settings = settings

    async def submit(
        self,
        session_id: str,
        channel: Any,
        content: Any,
        client_token: Any = None,
        request_id: Optional[str] = None,
    ) -> SubmissionOutcome:
        t0 = time.perf_counter()
        channel, content, token = validate_submission(channel, content, client_token)
        try:
            outcome = await self._submit(session_id, channel, content, token, request_id)
        except MaraumError as e:
            SUBMISSIONS_TOTAL.labels(channel=channel, outcome=e.kind).inc()
            logger.warning(json.dumps({
                "event": "submission_failed",
                "requestId": request_id,
                "sessionId": session_id,
                "channel": channel,
                "kind": e.kind,
            }))
            raise
        SUBMISSIONS_TOTAL.labels(channel=channel, outcome="replayed" if outcome.replayed else "fresh").inc()
        SUBMISSION_SECONDS.labels(channel=channel).observe(time.perf_counter() - t0)
        logger.info(json.dumps({
            "event": "submission_done",
            "requestId": request_id,
            "sessionId": session_id,
            "channel": channel,
            "replayed": outcome.replayed,
            "sessionComplete": outcome.session_complete,
            "latencyMs": int((time.perf_counter() - t0) * 1000),
        }))
        return outcome

    async def _submit(
        self,
        session_id: str,
        channel: str,
        content: str,
        token: Optional[str],
        request_id: Optional[str],
    ) -> SubmissionOutcome:
        # Both DB blocks are short, bounded transactions and run inline on the loop;
        # the generation call between them holds no DB session.
        with self._session_factory() as db:
            get_session(db, session_id)
            prior = find_prior_submission(db, session_id, token) if token else None
            if prior is not None and prior.complete:
                return self._replay(db, prior)
            session = require_active(db, session_id)
            if prior is not None:
                human = prior.human
                logger.info(json.dumps({
                    "event": "submission_resumed",
                    "requestId": request_id,
                    "sessionId": session_id,
                    "messageId": human.id,
                }))
            else:
                try:
                    human = insert_message(
                        db,
                        session_id=session_id,
                        role=ROLE_USER,
                        channel=channel,
                        content=content,
                        client_token=token,
                    )
                except DuplicateSubmissionError:
                    # A concurrent request with the same token stored it first
                    prior = find_prior_submission(db, session_id, token) if token else None
                    if prior is None:
                        raise
                    if prior.complete:
                        return self._replay(db, prior)
                    human = prior.human
            system, turns = build_prompt(db, session, human)

        # The human message is committed; nothing below holds a DB session across the call
        try:
            result = await self.gateway.generate(
                turns,
                self.settings.channel_config(human.channel),
                system=system,
                request_id=request_id,
            )
        except GenerationFailure as e:
            e.details.setdefault("user_message_id", human.id)
            raise

        text = result.text
        if len(text) > CONTENT_MAX_CHARS:
            logger.warning(json.dumps({
                "event": "reply_truncated",
                "requestId": request_id,
                "sessionId": session_id,
                "chars": len(text),
            }))
            text = text[:CONTENT_MAX_CHARS]

        with self._session_factory() as db:
            try:
                reply = insert_message(
                    db,
                    session_id=session_id,
                    role=ROLE_MAIN_ASSISTANT if human.channel == CHANNEL_MAIN else ROLE_HELPER_ASSISTANT,
                    channel=human.channel,
                    content=text,
                    reply_to_id=human.id,
                    ended_scenario=result.completion_detected,
                )
            except DuplicateSubmissionError:
                prior = find_prior_submission(db, session_id, token) if token else None
                if prior is None or not prior.complete:
                    raise
                return self._replay(db, prior)

            final: Optional[ChatSession] = None
            if result.completion_detected:
                try:
                    final = complete_session(db, session_id)
                    SESSION_COMPLETIONS_TOTAL.labels(trigger="marker").inc()
                except SessionCompletedError:
                    # Someone else completed it first; report the stored result
                    final = get_session(db, session_id)

        return SubmissionOutcome(
            user_message=human,
            assistant_message=reply,
            session_complete=final is not None,
            completion_flag_detected=result.completion_detected,
            replayed=False,
            session=final,
            report=result.report,
        )

    def _replay(self, db: Session, prior: PriorSubmission) -> SubmissionOutcome:
        """Rebuild the envelope for a stored pair.

        `completion_flag_detected` is read from the stored reply, so replaying
        the submission that ended the scenario reports it again. Completion
        state is the session's current state.
        """
        session = get_session(db, prior.human.session_id)
        return SubmissionOutcome(
            user_message=prior.human,
            assistant_message=prior.reply,
            session_complete=session.is_completed,
            completion_flag_detected=prior.reply.ended_scenario,
            replayed=True,
            session=session if session.is_completed else None,
        )

    def complete(self, session_id: str) -> ChatSession:
        """Explicit completion requested by a caller."""
        with self._session_factory() as db:
            session = complete_session(db, session_id)
        SESSION_COMPLETIONS_TOTAL.labels(trigger="explicit").inc()
        return session
