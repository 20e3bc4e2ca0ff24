import asyncio
import uuid
from dataclasses import replace

import pytest
from sqlalchemy import func, select

import maraum.orchestrator as orchestrator_mod
from maraum.errors import (
    GenerationFailure,
    GenerationTimeout,
    NotFoundError,
    SessionCompletedError,
    ValidationFailure,
)
from maraum.providers.base import FailureKind, ProviderFailure
from maraum.providers.mock import MockGenerationClient
from maraum.prompts import SCENE_OPENER
from maraum.settings import CHANNEL_HELPER, CHANNEL_MAIN, CONTENT_MAX_CHARS, ChannelConfig
from maraum.store.lifecycle import complete_session, elapsed_seconds, get_session
from maraum.store.models import Message


def _messages(factory, session_id):
    with factory() as s:
        return list(
            s.execute(
                select(Message).where(Message.session_id == session_id).order_by(Message.sent_at, Message.id)
            ).scalars()
        )


def _counts(factory, session_id):
    with factory() as s:
        sess = get_session(s, session_id)
        return sess.message_count_main, sess.message_count_helper


@pytest.mark.asyncio
async def test_fresh_submission_stores_pair_and_counts_one(make_orchestrator, session_factory, chat_session):
    client = MockGenerationClient()
    orch = make_orchestrator(client)
    out = await orch.submit(chat_session.id, "main", "Guten Tag!")

    assert out.replayed is False
    assert out.user_message.content == "Guten Tag!"
    assert out.user_message.role == "user"
    assert out.assistant_message.role == "main_assistant"
    assert out.assistant_message.reply_to_id == out.user_message.id
    assert out.assistant_message.content
    assert out.session_complete is False
    assert _counts(session_factory, chat_session.id) == (1, 0)

    # The prompt opened with a human turn ahead of the seeded opener
    turns = client.calls[0]["turns"]
    assert turns[0].text == SCENE_OPENER
    assert turns[-1].text == "Guten Tag!"
    assert "Marketplace Encounter" in client.calls[0]["system"]


@pytest.mark.asyncio
async def test_same_token_twice_replays_identical_pair(make_orchestrator, session_factory, chat_session):
    token = str(uuid.uuid4())
    client = MockGenerationClient()
    orch = make_orchestrator(client)

    first = await orch.submit(chat_session.id, "main", "x", client_token=token)
    second = await orch.submit(chat_session.id, "main", "x", client_token=token)

    assert second.replayed is True
    assert second.user_message.to_dict() == first.user_message.to_dict()
    assert second.assistant_message.to_dict() == first.assistant_message.to_dict()
    assert len(client.calls) == 1
    assert _counts(session_factory, chat_session.id) == (1, 0)
    assert len(_messages(session_factory, chat_session.id)) == 4


@pytest.mark.asyncio
async def test_uppercase_token_is_the_same_token(make_orchestrator, chat_session):
    token = uuid.uuid4()
    orch = make_orchestrator()
    first = await orch.submit(chat_session.id, "helper", "hilfe", client_token=str(token))
    second = await orch.submit(chat_session.id, "helper", "hilfe", client_token=str(token).upper())
    assert second.replayed is True
    assert second.user_message.id == first.user_message.id


@pytest.mark.asyncio
async def test_marker_in_main_reply_completes_session(make_orchestrator, session_factory, chat_session):
    client = MockGenerationClient(script=["Tschüss, und viel Spaß! [SCENARIO_COMPLETE]"])
    out = await make_orchestrator(client).submit(chat_session.id, "main", "Danke, tschüss!")

    assert out.session_complete is True
    assert out.completion_flag_detected is True
    assert "[SCENARIO_COMPLETE]" not in out.assistant_message.content
    assert out.session.completed_at is not None
    assert out.session.duration_seconds == elapsed_seconds(out.session.started_at, out.session.completed_at)
    body = out.to_dict()
    assert body["session"]["is_completed"] is True
    assert body["session"]["duration_seconds"] == out.session.duration_seconds

    with session_factory() as s:
        assert get_session(s, chat_session.id).is_completed is True


@pytest.mark.asyncio
async def test_replay_of_final_submission_matches_first_envelope(make_orchestrator, chat_session):
    token = str(uuid.uuid4())
    client = MockGenerationClient(script=["Schönen Abend noch! [SCENARIO_COMPLETE]"])
    orch = make_orchestrator(client)

    first = await orch.submit(chat_session.id, "main", "Tschüss!", client_token=token)
    again = await orch.submit(chat_session.id, "main", "Tschüss!", client_token=token)

    assert again.replayed is True
    assert again.completion_flag_detected is True
    expected = first.to_dict()
    expected["replayed"] = True
    assert again.to_dict() == expected


@pytest.mark.asyncio
async def test_replay_after_explicit_completion_reports_no_marker(make_orchestrator, session_factory, chat_session):
    token = str(uuid.uuid4())
    orch = make_orchestrator()
    await orch.submit(chat_session.id, "main", "Noch einen Kaffee, bitte.", client_token=token)
    orch.complete(chat_session.id)

    again = await orch.submit(chat_session.id, "main", "Noch einen Kaffee, bitte.", client_token=token)
    assert again.session_complete is True
    assert again.completion_flag_detected is False


@pytest.mark.asyncio
async def test_marker_in_helper_reply_does_not_complete(make_orchestrator, session_factory, chat_session):
    client = MockGenerationClient(script=["Fine, leave then. [SCENARIO_COMPLETE]"])
    out = await make_orchestrator(client).submit(chat_session.id, "helper", "bye")

    assert out.session_complete is False
    assert out.completion_flag_detected is False
    assert out.assistant_message.content == "Fine, leave then."
    assert _counts(session_factory, chat_session.id) == (0, 1)
    with session_factory() as s:
        assert get_session(s, chat_session.id).is_completed is False


@pytest.mark.asyncio
async def test_submit_to_completed_session_conflicts_without_rows(make_orchestrator, session_factory, chat_session):
    with session_factory() as s:
        complete_session(s, chat_session.id)
    before = len(_messages(session_factory, chat_session.id))
    client = MockGenerationClient()

    with pytest.raises(SessionCompletedError):
        await make_orchestrator(client).submit(chat_session.id, "main", "Hallo?", client_token=str(uuid.uuid4()))

    assert len(_messages(session_factory, chat_session.id)) == before
    assert client.calls == []


@pytest.mark.asyncio
async def test_replay_still_works_after_completion(make_orchestrator, session_factory, chat_session):
    token = str(uuid.uuid4())
    orch = make_orchestrator()
    first = await orch.submit(chat_session.id, "main", "Hallo", client_token=token)
    with session_factory() as s:
        complete_session(s, chat_session.id)

    again = await orch.submit(chat_session.id, "main", "Hallo", client_token=token)
    assert again.replayed is True
    assert again.assistant_message.id == first.assistant_message.id
    assert again.session_complete is True


@pytest.mark.asyncio
async def test_timeouts_on_every_attempt_keep_the_human_message(
    make_orchestrator, session_factory, settings, sleep_recorder, chat_session
):
    tight = replace(settings, channels={
        CHANNEL_MAIN: ChannelConfig(CHANNEL_MAIN, 0.9, 2000, 0.01),
        CHANNEL_HELPER: ChannelConfig(CHANNEL_HELPER, 0.7, 1000, 0.01),
    })
    client = MockGenerationClient(delay_seconds=0.5)
    orch = make_orchestrator(client, settings_override=tight)

    with pytest.raises(GenerationTimeout) as ei:
        await orch.submit(chat_session.id, "main", "Ist hier jemand?")

    assert isinstance(ei.value, GenerationFailure)
    assert len(client.calls) == 3
    assert sleep_recorder.delays == [1.0, 2.0]
    stored = [m for m in _messages(session_factory, chat_session.id) if m.role == "user"]
    assert [m.content for m in stored] == ["Ist hier jemand?"]
    assert ei.value.details["user_message_id"] == stored[0].id
    assert _counts(session_factory, chat_session.id) == (1, 0)


@pytest.mark.asyncio
async def test_retry_with_same_token_resumes_generation(make_orchestrator, session_factory, chat_session):
    token = str(uuid.uuid4())
    client = MockGenerationClient(script=[ProviderFailure(FailureKind.CLIENT_ERROR, "rejected", status=400)])
    orch = make_orchestrator(client)

    with pytest.raises(GenerationFailure) as ei:
        await orch.submit(chat_session.id, "main", "Zwei Äpfel, bitte.", client_token=token)
    human_id = ei.value.details["user_message_id"]

    out = await orch.submit(chat_session.id, "main", "Zwei Äpfel, bitte.", client_token=token)
    assert out.replayed is False
    assert out.user_message.id == human_id
    assert out.assistant_message.reply_to_id == human_id
    assert _counts(session_factory, chat_session.id) == (1, 0)

    third = await orch.submit(chat_session.id, "main", "Zwei Äpfel, bitte.", client_token=token)
    assert third.replayed is True
    assert third.assistant_message.id == out.assistant_message.id


@pytest.mark.asyncio
async def test_concurrent_same_token_yields_one_pair(make_orchestrator, session_factory, chat_session):
    token = str(uuid.uuid4())
    orch = make_orchestrator(MockGenerationClient(delay_seconds=0.01))

    a, b = await asyncio.gather(
        orch.submit(chat_session.id, "main", "x", client_token=token),
        orch.submit(chat_session.id, "main", "x", client_token=token),
    )

    assert a.user_message.id == b.user_message.id
    assert a.assistant_message.id == b.assistant_message.id
    assert sorted([a.replayed, b.replayed]) == [False, True]
    assert _counts(session_factory, chat_session.id) == (1, 0)
    with session_factory() as s:
        n = s.execute(
            select(func.count()).select_from(Message).where(Message.session_id == chat_session.id)
        ).scalar_one()
    assert n == 4


@pytest.mark.asyncio
async def test_concurrent_submissions_count_exactly(make_orchestrator, session_factory, chat_session):
    orch = make_orchestrator(MockGenerationClient(delay_seconds=0.01))
    await asyncio.gather(*[
        orch.submit(chat_session.id, "main" if i % 2 else "helper", f"nachricht {i}", client_token=str(uuid.uuid4()))
        for i in range(6)
    ])
    assert _counts(session_factory, chat_session.id) == (3, 3)

    msgs = _messages(session_factory, chat_session.id)
    stamps = [m.sent_at for m in msgs]
    assert stamps == sorted(stamps)
    assert len(set(stamps)) == len(stamps)


@pytest.mark.asyncio
async def test_lost_completion_race_reports_stored_completion(
    make_orchestrator, session_factory, chat_session, monkeypatch: pytest.MonkeyPatch
):
    real_complete = orchestrator_mod.complete_session

    def complete_elsewhere_first(db, session_id, **kwargs):
        real_complete(db, session_id)
        raise SessionCompletedError("session is already completed", {"session_id": session_id})

    monkeypatch.setattr(orchestrator_mod, "complete_session", complete_elsewhere_first)
    client = MockGenerationClient(script=["Auf Wiedersehen! [SCENARIO_COMPLETE]"])
    out = await make_orchestrator(client).submit(chat_session.id, "main", "Tschüss")

    assert out.session_complete is True
    assert out.session.completed_at is not None


@pytest.mark.asyncio
async def test_overlong_reply_is_truncated_to_cap(make_orchestrator, chat_session):
    client = MockGenerationClient(script=["ja " * CONTENT_MAX_CHARS])
    out = await make_orchestrator(client).submit(chat_session.id, "main", "Erzähl mal")
    assert len(out.assistant_message.content) == CONTENT_MAX_CHARS


@pytest.mark.asyncio
@pytest.mark.parametrize("channel, content, token, field", [
    ("side", "hallo", None, "chat_type"),
    ("main", "   ", None, "content"),
    ("main", "a" * (CONTENT_MAX_CHARS + 1), None, "content"),
    ("main", 42, None, "content"),
    ("main", "hallo", "abc", "client_message_id"),
])
async def test_invalid_submissions_are_rejected(make_orchestrator, session_factory, chat_session, channel, content, token, field):
    client = MockGenerationClient()
    with pytest.raises(ValidationFailure) as ei:
        await make_orchestrator(client).submit(chat_session.id, channel, content, client_token=token)
    assert field in ei.value.details
    assert client.calls == []
    assert _counts(session_factory, chat_session.id) == (0, 0)


@pytest.mark.asyncio
async def test_unknown_session_is_not_found(make_orchestrator):
    with pytest.raises(NotFoundError):
        await make_orchestrator().submit(str(uuid.uuid4()), "main", "hallo")


def test_explicit_completion_is_once_only(make_orchestrator, chat_session):
    orch = make_orchestrator()
    done = orch.complete(chat_session.id)
    assert done.is_completed is True
    with pytest.raises(SessionCompletedError):
        orch.complete(chat_session.id)
