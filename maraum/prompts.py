"""Prompt assembly for both channels.

main: the scenario roleplay, in German, with the last 20 scenario messages.
helper: the sarcastic English companion, with the last 5 helper messages and
the last 10 scenario messages rendered into its system prompt.
"""

from typing import List, Sequence, Tuple

from sqlalchemy.orm import Session

from maraum.providers.base import SPEAKER_ASSISTANT, SPEAKER_HUMAN, Turn
from maraum.settings import CHANNEL_HELPER, CHANNEL_MAIN, COMPLETION_MARKER
from maraum.store.models import ROLE_USER, ChatSession, Message, Scenario
from maraum.store.queries import recent_messages

MAIN_HISTORY_LIMIT = 20
HELPER_MAIN_CONTEXT_LIMIT = 10
HELPER_HISTORY_LIMIT = 5

# Anthropic requires the conversation to open with a human turn
SCENE_OPENER = "(The learner steps into the scene.)"

MAIN_TEMPLATE = """You are playing a character in a German conversation practice scenario: {title} {emoji}.

The scene opened with:
{opening}

Rules:
- Stay in character and answer only in German, at B1-B2 level.
- Keep replies short: one to three sentences, like real speech.
- React to what the learner actually said, including mistakes, the way a native speaker would.
- Never switch to English and never explain grammar; the learner has a separate helper for that.
- The scenario should wrap up within about 15 exchanges (30 messages).
- When the conversation reaches a natural end, say goodbye in character and append {marker} on its own at the very end of your reply.
"""

HELPER_TEMPLATE = """You are a sarcastic but genuinely helpful English-speaking companion. The learner is practising German in the scenario "{title}" {emoji} in a separate chat.

- Answer in English. Give German words and phrases when asked, with a short usage note.
- Be dry and teasing, never cruel. Keep answers brief.
- Do not roleplay the scenario character and do not write the learner's replies for them in full.
"""

MAIN_CONTEXT_HEADER = "--- Recent Main Chat Context ---"


def main_system_prompt(scenario: Scenario) -> str:
    return MAIN_TEMPLATE.format(
        title=scenario.title,
        emoji=scenario.emoji,
        opening=scenario.initial_message_main,
        marker=COMPLETION_MARKER,
    )


def helper_system_prompt(scenario: Scenario, main_context: Sequence[Message]) -> str:
    prompt = HELPER_TEMPLATE.format(title=scenario.title, emoji=scenario.emoji)
    if main_context:
        lines = "\n".join(f"[{m.role}]: {m.content}" for m in main_context)
        prompt += f"\n{MAIN_CONTEXT_HEADER}\n{lines}\n---"
    return prompt


def to_turns(messages: Sequence[Message]) -> List[Turn]:
    """Convert stored messages to alternating turns that open with a human turn.

    Adjacent messages from the same side are joined.
    """
    turns: List[Turn] = []
    for m in messages:
        speaker = SPEAKER_HUMAN if m.role == ROLE_USER else SPEAKER_ASSISTANT
        if turns and turns[-1].speaker == speaker:
            turns[-1] = Turn(speaker=speaker, text=f"{turns[-1].text}\n\n{m.content}")
        else:
            turns.append(Turn(speaker=speaker, text=m.content))
    if turns and turns[0].speaker != SPEAKER_HUMAN:
        turns.insert(0, Turn(speaker=SPEAKER_HUMAN, text=SCENE_OPENER))
    return turns


def build_prompt(db: Session, session: ChatSession, human: Message) -> Tuple[str, List[Turn]]:
    """System prompt and turns for the reply to the stored message `human`.

    History windows end at `human`, so a re-attempted generation sees the
    conversation as it stood when the message was first sent.
    """
    scenario = session.scenario
    if human.channel == CHANNEL_MAIN:
        history = recent_messages(db, session.id, CHANNEL_MAIN, MAIN_HISTORY_LIMIT, until=human)
        return main_system_prompt(scenario), to_turns(history)
    if human.channel == CHANNEL_HELPER:
        main_context = recent_messages(db, session.id, CHANNEL_MAIN, HELPER_MAIN_CONTEXT_LIMIT, until=human)
        history = recent_messages(db, session.id, CHANNEL_HELPER, HELPER_HISTORY_LIMIT, until=human)
        return helper_system_prompt(scenario, main_context), to_turns(history)
    raise ValueError(f"unknown channel: {human.channel!r}")
