import os
import sys
from pathlib import Path

import pytest

# Ensure project root is on sys.path for `import maraum.*`
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

# Deterministic defaults: mock provider, in-memory database, no real backoff
os.environ.setdefault("AI_PROVIDER", "mock")
os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("GENERATION_RETRY_DELAYS", "0,0,0")
os.environ.setdefault("LOG_LEVEL", "WARNING")

from maraum.gateway import GenerationGateway  # noqa: E402
from maraum.orchestrator import MessageOrchestrator  # noqa: E402
from maraum.providers.mock import MockGenerationClient  # noqa: E402
from maraum.settings import (  # noqa: E402
    CHANNEL_HELPER,
    CHANNEL_MAIN,
    ChannelConfig,
    RetryPolicy,
    Settings,
)
from maraum.store.engine import build_engine, build_session_factory, init_db  # noqa: E402
from maraum.store.lifecycle import start_session  # noqa: E402
from maraum.store.scenarios import seed_default_scenarios  # noqa: E402


class SleepRecorder:
    """Stands in for asyncio.sleep so retry delays are recorded, not waited."""

    def __init__(self):
        self.delays = []

    async def __call__(self, seconds: float):
        self.delays.append(seconds)


def make_settings(timeout_seconds: float = 5.0) -> Settings:
    return Settings(
        database_url="sqlite+pysqlite:///:memory:",
        db_echo=False,
        seed_scenarios=True,
        log_level="WARNING",
        cors_allow_origins=("http://localhost:4321",),
        channels={
            CHANNEL_MAIN: ChannelConfig(CHANNEL_MAIN, 0.9, 2000, timeout_seconds),
            CHANNEL_HELPER: ChannelConfig(CHANNEL_HELPER, 0.7, 1000, timeout_seconds),
        },
        retry=RetryPolicy(max_attempts=3, delays_seconds=(1.0, 2.0, 4.0)),
    )


@pytest.fixture
def engine():
    eng = build_engine("sqlite+pysqlite:///:memory:")
    init_db(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    factory = build_session_factory(engine)
    with factory() as db:
        seed_default_scenarios(db)
    return factory


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def chat_session(session_factory):
    """A fresh Active session for scenario 1, owned by 'learner-1'."""
    with session_factory() as s:
        return start_session(s, scenario_id=1, owner_id="learner-1")


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def sleep_recorder():
    return SleepRecorder()


@pytest.fixture
def make_orchestrator(session_factory, settings, sleep_recorder):
    def _make(client=None, settings_override=None):
        client = client or MockGenerationClient()
        cfg = settings_override or settings
        gateway = GenerationGateway(client, cfg.retry, sleep=sleep_recorder)
        return MessageOrchestrator(session_factory, gateway, cfg)

    return _make
