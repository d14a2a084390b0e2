import pytest

from shared.config import BlockflowConfig
from tests.fakes import (
    APP_ID,
    JWT_SECRET,
    USER_ID,
    FakeAccess,
    FakeClock,
    FakeDatabase,
    FakeIdentity,
    RecordingMailer,
    RecordingPublisher,
    StubSummarizer,
    no_dns,
)
from workflow_engine.security import SlidingWindowRateLimiter, SsrfGuard
from workflow_engine.services import EngineServices


@pytest.fixture
def settings() -> BlockflowConfig:
    return BlockflowConfig(
        _env_file=None,
        jwt_secret=JWT_SECRET,
        workflow_max_steps=50,
        workflow_run_timeout_seconds=5.0,
        workflow_error_path_grace_seconds=2.0,
    )


@pytest.fixture
def fake_db() -> FakeDatabase:
    return FakeDatabase()


@pytest.fixture
def publisher() -> RecordingPublisher:
    return RecordingPublisher()


@pytest.fixture
def mailer() -> RecordingMailer:
    return RecordingMailer()


@pytest.fixture
def identity() -> FakeIdentity:
    return FakeIdentity(
        users={
            "1": {"id": 1, "email": "ada@example.com", "name": "Ada", "roles": ["admin"], "verified": True},
            "2": {"id": 2, "email": "bob@example.com", "name": "Bob", "roles": ["viewer"], "verified": False},
        }
    )


@pytest.fixture
def engine_services(settings, fake_db, publisher, mailer, identity) -> EngineServices:
    return EngineServices(
        db=fake_db,
        access=FakeAccess(((APP_ID, USER_ID),)),
        identity=identity,
        rate_limiter=SlidingWindowRateLimiter(),
        publisher=publisher,
        mailer=mailer,
        summarizer=StubSummarizer(),
        ssrf_guard=SsrfGuard(resolver=no_dns),
        settings=settings,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
