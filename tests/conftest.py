import asyncio
import json
import os

# Must be set before ideavalidator modules read their settings
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["JWT_SECRET"] = "test-secret-that-is-long-enough-for-hs256-0123"
os.environ["RATE_LIMIT"] = "30 per minute"
for _key in ("API_KEY", "GEMINI_API_KEY", "OPENROUTER_API_KEY", "SARVAM_API_KEY"):
    os.environ[_key] = ""

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from ideavalidator import models
from ideavalidator.ai_provider import AIProvider, AnalysisGateway
from ideavalidator.auth import create_access_token, get_password_hash
from ideavalidator.database import get_db
from ideavalidator.main import app, get_gateway, limiter

SAMPLE_REPORT = {
    "summaryVerdict": "Promising",
    "oneLineTakeaway": "Clear pain point with a reachable niche.",
    "marketReality": "Fragmented incumbents, no dominant player in the niche.",
    "pros": ["Clear buyer", "Cheap to test"],
    "cons": ["Crowded adjacent market"],
    "competitors": [{"name": "Acme", "differentiation": "Generalist, no workflow focus"}],
    "monetizationStrategies": ["Per-seat pricing"],
    "whyPeoplePay": "Saves hours every week.",
    "viabilityScore": 72,
    "nextSteps": ["Interview 10 buyers", "Ship a landing page"],
}


def report_json(**overrides) -> str:
    return json.dumps({**SAMPLE_REPORT, **overrides})


class FakeProvider(AIProvider):
    """Scripted provider: returns ``reply`` or raises ``error`` after ``delay`` seconds."""

    def __init__(self, name, reply=None, error=None, delay=0.0, api_key="test-key",
                 supports_attachments=False, on_call=None):
        super().__init__(api_key)
        self.name = name
        self.reply = reply
        self.error = error
        self.delay = delay
        self.supports_attachments = supports_attachments
        self.on_call = on_call
        self.calls = 0
        self.cancelled = False
        self.last_timeout = None
        self.last_request = None

    async def generate(self, request, timeout):
        self.calls += 1
        self.last_timeout = timeout
        self.last_request = request
        if self.on_call:
            self.on_call()
        if self.delay:
            try:
                await asyncio.sleep(self.delay)
            except asyncio.CancelledError:
                self.cancelled = True
                raise
        if self.error is not None:
            raise self.error
        return self.reply


class FakeChatProvider:
    def __init__(self, reply="Talk to ten customers first.", configured=True):
        self.reply = reply
        self.configured = configured
        self.calls = []

    def is_configured(self):
        return self.configured

    async def chat(self, message, original_idea, report, timeout):
        self.calls.append((message, original_idea, report, timeout))
        return self.reply


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def engine():
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    models.Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def file_engine(tmp_path):
    """File-backed database so separate threads/sessions get separate connections."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'test.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    models.Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def make_user(db):
    counter = {"n": 0}

    def _make(email=None, credits=3, is_pro=False, password="secret123", name="Founder"):
        counter["n"] += 1
        user = models.User(
            email=email or f"founder{counter['n']}@example.com",
            name=name,
            hashed_password=get_password_hash(password) if password else None,
            credits=credits,
            is_pro=is_pro,
        )
        db.add(user)
        db.commit()
        db.refresh(user)
        return user

    return _make


def auth_headers(user) -> dict:
    return {"Authorization": f"Bearer {create_access_token(user)}"}


@pytest.fixture
def good_gateway():
    return AnalysisGateway([FakeProvider("fake", reply=report_json())], chat_provider=FakeChatProvider())


@pytest.fixture
def failing_gateway():
    return AnalysisGateway([
        FakeProvider("a", error=RuntimeError("a down")),
        FakeProvider("b", error=RuntimeError("b down")),
    ])


@pytest.fixture
def client(session_factory, good_gateway):
    state = {"gateway": good_gateway}

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_gateway] = lambda: state["gateway"]
    limiter.reset()
    test_client = TestClient(app)
    test_client.use_gateway = lambda gateway: state.__setitem__("gateway", gateway)
    yield test_client
    app.dependency_overrides.clear()
