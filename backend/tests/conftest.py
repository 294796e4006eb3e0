import pytest
from cryptography.fernet import Fernet
from fastapi.testclient import TestClient
from sqlalchemy import StaticPool, create_engine
from sqlalchemy.dialects.sqlite import base as sqlite_base
from sqlalchemy.orm import sessionmaker

import voicelink.models  # noqa: F401 (registers models with Base.metadata)
from voicelink.core.config import settings
from voicelink.core.database import Base, get_db
from voicelink.core.rate_limit import limiter
from voicelink.main import app as fastapi_app
from voicelink.providers import register_default_providers
from voicelink.providers.context import ProviderContext
from voicelink.providers.sessions import ChatSessionStore
from voicelink.providers.vault import CredentialVault
from voicelink.services.jobs import JobRunner
from voicelink.services.provider_settings import save_provider_config
from voicelink.services.webhooks import EventDispatcher

ADMIN_KEY = "test-admin-key"

settings.DEBUG = True
settings.ADMIN_API_KEY = ADMIN_KEY

# ---------------------------------------------------------------------------
# SQLite compatibility for PostgreSQL-specific types (JSONB)
# ---------------------------------------------------------------------------
sqlite_base.SQLiteTypeCompiler.visit_JSONB = lambda self, type_, **kw: self.visit_JSON(type_, **kw)

# In-memory SQLite for tests, no PostgreSQL needed
TEST_DATABASE_URL = "sqlite://"

engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

VAULT_KEY_V1 = Fernet.generate_key().decode()


@pytest.fixture(autouse=True)
def setup_db():
    """Create all tables before each test, drop after."""
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def voice_settings():
    """Reset provider selection settings that tests may change."""
    original = (settings.VOICE_ENABLED, settings.VOICE_PROVIDER, settings.WEBHOOK_FORWARD_URL)
    settings.VOICE_ENABLED = True
    settings.VOICE_PROVIDER = "retell"
    settings.WEBHOOK_FORWARD_URL = ""
    yield
    settings.VOICE_ENABLED, settings.VOICE_PROVIDER, settings.WEBHOOK_FORWARD_URL = original


@pytest.fixture(autouse=True)
def rate_limits():
    """Clear limiter counters and restore limits between tests."""
    original = (settings.TOKEN_RATE_LIMIT, settings.MESSAGE_RATE_LIMIT)
    limiter.reset()
    yield
    settings.TOKEN_RATE_LIMIT, settings.MESSAGE_RATE_LIMIT = original


@pytest.fixture
def db():
    """Provide a test database session."""
    session = TestSessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def session_factory():
    return TestSessionLocal


@pytest.fixture
def vault() -> CredentialVault:
    return CredentialVault({1: VAULT_KEY_V1}, current_version=1)


@pytest.fixture
def provider_context(vault) -> ProviderContext:
    """Context with built-in adapters. Tests set ``.transport`` to stub vendor HTTP."""
    context = ProviderContext(vault, http_timeout=5.0, chat_sessions=ChatSessionStore(ttl_seconds=60))
    return register_default_providers(context)


@pytest.fixture
def dispatcher() -> EventDispatcher:
    return EventDispatcher(forward_url="")


@pytest.fixture
def retell(db, provider_context):
    """An enabled, configured retell provider."""
    save_provider_config(
        db,
        provider_context,
        "retell",
        is_enabled=True,
        agent_id="agent_retell_1",
        secrets={"api_key": "key_retell_secret"},
    )
    return provider_context


@pytest.fixture
def client(db, provider_context, dispatcher):
    """TestClient with overridden DB dependency and an isolated provider context."""

    def _override_get_db():
        try:
            yield db
        finally:
            pass

    original_state = (
        fastapi_app.state.provider_context,
        fastapi_app.state.event_dispatcher,
        fastapi_app.state.job_runner,
    )
    fastapi_app.state.provider_context = provider_context
    fastapi_app.state.event_dispatcher = dispatcher
    fastapi_app.state.job_runner = JobRunner(handlers={})
    fastapi_app.dependency_overrides[get_db] = _override_get_db
    yield TestClient(fastapi_app)
    fastapi_app.dependency_overrides.clear()
    (
        fastapi_app.state.provider_context,
        fastapi_app.state.event_dispatcher,
        fastapi_app.state.job_runner,
    ) = original_state


@pytest.fixture
def admin_headers() -> dict:
    return {"Authorization": f"Bearer {ADMIN_KEY}"}
