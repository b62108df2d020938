import hashlib
import hmac
import time
import uuid

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from cyclegate.auth import create_access_token
from cyclegate.config import Settings
from cyclegate.db import Base
from cyclegate.main import create_app
from cyclegate.models import UserAccount

WEBHOOK_SECRET = "whsec_test_secret"


@pytest.fixture(scope="session")
def settings(tmp_path_factory) -> Settings:
    db_path = tmp_path_factory.mktemp("db") / "cyclegate_test.db"
    return Settings(
        _env_file=None,
        database_url=f"sqlite:///{db_path}",
        jwt_secret="test-jwt-secret-that-is-long-enough-1234",
        stripe_secret_key="sk_test_dummy",
        stripe_webhook_secret=WEBHOOK_SECRET,
        stripe_price_id="price_test_monthly",
        app_base_url="https://app.example.com",
    )


@pytest.fixture(scope="session")
def app(settings):
    application = create_app(settings)
    # Ensure tables exist for tests
    Base.metadata.create_all(bind=application.state.engine)
    yield application
    application.state.engine.dispose()


@pytest.fixture
def session_factory(app):
    return app.state.session_factory


@pytest.fixture
def db_session(session_factory) -> Session:
    session: Session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def test_client(app) -> TestClient:
    return TestClient(app)


@pytest.fixture
def test_user(db_session: Session) -> UserAccount:
    suffix = uuid.uuid4().hex[:8]
    user = UserAccount(id=f"user_{suffix}", email=f"test_{suffix}@example.com", unlocked_cycles=0)
    db_session.add(user)
    db_session.commit()
    db_session.refresh(user)
    return user


@pytest.fixture
def auth_headers(settings):
    def _headers(user_id: str, email: str = None) -> dict:
        token = create_access_token(user_id, settings, email=email)
        return {"Authorization": f"Bearer {token}"}
    return _headers


@pytest.fixture
def sign_payload():
    """Build a Stripe-Signature header the way Stripe does."""
    def _sign(payload: str, secret: str = WEBHOOK_SECRET, timestamp: int = None) -> str:
        timestamp = str(timestamp if timestamp is not None else int(time.time()))
        signed_payload = f"{timestamp}.{payload}"
        signature = hmac.new(
            secret.encode("utf-8"),
            signed_payload.encode("utf-8"),
            hashlib.sha256
        ).hexdigest()
        return f"t={timestamp},v1={signature}"
    return _sign


@pytest.fixture
def event_id():
    return f"evt_test_{uuid.uuid4().hex[:12]}"
