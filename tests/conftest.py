import pathlib
import sys
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

import jwt
import pytest
from fastapi import FastAPI, Request

sys.path.append(str(pathlib.Path(__file__).resolve().parents[1]))
from wa_inbox.app_logging import init_logging
from wa_inbox.campaigns import schemas as campaign_schemas
from wa_inbox.campaigns.repository import InMemoryCampaignRepository
from wa_inbox.conversations import schemas as convo_schemas
from wa_inbox.conversations.repository import InMemoryConversationRepository
from wa_inbox.core.config import reset_settings_cache
from wa_inbox.core.errors import TransportError
from wa_inbox.transport import TransportResult

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

AUTH_SECRET = "test-secret-key-with-at-least-32-bytes!"


class FakeClock:
    """Mutable clock injected into services instead of ``datetime.now``."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingTransport:
    """Transport double that records sends and can fail chosen recipients."""

    def __init__(self, failures: dict[str, Exception] | None = None):
        self.sent = []
        self.failures = failures or {}
        self._lock = threading.Lock()
        self._counter = 0

    def send(self, message):
        with self._lock:
            self.sent.append(message)
            error = self.failures.get(message.to)
            if error is not None:
                raise error
            self._counter += 1
            return TransportResult(id=f"SM{self._counter:032d}", status="queued")


class FailingTransport:
    def __init__(self, error: Exception | None = None):
        self.error = error or TransportError("Could not reach Twilio")
        self.calls = 0

    def send(self, message):
        self.calls += 1
        raise self.error


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def convo_repo():
    return InMemoryConversationRepository()


@pytest.fixture
def campaign_repo():
    return InMemoryCampaignRepository()


@pytest.fixture
def transport():
    return RecordingTransport()


def make_contact(phone: str, name: str | None = None, **fields) -> convo_schemas.Contact:
    return convo_schemas.Contact(
        id=uuid.uuid4(), phone_number=phone, name=name, created_at=NOW, **fields
    )


def make_template(**overrides) -> campaign_schemas.Template:
    data = {
        "id": uuid.uuid4(),
        "name": "spring_promo",
        "content_sid": "HX0123456789abcdef0123456789abcdef",
        "body": "Hi {{name}}, your code is {{code}}",
        "status": "approved",
        "variables": {"name": "Customer", "code": "SPRING"},
    }
    data.update(overrides)
    return campaign_schemas.Template(**data)


def make_campaign(
    repo: InMemoryCampaignRepository,
    template: campaign_schemas.Template,
    segments,
    *,
    status=campaign_schemas.CampaignStatus.RUNNING,
    variable_source=campaign_schemas.VariableSource.MANUAL,
    template_variables=None,
) -> campaign_schemas.Campaign:
    return repo.create_campaign(
        name="Spring promo",
        template_id=template.id,
        target_segments=list(segments),
        schedule_type=campaign_schemas.ScheduleType.IMMEDIATE,
        scheduled_at=None,
        template_variables=template_variables or {},
        variable_source=variable_source,
        status=status,
        created_by="agent-1",
        now=NOW,
    )


@pytest.fixture
def auth_env(monkeypatch):
    monkeypatch.setenv("AUTH_TOKEN_SECRET", AUTH_SECRET)
    monkeypatch.setenv("AUTH_TOKEN_AUDIENCE", "wa-inbox")
    monkeypatch.setenv("AUTH_TOKEN_ISSUER", "auth.wa-inbox")
    monkeypatch.setenv("AUTH_TOKEN_ALGORITHM", "HS256")


def make_token(user_id: str = "agent-1", **claims) -> str:
    payload = {
        "user_id": user_id,
        "aud": "wa-inbox",
        "iss": "auth.wa-inbox",
        "exp": datetime.now(timezone.utc) + timedelta(minutes=5),
    }
    payload.update(claims)
    return jwt.encode(payload, AUTH_SECRET, algorithm="HS256")


def auth_header(user_id: str = "agent-1") -> dict[str, str]:
    return {"Authorization": f"Bearer {make_token(user_id)}"}


@pytest.fixture(autouse=True)
def _fresh_settings(monkeypatch, tmp_path):
    monkeypatch.setenv("LOG_DIR", str(tmp_path / "logs"))
    monkeypatch.setenv("UPLOAD_DIR", str(tmp_path / "uploads"))
    for name in (
        "CRON_SECRET",
        "PUBLIC_BASE_URL",
        "TWILIO_VALIDATE_SIGNATURE",
        "TWILIO_AUTH_TOKEN",
    ):
        monkeypatch.delenv(name, raising=False)
    reset_settings_cache()
    yield
    reset_settings_cache()


@contextmanager
def yielding(value):
    yield value


@pytest.fixture
def app_factory(monkeypatch):
    def _create_app(log_dir: str, log_request_bodies: bool = False):
        """Create a FastAPI app with logging initialised."""
        monkeypatch.setenv("LOG_DIR", str(log_dir))
        if log_request_bodies:
            monkeypatch.setenv("LOG_REQUEST_BODIES", "true")
        app = FastAPI()

        @app.post("/echo")
        async def echo(request: Request):
            return await request.json()

        @app.post("/form")
        async def form(request: Request):
            return {"size": len(await request.body())}

        init_logging(app)
        return app

    return _create_app
