from __future__ import annotations
# ruff: noqa: E402

import os
import sys
import uuid
from collections.abc import Generator
from datetime import UTC, datetime, timedelta
from pathlib import Path

os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("DISPATCHER_MODE", "off")
os.environ.setdefault("ENQUEUE_MESSAGES_PER_MINUTE", "0")
os.environ.setdefault("LOG_FORMAT", "plain")

API_ROOT = Path(__file__).resolve().parents[1]
WORKER_ROOT = Path(__file__).resolve().parents[2] / "worker"
REPO_ROOT = Path(__file__).resolve().parents[3]
for path in (API_ROOT, WORKER_ROOT, REPO_ROOT):
    if str(path) not in sys.path:
        sys.path.insert(0, str(path))

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.db import get_db
from app.main import app
from app.models import Base, MessageChannel, MessageTemplate, Role, TemplateStatus
from app.services.providers import OutboundSend, ProviderError, ProviderSendResult

TEST_USER_ID = uuid.UUID("aaaaaaaa-aaaa-aaaa-aaaa-aaaaaaaaaaaa")
TEST_TENANT_ID = uuid.UUID("bbbbbbbb-bbbb-bbbb-bbbb-bbbbbbbbbbbb")
OTHER_TENANT_ID = uuid.UUID("cccccccc-cccc-cccc-cccc-cccccccccccc")


class FakeProvider:
    """Records sends; raises queued ProviderErrors first when any are set."""

    def __init__(self, channel: MessageChannel = MessageChannel.WHATSAPP) -> None:
        self.channel = channel
        self.sent: list[OutboundSend] = []
        self.failures: list[ProviderError] = []
        self.calls = 0

    def send(self, message: OutboundSend) -> ProviderSendResult:
        self.calls += 1
        if self.failures:
            raise self.failures.pop(0)
        self.sent.append(message)
        provider_id = f"wamid.test-{len(self.sent)}-{uuid.uuid4().hex[:6]}"
        return ProviderSendResult(provider_message_id=provider_id, raw_ref=provider_id)

    def fetch_number_type(self, phone_number: str) -> str:
        return "mobile"


class MutableClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime.now(UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


@pytest.fixture()
def engine() -> Generator[Engine, None, None]:
    engine = create_engine(
        "sqlite+pysqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # pysqlite needs explicit BEGIN for SAVEPOINT to behave.
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, _record) -> None:  # noqa: ANN001
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(connection) -> None:  # noqa: ANN001
        connection.exec_driver_sql("BEGIN")

    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, class_=Session)


@pytest.fixture()
def db_session(session_factory: sessionmaker[Session]) -> Generator[Session, None, None]:
    # Committed objects stay readable without reopening a transaction on the shared connection.
    with session_factory(expire_on_commit=False) as session:
        yield session
        session.rollback()


@pytest.fixture()
def tenant_id() -> uuid.UUID:
    return TEST_TENANT_ID


@pytest.fixture()
def fake_provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture()
def approved_template(db_session: Session) -> MessageTemplate:
    template = MessageTemplate(
        tenant_id=TEST_TENANT_ID,
        name="visit_reminder",
        category="appointment",
        language="pt_BR",
        body_text="Olá {{nome}}, lembrete da visita em {{endereco}} às {{horario}}.",
        variables_json=["nome", "endereco", "horario"],
        status=TemplateStatus.APPROVED,
        usage_count=0,
    )
    db_session.add(template)
    db_session.commit()
    return template


@pytest.fixture()
def api_headers(session_factory: sessionmaker[Session]) -> Generator[dict[str, str], None, None]:
    def _override_get_db() -> Generator[Session, None, None]:
        with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = _override_get_db
    yield {
        "X-Courier-User-Id": str(TEST_USER_ID),
        "X-Courier-Tenant-Id": str(TEST_TENANT_ID),
        "X-Courier-Role": Role.OWNER.value,
    }
    app.dependency_overrides.pop(get_db, None)
