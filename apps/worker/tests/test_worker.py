import uuid
from types import SimpleNamespace

from app.models import MessageChannel
from app.services.dispatcher import CycleResult
from courier_worker import main as worker_main
from courier_worker.main import drain, ping, retention_sweep


class _DummySession:
    def __init__(self, stale_ids=None) -> None:  # noqa: ANN001
        self.stale_ids = stale_ids or []
        self.executed = 0
        self.committed = False

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def scalars(self, stmt):  # noqa: ANN001
        return SimpleNamespace(all=lambda: list(self.stale_ids))

    def execute(self, stmt):  # noqa: ANN001
        self.executed += 1

    def flush(self) -> None:
        return None

    def commit(self) -> None:
        self.committed = True


def test_ping_task() -> None:
    assert ping() == "pong"


def test_drain_runs_one_cycle_for_the_channel(monkeypatch) -> None:
    calls: list[MessageChannel] = []

    class _Engine:
        def drain(self, channel: MessageChannel) -> CycleResult:
            calls.append(channel)
            return CycleResult(channel=channel.value, selected=2, sent=2)

    monkeypatch.setattr(worker_main, "_engine", lambda: _Engine())

    result = drain("sms")

    assert calls == [MessageChannel.SMS]
    assert result["channel"] == "sms"
    assert result["sent"] == 2
    assert result["rate_limited"] is False


def test_drain_skips_unknown_channel(monkeypatch) -> None:
    def _no_engine():
        raise AssertionError("engine not needed")

    monkeypatch.setattr(worker_main, "_engine", _no_engine)

    assert drain("fax") == {"channel": "fax", "skipped": True}


def test_retention_sweep_handles_empty_queue(monkeypatch) -> None:
    session = _DummySession()
    monkeypatch.setattr(worker_main, "SessionLocal", lambda: session)

    assert retention_sweep() == 0
    assert session.executed == 0
    assert session.committed is True


def test_retention_sweep_deletes_stale_rows(monkeypatch) -> None:
    session = _DummySession(stale_ids=[uuid.uuid4(), uuid.uuid4()])
    monkeypatch.setattr(worker_main, "SessionLocal", lambda: session)

    assert retention_sweep() == 2
    # Delivery records first, then the queue rows.
    assert session.executed == 2
    assert session.committed is True


def test_beat_schedule_drains_both_channels() -> None:
    schedule = worker_main.app.conf.beat_schedule

    assert schedule["drain-whatsapp"]["args"] == ("whatsapp",)
    assert schedule["drain-sms"]["args"] == ("sms",)
    assert worker_main.app.conf.task_routes["worker.messaging.drain"] == {"queue": "courier.dispatch"}
