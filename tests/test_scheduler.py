from contextlib import contextmanager
from datetime import date

from sqlalchemy import create_engine
from sqlalchemy.orm import Session

import scheduler
from database import Base
from schemas import RuleIn, TransactionIn
from services import RuleService, TagService, TransactionService


def _patch_session_scope(monkeypatch, engine):
    @contextmanager
    def scope():
        with Session(engine) as session:
            yield session
            session.commit()

    monkeypatch.setattr(scheduler, "session_scope", scope)


def test_sweep_tags_untagged_transactions(monkeypatch) -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        tag = TagService(session).create("Streaming")
        TransactionService(session).create(
            TransactionIn(date=date(2025, 10, 1), amount_cents=-999, description="Netflix")
        )
        RuleService(session).create(RuleIn(pattern="netflix", tag_id=tag.id))

    _patch_session_scope(monkeypatch, engine)
    manager = scheduler.SchedulerManager()

    assert manager._run_job("test") == 1
    assert manager._run_job("test") == 0


def test_failed_sweep_returns_zero(monkeypatch) -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        tag = TagService(session).create("Streaming")
        TransactionService(session).create(
            TransactionIn(date=date(2025, 10, 1), amount_cents=-999, description="Netflix")
        )
        RuleService(session).create(RuleIn(pattern="netflix", tag_id=tag.id))

    def broken_update(self, transaction_id, tag_id, **kwargs):
        raise RuntimeError("database is locked")

    _patch_session_scope(monkeypatch, engine)
    monkeypatch.setattr(TransactionService, "update_tag", broken_update)

    assert scheduler.SchedulerManager()._run_job("test") == 0


def test_disabled_scheduler_does_not_start() -> None:
    manager = scheduler.SchedulerManager()
    manager.autotag_hour = None
    manager.start()

    assert not manager.scheduler.running
    assert manager.scheduler.get_jobs() == []
