from datetime import date

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from database import Base
from errors import PartialTaggingFailure
from periods import BucketPreset, WindowPreset, WindowRange
from rules import TaggingMode
from schemas import RuleIn, TransactionIn
from services import (
    AutoTaggingService,
    ExcludedTagService,
    RuleService,
    SummaryService,
    TagService,
    TransactionService,
)


def _txn(session, day, amount_cents, description, tag_id=None):
    return TransactionService(session).create(
        TransactionIn(
            date=day, amount_cents=amount_cents, description=description, tag_id=tag_id
        )
    )


def test_new_transaction_is_tagged_by_first_matching_rule() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        coffee = TagService(session).create("Coffee")
        shops = TagService(session).create("Shops")
        RuleService(session).create(RuleIn(pattern="st", tag_id=shops.id))
        RuleService(session).create(RuleIn(pattern="starbucks", tag_id=coffee.id))

        auto = _txn(session, date(2025, 10, 1), -450, "Starbucks Coffee")
        manual = _txn(session, date(2025, 10, 1), -450, "Starbucks", tag_id=coffee.id)
        unmatched = _txn(session, date(2025, 10, 1), -450, "Bakery")

        assert auto.tag_id == shops.id
        assert manual.tag_id == coffee.id
        assert unmatched.tag_id is None


def test_rules_are_listed_in_creation_order() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        tag = TagService(session).create("Bills")
        for pattern in ["zeta", "alpha", "mid"]:
            RuleService(session).create(RuleIn(pattern=pattern, tag_id=tag.id))

        assert [r.pattern for r in RuleService(session).list_ordered()] == [
            "zeta",
            "alpha",
            "mid",
        ]


def test_set_tag_rejects_unknown_transaction_and_tag() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        txn = _txn(session, date(2025, 10, 1), -100, "Kiosk")
        with pytest.raises(ValueError, match="Transaction not found"):
            TransactionService(session).set_tag(999, None)
        with pytest.raises(ValueError, match="Tag not found"):
            TransactionService(session).set_tag(txn.id, 999)

        tag = TagService(session).create("Snacks")
        assert TransactionService(session).set_tag(txn.id, tag.id).tag.name == "Snacks"
        assert TransactionService(session).set_tag(txn.id, None).tag_id is None


def test_auto_tagging_untagged_only_keeps_manual_tags() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        streaming = TagService(session).create("Streaming")
        manual = TagService(session).create("Manual")
        a = _txn(session, date(2025, 10, 1), -999, "NETFLIX.COM")
        b = _txn(session, date(2025, 10, 2), -999, "Netflix", tag_id=manual.id)
        c = _txn(session, date(2025, 10, 3), -500, "Cinema")
        RuleService(session).create(RuleIn(pattern="netflix", tag_id=streaming.id))

        result = AutoTaggingService(session).run(TaggingMode.untagged_only)

        assert result.tags_applied == 1
        assert result.transactions_considered == 2
        service = TransactionService(session)
        assert service.get(a.id).tag_id == streaming.id
        assert service.get(b.id).tag_id == manual.id
        assert service.get(c.id).tag_id is None


def test_auto_tagging_retag_all_twice_applies_nothing_the_second_time() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        streaming = TagService(session).create("Streaming")
        stale = TagService(session).create("Stale")
        _txn(session, date(2025, 10, 1), -999, "Netflix", tag_id=stale.id)
        gym = _txn(session, date(2025, 10, 2), -3000, "Gym", tag_id=stale.id)
        RuleService(session).create(RuleIn(pattern="netflix", tag_id=streaming.id))

        first = AutoTaggingService(session).run("retag_all")
        second = AutoTaggingService(session).run("retag_all")

        assert first.tags_applied == 2
        assert second.tags_applied == 0
        assert TransactionService(session).get(gym.id).tag_id is None


def test_failed_auto_tagging_rolls_back_the_batch(monkeypatch) -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        streaming = TagService(session).create("Streaming")
        for day in (1, 2, 3):
            _txn(session, date(2025, 10, day), -999, "Netflix")
        RuleService(session).create(RuleIn(pattern="netflix", tag_id=streaming.id))

        original = TransactionService.update_tag
        written: list[int] = []

        def flaky_update(self, transaction_id, tag_id, **kwargs):
            if len(written) == 2:
                raise RuntimeError("database is locked")
            written.append(transaction_id)
            return original(self, transaction_id, tag_id, **kwargs)

        monkeypatch.setattr(TransactionService, "update_tag", flaky_update)

        with pytest.raises(PartialTaggingFailure) as excinfo:
            AutoTaggingService(session).run(TaggingMode.untagged_only)

        assert excinfo.value.applied_so_far == 2
        untagged = TransactionService(session).list_for_tagging(TaggingMode.untagged_only)
        assert len(untagged) == 3


def test_sweep_keeps_tag_set_after_candidates_were_read(monkeypatch, tmp_path) -> None:
    # File database so the manual edit runs on its own connection.
    engine = create_engine(f"sqlite:///{tmp_path / 'race.db'}")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        subscriptions = TagService(session).create("Subscriptions")
        manual = TagService(session).create("Manual")
        raced = _txn(session, date(2025, 10, 1), -999, "Netflix")
        other = _txn(session, date(2025, 10, 2), -999, "Netflix")
        RuleService(session).create(RuleIn(pattern="netflix", tag_id=subscriptions.id))
        raced_id, other_id = raced.id, other.id
        subscriptions_id, manual_id = subscriptions.id, manual.id

    original = TransactionService.list_for_tagging

    def list_then_tag_manually(self, mode):
        candidates = original(self, mode)
        with Session(engine) as other_session:
            TransactionService(other_session).set_tag(raced_id, manual_id)
        return candidates

    monkeypatch.setattr(TransactionService, "list_for_tagging", list_then_tag_manually)

    with Session(engine) as session:
        result = AutoTaggingService(session).run(TaggingMode.untagged_only)

    assert result.tags_applied == 1
    assert result.transactions_considered == 2
    with Session(engine) as session:
        service = TransactionService(session)
        assert service.get(raced_id).tag_id == manual_id
        assert service.get(other_id).tag_id == subscriptions_id


def test_rule_pattern_keeps_surrounding_spaces() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        rides = TagService(session).create("Rides")
        rule = RuleService(session).create(RuleIn(pattern="uber ", tag_id=rides.id))
        assert rule.pattern == "uber "

        assert _txn(session, date(2025, 10, 1), -1500, "Uber Trip").tag_id == rides.id
        assert _txn(session, date(2025, 10, 1), -2500, "UberEats").tag_id is None

        with pytest.raises(ValueError, match="cannot be empty"):
            RuleService(session).create(RuleIn(pattern="   ", tag_id=rides.id))


def test_summary_excludes_tags_and_links_neighbouring_windows() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        transfers = TagService(session).create("Transfers")
        food = TagService(session).create("Food")
        _txn(session, date(2025, 9, 15), -2000, "September lunch", tag_id=food.id)
        _txn(session, date(2025, 10, 2), -1500, "Lunch", tag_id=food.id)
        _txn(session, date(2025, 10, 3), -90000, "To savings", tag_id=transfers.id)
        _txn(session, date(2025, 10, 10), 300000, "Salary")
        ExcludedTagService(session).save_excluded([transfers.id])

        summary = SummaryService(session).summarize(
            WindowPreset.month, BucketPreset.week, anchor=date(2025, 10, 15)
        )

        assert summary.window == WindowRange(date(2025, 10, 1), date(2025, 10, 31))
        assert len(summary.buckets) == 5
        assert summary.buckets[0].totals.expenses_cents == -1500
        assert summary.running_totals[-1] == 298500
        assert summary.excluded_tag_ids == [transfers.id]
        assert summary.navigation.prev == WindowRange(date(2025, 9, 1), date(2025, 9, 30))
        assert summary.navigation.next is None


def test_summary_widens_window_smaller_than_bucket() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        summary = SummaryService(session).summarize(
            WindowPreset.this_week, BucketPreset.month, anchor=date(2025, 10, 8)
        )

        assert summary.window_preset == WindowPreset.month
        assert summary.window == WindowRange(date(2025, 10, 1), date(2025, 10, 31))
        assert len(summary.buckets) == 1
        assert summary.navigation.prev is None


def test_expenses_by_tag_for_window() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        food = TagService(session).create("Food")
        _txn(session, date(2025, 9, 1), -1000, "Market", tag_id=food.id)
        _txn(session, date(2025, 10, 1), -500, "Kiosk")

        months, series = SummaryService(session).expenses_by_tag(
            WindowRange(date(2025, 9, 1), date(2025, 10, 31))
        )

        assert months == [date(2025, 9, 1), date(2025, 10, 1)]
        assert series == [("Food", [1000, None]), ("Untagged", [None, 500])]
