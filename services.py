from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date
from typing import ContextManager, Iterator, Optional, Union

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, joinedload

from aggregation import (
    DateBucket,
    TransactionRow,
    aggregate,
    expenses_by_tag,
    month_starts,
    running_totals,
)
from config import get_settings
from database import write_lock
from errors import PartialTaggingFailure, StoreReadFailure, StoreWriteFailure
from models import ExcludedTag, Rule, Tag, Transaction
from periods import (
    BucketPreset,
    WindowNavigation,
    WindowPreset,
    WindowRange,
    can_contain,
    resolve_window,
    smallest_window_for,
    window_navigation,
)
from rules import TaggingMode, TaggingResult, apply_rules_to_transactions, match_tag
from schemas import RuleIn, TransactionIn


logger = logging.getLogger(__name__)


def get_current_user_id() -> int:
    return 1


@contextmanager
def _store_errors(
    error_cls: type, action: str, session: Optional[Session] = None
) -> Iterator[None]:
    """Turn ``SQLAlchemyError`` into ``error_cls``; roll back ``session`` if given."""
    try:
        yield
    except SQLAlchemyError as exc:
        if session is not None:
            session.rollback()
        logger.exception(f"store_failure: action={action}")
        raise error_cls(f"Could not {action}") from exc


def _reading(action: str) -> ContextManager[None]:
    return _store_errors(StoreReadFailure, action)


def _writing(session: Session, action: str) -> ContextManager[None]:
    return _store_errors(StoreWriteFailure, action, session)


# Marks "no expectation" for conditional tag writes; None is a real tag value.
_ANY_TAG = object()


class TagService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def list_all(self) -> list[Tag]:
        stmt = select(Tag).where(Tag.user_id == self.user_id).order_by(Tag.name)
        with _reading("list tags"):
            return self.session.scalars(stmt).all()

    def get(self, tag_id: int) -> Optional[Tag]:
        with _reading("load tag"):
            tag = self.session.get(Tag, tag_id)
        if not tag or tag.user_id != self.user_id:
            return None
        return tag

    def _name_taken(self, name: str, exclude_id: Optional[int] = None) -> bool:
        stmt = select(Tag).where(
            Tag.user_id == self.user_id, func.lower(Tag.name) == name.lower()
        )
        if exclude_id is not None:
            stmt = stmt.where(Tag.id != exclude_id)
        with _reading("check tag name"):
            return self.session.scalar(stmt) is not None

    def create(self, name: str) -> Tag:
        clean_name = name.strip()
        if not clean_name:
            raise ValueError("Tag name cannot be empty")
        if self._name_taken(clean_name):
            raise ValueError("Tag already exists")

        tag = Tag(user_id=self.user_id, name=clean_name)
        with _writing(self.session, "create tag"):
            self.session.add(tag)
            self.session.commit()
            self.session.refresh(tag)
        return tag

    def update(self, tag_id: int, name: str) -> Tag:
        tag = self.get(tag_id)
        if not tag:
            raise ValueError("Tag not found")

        clean_name = name.strip()
        if not clean_name:
            raise ValueError("Tag name cannot be empty")
        if self._name_taken(clean_name, exclude_id=tag_id):
            raise ValueError("Tag with this name already exists")

        with _writing(self.session, "rename tag"):
            tag.name = clean_name
            self.session.commit()
            self.session.refresh(tag)
        return tag

    def delete(self, tag_id: int) -> None:
        tag = self.get(tag_id)
        if not tag:
            raise ValueError("Tag not found")

        with write_lock, _writing(self.session, "delete tag"):
            self.session.execute(
                update(Transaction)
                .where(Transaction.user_id == self.user_id, Transaction.tag_id == tag.id)
                .values(tag_id=None)
            )
            self.session.execute(
                delete(Rule).where(Rule.user_id == self.user_id, Rule.tag_id == tag.id)
            )
            self.session.execute(
                delete(ExcludedTag).where(
                    ExcludedTag.user_id == self.user_id, ExcludedTag.tag_id == tag.id
                )
            )
            self.session.delete(tag)
            self.session.commit()


class RuleService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def list_ordered(self) -> list[Rule]:
        """Rules in evaluation order (ascending id)."""
        stmt = (
            select(Rule)
            .options(joinedload(Rule.tag))
            .where(Rule.user_id == self.user_id)
            .order_by(Rule.id.asc())
        )
        with _reading("list rules"):
            return self.session.scalars(stmt).all()

    def get(self, rule_id: int) -> Rule:
        with _reading("load rule"):
            rule = self.session.get(Rule, rule_id)
        if not rule or rule.user_id != self.user_id:
            raise ValueError("Rule not found")
        return rule

    def _validated(self, data: RuleIn) -> tuple[str, int]:
        # Surrounding spaces are part of the pattern: "uber " must not match "UberEats".
        if not data.pattern.strip():
            raise ValueError("Rule pattern cannot be empty")
        if not TagService(self.session, self.user_id).get(data.tag_id):
            raise ValueError("Tag not found")
        return data.pattern, data.tag_id

    def create(self, data: RuleIn) -> Rule:
        pattern, tag_id = self._validated(data)
        rule = Rule(user_id=self.user_id, pattern=pattern, tag_id=tag_id)
        with _writing(self.session, "create rule"):
            self.session.add(rule)
            self.session.commit()
            self.session.refresh(rule)
        return rule

    def update(self, rule_id: int, data: RuleIn) -> Rule:
        rule = self.get(rule_id)
        pattern, tag_id = self._validated(data)
        with _writing(self.session, "update rule"):
            rule.pattern, rule.tag_id = pattern, tag_id
            self.session.commit()
            self.session.refresh(rule)
        return rule

    def delete(self, rule_id: int) -> None:
        rule = self.get(rule_id)
        with _writing(self.session, "delete rule"):
            self.session.delete(rule)
            self.session.commit()


class TransactionService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def _check_tag(self, tag_id: Optional[int]) -> None:
        if tag_id is not None and not TagService(self.session, self.user_id).get(tag_id):
            raise ValueError("Tag not found")

    def create(self, data: TransactionIn) -> Transaction:
        self._check_tag(data.tag_id)
        description = data.description.strip()
        tag_id = data.tag_id
        if tag_id is None:
            rules = RuleService(self.session, self.user_id).list_ordered()
            tag_id = match_tag(description, rules)

        txn = Transaction(
            user_id=self.user_id,
            date=data.date,
            amount_cents=data.amount_cents,
            description=description,
            tag_id=tag_id,
        )
        with _writing(self.session, "create transaction"):
            self.session.add(txn)
            self.session.commit()
            self.session.refresh(txn)
        return txn

    def get(self, transaction_id: int) -> Transaction:
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.tag))
            .where(
                Transaction.user_id == self.user_id, Transaction.id == transaction_id
            )
        )
        with _reading("load transaction"):
            txn = self.session.scalar(stmt)
        if not txn:
            raise ValueError("Transaction not found")
        return txn

    def list(self, window: WindowRange) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.tag))
            .where(
                Transaction.user_id == self.user_id,
                Transaction.date.between(window.start, window.end),
            )
            .order_by(Transaction.date.desc(), Transaction.id.asc())
        )
        with _reading("list transactions"):
            return self.session.scalars(stmt).all()

    def list_for_tagging(self, mode: TaggingMode) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .where(Transaction.user_id == self.user_id)
            .order_by(Transaction.id.asc())
        )
        if TaggingMode(mode) == TaggingMode.untagged_only:
            stmt = stmt.where(Transaction.tag_id.is_(None))
        with _reading("list transactions for tagging"):
            return self.session.scalars(stmt).all()

    def date_bounds(self) -> Optional[WindowRange]:
        stmt = select(func.min(Transaction.date), func.max(Transaction.date)).where(
            Transaction.user_id == self.user_id
        )
        with _reading("load transaction date bounds"):
            first, last = self.session.execute(stmt).one()
        if first is None or last is None:
            return None
        return WindowRange(first, last)

    def update_tag(
        self,
        transaction_id: int,
        tag_id: Optional[int],
        *,
        expected_tag_id: object = _ANY_TAG,
    ) -> bool:
        """
        Stage a tag change; the caller owns the commit.

        With ``expected_tag_id`` the row is only written while its stored tag
        still equals that value. Returns ``False`` when another writer changed
        the tag in the meantime and nothing was written.
        """
        with _reading("load transaction"):
            txn = self.session.get(Transaction, transaction_id)
        if not txn or txn.user_id != self.user_id:
            raise ValueError("Transaction not found")
        self._check_tag(tag_id)

        stmt = (
            update(Transaction)
            .where(Transaction.id == transaction_id, Transaction.user_id == self.user_id)
            .values(tag_id=tag_id)
            .execution_options(synchronize_session=False)
        )
        if expected_tag_id is None:
            stmt = stmt.where(Transaction.tag_id.is_(None))
        elif expected_tag_id is not _ANY_TAG:
            stmt = stmt.where(Transaction.tag_id == expected_tag_id)

        with _store_errors(StoreWriteFailure, f"update tag of transaction {transaction_id}"):
            written = self.session.execute(stmt).rowcount > 0
        self.session.expire(txn, ["tag_id", "tag"])
        return written

    def set_tag(self, transaction_id: int, tag_id: Optional[int]) -> Transaction:
        with _writing(self.session, f"set tag of transaction {transaction_id}"):
            self.update_tag(transaction_id, tag_id)
            self.session.commit()
        return self.get(transaction_id)


@dataclass(frozen=True)
class TagWithExclusion:
    tag: Tag
    is_excluded: bool


class ExcludedTagService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def get_excluded(self) -> list[int]:
        stmt = (
            select(ExcludedTag.tag_id)
            .where(ExcludedTag.user_id == self.user_id)
            .order_by(ExcludedTag.tag_id)
        )
        with _reading("load excluded tags"):
            return list(self.session.scalars(stmt).all())

    def save_excluded(self, tag_ids: list[int]) -> list[int]:
        """Replace the excluded set; ids of unknown tags are dropped."""
        known = {tag.id for tag in TagService(self.session, self.user_id).list_all()}
        wanted = sorted({tag_id for tag_id in tag_ids if tag_id in known})
        with write_lock, _writing(self.session, "save excluded tags"):
            self.session.execute(
                delete(ExcludedTag).where(ExcludedTag.user_id == self.user_id)
            )
            self.session.add_all(
                ExcludedTag(user_id=self.user_id, tag_id=tag_id) for tag_id in wanted
            )
            self.session.commit()
        return wanted

    def tags_with_exclusion(self) -> list[TagWithExclusion]:
        excluded = set(self.get_excluded())
        return [
            TagWithExclusion(tag=tag, is_excluded=tag.id in excluded)
            for tag in TagService(self.session, self.user_id).list_all()
        ]


class AutoTaggingService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def run(self, mode: Union[TaggingMode, str]) -> TaggingResult:
        """
        Apply the rules to stored transactions as one all-or-nothing batch.

        Each write only lands if the transaction still carries the tag it had
        when the candidates were read, so a tag set by another writer in the
        meantime is kept and not counted.

        On a failed write the batch is rolled back and ``PartialTaggingFailure``
        reports how many updates had gone through before the failure.
        """
        mode = TaggingMode(mode)
        started = time.perf_counter()
        txn_service = TransactionService(self.session, self.user_id)

        with write_lock:
            rules = RuleService(self.session, self.user_id).list_ordered()
            candidates = txn_service.list_for_tagging(mode)
            read_tags = {txn.id: txn.tag_id for txn in candidates}

            def write_if_unchanged(transaction_id: int, tag_id: Optional[int]) -> bool:
                return txn_service.update_tag(
                    transaction_id, tag_id, expected_tag_id=read_tags[transaction_id]
                )

            try:
                result = apply_rules_to_transactions(
                    mode, candidates, rules, write_if_unchanged
                )
                self.session.commit()
            except PartialTaggingFailure as exc:
                self.session.rollback()
                elapsed_ms = (time.perf_counter() - started) * 1000
                logger.error(
                    f"auto_tag_failed: mode={mode.value} applied_so_far={exc.applied_so_far} "
                    f"elapsed_ms={elapsed_ms:.1f} cause={exc.__cause__!r}"
                )
                raise
            except SQLAlchemyError as exc:
                self.session.rollback()
                logger.exception(f"auto_tag_failed: mode={mode.value}")
                raise StoreWriteFailure("Could not save auto-tagging results") from exc

        elapsed_ms = (time.perf_counter() - started) * 1000
        logger.info(
            f"auto_tag: mode={mode.value} considered={result.transactions_considered} "
            f"applied={result.tags_applied} elapsed_ms={elapsed_ms:.1f}"
        )
        return result


@dataclass
class TransactionSummary:
    window_preset: WindowPreset
    bucket_preset: BucketPreset
    window: WindowRange
    buckets: list[DateBucket]
    running_totals: list[int]
    navigation: WindowNavigation
    excluded_tag_ids: list[int]


class SummaryService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def _rows(self, window: WindowRange) -> list[TransactionRow]:
        txns = TransactionService(self.session, self.user_id).list(window)
        return [TransactionRow.from_model(txn) for txn in txns]

    def resolve(
        self,
        window_preset: Union[WindowPreset, str],
        bucket_preset: Union[BucketPreset, str],
        *,
        anchor: Optional[date] = None,
        start: Optional[date] = None,
        end: Optional[date] = None,
    ) -> tuple[WindowPreset, BucketPreset, WindowRange]:
        """Resolve the window in the configured timezone.

        A window smaller than one bucket is widened to the bucket's size.
        """
        window_preset = WindowPreset(window_preset)
        bucket_preset = BucketPreset(bucket_preset)
        if not can_contain(window_preset, bucket_preset):
            window_preset = smallest_window_for(bucket_preset)

        window = resolve_window(
            window_preset,
            anchor,
            tz=get_settings().timezone,
            start=start,
            end=end,
        )
        return window_preset, bucket_preset, window

    def summarize(
        self,
        window_preset: Union[WindowPreset, str],
        bucket_preset: Union[BucketPreset, str],
        *,
        anchor: Optional[date] = None,
        start: Optional[date] = None,
        end: Optional[date] = None,
    ) -> TransactionSummary:
        window_preset, bucket_preset, window = self.resolve(
            window_preset, bucket_preset, anchor=anchor, start=start, end=end
        )
        excluded = ExcludedTagService(self.session, self.user_id).get_excluded()
        buckets = aggregate(self._rows(window), window, excluded, bucket_preset)
        bounds = TransactionService(self.session, self.user_id).date_bounds()
        return TransactionSummary(
            window_preset=window_preset,
            bucket_preset=bucket_preset,
            window=window,
            buckets=buckets,
            running_totals=running_totals(buckets),
            navigation=window_navigation(window_preset, window, bounds),
            excluded_tag_ids=excluded,
        )

    def expenses_by_tag(
        self, window: WindowRange
    ) -> tuple[list[date], list[tuple[str, list[Optional[int]]]]]:
        rows = self._rows(window)
        months = month_starts(rows)
        excluded = ExcludedTagService(self.session, self.user_id).get_excluded()
        return months, expenses_by_tag(rows, months, excluded)
