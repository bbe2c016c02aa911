from __future__ import annotations

from bisect import bisect_right
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import TYPE_CHECKING, Iterable, Optional, Union

from periods import BucketPreset, WindowRange, subdivide

if TYPE_CHECKING:  # pragma: no cover
    from models import Transaction


UNTAGGED_LABEL = "Untagged"


class SummaryKind(str, Enum):
    income = "income"
    expense = "expense"


@dataclass(frozen=True)
class TransactionRow:
    id: int
    amount_cents: int
    date: date
    description: str
    tag_id: Optional[int] = None
    tag_name: Optional[str] = None

    @classmethod
    def from_model(cls, txn: "Transaction") -> "TransactionRow":
        return cls(
            id=txn.id,
            amount_cents=txn.amount_cents,
            date=txn.date,
            description=txn.description,
            tag_id=txn.tag_id,
            tag_name=txn.tag.name if txn.tag else None,
        )


@dataclass
class BucketTotals:
    income_cents: int = 0
    expenses_cents: int = 0

    @property
    def net_cents(self) -> int:
        return self.income_cents + self.expenses_cents


@dataclass
class DayGroup:
    date: date
    transactions: list[TransactionRow] = field(default_factory=list)


@dataclass
class CategorySummary:
    label: str
    total_cents: int
    percent: int
    kind: SummaryKind
    transactions: list[TransactionRow] = field(default_factory=list)


@dataclass
class DateBucket:
    range: WindowRange
    totals: BucketTotals = field(default_factory=BucketTotals)
    days: list[DayGroup] = field(default_factory=list)
    summary: list[CategorySummary] = field(default_factory=list)


def percent_of(value_cents: int, total_cents: int) -> int:
    """Share of ``value_cents`` in ``total_cents`` by magnitude, rounded half up."""
    if total_cents == 0:
        return 0
    ratio = Decimal(abs(value_cents)) * 100 / Decimal(abs(total_cents))
    return int(ratio.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _is_counted(txn: TransactionRow, excluded: set[int]) -> bool:
    return txn.tag_id is None or txn.tag_id not in excluded


def aggregate(
    transactions: Iterable[TransactionRow],
    window: WindowRange,
    excluded_tag_ids: Iterable[int] = (),
    bucket_preset: Union[BucketPreset, str] = BucketPreset.week,
    *,
    with_summary: bool = True,
) -> list[DateBucket]:
    """
    Partition ``transactions`` into the buckets of ``window``.

    Every bucket of the window is returned, in ascending order, even when it
    holds no transactions. Transactions tagged with an excluded tag stay in the
    day listing but do not contribute to totals or category summaries.
    """
    excluded = set(excluded_tag_ids)
    buckets = [DateBucket(bucket_range) for bucket_range in subdivide(window, bucket_preset)]
    starts = [bucket.range.start for bucket in buckets]

    rows_by_bucket: dict[int, list[TransactionRow]] = defaultdict(list)
    for txn in transactions:
        if txn.date not in window:
            continue
        rows_by_bucket[bisect_right(starts, txn.date) - 1].append(txn)

    for index, bucket in enumerate(buckets):
        rows = sorted(
            rows_by_bucket.get(index, []),
            key=lambda t: (-t.date.toordinal(), t.id),
        )
        for txn in rows:
            if _is_counted(txn, excluded):
                if txn.amount_cents < 0:
                    bucket.totals.expenses_cents += txn.amount_cents
                else:
                    bucket.totals.income_cents += txn.amount_cents

            if not bucket.days or bucket.days[-1].date != txn.date:
                bucket.days.append(DayGroup(txn.date))
            bucket.days[-1].transactions.append(txn)

        if with_summary:
            bucket.summary = build_category_summary(rows, bucket.totals, excluded)

    return buckets


def build_category_summary(
    rows: Iterable[TransactionRow], totals: BucketTotals, excluded: set[int]
) -> list[CategorySummary]:
    income_groups: dict[str, list[TransactionRow]] = {}
    expense_groups: dict[str, list[TransactionRow]] = {}

    for txn in rows:
        if not _is_counted(txn, excluded):
            continue
        label = txn.tag_name or UNTAGGED_LABEL
        groups = income_groups if txn.amount_cents >= 0 else expense_groups
        groups.setdefault(label, []).append(txn)

    def summarize(
        groups: dict[str, list[TransactionRow]], kind: SummaryKind, direction_total: int
    ) -> list[CategorySummary]:
        items = []
        for label, members in groups.items():
            total = sum(t.amount_cents for t in members)
            items.append(
                CategorySummary(
                    label=label,
                    total_cents=total,
                    percent=percent_of(total, direction_total),
                    kind=kind,
                    transactions=members,
                )
            )
        items.sort(key=lambda item: (-abs(item.total_cents), item.label))
        return items

    return summarize(income_groups, SummaryKind.income, totals.income_cents) + summarize(
        expense_groups, SummaryKind.expense, totals.expenses_cents
    )


def running_totals(
    buckets: Iterable[DateBucket], opening_balance_cents: int = 0
) -> list[int]:
    balances = []
    balance = opening_balance_cents
    for bucket in buckets:
        balance += bucket.totals.net_cents
        balances.append(balance)
    return balances


def month_starts(transactions: Iterable[TransactionRow]) -> list[date]:
    return sorted({txn.date.replace(day=1) for txn in transactions})


def expenses_by_tag(
    transactions: Iterable[TransactionRow],
    months: list[date],
    excluded_tag_ids: Iterable[int] = (),
) -> list[tuple[str, list[Optional[int]]]]:
    """Monthly expense magnitudes per tag label, untagged spending last.

    Months without spending for a label are ``None`` so charts can leave gaps.
    """
    excluded = set(excluded_tag_ids)
    per_label: dict[str, dict[date, int]] = defaultdict(lambda: defaultdict(int))
    for txn in transactions:
        if txn.amount_cents >= 0 or not _is_counted(txn, excluded):
            continue
        month = txn.date.replace(day=1)
        per_label[txn.tag_name or UNTAGGED_LABEL][month] += -txn.amount_cents

    labels = sorted(label for label in per_label if label != UNTAGGED_LABEL)
    if UNTAGGED_LABEL in per_label:
        labels.append(UNTAGGED_LABEL)

    return [
        (label, [per_label[label].get(month) for month in months]) for label in labels
    ]
