from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterable, Optional, Protocol, Sequence

from errors import PartialTaggingFailure


class TaggingMode(str, Enum):
    untagged_only = "untagged_only"
    retag_all = "retag_all"


class TaggingRule(Protocol):
    pattern: str
    tag_id: int


class TaggableTransaction(Protocol):
    id: int
    description: str
    tag_id: Optional[int]


@dataclass(frozen=True)
class TaggingResult:
    tags_applied: int = 0
    transactions_considered: int = 0


def matches_rule_pattern(description: str, pattern: str) -> bool:
    """Case-insensitive prefix test against the trimmed description.

    The pattern is used as written, so a trailing space in ``"uber "`` keeps it
    from matching "UberEats". Blank patterns never match.
    """
    if not pattern or not pattern.strip():
        return False
    return (description or "").strip().lower().startswith(pattern.lower())


def match_tag(description: str, rules: Iterable[TaggingRule]) -> Optional[int]:
    """
    Return the tag of the first rule whose pattern prefixes ``description``.

    Rules are tried in the order given. Overlapping patterns are not ranked by
    specificity: with ``"st"`` listed before ``"starbucks"``, "Starbucks Coffee"
    gets the ``"st"`` tag.
    """
    for rule in rules:
        if matches_rule_pattern(description, rule.pattern):
            return rule.tag_id
    return None


def apply_rules_to_transactions(
    mode: TaggingMode,
    transactions: Iterable[TaggableTransaction],
    rules: Sequence[TaggingRule],
    update_tag: Callable[[int, Optional[int]], bool],
) -> TaggingResult:
    """
    Recompute tags for ``transactions`` and write back the ones that change.

    ``untagged_only`` leaves tagged transactions alone and never clears a tag.
    ``retag_all`` replaces every tag with the rule result, clearing tags that no
    rule matches any more. Only real changes are written and counted, so a
    repeated run over unchanged data applies nothing.

    ``update_tag`` returns whether the row was written; ``False`` means the
    stored tag changed under us and the row is left as it is, uncounted.
    A failing ``update_tag`` stops the run: ``PartialTaggingFailure`` carries the
    number of changes written before it.
    """
    mode = TaggingMode(mode)
    # No rules: every tag stays as it is, retag_all included.
    if not rules:
        return TaggingResult()

    applied = 0
    considered = 0

    for txn in transactions:
        if mode == TaggingMode.untagged_only and txn.tag_id is not None:
            continue
        considered += 1

        new_tag_id = match_tag(txn.description, rules)
        if mode == TaggingMode.untagged_only and new_tag_id is None:
            continue
        if new_tag_id == txn.tag_id:
            continue

        try:
            written = update_tag(txn.id, new_tag_id)
        except Exception as exc:
            raise PartialTaggingFailure(applied) from exc
        if written:
            applied += 1

    return TaggingResult(tags_applied=applied, transactions_considered=considered)
