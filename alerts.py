from dataclasses import asdict, dataclass
from enum import Enum

from errors import PartialTaggingFailure
from rules import TaggingMode, TaggingResult


class AlertKind(str, Enum):
    success = "success"
    error = "error"


@dataclass(frozen=True)
class Alert:
    kind: AlertKind
    message: str
    details: str

    def as_dict(self) -> dict[str, str]:
        data = asdict(self)
        data["kind"] = self.kind.value
        return data


def format_count(value: int) -> str:
    return f"{value:,}"


def _scope(mode: TaggingMode) -> str:
    if mode == TaggingMode.untagged_only:
        return "untagged transactions"
    return "transactions"


def tagging_success(mode: TaggingMode, result: TaggingResult, elapsed_ms: float) -> Alert:
    scope = _scope(mode)
    duration = format_count(round(elapsed_ms))
    if result.tags_applied == 0:
        return Alert(
            AlertKind.success,
            f"Auto-tagging completed - no {scope} were changed.",
            f"Checked {format_count(result.transactions_considered)} {scope} "
            f"in {duration}ms.",
        )
    return Alert(
        AlertKind.success,
        "Auto-tagging completed successfully!",
        f"Updated the tag of {format_count(result.tags_applied)} of "
        f"{format_count(result.transactions_considered)} {scope} in {duration}ms.",
    )


def tagging_partial_failure(
    mode: TaggingMode, failure: PartialTaggingFailure, elapsed_ms: float
) -> Alert:
    duration = format_count(round(elapsed_ms))
    return Alert(
        AlertKind.error,
        "Auto-tagging failed",
        f"Completed {format_count(failure.applied_so_far)} updates of "
        f"{_scope(mode)}, then failed after {duration}ms. "
        "No changes were saved. Please try again.",
    )


def store_failure(action: str) -> Alert:
    return Alert(
        AlertKind.error,
        f"Could not {action}",
        "Something went wrong while talking to the database. Please try again.",
    )
