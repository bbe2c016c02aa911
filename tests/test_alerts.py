from alerts import (
    AlertKind,
    format_count,
    store_failure,
    tagging_partial_failure,
    tagging_success,
)
from errors import PartialTaggingFailure
from rules import TaggingMode, TaggingResult


def test_success_alert_with_changes() -> None:
    alert = tagging_success(
        TaggingMode.retag_all,
        TaggingResult(tags_applied=1200, transactions_considered=4000),
        elapsed_ms=1534.4,
    )
    assert alert.kind == AlertKind.success
    assert alert.message == "Auto-tagging completed successfully!"
    assert alert.details == "Updated the tag of 1,200 of 4,000 transactions in 1,534ms."


def test_success_alert_without_changes() -> None:
    alert = tagging_success(TaggingMode.untagged_only, TaggingResult(), elapsed_ms=3.2)
    assert alert.message == "Auto-tagging completed - no untagged transactions were changed."
    assert alert.details == "Checked 0 untagged transactions in 3ms."


def test_partial_failure_alert_mentions_count_and_rollback() -> None:
    alert = tagging_partial_failure(
        TaggingMode.untagged_only, PartialTaggingFailure(7), elapsed_ms=12
    )
    assert alert.kind == AlertKind.error
    assert "Completed 7 updates" in alert.details
    assert "No changes were saved" in alert.details
    assert alert.as_dict()["kind"] == "error"


def test_store_failure_alert() -> None:
    assert store_failure("save rule").as_dict() == {
        "kind": "error",
        "message": "Could not save rule",
        "details": "Something went wrong while talking to the database. Please try again.",
    }


def test_format_count() -> None:
    assert format_count(0) == "0"
    assert format_count(1234567) == "1,234,567"
