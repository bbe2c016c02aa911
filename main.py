import logging
import os
import time
from datetime import date
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from aggregation import CategorySummary, DateBucket, TransactionRow
from alerts import store_failure, tagging_partial_failure, tagging_success
from config import get_settings
from database import SessionLocal, init_db
from errors import PartialTaggingFailure, StoreError
from models import Rule, Tag, Transaction
from periods import (
    BUCKET_LABELS,
    BucketPreset,
    WindowPreset,
    WindowRange,
    window_label,
    window_query,
)
from rules import TaggingMode
from scheduler import SchedulerManager
from schemas import ExcludedTagsIn, RuleIn, TagIn, TransactionIn, TransactionTagIn
from services import (
    AutoTaggingService,
    ExcludedTagService,
    RuleService,
    SummaryService,
    TagService,
    TransactionService,
)

app = FastAPI(title="Expense Tracker")


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    init_db()
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


@app.exception_handler(StoreError)
def store_error_handler(request: Request, exc: StoreError):
    logging.error(f"store_error: path={request.url.path} error={exc}")
    return JSONResponse(
        status_code=500, content=store_failure("complete the request").as_dict()
    )


def _parse_date(value: Optional[str], name: str) -> Optional[date]:
    if not value:
        return None
    try:
        return date.fromisoformat(value)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid {name} date") from exc


def summary_params_from_request(request: Request) -> dict[str, object]:
    settings = get_settings()
    window_param = request.query_params.get("window")
    bucket_param = request.query_params.get("bucket")
    try:
        window_preset = (
            WindowPreset(window_param) if window_param else settings.default_window
        )
        bucket_preset = (
            BucketPreset(bucket_param) if bucket_param else settings.default_bucket
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {
        "window_preset": window_preset,
        "bucket_preset": bucket_preset,
        "anchor": _parse_date(request.query_params.get("anchor"), "anchor"),
        "start": _parse_date(request.query_params.get("start"), "start"),
        "end": _parse_date(request.query_params.get("end"), "end"),
    }


def _range_to_dict(window: WindowRange) -> dict[str, object]:
    return {
        "start": window.start.isoformat(),
        "end": window.end.isoformat(),
        "label": window_label(window),
    }


def _row_to_dict(row: TransactionRow) -> dict[str, object]:
    return {
        "id": row.id,
        "date": row.date.isoformat(),
        "amount_cents": row.amount_cents,
        "description": row.description,
        "tag_id": row.tag_id,
        "tag": row.tag_name,
    }


def _summary_to_dict(item: CategorySummary) -> dict[str, object]:
    return {
        "label": item.label,
        "kind": item.kind.value,
        "total_cents": item.total_cents,
        "percent": item.percent,
        "transaction_ids": [row.id for row in item.transactions],
    }


def _bucket_to_dict(bucket: DateBucket, running_total: int) -> dict[str, object]:
    return {
        "range": _range_to_dict(bucket.range),
        "totals": {
            "income_cents": bucket.totals.income_cents,
            "expenses_cents": bucket.totals.expenses_cents,
            "net_cents": bucket.totals.net_cents,
            "running_total_cents": running_total,
        },
        "days": [
            {
                "date": day.date.isoformat(),
                "transactions": [_row_to_dict(row) for row in day.transactions],
            }
            for day in bucket.days
        ],
        "summary": [_summary_to_dict(item) for item in bucket.summary],
    }


def _tag_to_dict(tag: Tag) -> dict[str, object]:
    return {"id": tag.id, "name": tag.name}


def _rule_to_dict(rule: Rule) -> dict[str, object]:
    return {
        "id": rule.id,
        "pattern": rule.pattern,
        "tag_id": rule.tag_id,
        "tag": rule.tag.name if rule.tag else None,
    }


def _transaction_to_dict(txn: Transaction) -> dict[str, object]:
    return _row_to_dict(TransactionRow.from_model(txn))


def _not_found_or_bad_request(exc: ValueError) -> HTTPException:
    status = 404 if "not found" in str(exc).lower() else 400
    return HTTPException(status_code=status, detail=str(exc))


@app.get("/api/summary")
def api_summary(request: Request, db: Session = Depends(get_db)):
    params = summary_params_from_request(request)
    try:
        summary = SummaryService(db).summarize(**params)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    navigation = summary.navigation
    return {
        "window": summary.window_preset.value,
        "bucket": summary.bucket_preset.value,
        "bucket_label": BUCKET_LABELS[summary.bucket_preset],
        "range": _range_to_dict(summary.window),
        "prev": window_query(summary.window_preset, navigation.prev)
        if navigation.prev
        else None,
        "next": window_query(summary.window_preset, navigation.next)
        if navigation.next
        else None,
        "excluded_tag_ids": summary.excluded_tag_ids,
        "buckets": [
            _bucket_to_dict(bucket, running)
            for bucket, running in zip(summary.buckets, summary.running_totals)
        ],
    }


@app.get("/api/summary/expenses-by-tag")
def api_expenses_by_tag(request: Request, db: Session = Depends(get_db)):
    params = summary_params_from_request(request)
    try:
        summary = SummaryService(db)
        _, _, window = summary.resolve(**params)
        months, series = summary.expenses_by_tag(window)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {
        "months": [month.isoformat() for month in months],
        "series": [{"label": label, "values": values} for label, values in series],
    }


@app.get("/api/tags")
def api_tags(db: Session = Depends(get_db)):
    return [_tag_to_dict(tag) for tag in TagService(db).list_all()]


@app.post("/api/tags", status_code=201)
def api_create_tag(payload: TagIn, db: Session = Depends(get_db)):
    try:
        tag = TagService(db).create(payload.name)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return _tag_to_dict(tag)


@app.put("/api/tags/{tag_id}")
def api_update_tag(tag_id: int, payload: TagIn, db: Session = Depends(get_db)):
    try:
        tag = TagService(db).update(tag_id, payload.name)
    except ValueError as exc:
        raise _not_found_or_bad_request(exc) from exc
    return _tag_to_dict(tag)


@app.delete("/api/tags/{tag_id}", status_code=204)
def api_delete_tag(tag_id: int, db: Session = Depends(get_db)):
    try:
        TagService(db).delete(tag_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.get("/api/rules")
def api_rules(db: Session = Depends(get_db)):
    return [_rule_to_dict(rule) for rule in RuleService(db).list_ordered()]


@app.post("/api/rules", status_code=201)
def api_create_rule(payload: RuleIn, db: Session = Depends(get_db)):
    try:
        rule = RuleService(db).create(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return _rule_to_dict(rule)


@app.put("/api/rules/{rule_id}")
def api_update_rule(rule_id: int, payload: RuleIn, db: Session = Depends(get_db)):
    try:
        rule = RuleService(db).update(rule_id, payload)
    except ValueError as exc:
        raise _not_found_or_bad_request(exc) from exc
    return _rule_to_dict(rule)


@app.delete("/api/rules/{rule_id}", status_code=204)
def api_delete_rule(rule_id: int, db: Session = Depends(get_db)):
    try:
        RuleService(db).delete(rule_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.get("/api/excluded-tags")
def api_excluded_tags(db: Session = Depends(get_db)):
    return [
        {**_tag_to_dict(item.tag), "is_excluded": item.is_excluded}
        for item in ExcludedTagService(db).tags_with_exclusion()
    ]


@app.put("/api/excluded-tags")
def api_save_excluded_tags(payload: ExcludedTagsIn, db: Session = Depends(get_db)):
    saved = ExcludedTagService(db).save_excluded(payload.tag_ids)
    return {"excluded_tag_ids": saved}


@app.post("/api/transactions", status_code=201)
def api_create_transaction(payload: TransactionIn, db: Session = Depends(get_db)):
    try:
        txn = TransactionService(db).create(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return _transaction_to_dict(txn)


@app.patch("/api/transactions/{transaction_id}/tag")
def api_set_transaction_tag(
    transaction_id: int, payload: TransactionTagIn, db: Session = Depends(get_db)
):
    try:
        txn = TransactionService(db).set_tag(transaction_id, payload.tag_id)
    except ValueError as exc:
        db.rollback()
        raise _not_found_or_bad_request(exc) from exc
    return _transaction_to_dict(txn)


@app.post("/api/auto-tag")
def api_auto_tag(
    mode: TaggingMode = TaggingMode.untagged_only, db: Session = Depends(get_db)
):
    started = time.perf_counter()
    try:
        result = AutoTaggingService(db).run(mode)
    except PartialTaggingFailure as exc:
        elapsed_ms = (time.perf_counter() - started) * 1000
        alert = tagging_partial_failure(mode, exc, elapsed_ms)
        return JSONResponse(
            status_code=500,
            content={**alert.as_dict(), "applied_so_far": exc.applied_so_far},
        )
    elapsed_ms = (time.perf_counter() - started) * 1000
    alert = tagging_success(mode, result, elapsed_ms)
    return {
        **alert.as_dict(),
        "tags_applied": result.tags_applied,
        "transactions_considered": result.transactions_considered,
    }


def main():
    import uvicorn

    port = int(os.getenv("EXPENSES_PORT", "8000"))
    uvicorn.run("main:app", host="0.0.0.0", port=port, reload=False)


if __name__ == "__main__":
    main()
