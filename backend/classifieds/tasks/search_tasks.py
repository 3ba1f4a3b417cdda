from __future__ import annotations

import json
import time
from datetime import datetime

from celery import shared_task
from flask import current_app

from classifieds.errors import NotFound
from classifieds.services.listings.store import ListingStore
from classifieds.services.search.meili_client import SearchUnavailable
from classifieds.services.search.synchronizer import SearchSynchronizer


def _retry_countdown(retries: int) -> int:
    return int(min(900, max(5, 5 * (2 ** int(max(0, retries))))))


def _task_log(task_name: str, *, status: str, started_at: float, trace_id: str = "", **extra):
    payload = {
        "task_name": task_name,
        "status": status,
        "duration_ms": int(max(0.0, (time.perf_counter() - float(started_at))) * 1000.0),
        "trace_id": str(trace_id or ""),
        "timestamp": datetime.utcnow().isoformat(),
    }
    payload.update(extra or {})
    current_app.logger.info(json.dumps(payload))


def _retry_or_raise(task, task_name: str, exc: Exception, *, started_at: float, trace_id: str, **extra):
    retries = int(task.request.retries or 0)
    if retries < int(task.max_retries or 0):
        countdown = _retry_countdown(retries)
        _task_log(task_name, status="retrying", started_at=started_at, trace_id=trace_id,
                  countdown=countdown, detail=str(exc), **extra)
        raise task.retry(exc=exc, countdown=countdown)
    _task_log(task_name, status="failed", started_at=started_at, trace_id=trace_id, detail=str(exc), **extra)
    raise exc


@shared_task(bind=True, name="classifieds.tasks.search_tasks.search_index_listing", max_retries=5)
def search_index_listing(self, listing_id: str, trace_id: str = ""):
    started = time.perf_counter()
    store = ListingStore()
    synchronizer = SearchSynchronizer(store=store)
    try:
        record = store.find_by_id(listing_id)
    except NotFound:
        # Deleted since the write that queued us; make sure the index agrees.
        result = synchronizer.remove(listing_id)
        if not result.ok and result.retryable:
            _retry_or_raise(self, "search_index_listing", SearchUnavailable(result.error),
                            started_at=started, trace_id=trace_id, listing_id=listing_id)
        _task_log("search_index_listing", status="deleted_missing", started_at=started, trace_id=trace_id,
                  listing_id=listing_id)
        return {"ok": result.ok, "deleted": True, "listing_id": listing_id}

    result = synchronizer.upsert(record)
    if not result.ok and result.retryable:
        _retry_or_raise(self, "search_index_listing", SearchUnavailable(result.error),
                        started_at=started, trace_id=trace_id, listing_id=listing_id)
    _task_log("search_index_listing", status="indexed" if result.ok else "rejected", started_at=started,
              trace_id=trace_id, listing_id=listing_id)
    return {"ok": result.ok, "indexed": result.ok, "listing_id": listing_id}


@shared_task(bind=True, name="classifieds.tasks.search_tasks.search_delete_listing", max_retries=5)
def search_delete_listing(self, listing_id: str, trace_id: str = ""):
    started = time.perf_counter()
    result = SearchSynchronizer().remove(listing_id)
    if not result.ok and result.retryable:
        _retry_or_raise(self, "search_delete_listing", SearchUnavailable(result.error),
                        started_at=started, trace_id=trace_id, listing_id=listing_id)
    _task_log("search_delete_listing", status="deleted" if result.ok else "rejected", started_at=started,
              trace_id=trace_id, listing_id=listing_id)
    return {"ok": result.ok, "deleted": result.ok, "listing_id": listing_id}


@shared_task(bind=True, name="classifieds.tasks.search_tasks.search_reconcile_all", max_retries=3)
def search_reconcile_all(self, page_size: int | None = None, prune: bool = False, trace_id: str = ""):
    started = time.perf_counter()
    try:
        report = SearchSynchronizer().reconcile_all(page_size, prune=bool(prune))
    except SearchUnavailable as exc:
        _retry_or_raise(self, "search_reconcile_all", exc, started_at=started, trace_id=trace_id)
    summary = report.to_dict()
    _task_log("search_reconcile_all", status="ok" if summary["ok"] else "partial", started_at=started,
              trace_id=trace_id, scanned=report.scanned, succeeded=report.succeeded, failed=report.failed,
              pruned=report.pruned)
    return summary
