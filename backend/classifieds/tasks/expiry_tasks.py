from __future__ import annotations

import time

from celery import shared_task

from classifieds.tasks.search_tasks import _task_log


@shared_task(bind=True, name="classifieds.tasks.expiry_tasks.run_listing_expiry_sweep")
def run_listing_expiry_sweep(self, *, trace_id: str = ""):
    """Periodic sweep; a failed run is simply retried by the next beat firing."""
    started = time.perf_counter()
    from classifieds.jobs.listing_expiry import run_listing_expiry

    result = run_listing_expiry()
    _task_log(
        "run_listing_expiry_sweep",
        status="ok" if bool(result.get("ok")) else "failed",
        started_at=started,
        trace_id=trace_id,
        expired=int(result.get("expired") or 0),
        failed=int(result.get("failed") or 0),
        abandoned=int(result.get("abandoned") or 0),
    )
    return result
