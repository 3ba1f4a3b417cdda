from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Callable

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from classifieds.errors import Conflict, NotFound
from classifieds.extensions import db
from classifieds.services.listings.store import ListingStore
from classifieds.services.listings.types import ACTOR_SWEEPER, ListingStatus
from classifieds.services.search.synchronizer import SearchSynchronizer
from classifieds.utils.job_runs import record_job_run
from classifieds.utils.settings import expiry_max_run_seconds

JOB_NAME = "listing_expiry"


@dataclass
class SweepReport:
    found: int = 0
    expired: int = 0
    skipped: int = 0
    failed: int = 0
    index_failed: int = 0
    abandoned: int = 0
    failed_ids: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        payload = asdict(self)
        payload["ok"] = self.failed == 0
        return payload


class ExpirySweeper:
    """Moves active listings past their expiry time to ``expired``.

    One listing's failure never stops the others; the whole pass is bounded
    by ``max_run_seconds`` and whatever is left is picked up next firing.
    """

    def __init__(
        self,
        store: ListingStore | None = None,
        synchronizer: SearchSynchronizer | None = None,
        *,
        max_run_seconds: float | None = None,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.store = store or ListingStore()
        self.synchronizer = synchronizer or SearchSynchronizer(store=self.store)
        self.max_run_seconds = float(max_run_seconds if max_run_seconds is not None else expiry_max_run_seconds())
        self._monotonic = monotonic

    def run(self, now: datetime | None = None) -> SweepReport:
        now = now or datetime.utcnow()
        started = self._monotonic()
        report = SweepReport()

        candidates = self.store.find_expired(now)
        report.found = len(candidates)

        for position, candidate in enumerate(candidates):
            if self._monotonic() - started >= self.max_run_seconds:
                report.abandoned = len(candidates) - position
                current_app.logger.warning(
                    "listing_expiry_time_budget_exhausted max_run_seconds=%s abandoned=%s",
                    self.max_run_seconds,
                    report.abandoned,
                )
                break
            if candidate.status != ListingStatus.ACTIVE:
                report.skipped += 1
                continue
            try:
                updated = self.store.transition_status(candidate.id, ListingStatus.EXPIRED, actor=ACTOR_SWEEPER, now=now)
            except (Conflict, NotFound) as exc:
                # Changed or deleted by someone else since the scan.
                report.skipped += 1
                current_app.logger.info("listing_expiry_skipped listing_id=%s reason=%s", candidate.id, exc)
                continue
            except Exception:
                db.session.rollback()
                report.failed += 1
                report.failed_ids.append(str(candidate.id))
                current_app.logger.exception("listing_expiry_failed listing_id=%s", candidate.id)
                continue

            report.expired += 1
            if not self.synchronizer.upsert(updated).ok:
                report.index_failed += 1

        current_app.logger.info(
            "listing_expiry_done found=%s expired=%s skipped=%s failed=%s index_failed=%s abandoned=%s",
            report.found,
            report.expired,
            report.skipped,
            report.failed,
            report.index_failed,
            report.abandoned,
        )
        return report


def run_listing_expiry(*, now: datetime | None = None, max_run_seconds: float | None = None) -> dict:
    started_at = datetime.utcnow()
    try:
        report = ExpirySweeper(max_run_seconds=max_run_seconds).run(now=now)
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("listing_expiry_run_failed")
        record_job_run(job_name=JOB_NAME, ok=False, started_at=started_at, error=str(exc))
        return {"ok": False, "error": str(exc)}

    result = report.to_dict()
    record_job_run(job_name=JOB_NAME, ok=bool(result["ok"]), started_at=started_at, summary=result)
    return result
