from __future__ import annotations

import json
from datetime import datetime

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from classifieds.extensions import db
from classifieds.models import JobRun


def record_job_run(
    *,
    job_name: str,
    ok: bool,
    started_at: datetime,
    error: str | None = None,
    summary: dict | None = None,
) -> JobRun | None:
    duration_ms = max(0, int((datetime.utcnow() - started_at).total_seconds() * 1000))
    try:
        row = JobRun(
            job_name=(job_name or "unknown").strip()[:64],
            ran_at=datetime.utcnow(),
            ok=bool(ok),
            duration_ms=duration_ms,
            error=(error or "")[:1000] or None,
            summary_json=json.dumps(summary, default=str) if summary else None,
        )
        db.session.add(row)
        db.session.commit()
        return row
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.warning("job_run_record_failed job=%s err=%s", job_name, exc)
        return None
