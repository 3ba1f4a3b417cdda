from __future__ import annotations

import json
from datetime import date, datetime
from typing import Any

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from classifieds.extensions import db
from classifieds.models import PlatformEvent
from classifieds.utils.observability import get_request_id


def _safe_value(value: Any):
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(k): _safe_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_safe_value(v) for v in value]
    return str(value)


def log_event(
    event_type: str,
    *,
    actor_user_id: int | None = None,
    subject_type: str | None = None,
    subject_id: int | str | None = None,
    severity: str = "INFO",
    metadata: dict | None = None,
) -> PlatformEvent | None:
    """Best-effort event recorder.

    Runs in a savepoint and commits it, so it never rolls back or raises
    into the caller's flow.
    """
    try:
        event = PlatformEvent(
            event_type=(event_type or "unknown").strip()[:80],
            actor_user_id=int(actor_user_id) if actor_user_id is not None else None,
            subject_type=(subject_type or "").strip()[:80] or None,
            subject_id=str(subject_id)[:120] if subject_id is not None else None,
            request_id=(get_request_id() or "").strip()[:80] or None,
            severity=(severity or "INFO").strip().upper()[:16] or "INFO",
            metadata_json=json.dumps(_safe_value(metadata or {}), separators=(",", ":")),
        )
        with db.session.begin_nested():
            db.session.add(event)
        db.session.commit()
        return event
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.warning("platform_event_write_failed type=%s err=%s", event_type, exc)
        return None
