from __future__ import annotations

from flask import Blueprint, current_app, g, jsonify, request

from classifieds.errors import BadRequest, Forbidden, ServiceUnavailable, Unauthorized
from classifieds.extensions import db
from classifieds.models import User
from classifieds.services.listings.service import ListingService
from classifieds.services.search.meili_client import SearchUnavailable
from classifieds.services.search.synchronizer import SearchSynchronizer

admin_listings_bp = Blueprint("admin_listings_bp", __name__, url_prefix="/api/admin")


def _require_admin() -> User:
    uid = getattr(g, "auth_user_id", None)
    if uid is None:
        raise Unauthorized("Authentication required")
    user = db.session.get(User, int(uid))
    if user is None or not user.is_admin:
        raise Forbidden("Admin access required")
    return user


def _int_arg(payload: dict, key: str) -> int | None:
    raw = payload.get(key)
    if raw is None or str(raw).strip() == "":
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise BadRequest(f"{key} must be an integer")


def _notes_arg(payload: dict) -> str | None:
    notes = payload.get("admin_notes")
    return str(notes).strip() if notes is not None else None


@admin_listings_bp.get("/listings/<listing_id>")
def get_listing(listing_id: str):
    _require_admin()
    record = ListingService().admin_get_listing(listing_id)
    return jsonify({"ok": True, "item": record.to_dict()})


@admin_listings_bp.post("/listings/<listing_id>/approve")
def approve_listing(listing_id: str):
    admin = _require_admin()
    payload = request.get_json(silent=True) or {}
    if not isinstance(payload, dict):
        raise BadRequest("Request body must be a JSON object")
    record = ListingService().admin_approve_listing(
        listing_id,
        admin_notes=_notes_arg(payload),
        actor_user_id=int(admin.id),
    )
    return jsonify({"ok": True, "item": record.to_dict()})


@admin_listings_bp.route("/listings/<listing_id>/status", methods=["PUT", "PATCH"])
def update_listing_status(listing_id: str):
    admin = _require_admin()
    payload = request.get_json(silent=True) or {}
    new_status = str(payload.get("status") or "").strip()
    if not new_status:
        raise BadRequest("status is required")
    record = ListingService().admin_update_status(
        listing_id,
        new_status,
        admin_notes=_notes_arg(payload),
        actor_user_id=int(admin.id),
    )
    return jsonify({"ok": True, "item": record.to_dict()})


@admin_listings_bp.get("/search/health")
def search_health():
    _require_admin()
    return jsonify({"ok": True, **SearchSynchronizer().health()})


@admin_listings_bp.post("/search/init")
def search_init():
    _require_admin()
    try:
        result = SearchSynchronizer().init_index()
    except SearchUnavailable as exc:
        current_app.logger.warning("search_init_failed err=%s", exc)
        raise ServiceUnavailable(str(exc), code="SEARCH_UNAVAILABLE")
    return jsonify({"ok": True, **result})


@admin_listings_bp.post("/search/reconcile")
def search_reconcile():
    _require_admin()
    payload = request.get_json(silent=True) or {}
    if not isinstance(payload, dict):
        raise BadRequest("Request body must be a JSON object")
    try:
        report = SearchSynchronizer().reconcile_all(
            _int_arg(payload, "page_size"),
            prune=bool(payload.get("prune")),
        )
    except SearchUnavailable as exc:
        current_app.logger.warning("search_reconcile_failed err=%s", exc)
        raise ServiceUnavailable(str(exc), code="SEARCH_UNAVAILABLE")
    return jsonify(report.to_dict())
