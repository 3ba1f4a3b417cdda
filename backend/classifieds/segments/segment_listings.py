from __future__ import annotations

from flask import Blueprint, g, jsonify, request

from classifieds.errors import BadRequest, Unauthorized
from classifieds.services.listings.service import ListingService
from classifieds.services.search.query import SearchCriteria

listings_bp = Blueprint("listings_bp", __name__, url_prefix="/api")


def _service() -> ListingService:
    return ListingService()


def _require_user_id() -> int:
    uid = getattr(g, "auth_user_id", None)
    if uid is None:
        raise Unauthorized("Authentication required")
    return int(uid)


def _json_body() -> dict:
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        raise BadRequest("Request body must be a JSON object")
    return payload


@listings_bp.get("/listings/search")
def search_listings():
    criteria = SearchCriteria.from_args(request.args)
    page = _service().search_listings(criteria)
    return jsonify({"ok": True, **page.to_dict()})


@listings_bp.get("/listings/recent")
def recent_listings():
    page = _service().recent_listings(page=request.args.get("page") or 1, page_size=request.args.get("page_size"))
    return jsonify({"ok": True, **page.to_dict()})


@listings_bp.get("/listings/events/upcoming")
def upcoming_events():
    page = _service().upcoming_events(page=request.args.get("page") or 1, page_size=request.args.get("page_size"))
    return jsonify({"ok": True, **page.to_dict()})


@listings_bp.post("/listings")
def create_listing():
    uid = _require_user_id()
    record = _service().create_listing(uid, _json_body())
    return jsonify({"ok": True, "item": record.to_dict()}), 201


@listings_bp.get("/listings/<listing_id>")
def get_listing(listing_id: str):
    record = _service().get_listing(listing_id, getattr(g, "auth_user_id", None))
    return jsonify({"ok": True, "item": record.to_dict()})


@listings_bp.route("/listings/<listing_id>", methods=["PUT", "PATCH"])
def update_listing(listing_id: str):
    uid = _require_user_id()
    record = _service().update_listing(listing_id, uid, _json_body())
    return jsonify({"ok": True, "item": record.to_dict()})


@listings_bp.delete("/listings/<listing_id>")
def delete_listing(listing_id: str):
    uid = _require_user_id()
    _service().delete_listing(listing_id, uid)
    return jsonify({"ok": True, "deleted": True, "id": listing_id})


@listings_bp.get("/me/listings")
def my_listings():
    uid = _require_user_id()
    records, pagination = _service().get_user_listings(
        uid,
        status=(request.args.get("status") or "").strip() or None,
        category_slug=(request.args.get("category_slug") or "").strip().lower() or None,
        page=request.args.get("page") or 1,
        page_size=request.args.get("page_size"),
    )
    return jsonify({"ok": True, "items": [r.to_dict() for r in records], "pagination": pagination.to_dict()})
