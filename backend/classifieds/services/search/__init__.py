from __future__ import annotations

import calendar
import math
import os
from datetime import date, datetime
from typing import Any

from classifieds.services.listings.types import (
    BabysittingDetails,
    EventDetails,
    HousingDetails,
    ListingRecord,
)

# Every attribute the query engine filters or sorts on must be listed here
# and emitted by listing_to_search_document.
LISTINGS_FILTERABLE_ATTRIBUTES = [
    "id",
    "_geo",
    "has_location",
    "status",
    "is_admin_approved",
    "user_id",
    "category_id",
    "category_slug",
    "sub_category_id",
    "sub_category_slug",
    "expires_at_ts",
    "created_at_ts",
    "event_date_ts",
    "detail_kind",
    "property_type",
    "city",
    "state",
    "zip_code",
]

LISTINGS_SORTABLE_ATTRIBUTES = [
    "_geo",
    "id",
    "created_at_ts",
    "expires_at_ts",
    "event_date_ts",
    "title",
]

LISTINGS_SEARCHABLE_ATTRIBUTES = [
    "title",
    "description",
    "contact_name",
    "address_line1",
    "address_line2",
    "city",
    "state",
    "zip_code",
    "category_name",
    "sub_category_name",
    "organizer_name",
    "venue_name",
]


def listings_index_name() -> str:
    return (os.getenv("SEARCH_INDEX_LISTINGS") or "listings_v1").strip()


def to_epoch(value) -> int | None:
    """Epoch seconds for a naive-UTC datetime or a date (midnight UTC)."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return int(calendar.timegm(value.utctimetuple()))
    if isinstance(value, date):
        return int(calendar.timegm(value.timetuple()))
    return None


def _as_iso(value) -> str | None:
    if value is None:
        return None
    return value.isoformat()


def listing_to_search_document(record: ListingRecord) -> dict[str, Any]:
    doc: dict[str, Any] = {
        "id": str(record.id),
        "title": record.title,
        "description": record.description,
        "contact_name": record.contact_name,
        "contact_email": record.contact_email,
        "contact_phone": record.contact_phone,
        "address_line1": record.address_line1,
        "address_line2": record.address_line2,
        "city": record.city,
        "state": record.state,
        "zip_code": record.zip_code,
        "latitude": record.latitude,
        "longitude": record.longitude,
        "has_location": bool(record.has_location),
        "user_id": int(record.user_id),
        "user_display_name": record.user_display_name,
        "category_id": int(record.category_id),
        "category_name": record.category_name,
        "category_slug": record.category_slug,
        "sub_category_id": int(record.sub_category_id) if record.sub_category_id is not None else None,
        "sub_category_name": record.sub_category_name,
        "sub_category_slug": record.sub_category_slug,
        "status": record.status.value,
        "is_admin_approved": bool(record.is_admin_approved),
        "expires_at": _as_iso(record.expires_at),
        "expires_at_ts": to_epoch(record.expires_at),
        "created_at": _as_iso(record.created_at),
        "created_at_ts": to_epoch(record.created_at),
        "updated_at": _as_iso(record.updated_at),
        "detail_kind": record.details.kind if record.details is not None else None,
        "languages_spoken": [],
        "property_type": None,
        "rent_details": None,
        "sale_price": None,
        "event_date": None,
        "event_date_ts": None,
        "event_time": None,
        "organizer_name": None,
        "venue_name": None,
        "image_paths": [img.image_path for img in sorted(record.images, key=lambda img: img.sort_order)],
    }
    if record.has_location:
        doc["_geo"] = {"lat": float(record.latitude), "lng": float(record.longitude)}

    details = record.details
    if isinstance(details, BabysittingDetails):
        doc["languages_spoken"] = list(details.languages_spoken)
    elif isinstance(details, HousingDetails):
        doc["property_type"] = details.property_type
        doc["rent_details"] = details.rent_details
        doc["sale_price"] = details.sale_price
    elif isinstance(details, EventDetails):
        doc["event_date"] = details.event_date.isoformat()
        doc["event_date_ts"] = to_epoch(details.event_date)
        doc["event_time"] = details.event_time.isoformat() if details.event_time else None
        doc["organizer_name"] = details.organizer_name
        doc["venue_name"] = details.venue_name
    return doc


def validate_search_document(doc: dict[str, Any]) -> list[str]:
    """Problems that would make the index reject the document."""
    problems: list[str] = []
    doc_id = str(doc.get("id") or "")
    if not doc_id or doc_id == "None" or len(doc_id) > 511:
        problems.append("missing or invalid id")
    elif not all(ch.isalnum() or ch in "-_" for ch in doc_id):
        problems.append("id contains characters the index does not accept")
    geo = doc.get("_geo")
    if geo is not None:
        lat = geo.get("lat")
        lng = geo.get("lng")
        if not _finite(lat) or not -90.0 <= float(lat) <= 90.0:
            problems.append("_geo.lat out of range")
        if not _finite(lng) or not -180.0 <= float(lng) <= 180.0:
            problems.append("_geo.lng out of range")
    if doc.get("created_at_ts") is None:
        problems.append("missing created_at")
    if doc.get("expires_at_ts") is None:
        problems.append("missing expires_at")
    return problems


def _finite(value) -> bool:
    try:
        return math.isfinite(float(value))
    except (TypeError, ValueError):
        return False
