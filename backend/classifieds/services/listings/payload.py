from __future__ import annotations

import math
import re
from datetime import date, datetime, time

from classifieds.errors import BadRequest
from classifieds.services.listings.types import (
    DETAIL_PAYLOAD_KEYS,
    DETAIL_TYPE_BY_CATEGORY,
    BabysittingDetails,
    EventDetails,
    HousingDetails,
    ImageRef,
    ListingDetails,
)

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

_OPTIONAL_TEXT_FIELDS = {
    "contact_name": 120,
    "contact_email": 255,
    "contact_phone": 32,
    "address_line1": 255,
    "address_line2": 255,
    "city": 100,
    "state": 50,
    "zip_code": 20,
}


def _text(payload: dict, key: str, *, max_len: int) -> str | None:
    raw = payload.get(key)
    if raw is None:
        return None
    if not isinstance(raw, (str, int, float)):
        raise BadRequest(f"{key} must be a string")
    value = str(raw).strip()
    if len(value) > max_len:
        raise BadRequest(f"{key} must be at most {max_len} characters")
    return value or None


def _optional_int(payload: dict, key: str) -> int | None:
    raw = payload.get(key)
    if raw is None or raw == "":
        return None
    if isinstance(raw, bool):
        raise BadRequest(f"{key} must be an integer")
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise BadRequest(f"{key} must be an integer")


def _optional_float(payload: dict, key: str) -> float | None:
    raw = payload.get(key)
    if raw is None or raw == "":
        return None
    if isinstance(raw, bool):
        raise BadRequest(f"{key} must be a number")
    try:
        value = float(raw)
    except (TypeError, ValueError):
        raise BadRequest(f"{key} must be a number")
    if not math.isfinite(value):
        raise BadRequest(f"{key} must be a finite number")
    return value


def parse_core_fields(payload: dict, *, partial: bool) -> dict:
    """Validate and normalize the listing's own columns.

    With ``partial`` only the keys present in ``payload`` are returned, so
    the result can be merged onto an existing listing.
    """
    if not isinstance(payload, dict):
        raise BadRequest("Request body must be a JSON object")
    fields: dict = {}

    if not partial or "title" in payload:
        title = _text(payload, "title", max_len=255) or ""
        if len(title) < 5:
            raise BadRequest("title must be between 5 and 255 characters")
        fields["title"] = title

    if not partial or "description" in payload:
        description = str(payload.get("description") or "").strip()
        if len(description) < 20:
            raise BadRequest("description must be at least 20 characters")
        fields["description"] = description

    if not partial:
        category_id = _optional_int(payload, "category_id")
        if category_id is None:
            raise BadRequest("category_id is required")
        fields["category_id"] = category_id

    if not partial or "sub_category_id" in payload:
        fields["sub_category_id"] = _optional_int(payload, "sub_category_id")

    for key, max_len in _OPTIONAL_TEXT_FIELDS.items():
        if not partial or key in payload:
            fields[key] = _text(payload, key, max_len=max_len)

    email = fields.get("contact_email")
    if email and not _EMAIL_RE.match(email):
        raise BadRequest("contact_email must be a valid email address")

    if not partial or "latitude" in payload or "longitude" in payload:
        lat = _optional_float(payload, "latitude")
        lon = _optional_float(payload, "longitude")
        if lat is not None and not -90.0 <= lat <= 90.0:
            raise BadRequest("latitude must be between -90 and 90")
        if lon is not None and not -180.0 <= lon <= 180.0:
            raise BadRequest("longitude must be between -180 and 180")
        fields["latitude"] = lat
        fields["longitude"] = lon

    if "image_paths" in payload:
        fields["images"] = parse_image_paths(payload.get("image_paths"))
    return fields


def check_coordinates(latitude: float | None, longitude: float | None) -> None:
    if (latitude is None) != (longitude is None):
        raise BadRequest("latitude and longitude must be provided together")


def parse_image_paths(raw) -> tuple[ImageRef, ...]:
    if raw is None:
        return ()
    if not isinstance(raw, list):
        raise BadRequest("image_paths must be a list")
    refs = []
    for position, item in enumerate(raw):
        path = str(item or "").strip()
        if not path:
            raise BadRequest("image_paths must not contain empty values")
        refs.append(ImageRef(image_path=path[:1024], sort_order=position))
    return tuple(refs)


def has_detail_payload(payload: dict) -> bool:
    return any(key in payload for key in DETAIL_PAYLOAD_KEYS.values())


def parse_details(category_slug: str, payload: dict) -> ListingDetails | None:
    """Build the detail variant for ``category_slug`` from its payload key.

    A payload that carries another variant's key is rejected outright.
    """
    expected = DETAIL_TYPE_BY_CATEGORY.get((category_slug or "").strip().lower())
    for detail_type, key in DETAIL_PAYLOAD_KEYS.items():
        if payload.get(key) is not None and detail_type is not expected:
            raise BadRequest(f"{key} does not match category '{category_slug}'", code="DETAILS_CATEGORY_MISMATCH")
    if expected is None:
        return None
    raw = payload.get(DETAIL_PAYLOAD_KEYS[expected])
    if raw is None:
        return None
    if not isinstance(raw, dict):
        raise BadRequest(f"{DETAIL_PAYLOAD_KEYS[expected]} must be an object")
    if expected is BabysittingDetails:
        return _parse_babysitting(raw)
    if expected is HousingDetails:
        return _parse_housing(raw)
    return _parse_event(raw)


def _parse_babysitting(raw: dict) -> BabysittingDetails:
    languages = raw.get("languages_spoken")
    if languages is None:
        languages = []
    if not isinstance(languages, list):
        raise BadRequest("languages_spoken must be a list")
    cleaned = tuple(str(lang).strip() for lang in languages if str(lang or "").strip())
    return BabysittingDetails(languages_spoken=cleaned)


def _parse_housing(raw: dict) -> HousingDetails:
    property_type = str(raw.get("property_type") or "").strip().lower()
    rent_details = raw.get("rent_details")
    return HousingDetails(
        property_type=property_type,
        rent_details=str(rent_details).strip() if rent_details is not None else None,
        sale_price=_optional_float(raw, "sale_price"),
    )


def _parse_event(raw: dict) -> EventDetails:
    return EventDetails(
        event_date=parse_event_date(raw.get("event_date")),
        event_time=parse_event_time(raw.get("event_time")),
        organizer_name=(str(raw.get("organizer_name") or "").strip() or None),
        venue_name=(str(raw.get("venue_name") or "").strip() or None),
    )


def parse_event_date(raw) -> date:
    if isinstance(raw, date):
        return raw
    try:
        return datetime.strptime(str(raw or "").strip(), "%Y-%m-%d").date()
    except ValueError:
        raise BadRequest("event_date must be a valid date in YYYY-MM-DD format")


def parse_event_time(raw) -> time | None:
    if raw is None or str(raw).strip() == "":
        return None
    value = str(raw).strip()
    for fmt in ("%H:%M:%S", "%H:%M"):
        try:
            return datetime.strptime(value, fmt).time()
        except ValueError:
            continue
    raise BadRequest("event_time must be in HH:MM or HH:MM:SS format")
