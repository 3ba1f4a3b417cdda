from __future__ import annotations

import json
import math
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Mapping

from flask import current_app

from classifieds.errors import BadRequest, ServiceUnavailable
from classifieds.services.listings.types import CATEGORY_EVENTS, ListingStatus
from classifieds.services.search import listings_index_name, to_epoch
from classifieds.services.search.meili_client import SearchNotInitialized, SearchUnavailable, get_meili_client
from classifieds.utils.pagination import Pagination, build_pagination, clamp_page, clamp_page_size
from classifieds.utils.settings import max_listing_distance_km, search_default_page_size, search_max_page_size

SORT_RELEVANCE = "relevance"
SORT_CREATED_AT = "created_at"
SORT_DISTANCE = "distance"
SORT_EXPIRES_AT = "expires_at"
SORT_TITLE = "title"
SORT_EVENT_DATE = "event_date"

_SORT_FIELDS = {
    SORT_CREATED_AT: "created_at_ts",
    SORT_EXPIRES_AT: "expires_at_ts",
    SORT_TITLE: "title",
    SORT_EVENT_DATE: "event_date_ts",
}

STATUS_ANY = "any"


def _meili_quote(raw_value) -> str:
    return json.dumps(str(raw_value or ""))


def _meili_number(raw_value) -> str:
    value = float(raw_value)
    whole = int(value)
    if abs(value - float(whole)) < 1e-9:
        return str(whole)
    return f"{value:.6f}".rstrip("0").rstrip(".")


def _arg_float(args: Mapping, key: str) -> float | None:
    raw = args.get(key)
    if raw is None or str(raw).strip() == "":
        return None
    try:
        value = float(raw)
    except (TypeError, ValueError):
        raise BadRequest(f"{key} must be a number")
    if not math.isfinite(value):
        raise BadRequest(f"{key} must be a finite number")
    return value


def _arg_int(args: Mapping, key: str) -> int | None:
    raw = args.get(key)
    if raw is None or str(raw).strip() == "":
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise BadRequest(f"{key} must be an integer")


@dataclass
class SearchCriteria:
    q: str = ""
    listing_id: str | None = None
    category_id: int | None = None
    sub_category_id: int | None = None
    category_slug: str | None = None
    exclude_category_slug: str | None = None
    user_id: int | None = None
    status: str | None = None
    include_expired: bool = False
    approved_only: bool = True
    lat: float | None = None
    lon: float | None = None
    max_distance_km: float | None = None
    event_from: date | None = None
    sort_by: str | None = None
    sort_order: str | None = None
    page: int = 1
    page_size: int | None = None

    @classmethod
    def from_args(cls, args: Mapping) -> "SearchCriteria":
        """Public query-string criteria; approval and status overrides are not exposed."""
        return cls(
            q=str(args.get("q") or "").strip(),
            category_id=_arg_int(args, "category_id"),
            sub_category_id=_arg_int(args, "sub_category_id"),
            category_slug=(str(args.get("category_slug") or "").strip().lower() or None),
            user_id=_arg_int(args, "user_id"),
            lat=_arg_float(args, "lat"),
            lon=_arg_float(args, "lon"),
            max_distance_km=_arg_float(args, "max_distance_km"),
            sort_by=(str(args.get("sort_by") or "").strip().lower() or None),
            sort_order=(str(args.get("sort_order") or "").strip().lower() or None),
            page=clamp_page(args.get("page") or 1),
            page_size=_arg_int(args, "page_size"),
        )


@dataclass
class SearchQuery:
    q: str
    filters: list[str]
    sort: list[str] | None
    page: int
    page_size: int


@dataclass
class SearchPage:
    items: list[dict[str, Any]] = field(default_factory=list)
    pagination: Pagination | None = None

    def to_dict(self) -> dict:
        return {
            "items": list(self.items),
            "pagination": self.pagination.to_dict() if self.pagination else None,
        }


def _hit_to_item(hit: dict[str, Any]) -> dict[str, Any]:
    item = {k: v for k, v in hit.items() if not k.startswith("_") or k == "_geo"}
    distance_m = hit.get("_geoDistance")
    if distance_m is not None:
        item["distance_km"] = round(float(distance_m) / 1000.0, 3)
    return item


class SearchQueryEngine:
    def __init__(
        self,
        client=None,
        *,
        index_name: str | None = None,
        default_page_size: int | None = None,
        max_page_size: int | None = None,
        default_max_distance_km: float | None = None,
    ):
        self._client = client
        self.index_name = index_name or listings_index_name()
        self.default_page_size = int(default_page_size or search_default_page_size())
        self.max_page_size = int(max_page_size or search_max_page_size())
        self.default_max_distance_km = (
            float(default_max_distance_km) if default_max_distance_km is not None else max_listing_distance_km()
        )

    @property
    def client(self):
        if self._client is None:
            self._client = get_meili_client()
        return self._client

    def build_query(self, criteria: SearchCriteria, *, now: datetime) -> SearchQuery:
        filters: list[str] = []

        if criteria.listing_id:
            filters.append(f"id = {_meili_quote(criteria.listing_id)}")

        status = (criteria.status or "").strip().lower()
        if not status:
            filters.append(f"status = {_meili_quote(ListingStatus.ACTIVE.value)}")
            if not criteria.include_expired:
                filters.append(f"expires_at_ts > {to_epoch(now)}")
        elif status != STATUS_ANY:
            try:
                ListingStatus(status)
            except ValueError:
                raise BadRequest(f"Unknown listing status '{criteria.status}'", code="INVALID_STATUS")
            filters.append(f"status = {_meili_quote(status)}")

        if criteria.approved_only:
            filters.append("is_admin_approved = true")
        if criteria.category_id is not None:
            filters.append(f"category_id = {int(criteria.category_id)}")
        if criteria.sub_category_id is not None:
            filters.append(f"sub_category_id = {int(criteria.sub_category_id)}")
        if criteria.category_slug:
            filters.append(f"category_slug = {_meili_quote(criteria.category_slug)}")
        if criteria.exclude_category_slug:
            filters.append(f"category_slug != {_meili_quote(criteria.exclude_category_slug)}")
        if criteria.user_id is not None:
            filters.append(f"user_id = {int(criteria.user_id)}")
        if criteria.event_from is not None:
            filters.append(f"event_date_ts >= {to_epoch(criteria.event_from)}")

        has_center = self._check_center(criteria)
        radius_km = criteria.max_distance_km
        if radius_km is not None and (not math.isfinite(radius_km) or radius_km <= 0):
            raise BadRequest("max_distance_km must be positive")
        if radius_km is not None and not has_center:
            raise BadRequest("max_distance_km requires lat and lon")
        if radius_km is None and has_center and self.default_max_distance_km > 0:
            radius_km = self.default_max_distance_km

        sort_by = criteria.sort_by or (SORT_RELEVANCE if criteria.q else SORT_CREATED_AT)
        sort_order = (criteria.sort_order or ("asc" if sort_by in (SORT_DISTANCE, SORT_EVENT_DATE) else "desc")).lower()
        if sort_order not in ("asc", "desc"):
            raise BadRequest("sort_order must be 'asc' or 'desc'")

        geo_sorted = sort_by == SORT_DISTANCE
        if geo_sorted and not has_center:
            raise BadRequest("Sorting by distance requires lat and lon")
        if has_center and radius_km is not None:
            meters = radius_km * 1000.0
            filters.append(
                f"_geoRadius({_meili_number(criteria.lat)}, {_meili_number(criteria.lon)}, {_meili_number(meters)})"
            )
        if geo_sorted or (has_center and radius_km is not None):
            filters.append("has_location = true")

        sort = self._sort_clause(criteria, sort_by, sort_order)
        page_size = clamp_page_size(
            criteria.page_size if criteria.page_size is not None else self.default_page_size,
            default=self.default_page_size,
            maximum=self.max_page_size,
        )
        return SearchQuery(
            q=criteria.q or "",
            filters=filters,
            sort=sort,
            page=clamp_page(criteria.page),
            page_size=page_size,
        )

    @staticmethod
    def _check_center(criteria: SearchCriteria) -> bool:
        if criteria.lat is None and criteria.lon is None:
            return False
        if criteria.lat is None or criteria.lon is None:
            raise BadRequest("lat and lon must be provided together")
        if not -90.0 <= criteria.lat <= 90.0 or not -180.0 <= criteria.lon <= 180.0:
            raise BadRequest("lat/lon out of range")
        return True

    @staticmethod
    def _sort_clause(criteria: SearchCriteria, sort_by: str, sort_order: str) -> list[str] | None:
        if sort_by == SORT_DISTANCE:
            point = f"_geoPoint({_meili_number(criteria.lat)}, {_meili_number(criteria.lon)})"
            return [f"{point}:{sort_order}", "created_at_ts:desc", "id:asc"]
        if sort_by == SORT_RELEVANCE:
            if criteria.q:
                return None
            return ["created_at_ts:desc", "id:asc"]
        sort_field = _SORT_FIELDS.get(sort_by)
        if sort_field is None:
            raise BadRequest(f"Unsupported sort_by '{sort_by}'")
        clause = [f"{sort_field}:{sort_order}"]
        if sort_field != "created_at_ts":
            clause.append("created_at_ts:desc")
        clause.append("id:asc")
        return clause

    def search(self, criteria: SearchCriteria, *, now: datetime | None = None) -> SearchPage:
        query = self.build_query(criteria, now=now or datetime.utcnow())
        try:
            response = self.client.search(
                self.index_name,
                query.q,
                query.filters,
                query.sort,
                page=query.page,
                hits_per_page=query.page_size,
            )
        except SearchNotInitialized as exc:
            current_app.logger.error("search_index_not_initialized index=%s", self.index_name)
            raise ServiceUnavailable(str(exc), code="SEARCH_NOT_INITIALIZED")
        except SearchUnavailable as exc:
            current_app.logger.warning("search_unavailable index=%s err=%s", self.index_name, exc)
            raise ServiceUnavailable("Search is temporarily unavailable", code="SEARCH_UNAVAILABLE")

        hits = response.get("hits") or []
        total = response.get("totalHits")
        if total is None:
            total = response.get("estimatedTotalHits") or 0
        return SearchPage(
            items=[_hit_to_item(hit) for hit in hits if isinstance(hit, dict)],
            pagination=build_pagination(int(total), query.page, query.page_size),
        )

    def recent(self, *, page: int = 1, page_size: int | None = None, now: datetime | None = None) -> SearchPage:
        criteria = SearchCriteria(exclude_category_slug=CATEGORY_EVENTS, page=page, page_size=page_size)
        return self.search(criteria, now=now)

    def upcoming_events(
        self,
        *,
        page: int = 1,
        page_size: int | None = None,
        now: datetime | None = None,
    ) -> SearchPage:
        now = now or datetime.utcnow()
        criteria = SearchCriteria(
            category_slug=CATEGORY_EVENTS,
            event_from=now.date(),
            sort_by=SORT_EVENT_DATE,
            sort_order="asc",
            page=page,
            page_size=page_size,
        )
        return self.search(criteria, now=now)
