from __future__ import annotations

import os
from datetime import date, datetime, timedelta

from classifieds.errors import BadRequest, ServiceUnavailable
from classifieds.services.listings.types import EventDetails, ListingStatus
from classifieds.services.search.query import SearchCriteria, SearchQueryEngine
from classifieds.services.search.synchronizer import SearchSynchronizer
from tests.support import ClassifiedsTestCase

# Seattle, Tacoma (~40 km) and Portland (~230 km).
SEATTLE = (47.6062, -122.3321)
TACOMA = (47.2529, -122.4443)
PORTLAND = (45.5152, -122.6784)


class SearchQueryEngineTestCase(ClassifiedsTestCase):
    def setUp(self):
        super().setUp()
        self.engine = SearchQueryEngine()
        self.sync = SearchSynchronizer()
        self.user_id = self.make_user()

    def _indexed(self, **kwargs):
        record = self.insert_listing(self.user_id, **kwargs)
        self.assertTrue(self.sync.upsert(record).ok)
        return record

    def test_round_trip_by_id_returns_projection(self):
        from classifieds.services.search import listing_to_search_document

        record = self._indexed(title="Kayak with paddles", latitude=SEATTLE[0], longitude=SEATTLE[1])
        page = self.engine.search(SearchCriteria(listing_id=record.id, status="any", approved_only=False))

        self.assertEqual(len(page.items), 1)
        self.assertEqual(page.items[0], listing_to_search_document(record))

    def test_default_filters_hide_pending_expired_and_stale(self):
        live = self._indexed(title="Live listing here")
        self._indexed(title="Pending listing", status=ListingStatus.PENDING_APPROVAL)
        self._indexed(title="Expired listing", status=ListingStatus.EXPIRED)
        self._indexed(title="Stale active listing", expires_in=timedelta(days=-1))

        page = self.engine.search(SearchCriteria())
        self.assertEqual([item["id"] for item in page.items], [live.id])
        self.assertEqual(page.pagination.total_items, 1)

    def test_geo_radius_includes_and_excludes(self):
        tacoma = self._indexed(title="Tacoma couch", latitude=TACOMA[0], longitude=TACOMA[1])
        portland = self._indexed(title="Portland couch", latitude=PORTLAND[0], longitude=PORTLAND[1])
        self._indexed(title="Couch somewhere")

        near = self.engine.search(SearchCriteria(lat=SEATTLE[0], lon=SEATTLE[1], max_distance_km=50))
        self.assertEqual([item["id"] for item in near.items], [tacoma.id])

        wide = self.engine.search(SearchCriteria(lat=SEATTLE[0], lon=SEATTLE[1], max_distance_km=300))
        self.assertEqual({item["id"] for item in wide.items}, {tacoma.id, portland.id})

        tight = self.engine.search(SearchCriteria(lat=SEATTLE[0], lon=SEATTLE[1], max_distance_km=10))
        self.assertEqual(tight.items, [])

    def test_distance_sort_skips_unlocated_listings(self):
        portland = self._indexed(title="Portland desk", latitude=PORTLAND[0], longitude=PORTLAND[1])
        tacoma = self._indexed(title="Tacoma desk", latitude=TACOMA[0], longitude=TACOMA[1])
        self._indexed(title="Desk with no address")

        page = self.engine.search(SearchCriteria(lat=SEATTLE[0], lon=SEATTLE[1], sort_by="distance"))
        self.assertEqual([item["id"] for item in page.items], [tacoma.id, portland.id])
        self.assertLess(page.items[0]["distance_km"], page.items[1]["distance_km"])
        self.assertNotIn("_geoDistance", page.items[0])

    def test_configured_default_radius_applies_to_bare_center(self):
        os.environ["MAX_LISTING_DISTANCE_KM"] = "50"
        tacoma = self._indexed(title="Tacoma lamp", latitude=TACOMA[0], longitude=TACOMA[1])
        self._indexed(title="Portland lamp", latitude=PORTLAND[0], longitude=PORTLAND[1])

        page = SearchQueryEngine().search(SearchCriteria(lat=SEATTLE[0], lon=SEATTLE[1]))
        self.assertEqual([item["id"] for item in page.items], [tacoma.id])

    def test_invalid_geo_criteria(self):
        cases = [
            SearchCriteria(lat=SEATTLE[0]),
            SearchCriteria(max_distance_km=10),
            SearchCriteria(lat=95, lon=0, max_distance_km=10),
            SearchCriteria(lat=SEATTLE[0], lon=SEATTLE[1], max_distance_km=-1),
            SearchCriteria(lat=SEATTLE[0], lon=SEATTLE[1], max_distance_km=float("inf")),
            SearchCriteria(lat=SEATTLE[0], lon=SEATTLE[1], max_distance_km=float("nan")),
            SearchCriteria(lat=float("nan"), lon=SEATTLE[1]),
            SearchCriteria(sort_by="distance"),
            SearchCriteria(sort_by="price"),
            SearchCriteria(status="published"),
        ]
        for criteria in cases:
            with self.subTest(criteria=criteria), self.assertRaises(BadRequest):
                self.engine.build_query(criteria, now=datetime.utcnow())

    def test_pagination_is_one_based_and_clamped(self):
        base = datetime.utcnow() - timedelta(hours=10)
        ids = [self._indexed(title=f"Item number {i}", created_at=base + timedelta(hours=i)).id for i in range(5)]

        first = self.engine.search(SearchCriteria(page=1, page_size=2))
        self.assertEqual([item["id"] for item in first.items], [ids[4], ids[3]])
        self.assertEqual(first.pagination.to_dict(), {"current_page": 1, "page_size": 2, "total_items": 5, "total_pages": 3})

        last = self.engine.search(SearchCriteria(page=3, page_size=2))
        self.assertEqual([item["id"] for item in last.items], [ids[0]])

        query = self.engine.build_query(SearchCriteria(page=0, page_size=5000), now=datetime.utcnow())
        self.assertEqual(query.page, 1)
        self.assertEqual(query.page_size, 100)

    def test_category_and_user_filters(self):
        other_user = self.make_user()
        mine = self._indexed(title="Studio apartment", slug="housing")
        self._indexed(title="Studio desk")
        self.insert_listing(other_user, slug="housing")

        page = self.engine.search(SearchCriteria(category_slug="housing", user_id=self.user_id))
        self.assertEqual([item["id"] for item in page.items], [mine.id])

    def test_recent_excludes_events(self):
        regular = self._indexed(title="Road bike")
        self._indexed(title="Jazz night", slug="events", details=EventDetails(event_date=date.today()))
        page = self.engine.recent()
        self.assertEqual([item["id"] for item in page.items], [regular.id])

    def test_upcoming_events_start_today_in_date_order(self):
        today = date.today()
        later = self._indexed(title="Later concert", slug="events", details=EventDetails(event_date=today + timedelta(days=9)))
        soon = self._indexed(title="Today concert", slug="events", details=EventDetails(event_date=today))
        self._indexed(title="Past concert", slug="events", details=EventDetails(event_date=today - timedelta(days=1)))
        self._indexed(title="Not an event")

        page = self.engine.upcoming_events(now=datetime.combine(today, datetime.min.time()) + timedelta(hours=12))
        self.assertEqual([item["id"] for item in page.items], [soon.id, later.id])

    def test_missing_index_and_outage_map_to_503(self):
        with self.assertRaises(ServiceUnavailable) as ctx:
            self.engine.search(SearchCriteria())
        self.assertEqual(ctx.exception.code, "SEARCH_NOT_INITIALIZED")

        self.sync.init_index()
        self.meili.unavailable = True
        with self.assertRaises(ServiceUnavailable) as ctx:
            self.engine.search(SearchCriteria())
        self.assertEqual(ctx.exception.code, "SEARCH_UNAVAILABLE")

    def test_query_string_criteria(self):
        criteria = SearchCriteria.from_args(
            {"q": " bike ", "lat": "47.6", "lon": "-122.3", "max_distance_km": "5", "page": "2", "page_size": "20"}
        )
        self.assertEqual(criteria.q, "bike")
        self.assertEqual(criteria.page, 2)
        self.assertTrue(criteria.approved_only)
        self.assertIsNone(criteria.status)
        with self.assertRaises(BadRequest):
            SearchCriteria.from_args({"lat": "north"})
        for raw in ("inf", "-inf", "nan"):
            with self.subTest(max_distance_km=raw), self.assertRaises(BadRequest):
                SearchCriteria.from_args({"lat": "47.6", "lon": "-122.3", "max_distance_km": raw})
