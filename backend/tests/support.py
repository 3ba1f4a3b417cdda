from __future__ import annotations

import functools
import json
import math
import os
import re
import unittest
from datetime import datetime, timedelta
from unittest.mock import patch

from classifieds import create_app
from classifieds.extensions import db
from classifieds.models import Category, Listing, User
from classifieds.services.listings.store import ListingStore
from classifieds.services.listings.types import ListingRecord, ListingStatus
from classifieds.services.search.meili_client import SearchNotInitialized, SearchUnavailable
from classifieds.utils.jwt_utils import create_token

_GEO_RADIUS_RE = re.compile(r"^_geoRadius\(([-\d.]+), ([-\d.]+), ([-\d.]+)\)$")
_GEO_POINT_RE = re.compile(r"^_geoPoint\(([-\d.]+), ([-\d.]+)\):(asc|desc)$")
_COMPARISON_RE = re.compile(r"^(\w+) (!=|>=|<=|=|>|<) (.+)$")

_SEARCHABLE = ("title", "description", "city", "state", "category_name", "venue_name", "organizer_name")


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    r = 6371008.8
    p1, p2 = math.radians(lat1), math.radians(lat2)
    dp = math.radians(lat2 - lat1)
    dl = math.radians(lon2 - lon1)
    a = math.sin(dp / 2) ** 2 + math.cos(p1) * math.cos(p2) * math.sin(dl / 2) ** 2
    return 2 * r * math.asin(math.sqrt(a))


class FakeMeiliClient:
    """In-memory stand-in for MeiliClient that understands the filter and sort clauses we emit."""

    def __init__(self, *, existing_indexes: set[str] | None = None):
        self.indexes: set[str] = set(existing_indexes) if existing_indexes is not None else set()
        self.docs: dict[str, dict] = {}
        self.unavailable = False
        self.search_not_initialized = False
        self.reject_ids: set[str] = set()
        self.upsert_calls = 0
        self.index_exists_calls = 0
        self.configure_calls: list[str] = []
        self.search_calls: list[dict] = []
        self._task_uid = 0
        self._tasks: dict[int, dict] = {}

    def _check(self):
        if self.unavailable:
            raise SearchUnavailable("connection refused")

    def _task(self, status: str = "succeeded") -> dict:
        self._task_uid += 1
        self._tasks[self._task_uid] = {"uid": self._task_uid, "status": status}
        return {"taskUid": self._task_uid}

    def get_health(self):
        self._check()
        return {"status": "available"}

    def index_exists(self, index_name):
        self._check()
        self.index_exists_calls += 1
        return str(index_name) in self.indexes

    def get_index_stats(self, index_name):
        self._check()
        if str(index_name) not in self.indexes:
            raise SearchNotInitialized(str(index_name))
        return {"numberOfDocuments": len(self.docs)}

    def ensure_index(self, index_name, primary_key="id"):
        self._check()
        self.indexes.add(str(index_name))
        return {"uid": str(index_name), "primaryKey": primary_key}

    def configure_listings_index(self, index_name):
        self.ensure_index(index_name)
        self.configure_calls.append(str(index_name))
        return self._task()

    def ensure_listings_index(self, index_name):
        if self.index_exists(index_name):
            return False
        self.configure_listings_index(index_name)
        return True

    def upsert_documents(self, index_name, docs):
        self._check()
        self.upsert_calls += 1
        docs = list(docs or [])
        if any(str(doc.get("id")) in self.reject_ids for doc in docs):
            # The whole batch fails as one task, as the real index does.
            return self._task("failed")
        for doc in docs:
            self.docs[str(doc["id"])] = json.loads(json.dumps(doc))
        return self._task()

    def wait_for_task(self, task_uid, *, timeout=5.0, interval=0.05):
        self._check()
        return dict(self._tasks.get(int(task_uid)) or {"uid": task_uid, "status": "succeeded"})

    def delete_document(self, index_name, doc_id):
        self._check()
        self.docs.pop(str(doc_id), None)
        return self._task()

    def delete_documents(self, index_name, doc_ids):
        self._check()
        for doc_id in doc_ids or []:
            self.docs.pop(str(doc_id), None)
        return self._task()

    def list_document_ids(self, index_name, *, limit, offset):
        self._check()
        ids = sorted(self.docs.keys())
        return ids[int(offset): int(offset) + int(limit)], len(ids)

    @staticmethod
    def _matches(doc: dict, clause: str) -> bool:
        geo = _GEO_RADIUS_RE.match(clause)
        if geo:
            point = doc.get("_geo")
            if not point:
                return False
            lat, lon, meters = (float(v) for v in geo.groups())
            return haversine_m(lat, lon, point["lat"], point["lng"]) <= meters
        comparison = _COMPARISON_RE.match(clause)
        if not comparison:
            raise AssertionError(f"unsupported filter clause: {clause}")
        field, op, raw = comparison.groups()
        expected = json.loads(raw)
        actual = doc.get(field)
        if op == "=":
            return actual is not None and actual == expected
        if op == "!=":
            return actual != expected
        if actual is None:
            return False
        return {
            ">": actual > expected,
            ">=": actual >= expected,
            "<": actual < expected,
            "<=": actual <= expected,
        }[op]

    @staticmethod
    def _sort_key_fn(rule: str):
        geo = _GEO_POINT_RE.match(rule)
        if geo:
            lat, lon, direction = float(geo.group(1)), float(geo.group(2)), geo.group(3)

            def value(doc):
                point = doc.get("_geo")
                return haversine_m(lat, lon, point["lat"], point["lng"]) if point else None

            return value, direction
        field, direction = rule.rsplit(":", 1)
        return (lambda doc: doc.get(field)), direction

    def _sorted(self, docs: list[dict], sort: list[str] | None) -> list[dict]:
        if not sort:
            return docs
        rules = [self._sort_key_fn(rule) for rule in sort]

        def compare(a, b):
            for value, direction in rules:
                va, vb = value(a), value(b)
                if va == vb:
                    continue
                # Documents without the attribute always sort last.
                if va is None:
                    return 1
                if vb is None:
                    return -1
                result = -1 if va < vb else 1
                return result if direction == "asc" else -result
            return 0

        return sorted(docs, key=functools.cmp_to_key(compare))

    def search(self, index_name, q, filters, sort, *, page, hits_per_page):
        self._check()
        if self.search_not_initialized or str(index_name) not in self.indexes:
            raise SearchNotInitialized(str(index_name))
        self.search_calls.append({"q": q, "filters": list(filters or []), "sort": sort, "page": page})
        docs = [dict(doc) for doc in self.docs.values()]
        docs = [doc for doc in docs if all(self._matches(doc, clause) for clause in (filters or []))]
        text = str(q or "").strip().lower()
        if text:
            docs = [doc for doc in docs if text in " ".join(str(doc.get(k) or "") for k in _SEARCHABLE).lower()]
        docs = self._sorted(docs, sort)
        geo_rule = next((_GEO_POINT_RE.match(rule) for rule in (sort or []) if _GEO_POINT_RE.match(rule)), None)
        if geo_rule:
            lat, lon = float(geo_rule.group(1)), float(geo_rule.group(2))
            for doc in docs:
                if doc.get("_geo"):
                    doc["_geoDistance"] = int(round(haversine_m(lat, lon, doc["_geo"]["lat"], doc["_geo"]["lng"])))
        start = (int(page) - 1) * int(hits_per_page)
        return {
            "hits": docs[start: start + int(hits_per_page)],
            "page": int(page),
            "hitsPerPage": int(hits_per_page),
            "totalHits": len(docs),
            "totalPages": int(math.ceil(len(docs) / float(hits_per_page))) if hits_per_page else 0,
        }


class ClassifiedsTestCase(unittest.TestCase):
    """Fresh in-memory database and a fake search index per test."""

    ENV = {
        "SQLALCHEMY_DATABASE_URI": "sqlite:///:memory:",
        "DATABASE_URL": "sqlite:///:memory:",
        "CLASSIFIEDS_ENV": "dev",
        "SEARCH_INDEX_LISTINGS": "listings_test",
        "MEILI_HOST": "http://meili.invalid:7700",
        "MEILI_API_KEY": "",
        "FIRST_POST_APPROVAL_ACTIVE_UNTIL": "",
        "FIRST_POST_APPROVAL_ROLLOUT_AT": "",
        "MAX_LISTING_DISTANCE_KM": "",
        "SEARCH_SYNC_RETRY_ASYNC": "",
    }

    @classmethod
    def setUpClass(cls):
        cls._saved_env = {key: os.getenv(key) for key in cls.ENV}
        os.environ.update(cls.ENV)
        cls.app = create_app()
        cls.app.config.update(TESTING=True)
        cls.client = cls.app.test_client()

    @classmethod
    def tearDownClass(cls):
        for key, value in cls._saved_env.items():
            if value is None:
                os.environ.pop(key, None)
            else:
                os.environ[key] = value

    def setUp(self):
        os.environ.update(self.ENV)
        self.meili = FakeMeiliClient()
        for target in (
            "classifieds.services.search.synchronizer.get_meili_client",
            "classifieds.services.search.query.get_meili_client",
        ):
            patcher = patch(target, return_value=self.meili)
            patcher.start()
            self.addCleanup(patcher.stop)
        self.ctx = self.app.app_context()
        self.ctx.push()
        self.addCleanup(self.ctx.pop)
        db.session.remove()
        db.drop_all()
        db.create_all()
        self.addCleanup(db.session.remove)
        self._seed_categories()

    def _seed_categories(self):
        rows: dict[str, Category] = {}
        for position, (slug, name) in enumerate(
            [
                ("baby-sitting", "Baby Sitting"),
                ("housing", "Housing"),
                ("events", "Events"),
                ("businesses", "Businesses"),
                ("for-sale", "For Sale"),
            ]
        ):
            row = Category(name=name, slug=slug, sort_order=position)
            db.session.add(row)
            rows[slug] = row
        db.session.flush()
        for slug, name in (("restaurants", "Restaurants"), ("salons", "Salons")):
            row = Category(name=name, slug=slug, parent_id=rows["businesses"].id)
            db.session.add(row)
            rows[slug] = row
        db.session.flush()
        # Plain ids: ORM rows are detached once a request tears down the session.
        self.category_ids = {slug: int(row.id) for slug, row in rows.items()}
        db.session.commit()

    def category_id(self, slug: str) -> int:
        return self.category_ids[slug]

    def make_user(self, *, role: str = "user", first_post_approved: bool = False, name: str = "") -> int:
        count = db.session.query(User).count() + 1
        user = User(
            name=name or f"User {count}",
            username=f"user{count}",
            email=f"user{count}@classifieds.test",
            role=role,
            is_first_post_approved=first_post_approved,
        )
        db.session.add(user)
        db.session.commit()
        return int(user.id)

    def headers_for(self, user_id: int) -> dict[str, str]:
        return {"Authorization": f"Bearer {create_token(int(user_id))}"}

    def listing_payload(self, slug: str = "for-sale", **overrides) -> dict:
        payload = {
            "title": "Vintage bicycle",
            "description": "A well kept vintage bicycle, recently serviced.",
            "category_id": self.category_id(slug),
            "city": "Seattle",
            "state": "WA",
        }
        if slug == "baby-sitting":
            payload["babysitting_details"] = {"languages_spoken": ["English", "Spanish"]}
        elif slug == "housing":
            payload["housing_details"] = {"property_type": "for_rent", "rent_details": "$1800/month, 12 month lease"}
        elif slug == "events":
            payload["event_details"] = {"event_date": (datetime.utcnow() + timedelta(days=7)).strftime("%Y-%m-%d")}
        elif slug == "businesses":
            payload["sub_category_id"] = self.category_id("restaurants")
        payload.update(overrides)
        return payload

    def force_expires_at(self, listing_id: str, expires_at: datetime) -> None:
        row = db.session.get(Listing, listing_id)
        row.expires_at = expires_at
        db.session.commit()

    def insert_listing(self, user_id: int, *, status: ListingStatus = ListingStatus.ACTIVE, slug: str = "for-sale",
                       expires_in: timedelta = timedelta(days=30), created_at: datetime | None = None, **fields):
        """Persist a listing straight through the store, bypassing moderation and index sync."""
        now = datetime.utcnow()
        values = {
            "title": "Listing straight from the store",
            "description": "Inserted by the test suite to set up a scenario.",
        }
        values.update(fields)
        record = ListingRecord(
            user_id=int(user_id),
            category_id=self.category_id(slug),
            status=status,
            is_admin_approved=status != ListingStatus.PENDING_APPROVAL,
            expires_at=now + expires_in,
            created_at=created_at or now,
            **values,
        )
        return ListingStore().create(record)
