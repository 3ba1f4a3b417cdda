from __future__ import annotations

import copy
from unittest.mock import patch

from classifieds.models import PlatformEvent
from classifieds.services.search import listing_to_search_document, validate_search_document
from classifieds.services.search.meili_client import SearchUnavailable
from classifieds.services.search.synchronizer import SearchSynchronizer
from classifieds.tasks.search_tasks import search_delete_listing, search_index_listing, search_reconcile_all
from ops.check_celery_import import main as celery_import_check_main
from tests.support import ClassifiedsTestCase


class SearchSynchronizerTestCase(ClassifiedsTestCase):
    def setUp(self):
        super().setUp()
        self.sync = SearchSynchronizer()
        self.user_id = self.make_user()

    def test_first_upsert_creates_configured_index(self):
        record = self.insert_listing(self.user_id)
        result = self.sync.upsert(record)

        self.assertTrue(result.ok)
        self.assertEqual(self.meili.configure_calls, ["listings_test"])
        self.assertEqual(self.meili.docs[record.id], listing_to_search_document(record))

        self.sync.upsert(record)
        self.assertEqual(self.meili.configure_calls, ["listings_test"])

    def test_index_readiness_is_checked_once_per_synchronizer(self):
        first = self.insert_listing(self.user_id)
        second = self.insert_listing(self.user_id, title="Second listing")

        self.assertTrue(self.sync.upsert(first).ok)
        self.assertTrue(self.sync.upsert(second).ok)
        self.assertTrue(self.sync.upsert(first).ok)
        self.assertEqual(self.meili.index_exists_calls, 1)
        self.assertEqual(self.meili.upsert_calls, 3)

        # A failed readiness check is not remembered.
        fresh = SearchSynchronizer()
        self.meili.unavailable = True
        self.assertFalse(fresh.upsert(first).ok)
        self.meili.unavailable = False
        self.assertTrue(fresh.upsert(first).ok)
        self.assertEqual(self.meili.index_exists_calls, 2)

    def test_init_index_marks_index_ready(self):
        self.sync.init_index()
        self.sync.upsert(self.insert_listing(self.user_id))
        self.assertEqual(self.meili.index_exists_calls, 0)
        self.assertEqual(self.meili.configure_calls, ["listings_test"])

    def test_projection_only_carries_geo_when_located(self):
        located = listing_to_search_document(self.insert_listing(self.user_id, latitude=47.6, longitude=-122.3))
        unlocated = listing_to_search_document(self.insert_listing(self.user_id))

        self.assertEqual(located["_geo"], {"lat": 47.6, "lng": -122.3})
        self.assertTrue(located["has_location"])
        self.assertNotIn("_geo", unlocated)
        self.assertFalse(unlocated["has_location"])
        self.assertEqual(validate_search_document(unlocated), [])

    def test_unavailable_index_is_reported_not_raised(self):
        record = self.insert_listing(self.user_id)
        self.meili.unavailable = True

        result = self.sync.upsert(record)

        self.assertFalse(result.ok)
        self.assertTrue(result.retryable)
        event = PlatformEvent.query.filter_by(event_type="search_sync_failed").one()
        self.assertEqual(event.subject_id, record.id)
        self.assertEqual(event.severity, "WARN")

    def test_remove_is_idempotent(self):
        record = self.insert_listing(self.user_id)
        self.sync.upsert(record)
        self.assertTrue(self.sync.remove(record.id).ok)
        self.assertTrue(self.sync.remove(record.id).ok)
        self.assertNotIn(record.id, self.meili.docs)

    def test_reconcile_twice_gives_identical_index(self):
        for i in range(7):
            self.insert_listing(self.user_id, title=f"Reconciled listing {i}", latitude=47.0 + i / 10, longitude=-122.0)

        first = self.sync.reconcile_all(page_size=3)
        snapshot = copy.deepcopy(self.meili.docs)
        second = self.sync.reconcile_all(page_size=3)

        self.assertEqual(first.to_dict()["succeeded"], 7)
        self.assertEqual(first.pages, 3)
        self.assertEqual(second.succeeded, 7)
        self.assertEqual(self.meili.docs, snapshot)

    def test_reconcile_isolates_rejected_documents(self):
        good = [self.insert_listing(self.user_id, title=f"Good listing {i}") for i in range(3)]
        bad = self.insert_listing(self.user_id, title="Rejected by the index")
        self.meili.reject_ids.add(bad.id)

        report = self.sync.reconcile_all(page_size=10)

        self.assertEqual(report.scanned, 4)
        self.assertEqual(report.succeeded, 3)
        self.assertEqual(report.failed, 1)
        self.assertEqual(report.failed_ids, [bad.id])
        self.assertFalse(report.to_dict()["ok"])
        self.assertEqual(set(self.meili.docs), {r.id for r in good})

    def test_reconcile_prune_drops_orphans(self):
        kept = self.insert_listing(self.user_id)
        self.sync.init_index()
        self.meili.docs["orphan-listing"] = {"id": "orphan-listing"}

        report = self.sync.reconcile_all(prune=True)

        self.assertEqual(report.pruned, 1)
        self.assertEqual(set(self.meili.docs), {kept.id})

    def test_reconcile_raises_when_index_cannot_be_prepared(self):
        self.insert_listing(self.user_id)
        self.meili.unavailable = True
        with self.assertRaises(SearchUnavailable):
            self.sync.reconcile_all()

    def test_health_reports_document_count(self):
        self.assertFalse(self.sync.health()["initialized"])
        self.sync.upsert(self.insert_listing(self.user_id))
        health = self.sync.health()
        self.assertTrue(health["reachable"])
        self.assertEqual(health["documents"], 1)


class SearchTasksTestCase(ClassifiedsTestCase):
    def setUp(self):
        super().setUp()
        self.user_id = self.make_user()

    def test_index_task_is_idempotent(self):
        record = self.insert_listing(self.user_id)
        first = search_index_listing.run(record.id, trace_id="trace_a")
        second = search_index_listing.run(record.id, trace_id="trace_b")

        self.assertTrue(first["ok"])
        self.assertTrue(second["ok"])
        self.assertEqual(self.meili.upsert_calls, 2)
        self.assertEqual(list(self.meili.docs), [record.id])

    def test_index_task_for_deleted_listing_removes_document(self):
        self.meili.docs["gone-listing"] = {"id": "gone-listing"}
        result = search_index_listing.run("gone-listing")
        self.assertTrue(result["deleted"])
        self.assertNotIn("gone-listing", self.meili.docs)

    def test_index_task_retries_transport_failures(self):
        record = self.insert_listing(self.user_id)
        self.meili.unavailable = True
        with patch.object(search_index_listing, "retry", side_effect=RuntimeError("retry-called")) as retry_mock:
            search_index_listing.request.retries = 0
            with self.assertRaises(RuntimeError):
                search_index_listing.run(record.id, trace_id="trace_retry")

        retry_mock.assert_called_once()
        self.assertEqual(int(retry_mock.call_args.kwargs.get("countdown") or 0), 5)

    def test_delete_and_reconcile_tasks(self):
        record = self.insert_listing(self.user_id)
        summary = search_reconcile_all.run(page_size=5)
        self.assertTrue(summary["ok"])
        self.assertIn(record.id, self.meili.docs)

        result = search_delete_listing.run(record.id)
        self.assertTrue(result["deleted"])
        self.assertNotIn(record.id, self.meili.docs)

    def test_enqueue_is_opt_in(self):
        from classifieds.services.listings.service import ListingService

        self.meili.unavailable = True
        with patch("classifieds.tasks.search_tasks.search_index_listing.delay") as delay_mock:
            ListingService().create_listing(self.user_id, self.listing_payload())
        delay_mock.assert_not_called()

        with patch.dict("os.environ", {"SEARCH_SYNC_RETRY_ASYNC": "1"}), patch(
            "classifieds.tasks.search_tasks.search_index_listing.delay"
        ) as delay_mock:
            created = ListingService().create_listing(self.user_id, self.listing_payload(title="Queued for retry"))
        delay_mock.assert_called_once_with(created.id)

    def test_celery_import_check_passes(self):
        self.assertEqual(int(celery_import_check_main()), 0)
