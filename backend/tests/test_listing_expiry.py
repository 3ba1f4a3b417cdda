from __future__ import annotations

import itertools
import json
from datetime import datetime, timedelta
from unittest.mock import patch

from classifieds.errors import Conflict
from classifieds.jobs.listing_expiry import ExpirySweeper, run_listing_expiry
from classifieds.models import JobRun
from classifieds.services.listings.service import ListingService
from classifieds.services.listings.store import ListingStore
from classifieds.services.listings.types import ListingStatus
from classifieds.services.search.query import SearchCriteria
from classifieds.services.search.synchronizer import SearchSynchronizer
from classifieds.tasks.expiry_tasks import run_listing_expiry_sweep
from tests.support import ClassifiedsTestCase


class ExpirySweeperTestCase(ClassifiedsTestCase):
    def setUp(self):
        super().setUp()
        self.user_id = self.make_user(first_post_approved=True)
        self.store = ListingStore()

    def test_expired_listing_leaves_public_search_but_not_owner_view(self):
        service = ListingService()
        record = service.create_listing(self.user_id, self.listing_payload(title="Garage sale leftovers"))
        self.force_expires_at(record.id, datetime.utcnow() - timedelta(minutes=5))

        report = ExpirySweeper().run()

        self.assertEqual(report.expired, 1)
        self.assertEqual(self.store.find_by_id(record.id).status, ListingStatus.EXPIRED)
        self.assertEqual(self.meili.docs[record.id]["status"], "expired")
        self.assertEqual(service.search_listings(SearchCriteria(q="garage sale")).items, [])

        resp = self.client.get("/api/me/listings", headers=self.headers_for(self.user_id))
        self.assertEqual(resp.status_code, 200)
        items = resp.get_json()["items"]
        self.assertEqual([(item["id"], item["status"]) for item in items], [(record.id, "expired")])

    def test_only_active_listings_are_expired(self):
        active = self.insert_listing(self.user_id, expires_in=timedelta(days=-1))
        pending = self.insert_listing(self.user_id, status=ListingStatus.PENDING_APPROVAL, expires_in=timedelta(days=-1))
        rejected = self.insert_listing(self.user_id, status=ListingStatus.REJECTED, expires_in=timedelta(days=-1))
        self.insert_listing(self.user_id, expires_in=timedelta(days=3))

        report = ExpirySweeper().run()

        self.assertEqual(report.found, 3)
        self.assertEqual(report.expired, 1)
        self.assertEqual(report.skipped, 2)
        self.assertEqual(self.store.find_by_id(active.id).status, ListingStatus.EXPIRED)
        self.assertEqual(self.store.find_by_id(pending.id).status, ListingStatus.PENDING_APPROVAL)
        self.assertEqual(self.store.find_by_id(rejected.id).status, ListingStatus.REJECTED)

    def test_second_pass_finds_nothing(self):
        self.insert_listing(self.user_id, expires_in=timedelta(hours=-2))
        self.assertEqual(ExpirySweeper().run().expired, 1)
        again = ExpirySweeper().run()
        self.assertEqual((again.found, again.expired), (0, 0))

    def test_concurrent_change_counts_as_skipped(self):
        self.insert_listing(self.user_id, expires_in=timedelta(hours=-2))
        with patch.object(ListingStore, "transition_status", side_effect=Conflict("status changed")):
            report = ExpirySweeper().run()
        self.assertEqual(report.skipped, 1)
        self.assertEqual(report.failed, 0)

    def test_unexpected_error_is_isolated_per_listing(self):
        first = self.insert_listing(self.user_id, expires_in=timedelta(hours=-3))
        second = self.insert_listing(self.user_id, expires_in=timedelta(hours=-2))
        real_transition = ListingStore.transition_status

        def flaky(store, listing_id, *args, **kwargs):
            if listing_id == first.id:
                raise RuntimeError("disk full")
            return real_transition(store, listing_id, *args, **kwargs)

        with patch.object(ListingStore, "transition_status", autospec=True, side_effect=flaky):
            report = ExpirySweeper().run()

        self.assertEqual(report.failed, 1)
        self.assertEqual(report.failed_ids, [first.id])
        self.assertEqual(report.expired, 1)
        self.assertFalse(report.to_dict()["ok"])
        self.assertEqual(self.store.find_by_id(second.id).status, ListingStatus.EXPIRED)

    def test_time_budget_abandons_the_rest(self):
        for hours in (5, 4, 3):
            self.insert_listing(self.user_id, expires_in=timedelta(hours=-hours))
        clock = itertools.chain([0.0, 0.0], itertools.repeat(120.0))

        report = ExpirySweeper(max_run_seconds=60, monotonic=lambda: next(clock)).run()

        self.assertEqual(report.found, 3)
        self.assertEqual(report.expired, 1)
        self.assertEqual(report.abandoned, 2)

    def test_index_outage_does_not_undo_expiry(self):
        record = self.insert_listing(self.user_id, expires_in=timedelta(hours=-1))
        self.meili.unavailable = True

        report = ExpirySweeper().run()

        self.assertEqual(report.expired, 1)
        self.assertEqual(report.index_failed, 1)
        self.assertTrue(report.to_dict()["ok"])
        self.assertEqual(self.store.find_by_id(record.id).status, ListingStatus.EXPIRED)

        self.meili.unavailable = False
        SearchSynchronizer().reconcile_all()
        self.assertEqual(self.meili.docs[record.id]["status"], "expired")


class ExpiryJobTestCase(ClassifiedsTestCase):
    def setUp(self):
        super().setUp()
        self.user_id = self.make_user()

    def test_job_run_is_recorded(self):
        self.insert_listing(self.user_id, expires_in=timedelta(days=-1))

        result = run_listing_expiry()

        self.assertTrue(result["ok"])
        self.assertEqual(result["expired"], 1)
        row = JobRun.query.filter_by(job_name="listing_expiry").one()
        self.assertTrue(row.ok)
        self.assertEqual(row.summary()["expired"], 1)

    def test_celery_task_runs_the_sweep(self):
        self.insert_listing(self.user_id, expires_in=timedelta(days=-1))
        result = run_listing_expiry_sweep.run(trace_id="trace_expiry")
        self.assertTrue(result["ok"])
        self.assertEqual(result["expired"], 1)

    def test_cli_command(self):
        self.insert_listing(self.user_id, expires_in=timedelta(days=-1))
        result = self.app.test_cli_runner().invoke(args=["expire-listings"])
        self.assertEqual(result.exit_code, 0, result.output)
        summary = json.loads(result.output.strip().splitlines()[-1])
        self.assertEqual(summary["expired"], 1)
