"""Store-to-index propagation.

The relational store is authoritative. Writes here happen after the
relational commit and only ever report failures; they never raise into
the create/update/delete caller. ``reconcile_all`` closes whatever gap
those failures leave.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field

from flask import current_app

from classifieds.services.listings.store import ListingStore
from classifieds.services.listings.types import ListingRecord
from classifieds.services.search import (
    listing_to_search_document,
    listings_index_name,
    validate_search_document,
)
from classifieds.services.search.meili_client import (
    MeiliApiError,
    SearchUnavailable,
    get_meili_client,
)
from classifieds.utils.events import log_event
from classifieds.utils.settings import reconcile_page_size

REASON_UNAVAILABLE = "unavailable"
REASON_REJECTED = "rejected"

_MAX_REPORTED_IDS = 200


@dataclass
class SyncResult:
    ok: bool
    listing_id: str
    action: str
    reason: str = ""
    error: str = ""

    @property
    def retryable(self) -> bool:
        return not self.ok and self.reason == REASON_UNAVAILABLE


@dataclass
class ReconcileReport:
    scanned: int = 0
    succeeded: int = 0
    failed: int = 0
    pages: int = 0
    pruned: int = 0
    failed_ids: list[str] = field(default_factory=list)

    def add_failure(self, listing_id: str) -> None:
        self.failed += 1
        if len(self.failed_ids) < _MAX_REPORTED_IDS:
            self.failed_ids.append(str(listing_id))

    def to_dict(self) -> dict:
        payload = asdict(self)
        payload["ok"] = self.failed == 0
        return payload


class SearchSynchronizer:
    def __init__(self, client=None, *, index_name: str | None = None, store: ListingStore | None = None,
                 task_timeout_seconds: float = 5.0):
        self._client = client
        self.index_name = index_name or listings_index_name()
        self.store = store or ListingStore()
        self.task_timeout_seconds = float(task_timeout_seconds)
        self._index_ready = False

    @property
    def client(self):
        if self._client is None:
            self._client = get_meili_client()
        return self._client

    def init_index(self) -> dict:
        """Create the index and (re)apply its settings. Safe to repeat."""
        self.client.ensure_index(self.index_name, primary_key="id")
        task = self.client.configure_listings_index(self.index_name)
        self._index_ready = True
        current_app.logger.info("search_index_initialized index=%s", self.index_name)
        return {"index": self.index_name, "settings_task": task}

    def health(self) -> dict:
        """Reachability of the search service plus document count of the listings index."""
        payload = {"index": self.index_name, "reachable": False, "initialized": False, "documents": None}
        try:
            self.client.get_health()
            payload["reachable"] = True
            if self.client.index_exists(self.index_name):
                payload["initialized"] = True
                stats = self.client.get_index_stats(self.index_name)
                payload["documents"] = int(stats.get("numberOfDocuments") or 0)
        except (MeiliApiError, SearchUnavailable) as exc:
            payload["error"] = str(exc)
        return payload

    def _write(self, docs: list[dict]) -> dict:
        return self.client.upsert_documents(self.index_name, docs)

    def _ensure_ready(self) -> None:
        # Writing to a missing index would auto-create it without the
        # filterable/sortable settings, so create it explicitly first.
        if self._index_ready:
            return
        self.client.ensure_listings_index(self.index_name)
        self._index_ready = True

    def _report_failure(self, action: str, listing_id: str, reason: str, error: str) -> SyncResult:
        current_app.logger.warning(
            "search_sync_failed action=%s listing_id=%s reason=%s err=%s",
            action,
            listing_id,
            reason,
            error,
        )
        log_event(
            "search_sync_failed",
            subject_type="listing",
            subject_id=listing_id,
            severity="WARN",
            metadata={"action": action, "reason": reason, "error": error[:500], "index": self.index_name},
        )
        return SyncResult(ok=False, listing_id=listing_id, action=action, reason=reason, error=error)

    def upsert(self, record: ListingRecord) -> SyncResult:
        listing_id = str(record.id)
        doc = listing_to_search_document(record)
        problems = validate_search_document(doc)
        if problems:
            return self._report_failure("upsert", listing_id, REASON_REJECTED, "; ".join(problems))
        try:
            self._ensure_ready()
            self._write([doc])
        except MeiliApiError as exc:
            return self._report_failure("upsert", listing_id, REASON_REJECTED, str(exc))
        except SearchUnavailable as exc:
            return self._report_failure("upsert", listing_id, REASON_UNAVAILABLE, str(exc))
        return SyncResult(ok=True, listing_id=listing_id, action="upsert")

    def remove(self, listing_id: str) -> SyncResult:
        listing_id = str(listing_id)
        try:
            # Missing documents and missing indexes both count as removed.
            self.client.delete_document(self.index_name, listing_id)
        except MeiliApiError as exc:
            return self._report_failure("remove", listing_id, REASON_REJECTED, str(exc))
        except SearchUnavailable as exc:
            return self._report_failure("remove", listing_id, REASON_UNAVAILABLE, str(exc))
        return SyncResult(ok=True, listing_id=listing_id, action="remove")

    def _task_succeeded(self, task: dict) -> bool:
        task_uid = (task or {}).get("taskUid")
        if task_uid is None or self.task_timeout_seconds <= 0:
            return True
        result = self.client.wait_for_task(int(task_uid), timeout=self.task_timeout_seconds)
        # A task still queued after the timeout is left to finish on its own.
        return str(result.get("status") or "") != "failed"

    def _reconcile_batch(self, docs: list[dict], report: ReconcileReport) -> None:
        try:
            batch_ok = self._task_succeeded(self._write(docs))
        except MeiliApiError as exc:
            current_app.logger.warning("search_reconcile_page_rejected size=%s err=%s", len(docs), exc)
            batch_ok = False
        except SearchUnavailable as exc:
            current_app.logger.warning("search_reconcile_page_failed size=%s err=%s", len(docs), exc)
            for doc in docs:
                report.add_failure(doc["id"])
            return
        if batch_ok:
            report.succeeded += len(docs)
            return
        # The index rejects a batch as a whole; retry one by one to find the offenders.
        for doc in docs:
            try:
                ok = self._task_succeeded(self._write([doc]))
            except (MeiliApiError, SearchUnavailable) as exc:
                current_app.logger.warning("search_reconcile_doc_failed listing_id=%s err=%s", doc["id"], exc)
                ok = False
            if ok:
                report.succeeded += 1
            else:
                current_app.logger.warning("search_reconcile_doc_rejected listing_id=%s", doc["id"])
                report.add_failure(doc["id"])

    def reconcile_all(self, page_size: int | None = None, *, prune: bool = False) -> ReconcileReport:
        """Re-project every listing in the store into the index.

        Raises ``SearchUnavailable`` only when the index cannot be prepared
        at all; page and document failures are counted in the report.
        """
        size = max(1, int(page_size or reconcile_page_size()))
        report = ReconcileReport()
        self._ensure_ready()
        offset = 0
        while True:
            records = self.store.page_by_creation(offset, size)
            if not records:
                break
            offset += len(records)
            report.pages += 1
            docs = []
            for record in records:
                report.scanned += 1
                doc = listing_to_search_document(record)
                problems = validate_search_document(doc)
                if problems:
                    current_app.logger.warning(
                        "search_reconcile_doc_invalid listing_id=%s problems=%s", record.id, "; ".join(problems)
                    )
                    report.add_failure(str(record.id))
                    continue
                docs.append(doc)
            if docs:
                self._reconcile_batch(docs, report)
        if prune:
            try:
                report.pruned = self._prune_orphans(size)
            except SearchUnavailable as exc:
                current_app.logger.warning("search_reconcile_prune_failed index=%s err=%s", self.index_name, exc)
        current_app.logger.info(
            "search_reconcile_done index=%s scanned=%s succeeded=%s failed=%s pruned=%s",
            self.index_name,
            report.scanned,
            report.succeeded,
            report.failed,
            report.pruned,
        )
        return report

    def _prune_orphans(self, page_size: int) -> int:
        """Delete index documents whose listing is gone from the store."""
        orphans: list[str] = []
        offset = 0
        while True:
            ids, total = self.client.list_document_ids(self.index_name, limit=page_size, offset=offset)
            if not ids:
                break
            offset += len(ids)
            existing = self.store.existing_ids(ids)
            orphans.extend(i for i in ids if i not in existing)
            if offset >= total:
                break
        if orphans:
            self.client.delete_documents(self.index_name, orphans)
        return len(orphans)
