from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta
from typing import Callable

from flask import current_app

from classifieds.errors import BadRequest, Forbidden, NotFound
from classifieds.services.listings import moderation
from classifieds.services.listings.payload import (
    check_coordinates,
    has_detail_payload,
    parse_core_fields,
    parse_details,
)
from classifieds.services.listings.providers import (
    NOTIFY_APPROVED_LIVE,
    NOTIFY_CREATED_LIVE,
    NOTIFY_CREATED_PENDING,
    CategoryProvider,
    NotificationSink,
    SqlCategoryProvider,
    SqlNotificationSink,
    SqlUserProvider,
    UserProvider,
)
from classifieds.services.listings.store import ListingStore, parse_status
from classifieds.services.listings.types import ACTOR_ADMIN, ListingRecord, ListingStatus
from classifieds.services.search.query import SearchCriteria, SearchPage, SearchQueryEngine
from classifieds.services.search.synchronizer import SearchSynchronizer, SyncResult
from classifieds.utils.pagination import Pagination, clamp_page, clamp_page_size
from classifieds.utils.settings import (
    default_city,
    default_state,
    listing_lifespan_days,
    search_default_page_size,
    search_max_page_size,
    search_sync_retry_async,
)

# Visible to their owner only.
_OWNER_ONLY_STATUSES = (ListingStatus.PENDING_APPROVAL, ListingStatus.EXPIRED)


def _enqueue_search_retry(result: SyncResult) -> None:
    """Hand a transport-failed index write to the Celery retry task."""
    if not result.retryable or not search_sync_retry_async():
        return
    try:
        if result.action == "remove":
            from classifieds.tasks.search_tasks import search_delete_listing

            search_delete_listing.delay(result.listing_id)
        else:
            from classifieds.tasks.search_tasks import search_index_listing

            search_index_listing.delay(result.listing_id)
    except Exception:
        current_app.logger.exception(
            "search_retry_enqueue_failed action=%s listing_id=%s", result.action, result.listing_id
        )


class ListingService:
    """Write and read paths for listings.

    Writes go payload validation -> moderation -> store commit -> best-effort
    index sync. Reads of single listings come from the store, searches from
    the index.
    """

    def __init__(
        self,
        *,
        store: ListingStore | None = None,
        users: UserProvider | None = None,
        categories: CategoryProvider | None = None,
        notifications: NotificationSink | None = None,
        synchronizer: SearchSynchronizer | None = None,
        query_engine: SearchQueryEngine | None = None,
        policy: moderation.FirstPostPolicy | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.store = store or ListingStore()
        self.users = users or SqlUserProvider()
        self.categories = categories or SqlCategoryProvider()
        self.notifications = notifications or SqlNotificationSink()
        self.synchronizer = synchronizer or SearchSynchronizer(store=self.store)
        self.query_engine = query_engine or SearchQueryEngine()
        self.policy = policy or moderation.FirstPostPolicy.from_env()
        self.clock = clock or datetime.utcnow

    def _sync(self, record: ListingRecord) -> SyncResult:
        result = self.synchronizer.upsert(record)
        _enqueue_search_retry(result)
        return result

    def _notify(self, user_id: int, kind: str, message: str, listing_id: str | None) -> None:
        try:
            self.notifications.notify(user_id, kind, message, listing_id)
        except Exception:
            current_app.logger.exception("listing_notification_failed kind=%s listing_id=%s", kind, listing_id)

    def create_listing(self, user_id: int, payload: dict) -> ListingRecord:
        user = self.users.find_user_by_id(int(user_id))
        if user is None:
            raise NotFound("User not found")

        fields = parse_core_fields(payload, partial=False)
        check_coordinates(fields.get("latitude"), fields.get("longitude"))
        category = self.categories.find_category(fields["category_id"])
        if category is None:
            raise BadRequest("Invalid category", code="INVALID_CATEGORY")
        moderation.validate_sub_category(category, fields.get("sub_category_id"))
        details = parse_details(category.slug, payload)
        moderation.validate_details(category.slug, details)

        now = self.clock()
        pending = self.store.count_by_user(user.id, status=ListingStatus.PENDING_APPROVAL)
        decision = moderation.decide(user, category.slug, self.policy, pending, now=now)

        fields.setdefault("images", ())
        fields["city"] = fields.get("city") or default_city()
        fields["state"] = fields.get("state") or default_state()
        record = ListingRecord(
            user_id=user.id,
            status=decision.status,
            is_admin_approved=decision.is_admin_approved,
            expires_at=now + timedelta(days=listing_lifespan_days()),
            created_at=now,
            details=details,
            **fields,
        )
        saved = self.store.create(record)
        current_app.logger.info(
            "listing_created listing_id=%s user_id=%s status=%s", saved.id, saved.user_id, saved.status.value
        )

        if saved.status == ListingStatus.PENDING_APPROVAL:
            self._notify(
                saved.user_id,
                NOTIFY_CREATED_PENDING,
                f"Your listing '{saved.title}' was submitted and is awaiting approval.",
                saved.id,
            )
        else:
            self._notify(saved.user_id, NOTIFY_CREATED_LIVE, f"Your listing '{saved.title}' is now live.", saved.id)

        self._sync(saved)
        return saved

    def get_listing(self, listing_id: str, viewer_id: int | None = None) -> ListingRecord:
        record = self.store.find_by_id(listing_id)
        if record.status in _OWNER_ONLY_STATUSES and not record.is_owned_by(viewer_id):
            raise NotFound("Listing not found")
        return record

    def admin_get_listing(self, listing_id: str) -> ListingRecord:
        """Any status, including pending and expired listings hidden from the public."""
        return self.store.find_by_id(listing_id)

    def update_listing(self, listing_id: str, user_id: int, payload: dict) -> ListingRecord:
        existing = self.store.find_by_id(listing_id)
        if not existing.is_owned_by(user_id):
            raise Forbidden("You can only edit your own listings")
        if not isinstance(payload, dict):
            raise BadRequest("Request body must be a JSON object")
        if "category_id" in payload and str(payload.get("category_id")) != str(existing.category_id):
            raise BadRequest("Listing category cannot be changed", code="CATEGORY_CHANGE_NOT_ALLOWED")

        fields = parse_core_fields(payload, partial=True)
        merged = replace(existing, **fields)
        check_coordinates(merged.latitude, merged.longitude)

        category = self.categories.find_category(existing.category_id)
        if category is None:
            raise BadRequest("Invalid category", code="INVALID_CATEGORY")
        if "sub_category_id" in fields:
            moderation.validate_sub_category(category, merged.sub_category_id)
        if has_detail_payload(payload):
            merged = replace(merged, details=parse_details(category.slug, payload))
        moderation.validate_details(category.slug, merged.details)

        saved = self.store.update(merged)
        current_app.logger.info("listing_updated listing_id=%s user_id=%s", saved.id, user_id)
        self._sync(saved)
        return saved

    def delete_listing(self, listing_id: str, user_id: int) -> None:
        self.store.delete(listing_id, user_id)
        current_app.logger.info("listing_deleted listing_id=%s user_id=%s", listing_id, user_id)
        result = self.synchronizer.remove(listing_id)
        _enqueue_search_retry(result)

    def get_user_listings(
        self,
        user_id: int,
        *,
        status: str | None = None,
        category_slug: str | None = None,
        page=1,
        page_size=None,
    ) -> tuple[list[ListingRecord], Pagination]:
        size = clamp_page_size(
            page_size if page_size is not None else search_default_page_size(),
            default=search_default_page_size(),
            maximum=search_max_page_size(),
        )
        return self.store.find_by_user(
            int(user_id),
            status=parse_status(status) if status else None,
            category_slug=category_slug or None,
            page=clamp_page(page),
            page_size=size,
        )

    def admin_update_status(
        self,
        listing_id: str,
        new_status: str,
        *,
        admin_notes: str | None = None,
        actor_user_id: int | None = None,
    ) -> ListingRecord:
        target = parse_status(new_status)
        previous_status: list[ListingStatus] = []

        def _on_transition(previous: ListingRecord, applied: ListingStatus) -> None:
            # Runs inside the status transaction, so the flag and the status commit together.
            previous_status.append(previous.status)
            if previous.status == ListingStatus.PENDING_APPROVAL and applied == ListingStatus.ACTIVE:
                self.users.mark_first_post_approved(previous.user_id, commit=False)

        updated = self.store.transition_status(
            listing_id,
            target,
            actor=ACTOR_ADMIN,
            admin_notes=admin_notes,
            now=self.clock(),
            before_commit=_on_transition,
        )
        current_app.logger.info(
            "listing_status_changed listing_id=%s from=%s to=%s actor_user_id=%s",
            updated.id,
            previous_status[0].value if previous_status else "",
            updated.status.value,
            actor_user_id,
        )
        if previous_status == [ListingStatus.PENDING_APPROVAL] and updated.status == ListingStatus.ACTIVE:
            self._notify(
                updated.user_id,
                NOTIFY_APPROVED_LIVE,
                f"Your listing '{updated.title}' has been approved and is now live.",
                updated.id,
            )
        self._sync(updated)
        return updated

    def admin_approve_listing(
        self,
        listing_id: str,
        *,
        admin_notes: str | None = None,
        actor_user_id: int | None = None,
    ) -> ListingRecord:
        return self.admin_update_status(
            listing_id,
            ListingStatus.ACTIVE.value,
            admin_notes=admin_notes,
            actor_user_id=actor_user_id,
        )

    def search_listings(self, criteria: SearchCriteria) -> SearchPage:
        return self.query_engine.search(criteria, now=self.clock())

    def recent_listings(self, *, page=1, page_size=None) -> SearchPage:
        return self.query_engine.recent(page=clamp_page(page), page_size=page_size, now=self.clock())

    def upcoming_events(self, *, page=1, page_size=None) -> SearchPage:
        return self.query_engine.upcoming_events(page=clamp_page(page), page_size=page_size, now=self.clock())
