from __future__ import annotations

from dataclasses import replace
from datetime import datetime
from typing import Callable, Iterable

import sqlalchemy as sa
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import lazyload

from classifieds.errors import BadRequest, Conflict, NotFound
from classifieds.extensions import db
from classifieds.models import (
    Category,
    Listing,
    ListingBabysittingDetails,
    ListingEventDetails,
    ListingHousingDetails,
    ListingImage,
)
from classifieds.services.listings.moderation import first_post_pending
from classifieds.services.listings.types import (
    ACTOR_ADMIN,
    ACTOR_SWEEPER,
    BabysittingDetails,
    EventDetails,
    HousingDetails,
    ImageRef,
    ListingDetails,
    ListingRecord,
    ListingStatus,
)
from classifieds.utils.pagination import Pagination, build_pagination, page_offset

# (from, to) -> actors allowed to apply it
ALLOWED_TRANSITIONS: dict[tuple[ListingStatus, ListingStatus], frozenset[str]] = {
    (ListingStatus.PENDING_APPROVAL, ListingStatus.ACTIVE): frozenset({ACTOR_ADMIN}),
    (ListingStatus.PENDING_APPROVAL, ListingStatus.REJECTED): frozenset({ACTOR_ADMIN}),
    (ListingStatus.PENDING_APPROVAL, ListingStatus.ADMIN_REMOVED): frozenset({ACTOR_ADMIN}),
    (ListingStatus.ACTIVE, ListingStatus.ADMIN_REMOVED): frozenset({ACTOR_ADMIN}),
    (ListingStatus.ACTIVE, ListingStatus.EXPIRED): frozenset({ACTOR_SWEEPER}),
}

_CORE_COLUMNS = (
    "user_id",
    "category_id",
    "sub_category_id",
    "title",
    "description",
    "contact_name",
    "contact_email",
    "contact_phone",
    "address_line1",
    "address_line2",
    "city",
    "state",
    "zip_code",
    "latitude",
    "longitude",
    "is_admin_approved",
    "admin_notes",
    "expires_at",
)


def is_transition_allowed(current: ListingStatus, target: ListingStatus, actor: str) -> bool:
    return actor in ALLOWED_TRANSITIONS.get((current, target), frozenset())


def parse_status(raw) -> ListingStatus:
    try:
        return ListingStatus(str(raw or "").strip().lower())
    except ValueError:
        raise BadRequest(f"Unknown listing status '{raw}'", code="INVALID_STATUS")


def _details_from_row(row: Listing) -> ListingDetails | None:
    if row.babysitting_details is not None:
        return BabysittingDetails(languages_spoken=tuple(row.babysitting_details.languages_spoken))
    if row.housing_details is not None:
        housing = row.housing_details
        return HousingDetails(
            property_type=housing.property_type,
            rent_details=housing.rent_details,
            sale_price=float(housing.sale_price) if housing.sale_price is not None else None,
        )
    if row.event_details is not None:
        event = row.event_details
        return EventDetails(
            event_date=event.event_date,
            event_time=event.event_time,
            organizer_name=event.organizer_name,
            venue_name=event.venue_name,
        )
    return None


def record_from_row(row: Listing, *, with_associations: bool = True) -> ListingRecord:
    values = {name: getattr(row, name) for name in _CORE_COLUMNS}
    record = ListingRecord(
        id=row.id,
        status=ListingStatus(row.status),
        created_at=row.created_at,
        updated_at=row.updated_at,
        **values,
    )
    if not with_associations:
        return record
    category = row.category
    sub_category = row.sub_category
    user = row.user
    return replace(
        record,
        details=_details_from_row(row),
        images=tuple(ImageRef(image_path=img.image_path, sort_order=int(img.sort_order or 0)) for img in row.images),
        category_name=category.name if category is not None else None,
        category_slug=category.slug if category is not None else None,
        sub_category_name=sub_category.name if sub_category is not None else None,
        sub_category_slug=sub_category.slug if sub_category is not None else None,
        user_display_name=user.display_name if user is not None else None,
    )


def _apply_details(row: Listing, details: ListingDetails | None) -> None:
    """Upsert the one detail row that applies and drop the others."""
    if isinstance(details, BabysittingDetails):
        target = row.babysitting_details or ListingBabysittingDetails()
        target.languages_spoken = list(details.languages_spoken)
        row.babysitting_details = target
    else:
        row.babysitting_details = None

    if isinstance(details, HousingDetails):
        target = row.housing_details or ListingHousingDetails()
        target.property_type = details.property_type
        target.rent_details = details.rent_details
        target.sale_price = details.sale_price
        row.housing_details = target
    else:
        row.housing_details = None

    if isinstance(details, EventDetails):
        target = row.event_details or ListingEventDetails()
        target.event_date = details.event_date
        target.event_time = details.event_time
        target.organizer_name = details.organizer_name
        target.venue_name = details.venue_name
        row.event_details = target
    else:
        row.event_details = None


def _apply_images(row: Listing, images: Iterable[ImageRef]) -> None:
    wanted = [(img.image_path, int(img.sort_order)) for img in images]
    current = [(img.image_path, int(img.sort_order or 0)) for img in row.images]
    if wanted == current:
        return
    row.images = [ListingImage(image_path=path, sort_order=order) for path, order in wanted]


class ListingStore:
    """Relational persistence for the listing aggregate.

    Every write commits its own transaction; the caller decides what to do
    after the commit (index sync, notifications).
    """

    def create(self, record: ListingRecord) -> ListingRecord:
        now = datetime.utcnow()
        row = Listing(status=record.status.value, created_at=record.created_at or now, updated_at=now)
        if record.id:
            row.id = record.id
        for name in _CORE_COLUMNS:
            setattr(row, name, getattr(record, name))
        _apply_details(row, record.details)
        _apply_images(row, record.images)
        db.session.add(row)
        try:
            db.session.commit()
        except IntegrityError as exc:
            db.session.rollback()
            if record.status == ListingStatus.PENDING_APPROVAL and self.count_by_user(
                record.user_id, status=ListingStatus.PENDING_APPROVAL
            ):
                # Lost a race with a concurrent create for the same unapproved user.
                raise first_post_pending()
            raise Conflict("Listing conflicts with an existing record", details={"reason": str(exc.orig)[:200]})
        return self.find_by_id(row.id)

    def find_by_id(self, listing_id: str, *, with_associations: bool = True) -> ListingRecord:
        listing_id = str(listing_id or "").strip()
        if not listing_id:
            raise NotFound("Listing not found")
        if with_associations:
            row = db.session.get(Listing, listing_id, populate_existing=True)
        else:
            row = db.session.execute(
                sa.select(Listing).where(Listing.id == listing_id).options(lazyload("*"))
            ).scalar_one_or_none()
        if row is None:
            raise NotFound("Listing not found")
        return record_from_row(row, with_associations=with_associations)

    def update(self, record: ListingRecord) -> ListingRecord:
        row = db.session.get(Listing, str(record.id or ""))
        if row is None:
            raise NotFound("Listing not found")
        if int(row.category_id) != int(record.category_id):
            raise BadRequest("Listing category cannot be changed", code="CATEGORY_CHANGE_NOT_ALLOWED")
        for name in _CORE_COLUMNS:
            if name in ("user_id", "category_id"):
                continue
            setattr(row, name, getattr(record, name))
        _apply_details(row, record.details)
        _apply_images(row, record.images)
        row.updated_at = datetime.utcnow()
        try:
            db.session.commit()
        except IntegrityError as exc:
            db.session.rollback()
            raise Conflict("Listing update conflicts with an existing record", details={"reason": str(exc.orig)[:200]})
        return self.find_by_id(row.id)

    def delete(self, listing_id: str, requesting_user_id: int) -> None:
        row = db.session.get(Listing, str(listing_id or ""))
        # Same answer for "missing" and "not yours".
        if row is None or requesting_user_id is None or int(row.user_id) != int(requesting_user_id):
            raise NotFound("Listing not found")
        db.session.delete(row)
        db.session.commit()

    def transition_status(
        self,
        listing_id: str,
        new_status,
        *,
        actor: str = ACTOR_ADMIN,
        admin_notes: str | None = None,
        now: datetime | None = None,
        before_commit: Callable[[ListingRecord, ListingStatus], None] | None = None,
    ) -> ListingRecord:
        target = parse_status(new_status)
        current = self.find_by_id(listing_id, with_associations=False)
        if not is_transition_allowed(current.status, target, actor):
            raise Conflict(
                f"Cannot change listing status from '{current.status.value}' to '{target.value}'",
                code="INVALID_STATUS_TRANSITION",
            )
        values = {"status": target.value, "updated_at": now or datetime.utcnow()}
        if target == ListingStatus.ACTIVE:
            values["is_admin_approved"] = True
        if admin_notes is not None:
            values["admin_notes"] = admin_notes
        # Compare-and-set on the status read above.
        result = db.session.execute(
            sa.update(Listing)
            .where(Listing.id == current.id, Listing.status == current.status.value)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if int(result.rowcount or 0) != 1:
            db.session.rollback()
            raise Conflict("Listing status changed concurrently, retry the operation", code="STATUS_RACE")
        if before_commit is not None:
            before_commit(current, target)
        db.session.commit()
        return self.find_by_id(current.id)

    def find_expired(self, now: datetime, *, limit: int | None = None) -> list[ListingRecord]:
        query = (
            sa.select(Listing)
            .where(Listing.expires_at <= now, Listing.status != ListingStatus.EXPIRED.value)
            .order_by(Listing.expires_at.asc(), Listing.id.asc())
            .options(lazyload("*"))
        )
        if limit:
            query = query.limit(int(limit))
        rows = db.session.execute(query).scalars().all()
        return [record_from_row(row, with_associations=False) for row in rows]

    def count_by_user(self, user_id: int, *, status: ListingStatus | None = None) -> int:
        query = sa.select(sa.func.count(Listing.id)).where(Listing.user_id == int(user_id))
        if status is not None:
            query = query.where(Listing.status == status.value)
        return int(db.session.execute(query).scalar_one() or 0)

    def find_by_user(
        self,
        user_id: int,
        *,
        status: ListingStatus | None = None,
        category_slug: str | None = None,
        page: int = 1,
        page_size: int = 10,
    ) -> tuple[list[ListingRecord], Pagination]:
        query = sa.select(Listing).where(Listing.user_id == int(user_id))
        if status is not None:
            query = query.where(Listing.status == status.value)
        if category_slug:
            query = query.join(Category, Category.id == Listing.category_id).where(
                Category.slug == category_slug.strip().lower()
            )
        total = db.session.execute(sa.select(sa.func.count()).select_from(query.subquery())).scalar_one()
        rows = (
            db.session.execute(
                query.order_by(Listing.created_at.desc(), Listing.id.desc())
                .offset(page_offset(page, page_size))
                .limit(page_size)
            )
            .unique()
            .scalars()
            .all()
        )
        return [record_from_row(row) for row in rows], build_pagination(total, page, page_size)

    def page_by_creation(self, offset: int, limit: int) -> list[ListingRecord]:
        rows = (
            db.session.execute(
                sa.select(Listing)
                .order_by(Listing.created_at.asc(), Listing.id.asc())
                .offset(max(0, int(offset)))
                .limit(max(1, int(limit)))
            )
            .unique()
            .scalars()
            .all()
        )
        return [record_from_row(row) for row in rows]

    def existing_ids(self, listing_ids: Iterable[str]) -> set[str]:
        ids = [str(i) for i in listing_ids if i]
        if not ids:
            return set()
        rows = db.session.execute(sa.select(Listing.id).where(Listing.id.in_(ids))).scalars().all()
        return {str(i) for i in rows}
