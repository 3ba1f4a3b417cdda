from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, time
from enum import Enum
from typing import Union


class ListingStatus(str, Enum):
    PENDING_APPROVAL = "pending_approval"
    ACTIVE = "active"
    EXPIRED = "expired"
    REJECTED = "rejected"
    ADMIN_REMOVED = "admin_removed"


ACTOR_ADMIN = "admin"
ACTOR_SWEEPER = "sweeper"

CATEGORY_BABYSITTING = "baby-sitting"
CATEGORY_HOUSING = "housing"
CATEGORY_EVENTS = "events"
CATEGORY_BUSINESSES = "businesses"

PROPERTY_FOR_RENT = "for_rent"
PROPERTY_FOR_SALE = "for_sale"


@dataclass(frozen=True)
class BabysittingDetails:
    languages_spoken: tuple[str, ...] = ()

    kind = "babysitting"

    def to_dict(self) -> dict:
        return {"languages_spoken": list(self.languages_spoken)}


@dataclass(frozen=True)
class HousingDetails:
    property_type: str
    rent_details: str | None = None
    sale_price: float | None = None

    kind = "housing"

    def to_dict(self) -> dict:
        return {
            "property_type": self.property_type,
            "rent_details": self.rent_details,
            "sale_price": self.sale_price,
        }


@dataclass(frozen=True)
class EventDetails:
    event_date: date
    event_time: time | None = None
    organizer_name: str | None = None
    venue_name: str | None = None

    kind = "events"

    def to_dict(self) -> dict:
        return {
            "event_date": self.event_date.isoformat(),
            "event_time": self.event_time.isoformat() if self.event_time else None,
            "organizer_name": self.organizer_name,
            "venue_name": self.venue_name,
        }


ListingDetails = Union[BabysittingDetails, HousingDetails, EventDetails]

# Which detail variant a category slug carries; other slugs carry none.
DETAIL_TYPE_BY_CATEGORY: dict[str, type] = {
    CATEGORY_BABYSITTING: BabysittingDetails,
    CATEGORY_HOUSING: HousingDetails,
    CATEGORY_EVENTS: EventDetails,
}

DETAIL_PAYLOAD_KEYS: dict[type, str] = {
    BabysittingDetails: "babysitting_details",
    HousingDetails: "housing_details",
    EventDetails: "event_details",
}


@dataclass(frozen=True)
class ImageRef:
    image_path: str
    sort_order: int = 0


@dataclass(frozen=True)
class ListingRecord:
    """Listing aggregate as the rest of the engine sees it."""

    user_id: int
    category_id: int
    title: str
    description: str
    status: ListingStatus
    is_admin_approved: bool
    expires_at: datetime
    id: str | None = None
    sub_category_id: int | None = None
    contact_name: str | None = None
    contact_email: str | None = None
    contact_phone: str | None = None
    address_line1: str | None = None
    address_line2: str | None = None
    city: str | None = None
    state: str | None = None
    zip_code: str | None = None
    latitude: float | None = None
    longitude: float | None = None
    admin_notes: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    details: ListingDetails | None = None
    images: tuple[ImageRef, ...] = ()

    # Joined display fields, populated on reads only.
    category_name: str | None = None
    category_slug: str | None = None
    sub_category_name: str | None = None
    sub_category_slug: str | None = None
    user_display_name: str | None = None

    @property
    def has_location(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    def is_owned_by(self, user_id) -> bool:
        return user_id is not None and int(user_id) == int(self.user_id)

    def to_dict(self) -> dict:
        payload = {
            "id": self.id,
            "user_id": self.user_id,
            "user_display_name": self.user_display_name or "",
            "category_id": self.category_id,
            "category_name": self.category_name or "",
            "category_slug": self.category_slug or "",
            "sub_category_id": self.sub_category_id,
            "sub_category_name": self.sub_category_name,
            "sub_category_slug": self.sub_category_slug,
            "title": self.title,
            "description": self.description,
            "contact_name": self.contact_name,
            "contact_email": self.contact_email,
            "contact_phone": self.contact_phone,
            "address_line1": self.address_line1,
            "address_line2": self.address_line2,
            "city": self.city,
            "state": self.state,
            "zip_code": self.zip_code,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "status": self.status.value,
            "is_admin_approved": bool(self.is_admin_approved),
            "admin_notes": self.admin_notes,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "images": [{"image_path": img.image_path, "sort_order": img.sort_order} for img in self.images],
            "babysitting_details": None,
            "housing_details": None,
            "event_details": None,
        }
        if self.details is not None:
            payload[DETAIL_PAYLOAD_KEYS[type(self.details)]] = self.details.to_dict()
        return payload


@dataclass(frozen=True)
class ModerationDecision:
    status: ListingStatus
    is_admin_approved: bool


@dataclass(frozen=True)
class CategoryInfo:
    id: int
    name: str
    slug: str
    parent_id: int | None = None
    sub_categories: tuple["CategoryInfo", ...] = field(default=())

    def find_sub_category(self, sub_category_id) -> "CategoryInfo | None":
        for sub in self.sub_categories:
            if int(sub.id) == int(sub_category_id):
                return sub
        return None


@dataclass(frozen=True)
class UserInfo:
    id: int
    display_name: str
    is_first_post_approved: bool
    is_admin: bool = False
