"""Initial-state decision for newly submitted listings.

Everything here is pure: callers pass in the user, the policy and the
current time, and get back a decision or a ``BadRequest``/``Forbidden``.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime

from classifieds.errors import BadRequest, Forbidden
from classifieds.services.listings.types import (
    CATEGORY_BUSINESSES,
    DETAIL_TYPE_BY_CATEGORY,
    PROPERTY_FOR_RENT,
    PROPERTY_FOR_SALE,
    BabysittingDetails,
    CategoryInfo,
    EventDetails,
    HousingDetails,
    ListingDetails,
    ListingStatus,
    ModerationDecision,
    UserInfo,
)
from classifieds.utils.settings import first_post_approval_until


@dataclass(frozen=True)
class FirstPostPolicy:
    """First-post approval window, closed at a fixed calendar deadline."""

    active_until: datetime | None = None

    def is_active(self, now: datetime) -> bool:
        return self.active_until is not None and now < self.active_until

    @classmethod
    def from_env(cls) -> "FirstPostPolicy":
        return cls(active_until=first_post_approval_until())


def first_post_pending() -> Forbidden:
    return Forbidden(
        "Your first listing is still awaiting approval. You can post again once it is approved.",
        code="FIRST_POST_PENDING",
    )


def decide(
    user: UserInfo,
    category_slug: str,
    policy: FirstPostPolicy,
    prior_listing_count: int,
    *,
    now: datetime,
) -> ModerationDecision:
    # category_slug is accepted so per-category policies can hook in here;
    # the first-post rule applies to every category today.
    if not policy.is_active(now) or user.is_first_post_approved:
        return ModerationDecision(status=ListingStatus.ACTIVE, is_admin_approved=True)
    if int(prior_listing_count or 0) > 0:
        raise first_post_pending()
    return ModerationDecision(status=ListingStatus.PENDING_APPROVAL, is_admin_approved=False)


def validate_details(category_slug: str, details: ListingDetails | None) -> None:
    expected = DETAIL_TYPE_BY_CATEGORY.get((category_slug or "").strip().lower())
    if expected is None:
        if details is not None:
            raise BadRequest("This category does not accept listing details", code="DETAILS_NOT_ALLOWED")
        return
    if details is None:
        raise BadRequest(f"Listings in '{category_slug}' require {expected.kind} details", code="DETAILS_REQUIRED")
    if not isinstance(details, expected):
        raise BadRequest(
            f"{details.kind} details do not match category '{category_slug}'",
            code="DETAILS_CATEGORY_MISMATCH",
        )

    if isinstance(details, BabysittingDetails):
        if not [lang for lang in details.languages_spoken if str(lang).strip()]:
            raise BadRequest("At least one language spoken is required for babysitting listings")
    elif isinstance(details, HousingDetails):
        _validate_housing(details)
    elif isinstance(details, EventDetails):
        if details.event_date is None:
            raise BadRequest("Event date is required for event listings")


def _validate_housing(details: HousingDetails) -> None:
    if details.property_type == PROPERTY_FOR_RENT:
        if not (details.rent_details or "").strip():
            raise BadRequest("Rent details are required for 'for_rent' housing listings")
        if details.sale_price is not None:
            raise BadRequest("Sale price is not allowed for 'for_rent' housing listings")
    elif details.property_type == PROPERTY_FOR_SALE:
        if details.sale_price is None or not math.isfinite(float(details.sale_price)) or float(details.sale_price) <= 0:
            raise BadRequest("A positive sale price is required for 'for_sale' housing listings")
        if (details.rent_details or "").strip():
            raise BadRequest("Rent details are not allowed for 'for_sale' housing listings")
    else:
        raise BadRequest("Property type must be 'for_rent' or 'for_sale'")


def validate_sub_category(category: CategoryInfo, sub_category_id: int | None) -> CategoryInfo | None:
    if sub_category_id is None:
        if category.slug == CATEGORY_BUSINESSES:
            raise BadRequest("A subcategory is required for business listings", code="SUB_CATEGORY_REQUIRED")
        return None
    sub = category.find_sub_category(sub_category_id)
    if sub is None:
        raise BadRequest("Subcategory does not belong to the selected category", code="INVALID_SUB_CATEGORY")
    return sub
