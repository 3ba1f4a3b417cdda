from classifieds.models.user import User
from classifieds.models.category import Category
from classifieds.models.listing import (
    Listing,
    ListingBabysittingDetails,
    ListingEventDetails,
    ListingHousingDetails,
    ListingImage,
)
from classifieds.models.notification import Notification
from classifieds.models.platform_event import PlatformEvent
from classifieds.models.job_run import JobRun

__all__ = [
    "User",
    "Category",
    "Listing",
    "ListingBabysittingDetails",
    "ListingEventDetails",
    "ListingHousingDetails",
    "ListingImage",
    "Notification",
    "PlatformEvent",
    "JobRun",
]
