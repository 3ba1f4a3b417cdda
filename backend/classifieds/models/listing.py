import json
import uuid
from datetime import datetime

import sqlalchemy as sa

from classifieds.extensions import db


def _new_listing_id() -> str:
    return str(uuid.uuid4())


class Listing(db.Model):
    __tablename__ = "listings"
    __table_args__ = (
        sa.Index("ix_listings_status_expires_at", "status", "expires_at"),
        sa.Index("ix_listings_created_at_id", "created_at", "id"),
        # At most one listing awaiting review per user.
        sa.Index(
            "uq_listings_one_pending_per_user",
            "user_id",
            unique=True,
            sqlite_where=sa.text("status = 'pending_approval'"),
            postgresql_where=sa.text("status = 'pending_approval'"),
        ),
    )

    id = db.Column(db.String(36), primary_key=True, default=_new_listing_id)

    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    category_id = db.Column(db.Integer, db.ForeignKey("categories.id"), nullable=False, index=True)
    sub_category_id = db.Column(db.Integer, db.ForeignKey("categories.id"), nullable=True, index=True)

    title = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=False)

    contact_name = db.Column(db.String(120), nullable=True)
    contact_email = db.Column(db.String(255), nullable=True)
    contact_phone = db.Column(db.String(32), nullable=True)

    address_line1 = db.Column(db.String(255), nullable=True)
    address_line2 = db.Column(db.String(255), nullable=True)
    city = db.Column(db.String(100), nullable=True)
    state = db.Column(db.String(50), nullable=True)
    zip_code = db.Column(db.String(20), nullable=True)
    latitude = db.Column(db.Float, nullable=True)
    longitude = db.Column(db.Float, nullable=True)

    status = db.Column(db.String(32), nullable=False, default="pending_approval", index=True)
    is_admin_approved = db.Column(db.Boolean, nullable=False, default=False, server_default=sa.false())
    admin_notes = db.Column(db.Text, nullable=True)

    expires_at = db.Column(db.DateTime, nullable=False, index=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    user = db.relationship("User", lazy="joined")
    category = db.relationship("Category", foreign_keys=[category_id], lazy="joined")
    sub_category = db.relationship("Category", foreign_keys=[sub_category_id], lazy="joined")

    babysitting_details = db.relationship(
        "ListingBabysittingDetails",
        uselist=False,
        cascade="all, delete-orphan",
        lazy="selectin",
    )
    housing_details = db.relationship(
        "ListingHousingDetails",
        uselist=False,
        cascade="all, delete-orphan",
        lazy="selectin",
    )
    event_details = db.relationship(
        "ListingEventDetails",
        uselist=False,
        cascade="all, delete-orphan",
        lazy="selectin",
    )
    images = db.relationship(
        "ListingImage",
        cascade="all, delete-orphan",
        order_by="ListingImage.sort_order",
        lazy="selectin",
    )


class ListingBabysittingDetails(db.Model):
    __tablename__ = "listing_details_babysitting"

    listing_id = db.Column(db.String(36), db.ForeignKey("listings.id", ondelete="CASCADE"), primary_key=True)
    languages_spoken_json = db.Column(db.Text, nullable=False, default="[]")

    @property
    def languages_spoken(self) -> list[str]:
        try:
            parsed = json.loads(self.languages_spoken_json or "[]")
        except Exception:
            return []
        return [str(item) for item in parsed] if isinstance(parsed, list) else []

    @languages_spoken.setter
    def languages_spoken(self, values) -> None:
        self.languages_spoken_json = json.dumps([str(v) for v in (values or [])], separators=(",", ":"))


class ListingHousingDetails(db.Model):
    __tablename__ = "listing_details_housing"

    listing_id = db.Column(db.String(36), db.ForeignKey("listings.id", ondelete="CASCADE"), primary_key=True)
    property_type = db.Column(db.String(16), nullable=False)  # for_rent | for_sale
    rent_details = db.Column(db.Text, nullable=True)
    sale_price = db.Column(db.Float, nullable=True)


class ListingEventDetails(db.Model):
    __tablename__ = "listing_details_events"

    listing_id = db.Column(db.String(36), db.ForeignKey("listings.id", ondelete="CASCADE"), primary_key=True)
    event_date = db.Column(db.Date, nullable=False, index=True)
    event_time = db.Column(db.Time, nullable=True)
    organizer_name = db.Column(db.String(255), nullable=True)
    venue_name = db.Column(db.String(255), nullable=True)


class ListingImage(db.Model):
    __tablename__ = "listing_images"

    id = db.Column(db.Integer, primary_key=True)
    listing_id = db.Column(db.String(36), db.ForeignKey("listings.id", ondelete="CASCADE"), nullable=False, index=True)
    image_path = db.Column(db.String(1024), nullable=False)
    sort_order = db.Column(db.Integer, nullable=False, default=0)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
