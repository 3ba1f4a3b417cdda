from datetime import datetime

import sqlalchemy as sa

from classifieds.extensions import db


class User(db.Model):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)

    name = db.Column(db.String(120), nullable=False, default="")
    username = db.Column(db.String(80), nullable=True)
    email = db.Column(db.String(255), unique=True, index=True, nullable=False)

    role = db.Column(db.String(32), nullable=False, default="user")

    # Flipped once, by the first admin approval of one of the user's listings.
    is_first_post_approved = db.Column(db.Boolean, nullable=False, default=False, server_default=sa.false())

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    @property
    def display_name(self) -> str:
        return (self.username or self.name or "").strip()

    @property
    def is_admin(self) -> bool:
        return (self.role or "").strip().lower() == "admin"
