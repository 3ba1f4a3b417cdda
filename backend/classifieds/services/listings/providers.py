from __future__ import annotations

import sqlalchemy as sa
from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from classifieds.extensions import db
from classifieds.models import Category, Notification, User
from classifieds.services.listings.types import CategoryInfo, UserInfo

NOTIFY_CREATED_PENDING = "listing_created_pending_approval"
NOTIFY_CREATED_LIVE = "listing_created_live"
NOTIFY_APPROVED_LIVE = "listing_approved_live"


class UserProvider:
    def find_user_by_id(self, user_id: int) -> UserInfo | None:
        raise NotImplementedError

    def mark_first_post_approved(self, user_id: int, *, commit: bool = True) -> bool:
        raise NotImplementedError


class CategoryProvider:
    def find_category(self, category_id: int) -> CategoryInfo | None:
        raise NotImplementedError


class NotificationSink:
    def notify(self, user_id: int, kind: str, message: str, listing_id: str | None = None) -> None:
        raise NotImplementedError


class SqlUserProvider(UserProvider):
    def find_user_by_id(self, user_id: int) -> UserInfo | None:
        user = db.session.get(User, int(user_id))
        if user is None:
            return None
        return UserInfo(
            id=int(user.id),
            display_name=user.display_name,
            is_first_post_approved=bool(user.is_first_post_approved),
            is_admin=bool(user.is_admin),
        )

    def mark_first_post_approved(self, user_id: int, *, commit: bool = True) -> bool:
        # Conditional update: only the first approval flips the flag.
        result = db.session.execute(
            sa.update(User)
            .where(User.id == int(user_id), User.is_first_post_approved.is_(False))
            .values(is_first_post_approved=True)
            .execution_options(synchronize_session=False)
        )
        if commit:
            db.session.commit()
        return int(result.rowcount or 0) == 1


def _category_info(row: Category, *, with_children: bool = True) -> CategoryInfo:
    children = ()
    if with_children:
        children = tuple(_category_info(child, with_children=False) for child in (row.children or []))
    return CategoryInfo(
        id=int(row.id),
        name=row.name or "",
        slug=row.slug or "",
        parent_id=int(row.parent_id) if row.parent_id is not None else None,
        sub_categories=children,
    )


class SqlCategoryProvider(CategoryProvider):
    def find_category(self, category_id: int) -> CategoryInfo | None:
        row = db.session.get(Category, int(category_id))
        if row is None or row.parent_id is not None:
            return None
        return _category_info(row)


class SqlNotificationSink(NotificationSink):
    """Queues in-app notifications; delivery happens elsewhere."""

    def notify(self, user_id: int, kind: str, message: str, listing_id: str | None = None) -> None:
        try:
            db.session.add(
                Notification(
                    user_id=int(user_id),
                    kind=str(kind)[:64],
                    message=str(message),
                    listing_id=listing_id,
                    status="queued",
                )
            )
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            current_app.logger.exception(
                "notification_enqueue_failed user_id=%s kind=%s listing_id=%s", user_id, kind, listing_id
            )
