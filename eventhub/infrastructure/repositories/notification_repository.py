# eventhub/infrastructure/repositories/notification_repository.py

import json

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from eventhub.infrastructure.db.models import Notification, utcnow

PENDING = "PENDING"
PUBLISHED = "PUBLISHED"


class NotificationRepository:

    def __init__(self, db: Session):
        self.db = db

    def add_if_absent(
        self,
        user_id: str,
        type: str,
        title: str,
        message: str,
        payload: dict,
        channels: list[str],
        dedupe_key: str,
    ) -> Notification | None:
        existing = self.db.execute(
            select(Notification).where(Notification.dedupe_key == dedupe_key)
        ).scalar_one_or_none()
        if existing:
            return None

        notification = Notification(
            user_id=user_id,
            type=type,
            title=title,
            message=message,
            payload=json.dumps(payload, sort_keys=True, default=str),
            channels=",".join(channels),
            dedupe_key=dedupe_key,
            status=PENDING,
            attempts=0,
        )
        self.db.add(notification)
        return notification

    def get_by_id(self, notification_id: str) -> Notification | None:
        return self.db.get(Notification, notification_id)

    def list_for_user(
        self,
        user_id: str,
        unread_only: bool = False,
        limit: int = 20,
        offset: int = 0,
    ) -> list[Notification]:
        stmt = (
            select(Notification)
            .where(Notification.user_id == user_id)
            .where(Notification.dismissed_at.is_(None))
        )
        if unread_only:
            stmt = stmt.where(Notification.read_at.is_(None))
        stmt = stmt.order_by(Notification.created_at.desc()).limit(limit).offset(offset)
        return list(self.db.execute(stmt).scalars().all())

    def unread_count(self, user_id: str) -> int:
        stmt = (
            select(func.count())
            .select_from(Notification)
            .where(Notification.user_id == user_id)
            .where(Notification.read_at.is_(None))
            .where(Notification.dismissed_at.is_(None))
        )
        return self.db.execute(stmt).scalar_one()

    def mark_read(self, notification: Notification) -> None:
        if notification.read_at is None:
            notification.read_at = utcnow()

    def mark_all_read(self, user_id: str) -> int:
        stmt = (
            update(Notification)
            .where(Notification.user_id == user_id)
            .where(Notification.read_at.is_(None))
            .where(Notification.dismissed_at.is_(None))
            .values(read_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return self.db.execute(stmt).rowcount

    def dismiss(self, notification: Notification) -> None:
        if notification.dismissed_at is None:
            notification.dismissed_at = utcnow()

    def list_outbox(self, status: str = PENDING, limit: int = 50) -> list[Notification]:
        stmt = (
            select(Notification)
            .where(Notification.status == status)
            .order_by(Notification.created_at)
            .limit(limit)
        )
        return list(self.db.execute(stmt).scalars().all())

    def mark_published(self, notification: Notification) -> None:
        notification.status = PUBLISHED
        notification.published_at = utcnow()
        notification.attempts += 1
