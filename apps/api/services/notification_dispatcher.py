"""
Notification dispatcher.
Persists role- or user-addressed notifications, pushes them to live
subscribers and answers per-recipient listing and read-state queries.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Dict, FrozenSet, List, Optional, Sequence, Tuple

from sqlalchemy import func, or_, and_
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select
from starlette.concurrency import run_in_threadpool

from exceptions import NotFound, PermissionDenied, ValidationError
from models import (
    DeliveryChannel, Notification, NotificationLog, NotificationRead,
    TargetRole, User, UserRole, enum_value,
)
from services.connection_registry import (
    AllAudience, Audience, ConnectionRegistry, RoleAudience, UserAudience,
)
from utils.notification_channels import NotificationChannel

logger = logging.getLogger(__name__)

# Which audiences each sender role may address
ROLE_TARGET_ALLOW_LIST: Dict[UserRole, FrozenSet[str]] = {
    UserRole.PATIENT: frozenset({TargetRole.DOCTOR.value}),
    UserRole.DOCTOR: frozenset({TargetRole.MANAGER.value, TargetRole.LAB_TECHNICIAN.value}),
    UserRole.MANAGER: frozenset({
        TargetRole.ADMIN.value, TargetRole.DOCTOR.value,
        TargetRole.LAB_TECHNICIAN.value, TargetRole.ALL.value,
    }),
    UserRole.ADMIN: frozenset({
        TargetRole.MANAGER.value, TargetRole.DOCTOR.value,
        TargetRole.LAB_TECHNICIAN.value, TargetRole.ALL.value,
    }),
    UserRole.LAB_TECHNICIAN: frozenset({TargetRole.DOCTOR.value, TargetRole.MANAGER.value}),
}

MAX_PAGE_SIZE = 200


def parse_audience(target_role: Optional[str] = None, target_user_id: Optional[int] = None) -> Audience:
    """Build an Audience from the wire fields; exactly one must be given"""
    if target_user_id is not None and target_role:
        raise ValidationError("Provide either target_role or target_user_id, not both")
    if target_user_id is not None:
        return UserAudience(user_id=int(target_user_id))
    role = (target_role or TargetRole.ALL.value).strip().lower()
    if role == TargetRole.ALL.value:
        return AllAudience()
    if role not in {r.value for r in TargetRole}:
        raise ValidationError("Invalid target_role", details={"allowed": [r.value for r in TargetRole]})
    return RoleAudience(role=role)


@dataclass
class NotificationFilters:
    unread_only: bool = False
    date_from: Optional[date] = None
    date_to: Optional[date] = None
    q: Optional[str] = None
    page: int = 1
    limit: int = 50


@dataclass
class NotificationView:
    notification: Notification
    read: bool

    def to_dict(self) -> dict:
        return {**self.notification.model_dump(), "read": self.read}


def notification_payload(notification: Notification, sender: Optional[User] = None) -> dict:
    """Push payload, including sender display fields"""
    return {
        "id": notification.id,
        "title": notification.title,
        "message": notification.message,
        "target_role": notification.target_role,
        "target_user_id": notification.target_user_id,
        "created_by": notification.created_by,
        "created_at": notification.created_at.isoformat(),
        "sender_role": enum_value(sender.role) if sender else None,
        "sender_name": sender.full_name if sender else None,
    }


class NotificationDispatcher:
    def __init__(
        self,
        session: Session,
        registry: ConnectionRegistry,
        channels: Sequence[NotificationChannel] = (),
    ):
        self.session = session
        self.registry = registry
        self.channels = list(channels)

    # ---------- create ----------

    def _check_permission(self, sender: User, audience: Audience) -> None:
        allowed = ROLE_TARGET_ALLOW_LIST.get(UserRole(sender.role), frozenset())
        if isinstance(audience, AllAudience):
            target = TargetRole.ALL.value
        elif isinstance(audience, RoleAudience):
            target = audience.role
        elif isinstance(audience, UserAudience):
            recipient = self.session.get(User, audience.user_id)
            if not recipient or not recipient.is_active:
                raise NotFound("Recipient not found")
            target = enum_value(recipient.role)
        else:
            raise TypeError(f"Unknown audience: {audience!r}")

        if target not in allowed:
            raise PermissionDenied(
                f"Role '{enum_value(sender.role)}' may not notify '{target}'",
                details={"allowed": sorted(allowed)},
            )

    async def create(
        self,
        title: str,
        message: str,
        audience: Audience,
        created_by: User,
        notify_out_of_band: bool = False,
    ) -> Notification:
        title = (title or "").strip()
        message = (message or "").strip()
        if not title or not message:
            raise ValidationError("Missing required fields: title, message")

        # Database work stays off the event loop
        notification, payload = await run_in_threadpool(self._persist, title, message, audience, created_by)

        try:
            delivered = await self.registry.publish(audience, "notification", payload)
            logger.debug(f"Notification {notification.id} pushed to {delivered} connection(s)")
        except Exception:
            # Persistence is the durable record; push is best-effort
            logger.exception(f"Live push for notification {notification.id} failed")

        if notify_out_of_band and isinstance(audience, UserAudience):
            await run_in_threadpool(self._deliver_out_of_band, notification, audience.user_id)

        return notification

    def _persist(self, title: str, message: str, audience: Audience, created_by: User) -> Tuple[Notification, dict]:
        self._check_permission(created_by, audience)

        notification = Notification(title=title, message=message, created_by=created_by.id)
        if isinstance(audience, UserAudience):
            notification.target_user_id = audience.user_id
        elif isinstance(audience, RoleAudience):
            notification.target_role = audience.role
        else:
            notification.target_role = TargetRole.ALL.value

        self.session.add(notification)
        self.session.commit()
        self.session.refresh(notification)
        logger.info(f"Notification {notification.id} created by user {created_by.id} for {audience}")
        return notification, notification_payload(notification, created_by)

    def _deliver_out_of_band(self, notification: Notification, user_id: int) -> None:
        recipient = self.session.get(User, user_id)
        for channel in self.channels:
            target = recipient.phone_number if channel.kind == DeliveryChannel.SMS else recipient.email
            if not target:
                continue
            log = NotificationLog(notification_id=notification.id, channel=channel.kind.value, target=target)
            try:
                result = channel.send(target, notification.message, notification.title)
                log.status = "sent" if result.ok else "failed"
                log.provider_response = str(result.provider_response)[:500] if result.provider_response else None
            except Exception as e:
                logger.warning(f"{channel.kind.value} delivery of notification {notification.id} failed: {e}")
                log.status = "failed"
                log.error_message = str(e)[:500]
            self.session.add(log)
        self.session.commit()
        self.session.refresh(notification)

    # ---------- queries ----------

    def _visible_clause(self, user: User):
        return or_(
            Notification.target_role.in_([TargetRole.ALL.value, enum_value(user.role)]),
            Notification.target_user_id == user.id,
        )

    def _read_ids(self, user: User, notification_ids: List[int]) -> set:
        if not notification_ids:
            return set()
        rows = self.session.exec(
            select(NotificationRead.notification_id).where(
                NotificationRead.user_id == user.id,
                NotificationRead.notification_id.in_(notification_ids),
            )
        ).all()
        return set(rows)

    def list_for(self, user: User, filters: Optional[NotificationFilters] = None) -> List[NotificationView]:
        filters = filters or NotificationFilters()
        if filters.date_from and filters.date_to and filters.date_from > filters.date_to:
            raise ValidationError("'from' must not be after 'to'")

        query = select(Notification).where(self._visible_clause(user))

        if filters.date_from:
            query = query.where(Notification.created_at >= datetime.combine(filters.date_from, time.min))
        if filters.date_to:
            # Inclusive of the whole `to` day
            query = query.where(Notification.created_at < datetime.combine(filters.date_to + timedelta(days=1), time.min))
        if filters.q:
            needle = filters.q.strip().lower()
            if needle:
                query = query.where(or_(
                    func.lower(Notification.title).contains(needle, autoescape=True),
                    func.lower(Notification.message).contains(needle, autoescape=True),
                ))
        if filters.unread_only:
            already_read = select(NotificationRead.notification_id).where(NotificationRead.user_id == user.id)
            query = query.where(Notification.id.not_in(already_read))

        page = max(1, filters.page)
        limit = min(MAX_PAGE_SIZE, max(1, filters.limit))
        query = (
            query.order_by(Notification.created_at.desc(), Notification.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        notifications = self.session.exec(query).all()

        read_ids = self._read_ids(user, [n.id for n in notifications])
        return [NotificationView(notification=n, read=n.id in read_ids) for n in notifications]

    def unread_count(self, user: User) -> int:
        already_read = select(NotificationRead.notification_id).where(NotificationRead.user_id == user.id)
        query = select(func.count(Notification.id)).where(
            and_(self._visible_clause(user), Notification.id.not_in(already_read))
        )
        return self.session.exec(query).one()

    def mark_read(self, user: User, notification_id: int) -> None:
        notification = self.session.get(Notification, notification_id)
        if not notification or not self._is_visible(notification, user):
            raise NotFound("Notification not found")

        existing = self.session.exec(
            select(NotificationRead).where(
                NotificationRead.user_id == user.id,
                NotificationRead.notification_id == notification_id,
            )
        ).first()
        if existing:
            return

        self.session.add(NotificationRead(user_id=user.id, notification_id=notification_id))
        try:
            self.session.commit()
        except IntegrityError:
            # A concurrent request inserted the same pair first
            self.session.rollback()

    @staticmethod
    def _is_visible(notification: Notification, user: User) -> bool:
        if notification.target_user_id is not None:
            return notification.target_user_id == user.id
        return notification.target_role in (TargetRole.ALL.value, enum_value(user.role))
