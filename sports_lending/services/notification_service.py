from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from sqlalchemy import and_, exists, func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from sports_lending.models.lending_models import (
    BorrowRequest,
    Equipment,
    Notification,
    NotificationRead,
    NotificationRecipient,
)
from sports_lending.services.clock import utc_now
from sports_lending.services.errors import NotFoundError


REQUEST_UPDATE_MESSAGES = {
    "approved": "Your equipment request has been approved!",
    "rejected": "Your equipment request has been rejected.",
    "borrowed": "Your equipment has been borrowed successfully.",
    "returned": "Your equipment has been returned successfully.",
}

logger = logging.getLogger("sports_lending.notifications")


def visibility_filter(user_id: int, user_model: str, now: datetime | None = None):
    """Active, unexpired, and addressed to everyone or to this user."""
    moment = now or utc_now()
    addressed = exists().where(
        and_(
            NotificationRecipient.NotificationID == Notification.NotificationID,
            NotificationRecipient.UserID == user_id,
            NotificationRecipient.UserModel == user_model,
        )
    )
    return and_(
        Notification.IsActive.is_(True),
        or_(Notification.RecipientsAll.is_(True), addressed),
        or_(Notification.ExpiresAt.is_(None), Notification.ExpiresAt > moment),
    )


def read_filter(user_id: int, user_model: str):
    return exists().where(
        and_(
            NotificationRead.NotificationID == Notification.NotificationID,
            NotificationRead.UserID == user_id,
            NotificationRead.UserModel == user_model,
        )
    )


def is_read_by(notification: Notification, user_id: int, user_model: str) -> bool:
    return any(
        read.UserID == user_id and read.UserModel == user_model
        for read in notification.Reads
    )


def serialize_notification(notification: Notification, user_id: int | None = None, user_model: str | None = None) -> dict[str, Any]:
    payload = {
        "id": notification.NotificationID,
        "title": notification.Title,
        "message": notification.Message,
        "type": notification.Type,
        "category": notification.Category,
        "priority": notification.Priority,
        "recipients": {
            "all": bool(notification.RecipientsAll),
            "students": [row.UserID for row in notification.Recipients if row.UserModel == "Student"],
            "admins": [row.UserID for row in notification.Recipients if row.UserModel == "Admin"],
        },
        "readCount": len(notification.Reads),
        "sentAt": notification.SentAt,
        "expiresAt": notification.ExpiresAt,
        "isActive": bool(notification.IsActive),
        "actionUrl": notification.ActionUrl,
        "actionText": notification.ActionText,
        "metadata": {
            "equipmentId": notification.EquipmentID,
            "requestId": notification.RequestID,
            "studentId": notification.StudentID,
            "customData": notification.CustomData or {},
        },
        "tags": list(notification.Tags or []),
        "createdBy": notification.CreatedBy,
    }
    if user_id is not None and user_model is not None:
        payload["isRead"] = is_read_by(notification, user_id, user_model)
    return payload


def create_notification(
    db: Session,
    *,
    title: str,
    message: str,
    created_by: int,
    type: str = "info",
    category: str = "general",
    priority: str = "medium",
    recipients: dict[str, Any] | None = None,
    expires_at: datetime | None = None,
    action_url: str | None = None,
    action_text: str | None = None,
    equipment_id: int | None = None,
    request_id: int | None = None,
    student_id: int | None = None,
    custom_data: dict[str, Any] | None = None,
    tags: list[str] | None = None,
) -> Notification:
    """Stage a notification on the session. The caller owns the commit."""
    selector = recipients if recipients is not None else {"all": True}
    notification = Notification(
        Title=title,
        Message=message,
        Type=type,
        Category=category,
        Priority=priority,
        RecipientsAll=bool(selector.get("all")),
        SentAt=utc_now(),
        ExpiresAt=expires_at,
        IsActive=True,
        ActionUrl=action_url,
        ActionText=action_text,
        EquipmentID=equipment_id,
        RequestID=request_id,
        StudentID=student_id,
        CustomData=custom_data,
        Tags=list(tags or []),
        CreatedBy=created_by,
    )
    for user_model, key in (("Student", "students"), ("Admin", "admins")):
        for user_id in dict.fromkeys(int(value) for value in selector.get(key) or []):
            notification.Recipients.append(NotificationRecipient(UserID=user_id, UserModel=user_model))
    db.add(notification)
    return notification


def create_request_update_notification(db: Session, request: BorrowRequest, status: str, admin_id: int) -> Notification:
    return create_notification(
        db,
        title=f"Request {status.capitalize()}",
        message=REQUEST_UPDATE_MESSAGES.get(status, f"Your equipment request is now {status}."),
        type="request_update",
        category="request",
        priority="medium",
        recipients={"all": False, "students": [request.StudentID]},
        action_url=f"/requests/{request.RequestID}",
        action_text="View Request",
        request_id=request.RequestID,
        student_id=request.StudentID,
        equipment_id=request.EquipmentID,
        created_by=admin_id,
    )


def create_new_equipment_notification(db: Session, equipment: Equipment, admin_id: int) -> Notification:
    return create_notification(
        db,
        title="New Equipment Available!",
        message=f"{equipment.Name} is now available for borrowing in {equipment.Category}.",
        type="new_equipment",
        category="equipment",
        priority="medium",
        recipients={"all": True},
        action_url=f"/equipment/{equipment.EquipmentID}",
        action_text="View Equipment",
        equipment_id=equipment.EquipmentID,
        created_by=admin_id,
    )


def get_visible_notification(db: Session, notification_id: int, user_id: int, user_model: str) -> Notification:
    notification = db.execute(
        select(Notification)
        .options(selectinload(Notification.Reads), selectinload(Notification.Recipients))
        .where(Notification.NotificationID == notification_id)
        .where(visibility_filter(user_id, user_model))
    ).scalars().first()
    if notification is None:
        raise NotFoundError("Notification not found")
    return notification


def list_notifications(
    db: Session,
    user_id: int,
    user_model: str,
    *,
    type: str | None = None,
    category: str | None = None,
    unread_only: bool = False,
    page: int = 1,
    limit: int = 20,
) -> tuple[list[Notification], int]:
    stmt = select(Notification).where(visibility_filter(user_id, user_model))
    if type:
        stmt = stmt.where(Notification.Type == type)
    if category:
        stmt = stmt.where(Notification.Category == category)
    if unread_only:
        stmt = stmt.where(~read_filter(user_id, user_model))
    total = db.execute(select(func.count()).select_from(stmt.subquery())).scalar() or 0
    rows = db.execute(
        stmt.options(selectinload(Notification.Reads), selectinload(Notification.Recipients))
        .order_by(Notification.SentAt.desc(), Notification.NotificationID.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    ).scalars().all()
    return list(rows), int(total)


def get_unread_count(db: Session, user_id: int, user_model: str) -> int:
    return int(
        db.execute(
            select(func.count(Notification.NotificationID))
            .where(visibility_filter(user_id, user_model))
            .where(~read_filter(user_id, user_model))
        ).scalar()
        or 0
    )


def mark_as_read(db: Session, notification: Notification, user_id: int, user_model: str) -> bool:
    """Idempotent. Returns False when the pair was already recorded."""
    if is_read_by(notification, user_id, user_model):
        return False
    notification.Reads.append(NotificationRead(UserID=user_id, UserModel=user_model, ReadAt=utc_now()))
    try:
        db.commit()
    except IntegrityError:
        # A concurrent mark for the same pair won the insert.
        db.rollback()
        db.refresh(notification)
        return False
    return True


def mark_all_as_read(db: Session, user_id: int, user_model: str) -> int:
    rows = db.execute(
        select(Notification)
        .options(selectinload(Notification.Reads))
        .where(visibility_filter(user_id, user_model))
        .where(~read_filter(user_id, user_model))
    ).scalars().all()
    now = utc_now()
    for notification in rows:
        notification.Reads.append(NotificationRead(UserID=user_id, UserModel=user_model, ReadAt=now))
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        logger.warning("Concurrent read-all for user_model=%s user_id=%s; retry to finish", user_model, user_id)
        raise
    return len(rows)


def soft_delete_notification(db: Session, notification_id: int) -> Notification:
    notification = db.get(Notification, notification_id)
    if notification is None or not notification.IsActive:
        raise NotFoundError("Notification not found")
    notification.IsActive = False
    db.commit()
    return notification


def notification_statistics(db: Session) -> dict[str, Any]:
    active = Notification.IsActive.is_(True)
    read_counts = (
        select(NotificationRead.NotificationID, func.count(NotificationRead.NotificationReadID).label("reads"))
        .group_by(NotificationRead.NotificationID)
        .subquery()
    )
    by_type = db.execute(
        select(
            Notification.Type,
            func.count(Notification.NotificationID),
            func.coalesce(func.sum(read_counts.c.reads), 0),
        )
        .outerjoin(read_counts, read_counts.c.NotificationID == Notification.NotificationID)
        .where(active)
        .group_by(Notification.Type)
    ).all()
    by_category = db.execute(
        select(Notification.Category, func.count(Notification.NotificationID))
        .where(active)
        .group_by(Notification.Category)
        .order_by(func.count(Notification.NotificationID).desc())
    ).all()
    by_priority = db.execute(
        select(Notification.Priority, func.count(Notification.NotificationID))
        .where(active)
        .group_by(Notification.Priority)
    ).all()
    return {
        "typeStats": [{"type": row[0], "count": int(row[1]), "readCount": int(row[2])} for row in by_type],
        "categoryStats": [{"category": row[0], "count": int(row[1])} for row in by_category],
        "priorityStats": [{"priority": row[0], "count": int(row[1])} for row in by_priority],
    }
