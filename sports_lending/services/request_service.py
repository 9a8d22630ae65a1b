from __future__ import annotations

import logging
import math
from datetime import datetime
from typing import Any

from sqlalchemy import and_, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from sports_lending.models.lending_models import (
    OPEN_REQUEST_STATUSES,
    Admin,
    BorrowRequest,
    Equipment,
    RequestExtension,
    RequestHistory,
    Student,
)
from sports_lending.schemas.requests import CreateRequestDto
from sports_lending.services.clock import utc_now
from sports_lending.services.equipment_service import borrow_equipment, is_available, return_equipment
from sports_lending.services.errors import BusinessRuleViolation, InputValidationError, LendingError, NotFoundError
from sports_lending.services.notification_service import create_request_update_notification


SECONDS_PER_DAY = 86400
REQUEST_SORT_COLUMNS = {
    "requestDate": BorrowRequest.RequestDate,
    "borrowDate": BorrowRequest.BorrowDate,
    "returnDate": BorrowRequest.ReturnDate,
    "status": BorrowRequest.Status,
    "createdAt": BorrowRequest.CreatedDate,
}
STORED_STATUSES = ("pending", "approved", "rejected", "borrowed", "returned")

logger = logging.getLogger("sports_lending.requests")


def ceil_days(start: datetime, end: datetime) -> int:
    return math.ceil((end - start).total_seconds() / SECONDS_PER_DAY)


def request_duration(request: BorrowRequest) -> int:
    return ceil_days(request.BorrowDate, request.ReturnDate)


def days_overdue(request: BorrowRequest, now: datetime | None = None) -> int:
    moment = now or utc_now()
    if request.Status != "borrowed" or moment <= request.ReturnDate:
        return 0
    return ceil_days(request.ReturnDate, moment)


def is_overdue(request: BorrowRequest, now: datetime | None = None) -> bool:
    return days_overdue(request, now) > 0


def display_status(request: BorrowRequest, now: datetime | None = None) -> str:
    return "overdue" if is_overdue(request, now) else request.Status


def overdue_filter(now: datetime | None = None):
    return and_(BorrowRequest.Status == "borrowed", BorrowRequest.ReturnDate < (now or utc_now()))


def _serialize_history(entry: RequestHistory) -> dict[str, Any]:
    return {
        "action": entry.Action,
        "timestamp": entry.Timestamp,
        "performedBy": {"type": entry.ActorType, "id": entry.ActorID},
        "details": entry.Details,
    }


def _serialize_extension(extension: RequestExtension) -> dict[str, Any]:
    return {
        "requestedDate": extension.RequestedDate,
        "approvedDate": extension.ApprovedDate,
        "approvedBy": extension.ApprovedBy,
        "previousReturnDate": extension.PreviousReturnDate,
        "newReturnDate": extension.NewReturnDate,
        "reason": extension.Reason,
    }


def serialize_request(request: BorrowRequest, *, detailed: bool = False, now: datetime | None = None) -> dict[str, Any]:
    moment = now or utc_now()
    student = request.Student
    equipment = request.Equipment
    payload = {
        "id": request.RequestID,
        "student": {
            "id": student.StudentID,
            "studentId": student.StudentNumber,
            "fullName": student.FullName,
            "email": student.Email,
            "department": student.Department,
        } if student is not None else {"id": request.StudentID},
        "equipment": {
            "id": equipment.EquipmentID,
            "name": equipment.Name,
            "category": equipment.Category,
            "brand": equipment.Brand,
        } if equipment is not None else {"id": request.EquipmentID},
        "quantity": request.Quantity,
        "requestDate": request.RequestDate,
        "borrowDate": request.BorrowDate,
        "returnDate": request.ReturnDate,
        "actualReturnDate": request.ActualReturnDate,
        "status": request.Status,
        "displayStatus": display_status(request, moment),
        "approvedBy": request.ApprovedBy,
        "approvedAt": request.ApprovedAt,
        "rejectedBy": request.RejectedBy,
        "rejectedAt": request.RejectedAt,
        "rejectionReason": request.RejectionReason,
        "purpose": request.Purpose,
        "location": request.Location,
        "specialRequirements": request.SpecialRequirements,
        "notes": {"admin": request.AdminNotes, "student": request.StudentNotes},
        "isUrgent": bool(request.IsUrgent),
        "isDamaged": bool(request.IsDamaged),
        "duration": request_duration(request),
        "daysOverdue": days_overdue(request, moment),
        "isOverdue": is_overdue(request, moment),
    }
    if detailed:
        if student is not None:
            payload["student"].update({"year": student.Year, "semester": student.Semester})
        if equipment is not None:
            payload["equipment"].update({"description": equipment.Description, "images": list(equipment.Images or [])})
        payload["damageReport"] = {
            "description": request.DamageDescription,
            "reportedAt": request.DamageReportedAt,
            "reportedBy": request.DamageReportedBy,
        } if request.IsDamaged else None
        payload["history"] = [_serialize_history(entry) for entry in request.History]
        payload["extensions"] = [_serialize_extension(extension) for extension in request.Extensions]
    return payload


def _request_query():
    return select(BorrowRequest).options(
        selectinload(BorrowRequest.Student),
        selectinload(BorrowRequest.Equipment),
        selectinload(BorrowRequest.History),
        selectinload(BorrowRequest.Extensions),
    )


def get_request(db: Session, request_id: int) -> BorrowRequest:
    request = db.execute(_request_query().where(BorrowRequest.RequestID == request_id)).scalars().first()
    if request is None:
        raise NotFoundError("Request not found")
    return request


def _add_history(request: BorrowRequest, action: str, actor_type: str, actor_id: int | None, details: str | None = None) -> None:
    request.History.append(
        RequestHistory(
            Action=action,
            Timestamp=utc_now(),
            ActorType=actor_type,
            ActorID=actor_id,
            Details=details,
        )
    )


def _claim_status(db: Session, request: BorrowRequest, expected: str, target: str, message: str) -> None:
    """Compare-and-swap on Status; a concurrent transition makes this fail instead of double-applying."""
    result = db.execute(
        update(BorrowRequest)
        .where(BorrowRequest.RequestID == request.RequestID)
        .where(BorrowRequest.Status == expected)
        .values(Status=target, UpdatedDate=utc_now())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise BusinessRuleViolation(message)
    request.Status = target


def _bump_student(db: Session, student_id: int, **increments: int) -> None:
    values = {column: getattr(Student, column) + amount for column, amount in increments.items()}
    db.execute(
        update(Student)
        .where(Student.StudentID == student_id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )


def _finish_transition(db: Session, request: BorrowRequest, action: str) -> BorrowRequest:
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        logger.warning("Request transition failed request_id=%s action=%s reason=integrity", request.RequestID, action)
        raise BusinessRuleViolation("Request could not be updated; it conflicts with another request") from exc
    logger.info("Request %s request_id=%s status=%s", action, request.RequestID, request.Status)
    refreshed = get_request(db, request.RequestID)
    db.refresh(refreshed)
    if refreshed.Student is not None:
        db.refresh(refreshed.Student)
    return refreshed


def _run_transition(db: Session, request_id: int, action: str, apply) -> BorrowRequest:
    request = get_request(db, request_id)
    try:
        apply(request)
    except LendingError as exc:
        db.rollback()
        logger.warning("Request %s rejected request_id=%s reason=%s", action, request_id, exc.message)
        raise
    except Exception:
        db.rollback()
        raise
    return _finish_transition(db, request, action)


def find_open_request(db: Session, student_id: int, equipment_id: int) -> BorrowRequest | None:
    return db.execute(
        select(BorrowRequest)
        .where(BorrowRequest.StudentID == student_id)
        .where(BorrowRequest.EquipmentID == equipment_id)
        .where(BorrowRequest.Status.in_(OPEN_REQUEST_STATUSES))
    ).scalars().first()


def create_request(db: Session, student: Student, payload: CreateRequestDto) -> BorrowRequest:
    equipment = db.get(Equipment, payload.equipmentId)
    if equipment is None or not equipment.IsActive:
        raise NotFoundError("Equipment not found")
    if not is_available(equipment, payload.quantity):
        raise BusinessRuleViolation(
            f"Equipment not available in requested quantity. Available: {equipment.QuantityAvailable}"
        )
    now = utc_now()
    if payload.borrowDate < now:
        raise InputValidationError("Borrow date cannot be in the past", errors=[{"field": "borrowDate", "message": "must not be in the past"}])
    if payload.returnDate <= payload.borrowDate:
        raise InputValidationError("Return date must be after borrow date", errors=[{"field": "returnDate", "message": "must be after borrowDate"}])
    if find_open_request(db, student.StudentID, equipment.EquipmentID) is not None:
        raise BusinessRuleViolation("You already have a pending or approved request for this equipment")

    request = BorrowRequest(
        StudentID=student.StudentID,
        EquipmentID=equipment.EquipmentID,
        Quantity=payload.quantity,
        RequestDate=now,
        BorrowDate=payload.borrowDate,
        ReturnDate=payload.returnDate,
        Status="pending",
        Purpose=payload.purpose.strip(),
        Location=payload.location.strip(),
        SpecialRequirements=payload.specialRequirements,
        StudentNotes=payload.studentNotes,
        IsUrgent=payload.isUrgent,
    )
    _add_history(request, "created", "Student", student.StudentID, "Request created")
    db.add(request)
    try:
        db.flush()
        _bump_student(db, student.StudentID, TotalRequests=1)
        db.commit()
    except IntegrityError as exc:
        # The partial unique index caught a concurrent duplicate.
        db.rollback()
        raise BusinessRuleViolation("You already have a pending or approved request for this equipment") from exc
    except Exception:
        db.rollback()
        raise
    logger.info("Request created request_id=%s student_id=%s equipment_id=%s qty=%s", request.RequestID, student.StudentID, equipment.EquipmentID, request.Quantity)
    return get_request(db, request.RequestID)


def approve_request(db: Session, request_id: int, admin: Admin, notes: str | None = None) -> BorrowRequest:
    def apply(request: BorrowRequest) -> None:
        if request.Status != "pending":
            raise BusinessRuleViolation("Request is not pending")
        equipment = request.Equipment
        if equipment is None or not is_available(equipment, request.Quantity):
            raise BusinessRuleViolation("Equipment not available in requested quantity")
        _claim_status(db, request, "pending", "approved", "Request is not pending")
        borrow_equipment(db, equipment, request.Quantity)
        request.ApprovedBy = admin.AdminID
        request.ApprovedAt = utc_now()
        if notes:
            request.AdminNotes = notes
        _add_history(request, "approved", "Admin", admin.AdminID, "Request approved")
        _bump_student(db, request.StudentID, ApprovedRequests=1)
        create_request_update_notification(db, request, "approved", admin.AdminID)

    return _run_transition(db, request_id, "approved", apply)


def reject_request(db: Session, request_id: int, admin: Admin, reason: str) -> BorrowRequest:
    cleaned = (reason or "").strip()

    def apply(request: BorrowRequest) -> None:
        if not cleaned:
            raise InputValidationError("Rejection reason is required", errors=[{"field": "reason", "message": "Rejection reason is required"}])
        if request.Status != "pending":
            raise BusinessRuleViolation("Request is not pending")
        _claim_status(db, request, "pending", "rejected", "Request is not pending")
        request.RejectedBy = admin.AdminID
        request.RejectedAt = utc_now()
        request.RejectionReason = cleaned
        _add_history(request, "rejected", "Admin", admin.AdminID, f"Request rejected: {cleaned}")
        _bump_student(db, request.StudentID, RejectedRequests=1)
        create_request_update_notification(db, request, "rejected", admin.AdminID)

    return _run_transition(db, request_id, "rejected", apply)


def mark_borrowed(db: Session, request_id: int, admin: Admin) -> BorrowRequest:
    def apply(request: BorrowRequest) -> None:
        if request.Status != "approved":
            raise BusinessRuleViolation("Request is not approved")
        _claim_status(db, request, "approved", "borrowed", "Request is not approved")
        _add_history(request, "borrowed", "Admin", admin.AdminID, "Equipment borrowed")
        _bump_student(db, request.StudentID, TotalEquipmentBorrowed=request.Quantity)
        create_request_update_notification(db, request, "borrowed", admin.AdminID)

    return _run_transition(db, request_id, "borrowed", apply)


def mark_returned(
    db: Session,
    request_id: int,
    admin: Admin,
    is_damaged: bool = False,
    damage_description: str | None = None,
    notes: str | None = None,
) -> BorrowRequest:
    def apply(request: BorrowRequest) -> None:
        if request.Status != "borrowed":
            raise BusinessRuleViolation("Request is not borrowed")
        returned_at = utc_now()
        days = max(ceil_days(request.BorrowDate, returned_at), 0)
        _claim_status(db, request, "borrowed", "returned", "Request is not borrowed")
        return_equipment(db, request.Equipment, request.Quantity, damaged=is_damaged, days=days)
        request.ActualReturnDate = returned_at
        request.IsDamaged = bool(is_damaged)
        if notes:
            request.AdminNotes = notes
        if is_damaged:
            request.DamageDescription = damage_description
            request.DamageReportedAt = returned_at
            request.DamageReportedBy = admin.AdminID
            _add_history(request, "damaged", "Admin", admin.AdminID, damage_description or "Equipment returned damaged")
        _add_history(request, "returned", "Admin", admin.AdminID, "Equipment returned")
        _bump_student(db, request.StudentID, TotalDaysBorrowed=days)
        create_request_update_notification(db, request, "returned", admin.AdminID)

    return _run_transition(db, request_id, "returned", apply)


def extend_request(db: Session, request_id: int, admin: Admin, new_return_date: datetime, reason: str | None = None) -> BorrowRequest:
    """Replace the return date. Availability and the borrow date are not re-checked."""

    def apply(request: BorrowRequest) -> None:
        if request.Status not in {"approved", "borrowed"}:
            raise BusinessRuleViolation("Only approved or borrowed requests can be extended")
        now = utc_now()
        previous = request.ReturnDate
        request.ReturnDate = new_return_date
        request.UpdatedDate = now
        request.Extensions.append(
            RequestExtension(
                RequestedDate=now,
                ApprovedDate=now,
                ApprovedBy=admin.AdminID,
                PreviousReturnDate=previous,
                NewReturnDate=new_return_date,
                Reason=reason,
            )
        )
        _add_history(request, "extended", "Admin", admin.AdminID, f"Return date extended to {new_return_date.isoformat()}")

    return _run_transition(db, request_id, "extended", apply)


def list_requests(
    db: Session,
    *,
    student_id: int | None = None,
    status: str | None = None,
    page: int = 1,
    limit: int = 10,
    sort_by: str = "requestDate",
    sort_order: str = "desc",
) -> tuple[list[BorrowRequest], int]:
    stmt = select(BorrowRequest)
    if student_id is not None:
        stmt = stmt.where(BorrowRequest.StudentID == student_id)
    if status == "overdue":
        stmt = stmt.where(overdue_filter())
    elif status:
        stmt = stmt.where(BorrowRequest.Status == status)
    total = db.execute(select(func.count()).select_from(stmt.subquery())).scalar() or 0
    column = REQUEST_SORT_COLUMNS.get(sort_by, BorrowRequest.RequestDate)
    ordering = column.asc() if sort_order == "asc" else column.desc()
    rows = db.execute(
        stmt.options(selectinload(BorrowRequest.Student), selectinload(BorrowRequest.Equipment))
        .order_by(ordering, BorrowRequest.RequestID.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    ).scalars().all()
    return list(rows), int(total)


def list_overdue(db: Session, limit: int | None = None) -> list[BorrowRequest]:
    stmt = (
        select(BorrowRequest)
        .options(selectinload(BorrowRequest.Student), selectinload(BorrowRequest.Equipment))
        .where(overdue_filter())
        .order_by(BorrowRequest.ReturnDate.asc())
    )
    if limit:
        stmt = stmt.limit(limit)
    return list(db.execute(stmt).scalars().all())


def status_counts(db: Session, student_id: int | None = None) -> dict[str, int]:
    stmt = select(BorrowRequest.Status, func.count(BorrowRequest.RequestID)).group_by(BorrowRequest.Status)
    overdue_stmt = select(func.count(BorrowRequest.RequestID)).where(overdue_filter())
    if student_id is not None:
        stmt = stmt.where(BorrowRequest.StudentID == student_id)
        overdue_stmt = overdue_stmt.where(BorrowRequest.StudentID == student_id)
    counts = {status: 0 for status in STORED_STATUSES}
    for status, count in db.execute(stmt).all():
        counts[status] = int(count)
    counts["overdue"] = int(db.execute(overdue_stmt).scalar() or 0)
    counts["total"] = sum(counts[status] for status in STORED_STATUSES)
    return counts


def request_statistics(db: Session) -> dict[str, Any]:
    recent = db.execute(
        select(BorrowRequest)
        .options(selectinload(BorrowRequest.Student), selectinload(BorrowRequest.Equipment))
        .order_by(BorrowRequest.RequestDate.desc(), BorrowRequest.RequestID.desc())
        .limit(5)
    ).scalars().all()
    return {
        "statistics": status_counts(db),
        "recentRequests": [serialize_request(request) for request in recent],
        "overdueRequests": [serialize_request(request) for request in list_overdue(db)],
    }
