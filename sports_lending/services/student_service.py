from __future__ import annotations

import hmac
import logging
import os
import secrets
from datetime import timedelta
from typing import Any

from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from sports_lending.models.lending_models import BorrowRequest, Equipment, Student
from sports_lending.schemas.auth import StudentRegistration
from sports_lending.schemas.students import StudentProfileUpdate
from sports_lending.services.clock import utc_now
from sports_lending.services.errors import AuthenticationError, BusinessRuleViolation, InputValidationError, NotFoundError
from sports_lending.services.request_service import serialize_request, status_counts


OTP_TTL_SECONDS = int(os.environ.get("OTP_TTL_SECONDS") or "300")
OTP_LENGTH = 6
OTP_MAX_ATTEMPTS = int(os.environ.get("OTP_MAX_ATTEMPTS") or "5")
STUDENT_SORT_COLUMNS = {
    "createdAt": Student.CreatedDate,
    "fullName": Student.FullName,
    "studentId": Student.StudentNumber,
    "department": Student.Department,
    "year": Student.Year,
}

logger = logging.getLogger("sports_lending.students")
otp_logger = logging.getLogger("sports_lending.otp")


def normalize_student_number(raw: str | None) -> str:
    return (raw or "").strip().upper()


def serialize_student(student: Student) -> dict[str, Any]:
    return {
        "id": student.StudentID,
        "studentId": student.StudentNumber,
        "fullName": student.FullName,
        "email": student.Email,
        "phoneNumber": student.PhoneNumber,
        "department": student.Department,
        "year": student.Year,
        "semester": student.Semester,
        "idCardImage": student.IdCardImage,
        "profileImage": student.ProfileImage,
        "isVerified": bool(student.IsVerified),
        "isActive": bool(student.IsActive),
        "lastLogin": student.LastLogin,
        "address": student.Address or {},
        "emergencyContact": student.EmergencyContact or {},
        "preferences": student.Preferences or {},
        "statistics": {
            "totalRequests": student.TotalRequests or 0,
            "approvedRequests": student.ApprovedRequests or 0,
            "rejectedRequests": student.RejectedRequests or 0,
            "totalEquipmentBorrowed": student.TotalEquipmentBorrowed or 0,
            "totalDaysBorrowed": student.TotalDaysBorrowed or 0,
        },
        "createdAt": student.CreatedDate,
    }


def get_student(db: Session, student_id: int) -> Student:
    student = db.get(Student, student_id)
    if student is None:
        raise NotFoundError("Student not found")
    return student


def find_by_identity(db: Session, student_number: str, phone_number: str) -> Student | None:
    return db.execute(
        select(Student)
        .where(Student.StudentNumber == normalize_student_number(student_number))
        .where(Student.PhoneNumber == (phone_number or "").strip())
    ).scalars().first()


def _issue_otp(student: Student) -> str:
    code = f"{secrets.randbelow(10 ** OTP_LENGTH):0{OTP_LENGTH}d}"
    student.OtpCode = code
    student.OtpExpiresAt = utc_now() + timedelta(seconds=OTP_TTL_SECONDS)
    student.OtpAttempts = 0
    return code


def _clear_otp(student: Student) -> None:
    student.OtpCode = None
    student.OtpExpiresAt = None
    student.OtpAttempts = 0


def _deliver_otp(student: Student, code: str, reason: str) -> None:
    # SMS delivery is not wired up; the log line is the delivery channel.
    otp_logger.info("OTP for %s (%s, student_id=%s): %s", student.PhoneNumber, reason, student.StudentNumber, code)


def register_student(db: Session, payload: StudentRegistration, id_card_url: str) -> Student:
    student_number = normalize_student_number(payload.studentId)
    email = payload.email.strip().lower()
    phone = payload.phoneNumber.strip()
    duplicate = db.execute(
        select(Student.StudentID).where(
            or_(
                Student.StudentNumber == student_number,
                Student.Email == email,
                Student.PhoneNumber == phone,
            )
        )
    ).first()
    if duplicate is not None:
        raise BusinessRuleViolation("Student with this ID, email, or phone number already exists")

    student = Student(
        StudentNumber=student_number,
        FullName=payload.fullName.strip(),
        Email=email,
        PhoneNumber=phone,
        Department=payload.department.strip(),
        Year=payload.year,
        Semester=payload.semester,
        IdCardImage=id_card_url,
        IsVerified=False,
        IsActive=True,
    )
    code = _issue_otp(student)
    db.add(student)
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise BusinessRuleViolation("Student with this ID, email, or phone number already exists") from exc
    logger.info("Student registered student_id=%s", student.StudentNumber)
    _deliver_otp(student, code, "registration")
    return student


def issue_login_otp(db: Session, student_number: str, phone_number: str, reason: str = "login") -> Student:
    """Overwrites any outstanding code. Used by both login and resend."""
    student = find_by_identity(db, student_number, phone_number)
    if student is None:
        raise NotFoundError("Student not found")
    if not student.IsActive:
        raise AuthenticationError("Account is deactivated")
    code = _issue_otp(student)
    db.commit()
    _deliver_otp(student, code, reason)
    return student


def verify_otp(db: Session, student_number: str, phone_number: str, otp: str) -> Student:
    student = find_by_identity(db, student_number, phone_number)
    if student is None:
        raise NotFoundError("Student not found")
    if not student.IsActive:
        raise AuthenticationError("Account is deactivated")
    if not student.OtpCode or not student.OtpExpiresAt:
        raise InputValidationError("Invalid or expired OTP")
    if utc_now() > student.OtpExpiresAt:
        _clear_otp(student)
        db.commit()
        raise InputValidationError("Invalid or expired OTP")
    if not hmac.compare_digest(student.OtpCode, (otp or "").strip()):
        student.OtpAttempts = (student.OtpAttempts or 0) + 1
        if student.OtpAttempts >= OTP_MAX_ATTEMPTS:
            # Burnt; a fresh code has to be requested.
            _clear_otp(student)
            otp_logger.warning("OTP discarded after %s failed attempts student_id=%s", OTP_MAX_ATTEMPTS, student.StudentNumber)
        db.commit()
        raise InputValidationError("Invalid or expired OTP")

    _clear_otp(student)
    student.IsVerified = True
    student.LastLogin = utc_now()
    db.commit()
    return student


def update_profile(db: Session, student: Student, payload: StudentProfileUpdate, profile_image_url: str | None = None) -> Student:
    data = payload.model_dump(exclude_unset=True)
    for field, column in (("fullName", "FullName"), ("department", "Department"), ("year", "Year"), ("semester", "Semester")):
        if data.get(field) is not None:
            setattr(student, column, data[field].strip() if isinstance(data[field], str) else data[field])
    for field, column in (("address", "Address"), ("emergencyContact", "EmergencyContact"), ("preferences", "Preferences")):
        if data.get(field) is not None:
            setattr(student, column, data[field])
    if profile_image_url:
        student.ProfileImage = profile_image_url
    db.commit()
    db.refresh(student)
    return student


def set_verified(db: Session, student_id: int) -> Student:
    student = get_student(db, student_id)
    student.IsVerified = True
    _clear_otp(student)
    db.commit()
    return student


def deactivate_student(db: Session, student_id: int) -> Student:
    student = get_student(db, student_id)
    student.IsActive = False
    db.commit()
    return student


def list_students(
    db: Session,
    *,
    search: str | None = None,
    department: str | None = None,
    year: int | None = None,
    verified: bool | None = None,
    page: int = 1,
    limit: int = 20,
    sort_by: str = "createdAt",
    sort_order: str = "desc",
) -> tuple[list[Student], int]:
    stmt = select(Student)
    if search and search.strip():
        pattern = f"%{search.strip().lower()}%"
        stmt = stmt.where(
            or_(
                func.lower(Student.StudentNumber).like(pattern),
                func.lower(Student.FullName).like(pattern),
                func.lower(Student.Email).like(pattern),
                func.lower(Student.PhoneNumber).like(pattern),
            )
        )
    if department:
        stmt = stmt.where(Student.Department == department)
    if year is not None:
        stmt = stmt.where(Student.Year == year)
    if verified is not None:
        stmt = stmt.where(Student.IsVerified.is_(verified))
    total = db.execute(select(func.count()).select_from(stmt.subquery())).scalar() or 0
    column = STUDENT_SORT_COLUMNS.get(sort_by, Student.CreatedDate)
    ordering = column.asc() if sort_order == "asc" else column.desc()
    rows = db.execute(
        stmt.order_by(ordering, Student.StudentID.desc()).offset((page - 1) * limit).limit(limit)
    ).scalars().all()
    return list(rows), int(total)


def list_departments(db: Session) -> list[str]:
    rows = db.execute(
        select(Student.Department).where(Student.IsActive.is_(True)).distinct().order_by(Student.Department)
    ).scalars().all()
    return [row for row in rows if row]


def student_statistics(db: Session, student: Student) -> dict[str, Any]:
    usage = db.execute(
        select(
            Equipment.Category,
            func.count(BorrowRequest.RequestID),
            func.coalesce(func.sum(BorrowRequest.Quantity), 0),
        )
        .join(Equipment, Equipment.EquipmentID == BorrowRequest.EquipmentID)
        .where(BorrowRequest.StudentID == student.StudentID)
        .where(BorrowRequest.Status.in_(("approved", "borrowed", "returned")))
        .group_by(Equipment.Category)
        .order_by(func.count(BorrowRequest.RequestID).desc())
    ).all()
    recent = db.execute(
        select(BorrowRequest)
        .options(selectinload(BorrowRequest.Student), selectinload(BorrowRequest.Equipment))
        .where(BorrowRequest.StudentID == student.StudentID)
        .order_by(BorrowRequest.RequestDate.desc(), BorrowRequest.RequestID.desc())
        .limit(5)
    ).scalars().all()
    profile = serialize_student(student)
    return {
        "student": {
            key: profile[key]
            for key in ("id", "studentId", "fullName", "department", "year", "semester", "isVerified", "statistics")
        },
        "requestStats": status_counts(db, student_id=student.StudentID),
        "equipmentUsage": [
            {"category": row[0], "count": int(row[1]), "totalQuantity": int(row[2])}
            for row in usage
        ],
        "recentActivity": [serialize_request(request) for request in recent],
    }
