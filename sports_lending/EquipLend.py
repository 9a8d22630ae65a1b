import json
import logging
import math
import os
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, File, Form, Header, HTTPException, Query, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, ValidationError
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

try:
    from dotenv import load_dotenv

    load_dotenv()
except Exception:
    pass

from sports_lending.db.base import Base
from sports_lending.db.deps import get_lending_db
from sports_lending.db.session import SessionLocalLending, engine_lending
from sports_lending.models.lending_models import Admin, Equipment, Student
from sports_lending.schemas.auth import AdminLoginRequest, StudentLoginRequest, StudentRegistration, VerifyOtpRequest
from sports_lending.schemas.equipment import EquipmentCreate, EquipmentUpdate
from sports_lending.schemas.notifications import CreateNotificationDto
from sports_lending.schemas.requests import (
    ApproveRequestDto,
    CreateRequestDto,
    ExtendRequestDto,
    RejectRequestDto,
    ReturnRequestDto,
)
from sports_lending.schemas.students import StudentProfileUpdate
from sports_lending.services.access_service import (
    Principal,
    admin_has_permission,
    create_access_token,
    decode_access_token,
)
from sports_lending.services.admin_service import authenticate_admin, ensure_default_admin, serialize_admin
from sports_lending.services.equipment_service import (
    MAX_IMAGES_PER_UPLOAD,
    append_images,
    apply_equipment_update,
    build_equipment,
    equipment_overview,
    list_categories,
    list_equipment,
    serialize_equipment,
)
from sports_lending.services.errors import (
    AuthenticationError,
    AuthorizationError,
    InputValidationError,
    BusinessRuleViolation,
    LendingError,
    LoginThrottled,
    NotFoundError,
)
from sports_lending.services.login_guard_service import admin_login_guard
from sports_lending.services.notification_service import (
    create_new_equipment_notification,
    create_notification,
    get_unread_count,
    get_visible_notification,
    list_notifications,
    mark_all_as_read,
    mark_as_read,
    notification_statistics,
    serialize_notification,
    soft_delete_notification,
)
from sports_lending.services.request_service import (
    approve_request,
    create_request,
    extend_request,
    get_request,
    list_overdue,
    list_requests,
    mark_borrowed,
    mark_returned,
    reject_request,
    request_statistics,
    serialize_request,
)
from sports_lending.services.student_service import (
    deactivate_student,
    get_student,
    issue_login_otp,
    list_departments,
    list_students,
    register_student,
    serialize_student,
    set_verified,
    student_statistics,
    update_profile,
    verify_otp,
)
from sports_lending.services.upload_service import (
    UPLOAD_ROOT,
    ensure_upload_dirs,
    remove_upload,
    store_upload,
    store_uploads,
)


def _parse_csv_env(name: str, default: str) -> list[str]:
    raw = os.environ.get(name, default)
    return [item.strip() for item in str(raw).split(",") if item.strip()]


def _parse_bool_env(name: str, default: str) -> bool:
    return str(os.environ.get(name, default)).strip().lower() in {"1", "true", "yes", "on"}


DEFAULT_ADMIN_PASSWORD = (os.environ.get("DEFAULT_ADMIN_PASSWORD") or "admin123").strip()
AUTO_CREATE_TABLES = _parse_bool_env("AUTO_CREATE_TABLES", "true")
AUTH_LOGGER = logging.getLogger("sports_lending.auth")
API_LOGGER = logging.getLogger("sports_lending.api")


@asynccontextmanager
async def lifespan(app: FastAPI):
    if AUTO_CREATE_TABLES:
        Base.metadata.create_all(bind=engine_lending)
    ensure_upload_dirs()
    db = SessionLocalLending()
    try:
        ensure_default_admin(db, DEFAULT_ADMIN_PASSWORD)
    finally:
        db.close()
    yield


app = FastAPI(title="Sports Equipment Lending", lifespan=lifespan)

_CORS_ALLOW_ORIGINS = _parse_csv_env(
    "CORS_ALLOW_ORIGINS",
    "http://127.0.0.1,http://localhost,http://127.0.0.1:3000,http://localhost:3000",
)
_CORS_ALLOW_CREDENTIALS = _parse_bool_env("CORS_ALLOW_CREDENTIALS", "true")
if "*" in _CORS_ALLOW_ORIGINS:
    _CORS_ALLOW_CREDENTIALS = False

app.add_middleware(
    CORSMiddleware,
    allow_origins=_CORS_ALLOW_ORIGINS,
    allow_credentials=_CORS_ALLOW_CREDENTIALS,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _envelope(data=None, message: str | None = None) -> dict:
    body: dict = {"success": True}
    if message:
        body["message"] = message
    if data is not None:
        body["data"] = data
    return body


def _error_body(message: str, errors: list | None = None) -> dict:
    body: dict = {"success": False, "message": message}
    if errors:
        body["errors"] = errors
    return body


def _pagination(page: int, limit: int, total: int) -> dict:
    return {
        "current": page,
        "total": math.ceil(total / limit) if limit else 0,
        "count": total,
        "hasNext": page * limit < total,
        "hasPrev": page > 1,
    }


def _validation_errors(exc: ValidationError | RequestValidationError) -> list[dict]:
    errors = []
    for error in exc.errors():
        location = [str(part) for part in error.get("loc", ()) if part not in ("body", "query", "path", "form", "header")]
        errors.append({"field": ".".join(location), "message": error.get("msg", "Invalid value")})
    return errors


@app.exception_handler(LendingError)
async def handle_lending_error(request: Request, exc: LendingError):
    return JSONResponse(status_code=exc.status_code, content=_error_body(exc.message, exc.errors), headers=exc.headers)


@app.exception_handler(RequestValidationError)
async def handle_request_validation_error(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content=_error_body("Validation error", _validation_errors(exc)))


@app.exception_handler(StarletteHTTPException)
async def handle_http_error(request: Request, exc: StarletteHTTPException):
    message = exc.detail if isinstance(exc.detail, str) else "Request failed"
    return JSONResponse(status_code=exc.status_code, content=_error_body(message), headers=getattr(exc, "headers", None))


@app.exception_handler(Exception)
async def handle_unexpected_error(request: Request, exc: Exception):
    API_LOGGER.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content=_error_body("Server error"))


def _parse_model(model: type[BaseModel], values: dict):
    try:
        return model.model_validate(values)
    except ValidationError as exc:
        raise InputValidationError("Validation error", errors=_validation_errors(exc)) from exc


def _parse_json_field(name: str, raw: str | None):
    if raw in (None, ""):
        return None
    try:
        return json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise InputValidationError("Validation error", errors=[{"field": name, "message": "must be valid JSON"}]) from exc


def _get_client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        candidate = forwarded.split(",")[0].strip()
        if candidate:
            return candidate
    return request.client.host if request.client and request.client.host else "unknown"


def _guard_or_429(client_ip: str, username: str) -> None:
    retry_after = admin_login_guard.retry_after(client_ip, username)
    if retry_after is not None:
        AUTH_LOGGER.warning("Admin login throttled ip=%s username=%s retry_after=%s", client_ip, username, retry_after)
        raise LoginThrottled(retry_after)


# --- authentication dependencies -------------------------------------------------


def _bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def resolve_principal(db: Session, token: str) -> Principal:
    claims = decode_access_token(token)
    if claims["role"] == "admin":
        admin = db.get(Admin, claims["sub"])
        if admin is None or not admin.IsActive:
            raise AuthenticationError("Invalid token or admin account deactivated.")
        return Principal(kind="admin", admin=admin)
    student = db.get(Student, claims["sub"])
    if student is None or not student.IsActive or not student.IsVerified:
        raise AuthenticationError("Invalid token or student account not verified.")
    return Principal(kind="student", student=student)


def get_principal(
    authorization: str | None = Header(None),
    db: Session = Depends(get_lending_db),
) -> Principal:
    token = _bearer_token(authorization)
    if token is None:
        raise AuthenticationError("Access denied. No token provided.")
    try:
        return resolve_principal(db, token)
    except AuthenticationError as exc:
        AUTH_LOGGER.warning("Token rejected reason=%s", exc.message)
        raise


def optional_principal(
    authorization: str | None = Header(None),
    db: Session = Depends(get_lending_db),
) -> Principal | None:
    token = _bearer_token(authorization)
    if token is None:
        return None
    try:
        return resolve_principal(db, token)
    except AuthenticationError:
        return None


def require_admin(principal: Principal = Depends(get_principal)) -> Principal:
    if not principal.is_admin:
        raise AuthenticationError("Admin authentication required.")
    return principal


def require_student(principal: Principal = Depends(get_principal)) -> Principal:
    if principal.kind != "student" or principal.student is None:
        raise AuthenticationError("Student authentication required.")
    return principal


def require_any_principal(principal: Principal = Depends(get_principal)) -> Principal:
    return principal


def require_permission(permission: str):
    def dependency(principal: Principal = Depends(require_admin)) -> Principal:
        if not admin_has_permission(principal.admin, permission):
            raise AuthorizationError(f"Access denied. You don't have permission to {permission}.")
        return principal

    return dependency


def _principal_payload(principal: Principal) -> dict:
    if principal.is_admin:
        return serialize_admin(principal.admin)
    return serialize_student(principal.student)


def _require_self_or_admin(principal: Principal, student_id: int) -> None:
    if principal.kind == "student" and principal.student.StudentID != student_id:
        raise AuthorizationError("Access denied")


# --- health -------------------------------------------------------------------------


@app.get("/healthz")
def healthcheck():
    return {"status": "ok"}


@app.get("/api/healthz")
def healthcheck_api(db: Session = Depends(get_lending_db)):
    try:
        db.execute(text("SELECT 1"))
        return {"status": "ok"}
    except Exception as exc:
        raise HTTPException(status_code=503, detail=f"db_unavailable: {exc}") from exc


# --- auth ---------------------------------------------------------------------------


@app.post("/api/auth/admin/login")
def admin_login(payload: AdminLoginRequest, request: Request, db: Session = Depends(get_lending_db)):
    client_ip = _get_client_ip(request)
    username = payload.username.strip().lower()
    _guard_or_429(client_ip, username)

    admin = authenticate_admin(db, username, payload.password)
    if admin is None:
        admin_login_guard.failed(client_ip, username)
        AUTH_LOGGER.warning("Admin login failed ip=%s username=%s", client_ip, username)
        raise AuthenticationError("Invalid credentials")

    admin_login_guard.succeeded(username)
    AUTH_LOGGER.info("Admin login ip=%s username=%s admin_id=%s", client_ip, username, admin.AdminID)
    return _envelope(
        {"token": create_access_token(admin.AdminID, "admin"), "admin": serialize_admin(admin)},
        "Login successful",
    )


@app.post("/api/auth/student/register", status_code=201)
def student_register(
    studentId: str | None = Form(None),
    fullName: str | None = Form(None),
    email: str | None = Form(None),
    phoneNumber: str | None = Form(None),
    department: str | None = Form(None),
    year: str | None = Form(None),
    semester: str | None = Form(None),
    idCard: UploadFile | None = File(None),
    db: Session = Depends(get_lending_db),
):
    payload = _parse_model(
        StudentRegistration,
        {
            "studentId": studentId,
            "fullName": fullName,
            "email": email,
            "phoneNumber": phoneNumber,
            "department": department,
            "year": year,
            "semester": semester,
        },
    )
    if idCard is None or not idCard.filename:
        raise InputValidationError("ID card image is required", errors=[{"field": "idCard", "message": "ID card image is required"}])
    stored = store_upload("idCard", idCard, images_only=True)
    try:
        student = register_student(db, payload, stored.url)
    except LendingError:
        remove_upload(stored.url)
        raise
    return _envelope(
        {"studentId": student.StudentNumber, "email": student.Email, "phoneNumber": student.PhoneNumber},
        "Student registered successfully. Please verify your phone number with OTP.",
    )


@app.post("/api/auth/student/verify-otp")
def student_verify_otp(payload: VerifyOtpRequest, request: Request, db: Session = Depends(get_lending_db)):
    client_ip = _get_client_ip(request)
    try:
        student = verify_otp(db, payload.studentId, payload.phoneNumber, payload.otp)
    except InputValidationError:
        AUTH_LOGGER.warning("OTP verification failed ip=%s student=%s", client_ip, payload.studentId)
        raise
    AUTH_LOGGER.info("OTP verified ip=%s student_id=%s", client_ip, student.StudentNumber)
    return _envelope(
        {"token": create_access_token(student.StudentID, "student"), "student": serialize_student(student)},
        "OTP verified successfully",
    )


@app.post("/api/auth/student/resend-otp")
def student_resend_otp(payload: StudentLoginRequest, db: Session = Depends(get_lending_db)):
    issue_login_otp(db, payload.studentId, payload.phoneNumber, reason="resend")
    return _envelope(message="OTP resent successfully")


@app.post("/api/auth/student/login")
def student_login(payload: StudentLoginRequest, db: Session = Depends(get_lending_db)):
    student = issue_login_otp(db, payload.studentId, payload.phoneNumber, reason="login")
    return _envelope(
        {"studentId": student.StudentNumber, "phoneNumber": student.PhoneNumber},
        "OTP sent successfully",
    )


@app.get("/api/auth/me")
def auth_me(principal: Principal = Depends(require_any_principal)):
    return _envelope({"user": _principal_payload(principal), "role": principal.kind})


# --- equipment ----------------------------------------------------------------------


@app.get("/api/equipment")
def get_equipment_list(
    category: str | None = Query(None),
    search: str | None = Query(None),
    available: bool = Query(False),
    new_arrivals: bool = Query(False, alias="newArrivals"),
    include_inactive: bool = Query(False, alias="includeInactive"),
    page: int = Query(1, ge=1),
    limit: int = Query(12, ge=1, le=100),
    sort_by: str = Query("createdAt", alias="sortBy"),
    sort_order: str = Query("desc", alias="sortOrder", pattern="^(asc|desc)$"),
    principal: Principal | None = Depends(optional_principal),
    db: Session = Depends(get_lending_db),
):
    rows, total = list_equipment(
        db,
        page=page,
        limit=limit,
        sort_by=sort_by,
        sort_order=sort_order,
        category=category,
        search=search,
        available_only=available,
        new_arrivals=new_arrivals,
        include_inactive=include_inactive and principal is not None and principal.is_admin,
    )
    return _envelope(
        {"equipment": [serialize_equipment(item) for item in rows], "pagination": _pagination(page, limit, total)}
    )


@app.get("/api/equipment/categories")
def get_equipment_categories(db: Session = Depends(get_lending_db)):
    return _envelope(list_categories(db))


@app.get("/api/equipment/stats/overview")
def get_equipment_stats(
    principal: Principal = Depends(require_permission("canViewReports")),
    db: Session = Depends(get_lending_db),
):
    return _envelope(equipment_overview(db))


@app.get("/api/equipment/{equipment_id}")
def get_equipment_item(
    equipment_id: int,
    principal: Principal | None = Depends(optional_principal),
    db: Session = Depends(get_lending_db),
):
    equipment = db.get(Equipment, equipment_id)
    if equipment is None or (not equipment.IsActive and not (principal and principal.is_admin)):
        raise NotFoundError("Equipment not found")
    return _envelope(serialize_equipment(equipment))


@app.post("/api/equipment", status_code=201)
def create_equipment(
    payload: EquipmentCreate,
    principal: Principal = Depends(require_permission("canManageEquipment")),
    db: Session = Depends(get_lending_db),
):
    equipment = build_equipment(payload, principal.admin.AdminID)
    db.add(equipment)
    try:
        db.flush()
        if equipment.IsNewArrival and payload.notifyStudents:
            create_new_equipment_notification(db, equipment, principal.admin.AdminID)
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise BusinessRuleViolation("Equipment with this barcode already exists") from exc
    db.refresh(equipment)
    return _envelope(serialize_equipment(equipment), "Equipment created successfully")


@app.put("/api/equipment/{equipment_id}")
def update_equipment(
    equipment_id: int,
    payload: EquipmentUpdate,
    principal: Principal = Depends(require_permission("canManageEquipment")),
    db: Session = Depends(get_lending_db),
):
    equipment = db.get(Equipment, equipment_id)
    if equipment is None:
        raise NotFoundError("Equipment not found")
    try:
        apply_equipment_update(equipment, payload)
        db.commit()
    except LendingError:
        db.rollback()
        raise
    except IntegrityError as exc:
        db.rollback()
        raise BusinessRuleViolation("Equipment with this barcode already exists") from exc
    db.refresh(equipment)
    return _envelope(serialize_equipment(equipment), "Equipment updated successfully")


@app.delete("/api/equipment/{equipment_id}")
def delete_equipment(
    equipment_id: int,
    principal: Principal = Depends(require_permission("canManageEquipment")),
    db: Session = Depends(get_lending_db),
):
    equipment = db.get(Equipment, equipment_id)
    if equipment is None or not equipment.IsActive:
        raise NotFoundError("Equipment not found")
    equipment.IsActive = False
    db.commit()
    return _envelope(message="Equipment deleted successfully")


@app.post("/api/equipment/{equipment_id}/images")
def upload_equipment_images(
    equipment_id: int,
    images: list[UploadFile] = File(...),
    principal: Principal = Depends(require_permission("canManageEquipment")),
    db: Session = Depends(get_lending_db),
):
    equipment = db.get(Equipment, equipment_id)
    if equipment is None or not equipment.IsActive:
        raise NotFoundError("Equipment not found")
    stored = store_uploads("images", images, max_count=MAX_IMAGES_PER_UPLOAD, images_only=True)
    append_images(equipment, [item.url for item in stored])
    db.commit()
    db.refresh(equipment)
    return _envelope(serialize_equipment(equipment), f"Uploaded {len(stored)} image(s)")


# --- requests -----------------------------------------------------------------------


@app.post("/api/requests", status_code=201)
def create_borrow_request(
    payload: CreateRequestDto,
    principal: Principal = Depends(require_student),
    db: Session = Depends(get_lending_db),
):
    borrow_request = create_request(db, principal.student, payload)
    return _envelope(serialize_request(borrow_request, detailed=True), "Request created successfully")


@app.get("/api/requests")
def get_borrow_requests(
    status: str | None = Query(None, pattern="^(pending|approved|rejected|borrowed|returned|overdue)$"),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    sort_by: str = Query("requestDate", alias="sortBy"),
    sort_order: str = Query("desc", alias="sortOrder", pattern="^(asc|desc)$"),
    principal: Principal = Depends(require_any_principal),
    db: Session = Depends(get_lending_db),
):
    student_id = None if principal.is_admin else principal.student.StudentID
    rows, total = list_requests(
        db,
        student_id=student_id,
        status=status,
        page=page,
        limit=limit,
        sort_by=sort_by,
        sort_order=sort_order,
    )
    return _envelope(
        {"requests": [serialize_request(row) for row in rows], "pagination": _pagination(page, limit, total)}
    )


@app.get("/api/requests/stats/overview")
def get_borrow_request_stats(
    principal: Principal = Depends(require_permission("canViewReports")),
    db: Session = Depends(get_lending_db),
):
    return _envelope(request_statistics(db))


@app.get("/api/requests/overdue")
def get_overdue_requests(
    principal: Principal = Depends(require_admin),
    db: Session = Depends(get_lending_db),
):
    return _envelope([serialize_request(row) for row in list_overdue(db)])


@app.get("/api/requests/{request_id}")
def get_borrow_request(
    request_id: int,
    principal: Principal = Depends(require_any_principal),
    db: Session = Depends(get_lending_db),
):
    borrow_request = get_request(db, request_id)
    _require_self_or_admin(principal, borrow_request.StudentID)
    return _envelope(serialize_request(borrow_request, detailed=True))


@app.put("/api/requests/{request_id}/approve")
def approve_borrow_request(
    request_id: int,
    payload: ApproveRequestDto | None = None,
    principal: Principal = Depends(require_permission("canManageRequests")),
    db: Session = Depends(get_lending_db),
):
    borrow_request = approve_request(db, request_id, principal.admin, notes=payload.notes if payload else None)
    return _envelope(serialize_request(borrow_request, detailed=True), "Request approved successfully")


@app.put("/api/requests/{request_id}/reject")
def reject_borrow_request(
    request_id: int,
    payload: RejectRequestDto,
    principal: Principal = Depends(require_permission("canManageRequests")),
    db: Session = Depends(get_lending_db),
):
    borrow_request = reject_request(db, request_id, principal.admin, payload.reason)
    return _envelope(serialize_request(borrow_request, detailed=True), "Request rejected successfully")


@app.put("/api/requests/{request_id}/borrow")
def borrow_borrow_request(
    request_id: int,
    principal: Principal = Depends(require_permission("canManageRequests")),
    db: Session = Depends(get_lending_db),
):
    borrow_request = mark_borrowed(db, request_id, principal.admin)
    return _envelope(serialize_request(borrow_request, detailed=True), "Request marked as borrowed")


@app.put("/api/requests/{request_id}/return")
def return_borrow_request(
    request_id: int,
    payload: ReturnRequestDto | None = None,
    principal: Principal = Depends(require_permission("canManageRequests")),
    db: Session = Depends(get_lending_db),
):
    details = payload or ReturnRequestDto()
    borrow_request = mark_returned(
        db,
        request_id,
        principal.admin,
        is_damaged=details.isDamaged,
        damage_description=details.damageDescription,
        notes=details.notes,
    )
    return _envelope(serialize_request(borrow_request, detailed=True), "Request marked as returned")


@app.put("/api/requests/{request_id}/extend")
def extend_borrow_request(
    request_id: int,
    payload: ExtendRequestDto,
    principal: Principal = Depends(require_permission("canManageRequests")),
    db: Session = Depends(get_lending_db),
):
    borrow_request = extend_request(db, request_id, principal.admin, payload.newReturnDate, payload.reason)
    return _envelope(serialize_request(borrow_request, detailed=True), "Request extended successfully")


# --- notifications ------------------------------------------------------------------


@app.get("/api/notifications")
def get_notifications(
    type: str | None = Query(None),
    category: str | None = Query(None),
    unread_only: bool = Query(False, alias="unreadOnly"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    principal: Principal = Depends(require_any_principal),
    db: Session = Depends(get_lending_db),
):
    user_id, user_model = principal.user_id, principal.user_model
    rows, total = list_notifications(
        db,
        user_id,
        user_model,
        type=type,
        category=category,
        unread_only=unread_only,
        page=page,
        limit=limit,
    )
    return _envelope(
        {
            "notifications": [serialize_notification(row, user_id, user_model) for row in rows],
            "pagination": _pagination(page, limit, total),
            "unreadCount": get_unread_count(db, user_id, user_model),
        }
    )


@app.get("/api/notifications/unread-count")
def get_notifications_unread_count(
    principal: Principal = Depends(require_any_principal),
    db: Session = Depends(get_lending_db),
):
    return _envelope({"unreadCount": get_unread_count(db, principal.user_id, principal.user_model)})


@app.put("/api/notifications/read-all")
def read_all_notifications(
    principal: Principal = Depends(require_any_principal),
    db: Session = Depends(get_lending_db),
):
    marked = mark_all_as_read(db, principal.user_id, principal.user_model)
    return _envelope({"marked": marked}, f"Marked {marked} notifications as read")


@app.get("/api/notifications/stats")
def get_notification_stats(
    principal: Principal = Depends(require_permission("canViewReports")),
    db: Session = Depends(get_lending_db),
):
    return _envelope(notification_statistics(db))


@app.post("/api/notifications", status_code=201)
def create_admin_notification(
    payload: CreateNotificationDto,
    principal: Principal = Depends(require_permission("canSendNotifications")),
    db: Session = Depends(get_lending_db),
):
    metadata = payload.metadata.model_dump() if payload.metadata else {}
    notification = create_notification(
        db,
        title=payload.title,
        message=payload.message,
        type=payload.type,
        category=payload.category,
        priority=payload.priority,
        recipients=payload.recipients.model_dump() if payload.recipients else None,
        expires_at=payload.expiresAt,
        action_url=payload.actionUrl,
        action_text=payload.actionText,
        equipment_id=metadata.get("equipmentId"),
        request_id=metadata.get("requestId"),
        student_id=metadata.get("studentId"),
        custom_data=metadata.get("customData"),
        tags=payload.tags,
        created_by=principal.admin.AdminID,
    )
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise InputValidationError("Notification references an unknown record") from exc
    db.refresh(notification)
    return _envelope(serialize_notification(notification), "Notification created successfully")


@app.put("/api/notifications/{notification_id}/read")
def read_notification(
    notification_id: int,
    principal: Principal = Depends(require_any_principal),
    db: Session = Depends(get_lending_db),
):
    notification = get_visible_notification(db, notification_id, principal.user_id, principal.user_model)
    mark_as_read(db, notification, principal.user_id, principal.user_model)
    return _envelope(message="Notification marked as read")


@app.delete("/api/notifications/{notification_id}")
def delete_notification(
    notification_id: int,
    principal: Principal = Depends(require_permission("canSendNotifications")),
    db: Session = Depends(get_lending_db),
):
    soft_delete_notification(db, notification_id)
    return _envelope(message="Notification deleted successfully")


# --- students -----------------------------------------------------------------------


@app.get("/api/students")
def get_students(
    search: str | None = Query(None),
    department: str | None = Query(None),
    year: int | None = Query(None, ge=1, le=6),
    verified: bool | None = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    sort_by: str = Query("createdAt", alias="sortBy"),
    sort_order: str = Query("desc", alias="sortOrder", pattern="^(asc|desc)$"),
    principal: Principal = Depends(require_permission("canManageStudents")),
    db: Session = Depends(get_lending_db),
):
    rows, total = list_students(
        db,
        search=search,
        department=department,
        year=year,
        verified=verified,
        page=page,
        limit=limit,
        sort_by=sort_by,
        sort_order=sort_order,
    )
    return _envelope(
        {"students": [serialize_student(row) for row in rows], "pagination": _pagination(page, limit, total)}
    )


@app.get("/api/students/departments")
def get_student_departments(db: Session = Depends(get_lending_db)):
    return _envelope(list_departments(db))


@app.get("/api/students/{student_id}")
def get_student_profile(
    student_id: int,
    principal: Principal = Depends(require_any_principal),
    db: Session = Depends(get_lending_db),
):
    _require_self_or_admin(principal, student_id)
    return _envelope(serialize_student(get_student(db, student_id)))


@app.put("/api/students/{student_id}")
def update_student_profile(
    student_id: int,
    fullName: str | None = Form(None),
    department: str | None = Form(None),
    year: str | None = Form(None),
    semester: str | None = Form(None),
    address: str | None = Form(None),
    emergencyContact: str | None = Form(None),
    preferences: str | None = Form(None),
    profile: UploadFile | None = File(None),
    principal: Principal = Depends(require_student),
    db: Session = Depends(get_lending_db),
):
    if principal.student.StudentID != student_id:
        raise AuthorizationError("Access denied")
    values = {
        "fullName": fullName,
        "department": department,
        "year": year,
        "semester": semester,
        "address": _parse_json_field("address", address),
        "emergencyContact": _parse_json_field("emergencyContact", emergencyContact),
        "preferences": _parse_json_field("preferences", preferences),
    }
    payload = _parse_model(StudentProfileUpdate, {key: value for key, value in values.items() if value not in (None, "")})
    profile_url = None
    if profile is not None and profile.filename:
        profile_url = store_upload("profile", profile, images_only=True).url
    try:
        student = update_profile(db, principal.student, payload, profile_url)
    except Exception:
        db.rollback()
        if profile_url:
            remove_upload(profile_url)
        raise
    return _envelope(serialize_student(student), "Profile updated successfully")


@app.get("/api/students/{student_id}/requests")
def get_student_requests(
    student_id: int,
    status: str | None = Query(None, pattern="^(pending|approved|rejected|borrowed|returned|overdue)$"),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    principal: Principal = Depends(require_any_principal),
    db: Session = Depends(get_lending_db),
):
    _require_self_or_admin(principal, student_id)
    get_student(db, student_id)
    rows, total = list_requests(db, student_id=student_id, status=status, page=page, limit=limit)
    return _envelope(
        {"requests": [serialize_request(row) for row in rows], "pagination": _pagination(page, limit, total)}
    )


@app.get("/api/students/{student_id}/stats")
def get_student_stats(
    student_id: int,
    principal: Principal = Depends(require_any_principal),
    db: Session = Depends(get_lending_db),
):
    _require_self_or_admin(principal, student_id)
    return _envelope(student_statistics(db, get_student(db, student_id)))


@app.put("/api/students/{student_id}/verify")
def verify_student(
    student_id: int,
    principal: Principal = Depends(require_permission("canManageStudents")),
    db: Session = Depends(get_lending_db),
):
    student = set_verified(db, student_id)
    return _envelope(serialize_student(student), "Student verified successfully")


@app.put("/api/students/{student_id}/deactivate")
def deactivate_student_account(
    student_id: int,
    principal: Principal = Depends(require_permission("canManageStudents")),
    db: Session = Depends(get_lending_db),
):
    deactivate_student(db, student_id)
    return _envelope(message="Student account deactivated successfully")


app.mount("/uploads", StaticFiles(directory=str(UPLOAD_ROOT), check_dir=False), name="uploads")
