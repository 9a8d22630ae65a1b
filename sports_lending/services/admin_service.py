from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from sports_lending.models.lending_models import ADMIN_PERMISSIONS, ADMIN_ROLES, Admin
from sports_lending.services.access_service import admin_permissions, new_password_credentials, verify_admin_password
from sports_lending.services.clock import utc_now


DEFAULT_ADMIN_USERNAME = "admin"
DEFAULT_ADMIN_EMAIL = "admin@sportsequipment.com"
DEFAULT_ADMIN_FULL_NAME = "System Administrator"
MIN_PASSWORD_LENGTH = 6

logger = logging.getLogger("sports_lending.auth")


def serialize_admin(admin: Admin) -> dict[str, Any]:
    return {
        "id": admin.AdminID,
        "username": admin.Username,
        "email": admin.Email,
        "fullName": admin.FullName,
        "role": admin.Role,
        "permissions": admin_permissions(admin),
        "isActive": bool(admin.IsActive),
        "lastLogin": admin.LastLogin,
        "createdAt": admin.CreatedDate,
    }


def get_admin_by_username(db: Session, username: str) -> Admin | None:
    normalized = (username or "").strip().lower()
    if not normalized:
        return None
    return db.execute(
        select(Admin).where(func.lower(Admin.Username) == normalized)
    ).scalars().first()


def authenticate_admin(db: Session, username: str, password: str) -> Admin | None:
    """Inactive admins and wrong passwords look the same to the caller."""
    admin = get_admin_by_username(db, username)
    if admin is None or not admin.IsActive:
        return None
    if not verify_admin_password(admin, password):
        return None
    admin.LastLogin = utc_now()
    db.commit()
    return admin


def upsert_admin(
    db: Session,
    *,
    username: str,
    email: str | None = None,
    full_name: str | None = None,
    role: str | None = None,
    password: str | None = None,
    permissions: dict[str, bool] | None = None,
    is_active: bool | None = None,
) -> Admin:
    normalized = (username or "").strip()
    if not 3 <= len(normalized) <= 30:
        raise ValueError("Username must be 3-30 characters.")
    if role is not None and role not in ADMIN_ROLES:
        raise ValueError(f"Role must be one of: {', '.join(ADMIN_ROLES)}")
    if password is not None and len(password) < MIN_PASSWORD_LENGTH:
        raise ValueError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters.")

    admin = get_admin_by_username(db, normalized)
    if admin is None:
        if password is None or not email or not full_name:
            raise ValueError("New admins need email, full name and password.")
        admin = Admin(Username=normalized, Role=role or "admin", IsActive=True)
        db.add(admin)

    if email:
        admin.Email = email.strip().lower()
    if full_name:
        admin.FullName = full_name.strip()
    if role:
        admin.Role = role
    if password is not None:
        admin.PasswordHash, admin.PasswordSalt = new_password_credentials(password)
    if is_active is not None:
        admin.IsActive = bool(is_active)
    for name, value in (permissions or {}).items():
        column = ADMIN_PERMISSIONS.get(name)
        if column is None:
            raise ValueError(f"Unknown permission: {name}")
        setattr(admin, column, bool(value))

    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise ValueError("Could not save admin; username or email already in use.") from exc
    db.refresh(admin)
    return admin


def ensure_default_admin(db: Session, password: str) -> Admin | None:
    existing = get_admin_by_username(db, DEFAULT_ADMIN_USERNAME)
    if existing is not None:
        return None
    admin = upsert_admin(
        db,
        username=DEFAULT_ADMIN_USERNAME,
        email=DEFAULT_ADMIN_EMAIL,
        full_name=DEFAULT_ADMIN_FULL_NAME,
        role="super_admin",
        password=password,
    )
    logger.info("Default admin created username=%s", DEFAULT_ADMIN_USERNAME)
    return admin
