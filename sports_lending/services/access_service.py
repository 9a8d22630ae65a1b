from __future__ import annotations

import hashlib
import hmac
import os
import re
import secrets
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

import jwt
from jwt.exceptions import ExpiredSignatureError, InvalidTokenError

from sports_lending.models.lending_models import ADMIN_PERMISSIONS, Admin, Student
from sports_lending.services.clock import utc_now
from sports_lending.services.errors import AuthenticationError


PASSWORD_HASH_ITERATIONS = 120000
TOKEN_ROLES = {"admin", "student"}


def _require_jwt_secret() -> str:
    raw = (os.environ.get("JWT_SECRET") or "").strip()
    if len(raw) < 32:
        raise RuntimeError("JWT_SECRET must be set and at least 32 characters long.")
    return raw


def parse_expiry(raw: str | int | None, default: timedelta = timedelta(days=7)) -> timedelta:
    """Accept `7d`, `12h`, `30m`, `45s` or a bare number of seconds."""
    if raw in (None, ""):
        return default
    text_value = str(raw).strip().lower()
    match = re.fullmatch(r"(\d+)\s*([dhms]?)", text_value)
    if not match:
        raise RuntimeError(f"Invalid token expiry: {raw}")
    amount = int(match.group(1))
    unit = match.group(2) or "s"
    if unit == "d":
        return timedelta(days=amount)
    if unit == "h":
        return timedelta(hours=amount)
    if unit == "m":
        return timedelta(minutes=amount)
    return timedelta(seconds=amount)


JWT_SECRET = _require_jwt_secret()
JWT_ALGORITHM = (os.environ.get("JWT_ALGORITHM") or "HS256").strip()
JWT_EXPIRES_IN = parse_expiry(os.environ.get("JWT_EXPIRE") or os.environ.get("JWT_EXPIRES_IN"))


def password_hash(password: str, salt: str) -> str:
    raw = hashlib.pbkdf2_hmac(
        "sha256",
        (password or "").encode("utf-8"),
        salt.encode("utf-8"),
        PASSWORD_HASH_ITERATIONS,
    )
    return raw.hex()


def new_password_credentials(password: str) -> tuple[str, str]:
    salt = secrets.token_hex(16)
    return password_hash(password, salt), salt


def verify_admin_password(admin: Admin, candidate: str) -> bool:
    if not admin.PasswordHash or not admin.PasswordSalt:
        return False
    expected = password_hash(candidate or "", admin.PasswordSalt)
    return hmac.compare_digest(expected, admin.PasswordHash)


def create_access_token(principal_id: int, role: str, expires_in: timedelta | None = None) -> str:
    if role not in TOKEN_ROLES:
        raise ValueError(f"Unsupported token role: {role}")
    issued_at = utc_now()
    expires_at = issued_at + (expires_in if expires_in is not None else JWT_EXPIRES_IN)
    payload = {
        "sub": str(int(principal_id)),
        "role": role,
        "iat": issued_at,
        "exp": expires_at,
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


def decode_access_token(token: str) -> dict[str, Any]:
    try:
        payload = jwt.decode(
            token,
            JWT_SECRET,
            algorithms=[JWT_ALGORITHM],
            options={"require": ["sub", "exp"]},
        )
    except ExpiredSignatureError as exc:
        raise AuthenticationError("Token expired.") from exc
    except InvalidTokenError as exc:
        raise AuthenticationError("Invalid token.") from exc
    if payload.get("role") not in TOKEN_ROLES:
        raise AuthenticationError("Invalid token.")
    try:
        payload["sub"] = int(payload["sub"])
    except (TypeError, ValueError) as exc:
        raise AuthenticationError("Invalid token.") from exc
    return payload


@dataclass
class Principal:
    kind: str
    admin: Admin | None = None
    student: Student | None = None

    @property
    def user_id(self) -> int:
        if self.admin is not None:
            return int(self.admin.AdminID)
        return int(self.student.StudentID)

    @property
    def user_model(self) -> str:
        return "Admin" if self.kind == "admin" else "Student"

    @property
    def is_admin(self) -> bool:
        return self.kind == "admin" and self.admin is not None


def admin_has_permission(admin: Admin, permission: str) -> bool:
    if admin.Role == "super_admin":
        return True
    column = ADMIN_PERMISSIONS.get(permission)
    if column is None:
        return False
    return bool(getattr(admin, column, False))


def admin_permissions(admin: Admin) -> dict[str, bool]:
    return {name: admin_has_permission(admin, name) for name in ADMIN_PERMISSIONS}
