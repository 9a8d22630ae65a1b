#!/usr/bin/env python3
from __future__ import annotations

import argparse
import os
import sys

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from sports_lending.models.lending_models import ADMIN_PERMISSIONS, ADMIN_ROLES
from sports_lending.services.admin_service import upsert_admin


def _parse_permissions(raw_values: list[str]) -> dict[str, bool]:
    permissions: dict[str, bool] = {}
    for raw in raw_values:
        name, _, value = raw.partition("=")
        name = name.strip()
        if name not in ADMIN_PERMISSIONS:
            raise ValueError(f"Unknown permission: {name}")
        permissions[name] = value.strip().lower() in {"1", "true", "yes", "on"}
    return permissions


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Create/update one Admins record directly from terminal.",
    )
    parser.add_argument("--username", required=True, help="Admin login name (3-30 characters)")
    parser.add_argument("--email", default=None, help="Required when creating a new admin")
    parser.add_argument("--full-name", default=None, help="Required when creating a new admin")
    parser.add_argument("--role", choices=list(ADMIN_ROLES), default=None)
    parser.add_argument(
        "--password",
        default=None,
        help="Password to set. Omit to keep the existing password.",
    )
    parser.add_argument(
        "--permission",
        action="append",
        default=[],
        metavar="NAME=BOOL",
        help="Permission flag, e.g. canManageEquipment=false. Repeatable.",
    )
    state = parser.add_mutually_exclusive_group()
    state.add_argument("--activate", action="store_true")
    state.add_argument("--deactivate", action="store_true")
    parser.add_argument(
        "--db-url",
        default=os.environ.get("LENDING_DB_URL", "").strip(),
        help="SQLAlchemy DB URL; defaults to LENDING_DB_URL env var.",
    )
    return parser


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()

    if not args.db_url:
        parser.error("Missing DB URL. Set LENDING_DB_URL or pass --db-url.")
    try:
        permissions = _parse_permissions(args.permission)
    except ValueError as exc:
        parser.error(str(exc))

    is_active = True if args.activate else False if args.deactivate else None

    engine = create_engine(args.db_url, pool_pre_ping=True, future=True)
    session = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False, future=True)()
    try:
        admin = upsert_admin(
            session,
            username=args.username,
            email=args.email,
            full_name=args.full_name,
            role=args.role,
            password=args.password,
            permissions=permissions,
            is_active=is_active,
        )
    except ValueError as exc:
        print(f"FAILED {exc}", file=sys.stderr)
        return 1
    finally:
        session.close()

    print(
        f"OK admin_id={admin.AdminID} username={admin.Username} role={admin.Role} "
        f"active={bool(admin.IsActive)}"
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
