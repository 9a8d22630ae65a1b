import os
import tempfile
import unittest
from datetime import timedelta


os.environ.setdefault("LENDING_DB_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("JWT_SECRET", "x" * 48)
os.environ.setdefault("UPLOAD_PATH", tempfile.mkdtemp(prefix="lending-uploads-"))
os.environ.setdefault("DEFAULT_ADMIN_PASSWORD", "admin-test-pass")

from fastapi.testclient import TestClient

from sports_lending import EquipLend as app_module
from sports_lending.db.base import Base
from sports_lending.db.deps import get_lending_db
from sports_lending.db.session import SessionLocalLending, engine_lending
from sports_lending.models.lending_models import Equipment, Student
from sports_lending.services.access_service import create_access_token
from sports_lending.services.admin_service import upsert_admin
from sports_lending.services.clock import utc_now
from sports_lending.services.login_guard_service import admin_login_guard


ADMIN_PASSWORD = "admin-test-pass"


def future(days: float = 1) -> str:
    return (utc_now() + timedelta(days=days)).isoformat()


def bearer(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


class LendingTestCase(unittest.TestCase):
    """Fresh schema per test; the app shares the test's session."""

    def setUp(self):
        Base.metadata.drop_all(bind=engine_lending)
        Base.metadata.create_all(bind=engine_lending)
        admin_login_guard.reset()
        self.db = SessionLocalLending()
        app_module.app.dependency_overrides[get_lending_db] = lambda: self.db
        self.client = TestClient(app_module.app)

    def tearDown(self):
        app_module.app.dependency_overrides.clear()
        self.db.rollback()
        self.db.close()

    def make_admin(self, username="admin", role="super_admin", password=ADMIN_PASSWORD, permissions=None):
        return upsert_admin(
            self.db,
            username=username,
            email=f"{username}@example.edu",
            full_name=username.title(),
            role=role,
            password=password,
            permissions=permissions,
        )

    def make_student(self, number="S1001", phone="5550001", verified=True, active=True):
        student = Student(
            StudentNumber=number,
            FullName=f"Student {number}",
            Email=f"{number.lower()}@example.edu",
            PhoneNumber=phone,
            Department="Physical Education",
            Year=2,
            Semester=3,
            IdCardImage="/uploads/id-cards/card.png",
            IsVerified=verified,
            IsActive=active,
        )
        self.db.add(student)
        self.db.commit()
        return student

    def make_equipment(self, name="Match Football", category="Football", total=10, admin=None):
        equipment = Equipment(
            Name=name,
            Category=category,
            QuantityTotal=total,
            QuantityAvailable=total,
            QuantityBorrowed=0,
            QuantityDamaged=0,
            IsActive=True,
            CreatedBy=admin.AdminID if admin is not None else None,
        )
        self.db.add(equipment)
        self.db.commit()
        return equipment

    def admin_headers(self, admin) -> dict:
        return bearer(create_access_token(admin.AdminID, "admin"))

    def student_headers(self, student) -> dict:
        return bearer(create_access_token(student.StudentID, "student"))

    def request_payload(self, equipment, quantity=1, **overrides) -> dict:
        payload = {
            "equipmentId": equipment.EquipmentID,
            "quantity": quantity,
            "borrowDate": future(1),
            "returnDate": future(3),
            "purpose": "Inter-department match",
            "location": "North field",
        }
        payload.update(overrides)
        return payload

    def reload(self, instance):
        self.db.expire_all()
        self.db.refresh(instance)
        return instance
