import unittest
from datetime import timedelta

from sports_lending.tests.support import ADMIN_PASSWORD, LendingTestCase, bearer

from sports_lending.services.access_service import create_access_token, decode_access_token, parse_expiry
from sports_lending.services.errors import AuthenticationError
from sports_lending.services.login_guard_service import ADMIN_LOGIN_MAX_FAILURES, AdminLoginGuard


class SecurityAndFlowTests(LendingTestCase):
    def test_admin_login_returns_usable_token(self):
        self.make_admin()
        login = self.client.post(
            "/api/auth/admin/login",
            json={"username": "admin", "password": ADMIN_PASSWORD},
        )
        self.assertEqual(login.status_code, 200)
        body = login.json()
        self.assertTrue(body["success"])
        token = body["data"]["token"]

        me = self.client.get("/api/auth/me", headers=bearer(token))
        self.assertEqual(me.status_code, 200)
        self.assertEqual(me.json()["data"]["role"], "admin")
        self.assertEqual(me.json()["data"]["user"]["username"], "admin")

    def test_admin_login_rejects_wrong_password(self):
        self.make_admin()
        response = self.client.post(
            "/api/auth/admin/login",
            json={"username": "admin", "password": "wrong-password"},
        )
        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json(), {"success": False, "message": "Invalid credentials"})

    def test_admin_login_rejects_unknown_fields(self):
        response = self.client.post(
            "/api/auth/admin/login",
            json={"username": "admin", "password": "x", "role": "super_admin"},
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["message"], "Validation error")

    def test_repeated_failures_lock_the_account(self):
        self.make_admin()
        for _ in range(ADMIN_LOGIN_MAX_FAILURES):
            failed = self.client.post(
                "/api/auth/admin/login",
                json={"username": "admin", "password": "wrong-password"},
            )
            self.assertEqual(failed.status_code, 401)

        locked = self.client.post(
            "/api/auth/admin/login",
            json={"username": "admin", "password": ADMIN_PASSWORD},
        )
        self.assertEqual(locked.status_code, 429)
        self.assertIn("retry-after", {key.lower() for key in locked.headers.keys()})

    def test_guard_counts_usernames_and_addresses_separately(self):
        guard = AdminLoginGuard(window=60, max_failures=3, max_failures_per_address=4, lockout=120)
        guard.failed("10.0.0.1", "alice")
        guard.failed("10.0.0.1", "alice")
        guard.succeeded("alice")
        guard.failed("10.0.0.1", "alice")
        self.assertIsNone(guard.retry_after("10.0.0.1", "alice"))

        guard.failed("10.0.0.1", "bob")
        self.assertEqual(guard.retry_after("10.0.0.1", "carol"), 60)
        self.assertIsNone(guard.retry_after("10.0.0.2", "carol"))

        for _ in range(3):
            guard.failed("10.0.0.3", "dave")
        self.assertEqual(guard.retry_after("10.0.0.9", "dave"), 120)

    def test_password_with_surrounding_spaces_can_log_in(self):
        self.make_admin(username="spacey", password="  padded secret  ")
        response = self.client.post(
            "/api/auth/admin/login",
            json={"username": "spacey", "password": "  padded secret  "},
        )
        self.assertEqual(response.status_code, 200)

    def test_missing_and_malformed_tokens_are_rejected(self):
        self.assertEqual(self.client.get("/api/auth/me").status_code, 401)
        self.assertEqual(self.client.get("/api/auth/me", headers=bearer("not-a-jwt")).status_code, 401)
        self.assertEqual(
            self.client.get("/api/auth/me", headers={"Authorization": "Basic abc"}).status_code,
            401,
        )

    def test_expired_token_is_rejected(self):
        admin = self.make_admin()
        token = create_access_token(admin.AdminID, "admin", expires_in=timedelta(seconds=-5))
        response = self.client.get("/api/auth/me", headers=bearer(token))
        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json()["message"], "Token expired.")

    def test_deactivated_admin_token_stops_working(self):
        admin = self.make_admin()
        headers = self.admin_headers(admin)
        self.assertEqual(self.client.get("/api/auth/me", headers=headers).status_code, 200)

        admin.IsActive = False
        self.db.commit()
        self.assertEqual(self.client.get("/api/auth/me", headers=headers).status_code, 401)

    def test_unverified_student_token_is_rejected(self):
        student = self.make_student(verified=False)
        response = self.client.get("/api/auth/me", headers=self.student_headers(student))
        self.assertEqual(response.status_code, 401)

    def test_student_token_cannot_reach_admin_routes(self):
        student = self.make_student()
        response = self.client.get("/api/requests/overdue", headers=self.student_headers(student))
        self.assertEqual(response.status_code, 401)

    def test_permission_flags_are_read_from_the_admin_record(self):
        admin = self.make_admin(username="clerk", role="admin", permissions={"canManageEquipment": False})
        payload = {"name": "Cricket Bat", "category": "Cricket", "quantity": {"total": 4}}
        denied = self.client.post("/api/equipment", json=payload, headers=self.admin_headers(admin))
        self.assertEqual(denied.status_code, 403)
        self.assertEqual(
            denied.json()["message"],
            "Access denied. You don't have permission to canManageEquipment.",
        )

        admin.CanManageEquipment = True
        self.db.commit()
        allowed = self.client.post("/api/equipment", json=payload, headers=self.admin_headers(admin))
        self.assertEqual(allowed.status_code, 201)

    def test_super_admin_ignores_permission_flags(self):
        admin = self.make_admin(permissions={"canViewReports": False})
        response = self.client.get("/api/equipment/stats/overview", headers=self.admin_headers(admin))
        self.assertEqual(response.status_code, 200)

    def test_role_downgrade_applies_to_existing_token(self):
        admin = self.make_admin(permissions={"canViewReports": False})
        headers = self.admin_headers(admin)
        self.assertEqual(self.client.get("/api/requests/stats/overview", headers=headers).status_code, 200)

        admin.Role = "admin"
        self.db.commit()
        self.assertEqual(self.client.get("/api/requests/stats/overview", headers=headers).status_code, 403)

    def test_token_round_trip_keeps_subject_and_role(self):
        claims = decode_access_token(create_access_token(42, "student"))
        self.assertEqual(claims["sub"], 42)
        self.assertEqual(claims["role"], "student")

    def test_token_with_unknown_role_is_rejected(self):
        with self.assertRaises(ValueError):
            create_access_token(1, "root")
        with self.assertRaises(AuthenticationError):
            decode_access_token("a.b.c")

    def test_parse_expiry_units(self):
        self.assertEqual(parse_expiry("7d"), timedelta(days=7))
        self.assertEqual(parse_expiry("12h"), timedelta(hours=12))
        self.assertEqual(parse_expiry("90"), timedelta(seconds=90))
        self.assertEqual(parse_expiry(None), timedelta(days=7))
        with self.assertRaises(RuntimeError):
            parse_expiry("soon")

    def test_unknown_route_uses_error_envelope(self):
        response = self.client.get("/api/does-not-exist")
        self.assertEqual(response.status_code, 404)
        self.assertFalse(response.json()["success"])

    def test_healthz(self):
        self.assertEqual(self.client.get("/healthz").json(), {"status": "ok"})
        self.assertEqual(self.client.get("/api/healthz").json(), {"status": "ok"})


if __name__ == "__main__":
    unittest.main()
