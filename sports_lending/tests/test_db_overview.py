import io
import unittest
from contextlib import redirect_stdout

from sqlalchemy import update

from sports_lending.tests.support import LendingTestCase

from sports_lending.db.session import engine_lending
from sports_lending.models.lending_models import BorrowRequest
from sports_lending.scripts import db_overview


class DbOverviewTests(LendingTestCase):
    def setUp(self):
        super().setUp()
        self.admin = self.make_admin()
        self.student = self.make_student()
        self.equipment = self.make_equipment(total=10, admin=self.admin)

    def _report(self):
        buffer = io.StringIO()
        with redirect_stdout(buffer):
            code = db_overview.report(engine_lending)
        return code, buffer.getvalue()

    def _approved_request(self, quantity=3):
        created = self.client.post(
            "/api/requests",
            json=self.request_payload(self.equipment, quantity=quantity),
            headers=self.student_headers(self.student),
        )
        request_id = created.json()["data"]["id"]
        approved = self.client.put(f"/api/requests/{request_id}/approve", headers=self.admin_headers(self.admin))
        self.assertEqual(approved.status_code, 200)
        return request_id

    def test_approved_but_not_collected_request_is_consistent(self):
        self._approved_request()
        code, output = self._report()
        self.assertEqual(code, 0)
        self.assertIn("[OK] equipment:borrowed_vs_outstanding_requests", output)
        self.assertIn("approved: 1", output)

    def test_borrowed_units_without_open_request_fail(self):
        request_id = self._approved_request()
        self.db.execute(update(BorrowRequest).where(BorrowRequest.RequestID == request_id).values(Status="rejected"))
        self.db.commit()

        code, output = self._report()
        self.assertEqual(code, 1)
        self.assertIn("[FAIL] equipment:borrowed_vs_outstanding_requests :: count=1", output)


if __name__ == "__main__":
    unittest.main()
