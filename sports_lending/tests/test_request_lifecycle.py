import unittest
from datetime import timedelta

from sports_lending.tests.support import LendingTestCase, future

from sports_lending.models.lending_models import BorrowRequest, Notification
from sports_lending.services.clock import utc_now
from sports_lending.services.request_service import display_status, serialize_request


class RequestLifecycleTests(LendingTestCase):
    def setUp(self):
        super().setUp()
        self.admin = self.make_admin()
        self.student = self.make_student()
        self.equipment = self.make_equipment(total=10, admin=self.admin)

    def _create(self, quantity=3, **overrides):
        response = self.client.post(
            "/api/requests",
            json=self.request_payload(self.equipment, quantity=quantity, **overrides),
            headers=self.student_headers(self.student),
        )
        return response

    def _transition(self, request_id, action, json=None):
        return self.client.put(
            f"/api/requests/{request_id}/{action}",
            json=json,
            headers=self.admin_headers(self.admin),
        )

    def test_full_lifecycle_restores_inventory(self):
        created = self._create(quantity=3)
        self.assertEqual(created.status_code, 201)
        request_id = created.json()["data"]["id"]
        self.assertEqual(created.json()["data"]["status"], "pending")
        self.assertEqual(self.reload(self.student).TotalRequests, 1)

        approved = self._transition(request_id, "approve", {"notes": "ok"})
        self.assertEqual(approved.status_code, 200)
        self.assertEqual(approved.json()["data"]["status"], "approved")
        self.reload(self.equipment)
        self.assertEqual((self.equipment.QuantityAvailable, self.equipment.QuantityBorrowed), (7, 3))

        borrowed = self._transition(request_id, "borrow")
        self.assertEqual(borrowed.json()["data"]["status"], "borrowed")
        self.assertEqual(self.reload(self.student).TotalEquipmentBorrowed, 3)

        returned = self._transition(request_id, "return", {"isDamaged": False})
        self.assertEqual(returned.status_code, 200)
        data = returned.json()["data"]
        self.assertEqual(data["status"], "returned")
        self.assertIsNotNone(data["actualReturnDate"])
        self.assertEqual(
            [entry["action"] for entry in data["history"]],
            ["created", "approved", "borrowed", "returned"],
        )

        self.reload(self.equipment)
        self.assertEqual(self.equipment.QuantityAvailable, 10)
        self.assertEqual(self.equipment.QuantityBorrowed, 0)
        self.assertEqual(self.equipment.QuantityDamaged, 0)

        student = self.reload(self.student)
        self.assertEqual(student.ApprovedRequests, 1)
        self.assertEqual(student.TotalDaysBorrowed, 0)

        notifications = self.db.query(Notification).filter(Notification.RequestID == request_id).all()
        self.assertEqual(sorted(n.Title for n in notifications), ["Request Approved", "Request Borrowed", "Request Returned"])

    def test_damaged_return_moves_units_to_damaged(self):
        request_id = self._create(quantity=2).json()["data"]["id"]
        self._transition(request_id, "approve")
        self._transition(request_id, "borrow")
        response = self._transition(
            request_id,
            "return",
            {"isDamaged": True, "damageDescription": "Torn netting"},
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["data"]["damageReport"]["description"], "Torn netting")

        self.reload(self.equipment)
        self.assertEqual(self.equipment.QuantityAvailable, 8)
        self.assertEqual(self.equipment.QuantityDamaged, 2)
        self.assertEqual(
            self.equipment.QuantityAvailable + self.equipment.QuantityBorrowed + self.equipment.QuantityDamaged,
            self.equipment.QuantityTotal,
        )

    def test_return_counts_started_days_since_borrow_date(self):
        request_id = self._create(quantity=1).json()["data"]["id"]
        self._transition(request_id, "approve")
        self._transition(request_id, "borrow")

        request = self.db.get(BorrowRequest, request_id)
        request.BorrowDate = utc_now() - timedelta(days=2, hours=1)
        self.db.commit()

        self.assertEqual(self._transition(request_id, "return").status_code, 200)
        self.assertEqual(self.reload(self.student).TotalDaysBorrowed, 3)
        self.assertEqual(self.reload(self.equipment).UsageTotalDays, 3)

    def test_request_exceeding_availability_is_rejected(self):
        response = self._create(quantity=11)
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["message"], "Equipment not available in requested quantity. Available: 10")

    def test_borrow_date_in_past_is_rejected(self):
        response = self._create(borrowDate=(utc_now() - timedelta(days=1)).isoformat())
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["message"], "Borrow date cannot be in the past")

    def test_return_date_must_follow_borrow_date(self):
        response = self._create(borrowDate=future(2), returnDate=future(1))
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["message"], "Return date must be after borrow date")

    def test_duplicate_open_request_is_rejected(self):
        self.assertEqual(self._create(quantity=1).status_code, 201)
        duplicate = self._create(quantity=1)
        self.assertEqual(duplicate.status_code, 400)
        self.assertEqual(
            duplicate.json()["message"],
            "You already have a pending or approved request for this equipment",
        )
        self.assertEqual(self.db.query(BorrowRequest).count(), 1)

    def test_new_request_allowed_after_rejection(self):
        first = self._create(quantity=1).json()["data"]["id"]
        rejected = self._transition(first, "reject", {"reason": "Field closed"})
        self.assertEqual(rejected.status_code, 200)
        self.assertEqual(rejected.json()["data"]["rejectionReason"], "Field closed")
        self.assertEqual(self.reload(self.student).RejectedRequests, 1)
        self.assertEqual(self._create(quantity=1).status_code, 201)

    def test_reject_requires_reason(self):
        request_id = self._create(quantity=1).json()["data"]["id"]
        response = self._transition(request_id, "reject", {"reason": "   "})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(self.reload(self.db.get(BorrowRequest, request_id)).Status, "pending")

    def test_transitions_from_wrong_status_fail_without_side_effects(self):
        request_id = self._create(quantity=2).json()["data"]["id"]
        self.assertEqual(self._transition(request_id, "borrow").status_code, 400)
        self.assertEqual(self._transition(request_id, "return").status_code, 400)

        self._transition(request_id, "approve")
        second = self._transition(request_id, "approve")
        self.assertEqual(second.status_code, 400)
        self.assertEqual(second.json()["message"], "Request is not pending")

        self.reload(self.equipment)
        self.assertEqual(self.equipment.QuantityAvailable, 8)
        self.assertEqual(self.equipment.QuantityBorrowed, 2)

    def test_approve_fails_when_stock_was_taken(self):
        other = self.make_student(number="S2002", phone="5550002")
        mine = self._create(quantity=6).json()["data"]["id"]
        theirs = self.client.post(
            "/api/requests",
            json=self.request_payload(self.equipment, quantity=6),
            headers=self.student_headers(other),
        ).json()["data"]["id"]

        self.assertEqual(self._transition(mine, "approve").status_code, 200)
        late = self._transition(theirs, "approve")
        self.assertEqual(late.status_code, 400)
        self.assertEqual(self.reload(self.db.get(BorrowRequest, theirs)).Status, "pending")
        self.assertEqual(self.reload(self.equipment).QuantityAvailable, 4)

    def test_extend_records_previous_return_date(self):
        request_id = self._create(quantity=1).json()["data"]["id"]
        self.assertEqual(self._transition(request_id, "extend", {"newReturnDate": future(5)}).status_code, 400)

        self._transition(request_id, "approve")
        extended = self._transition(request_id, "extend", {"newReturnDate": future(10), "reason": "Tournament"})
        self.assertEqual(extended.status_code, 200)
        extensions = extended.json()["data"]["extensions"]
        self.assertEqual(len(extensions), 1)
        self.assertEqual(extensions[0]["reason"], "Tournament")
        self.assertIsNotNone(extensions[0]["previousReturnDate"])
        self.assertEqual(extended.json()["data"]["history"][-1]["action"], "extended")

    def test_overdue_is_derived_from_return_date(self):
        request_id = self._create(quantity=1).json()["data"]["id"]
        self._transition(request_id, "approve")
        self._transition(request_id, "borrow")

        request = self.db.get(BorrowRequest, request_id)
        request.BorrowDate = utc_now() - timedelta(days=5)
        request.ReturnDate = utc_now() - timedelta(days=2, hours=1)
        self.db.commit()

        self.assertEqual(request.Status, "borrowed")
        self.assertEqual(display_status(request), "overdue")
        self.assertEqual(serialize_request(request)["daysOverdue"], 3)

        listed = self.client.get("/api/requests?status=overdue", headers=self.admin_headers(self.admin))
        self.assertEqual([row["id"] for row in listed.json()["data"]["requests"]], [request_id])
        overdue = self.client.get("/api/requests/overdue", headers=self.admin_headers(self.admin))
        self.assertEqual(len(overdue.json()["data"]), 1)

        stats = self.client.get("/api/requests/stats/overview", headers=self.admin_headers(self.admin))
        self.assertEqual(stats.json()["data"]["statistics"]["overdue"], 1)
        self.assertEqual(stats.json()["data"]["statistics"]["borrowed"], 1)

    def test_students_only_see_their_own_requests(self):
        other = self.make_student(number="S3003", phone="5550003")
        request_id = self._create(quantity=1).json()["data"]["id"]

        foreign = self.client.get(f"/api/requests/{request_id}", headers=self.student_headers(other))
        self.assertEqual(foreign.status_code, 403)

        listed = self.client.get("/api/requests", headers=self.student_headers(other))
        self.assertEqual(listed.json()["data"]["pagination"]["count"], 0)

        mine = self.client.get("/api/requests", headers=self.student_headers(self.student))
        self.assertEqual(mine.json()["data"]["pagination"]["count"], 1)

    def test_missing_request_is_not_found(self):
        response = self._transition(999, "approve")
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["message"], "Request not found")


if __name__ == "__main__":
    unittest.main()
