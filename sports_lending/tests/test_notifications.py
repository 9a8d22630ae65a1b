import unittest
from datetime import timedelta

from sports_lending.tests.support import LendingTestCase

from sports_lending.models.lending_models import NotificationRead
from sports_lending.services.clock import utc_now
from sports_lending.services.notification_service import (
    create_notification,
    get_unread_count,
    list_notifications,
    mark_all_as_read,
    mark_as_read,
)


class NotificationTests(LendingTestCase):
    def setUp(self):
        super().setUp()
        self.admin = self.make_admin()
        self.student = self.make_student()
        self.other = self.make_student(number="S2002", phone="5550002")

    def _notify(self, **overrides):
        values = {"title": "Field closed", "message": "North field is closed today.", "created_by": self.admin.AdminID}
        values.update(overrides)
        notification = create_notification(self.db, **values)
        self.db.commit()
        return notification

    def test_targeted_notification_is_only_visible_to_recipients(self):
        targeted = self._notify(recipients={"all": False, "students": [self.student.StudentID]})
        self._notify(title="Everyone")

        mine, total = list_notifications(self.db, self.student.StudentID, "Student")
        self.assertEqual(total, 2)
        self.assertIn(targeted.NotificationID, [row.NotificationID for row in mine])

        theirs, total = list_notifications(self.db, self.other.StudentID, "Student")
        self.assertEqual(total, 1)
        self.assertEqual(theirs[0].Title, "Everyone")

        response = self.client.put(
            f"/api/notifications/{targeted.NotificationID}/read",
            headers=self.student_headers(self.other),
        )
        self.assertEqual(response.status_code, 404)

    def test_expired_and_deleted_notifications_are_hidden(self):
        self._notify(expires_at=utc_now() - timedelta(minutes=1))
        deleted = self._notify(title="Removed")
        response = self.client.delete(
            f"/api/notifications/{deleted.NotificationID}",
            headers=self.admin_headers(self.admin),
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(get_unread_count(self.db, self.student.StudentID, "Student"), 0)

    def test_mark_as_read_is_idempotent(self):
        notification = self._notify()
        self.assertTrue(mark_as_read(self.db, notification, self.student.StudentID, "Student"))
        self.assertFalse(mark_as_read(self.db, notification, self.student.StudentID, "Student"))
        self.assertEqual(self.db.query(NotificationRead).count(), 1)

        for _ in range(2):
            response = self.client.put(
                f"/api/notifications/{notification.NotificationID}/read",
                headers=self.student_headers(self.student),
            )
            self.assertEqual(response.status_code, 200)
        self.assertEqual(self.db.query(NotificationRead).count(), 1)

    def test_read_state_is_tracked_per_user_model(self):
        notification = self._notify()
        mark_as_read(self.db, notification, self.student.StudentID, "Student")
        # Same numeric id, different account table.
        self.assertEqual(get_unread_count(self.db, self.student.StudentID, "Admin"), 1)
        self.assertEqual(get_unread_count(self.db, self.student.StudentID, "Student"), 0)

    def test_read_all_and_unread_count(self):
        for index in range(3):
            self._notify(title=f"Notice {index}")
        headers = self.student_headers(self.student)

        listed = self.client.get("/api/notifications", headers=headers).json()["data"]
        self.assertEqual(listed["unreadCount"], 3)
        self.assertFalse(any(row["isRead"] for row in listed["notifications"]))

        marked = self.client.put("/api/notifications/read-all", headers=headers).json()["data"]
        self.assertEqual(marked["marked"], 3)
        self.assertEqual(mark_all_as_read(self.db, self.student.StudentID, "Student"), 0)

        count = self.client.get("/api/notifications/unread-count", headers=headers).json()["data"]
        self.assertEqual(count["unreadCount"], 0)

    def test_admin_creates_notification(self):
        payload = {
            "title": "Maintenance window",
            "message": "Gym equipment unavailable on Friday.",
            "type": "warning",
            "category": "maintenance",
            "priority": "high",
            "recipients": {"students": [self.student.StudentID]},
        }
        created = self.client.post("/api/notifications", json=payload, headers=self.admin_headers(self.admin))
        self.assertEqual(created.status_code, 201)
        data = created.json()["data"]
        self.assertEqual(data["recipients"], {"all": False, "students": [self.student.StudentID], "admins": []})

        denied = self.client.post("/api/notifications", json=payload, headers=self.student_headers(self.student))
        self.assertEqual(denied.status_code, 401)

    def test_statistics_group_by_type(self):
        notification = self._notify(type="warning")
        self._notify(type="info")
        mark_as_read(self.db, notification, self.student.StudentID, "Student")
        stats = self.client.get("/api/notifications/stats", headers=self.admin_headers(self.admin)).json()["data"]
        by_type = {row["type"]: row for row in stats["typeStats"]}
        self.assertEqual(by_type["warning"]["readCount"], 1)
        self.assertEqual(by_type["info"]["count"], 1)


if __name__ == "__main__":
    unittest.main()
