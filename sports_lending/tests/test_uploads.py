import io
import unittest

from fastapi import UploadFile
from starlette.datastructures import Headers

from sports_lending.tests.support import LendingTestCase

from sports_lending.services.errors import UploadError
from sports_lending.services.upload_service import (
    MAX_FILE_SIZE,
    UPLOAD_ROOT,
    build_stored_filename,
    remove_upload,
    store_upload,
    store_uploads,
)


def _upload(name: str, payload: bytes, content_type: str) -> UploadFile:
    return UploadFile(file=io.BytesIO(payload), filename=name, headers=Headers({"content-type": content_type}))


class UploadServiceTests(unittest.TestCase):
    def test_stored_filename_is_sanitized(self):
        name = build_stored_filename("../../My Card!.PNG")
        self.assertTrue(name.startswith("My_Card_-"))
        self.assertTrue(name.endswith(".PNG"))
        self.assertNotIn("/", name)

    def test_store_and_remove(self):
        stored = store_upload("idCard", _upload("card.png", b"png-bytes", "image/png"), images_only=True)
        path = UPLOAD_ROOT / stored.relative_path
        self.assertTrue(path.exists())
        self.assertTrue(stored.url.endswith(f"/uploads/{stored.relative_path}"))

        remove_upload(stored.url)
        self.assertFalse(path.exists())

    def test_rejects_wrong_type_and_oversize(self):
        with self.assertRaises(UploadError):
            store_upload("idCard", _upload("card.pdf", b"%PDF", "application/pdf"), images_only=True)
        with self.assertRaises(UploadError):
            store_upload("attachments", _upload("big.pdf", b"x" * (MAX_FILE_SIZE + 1), "application/pdf"))

    def test_batch_cleans_up_on_failure(self):
        uploads = [
            _upload("a.png", b"a", "image/png"),
            _upload("b.exe", b"b", "application/octet-stream"),
        ]
        before = set((UPLOAD_ROOT / "equipment").glob("*")) if (UPLOAD_ROOT / "equipment").exists() else set()
        with self.assertRaises(UploadError):
            store_uploads("images", uploads, max_count=5, images_only=True)
        after = set((UPLOAD_ROOT / "equipment").glob("*"))
        self.assertEqual(after, before)

    def test_remove_ignores_paths_outside_upload_root(self):
        remove_upload("/uploads/../../etc/passwd")
        remove_upload(None)


class EquipmentImageRouteTests(LendingTestCase):
    def test_first_uploaded_image_becomes_primary(self):
        admin = self.make_admin()
        equipment = self.make_equipment(total=2)
        response = self.client.post(
            f"/api/equipment/{equipment.EquipmentID}/images",
            files=[
                ("images", ("front.png", b"front", "image/png")),
                ("images", ("side.png", b"side", "image/png")),
            ],
            headers=self.admin_headers(admin),
        )
        self.assertEqual(response.status_code, 200)
        images = response.json()["data"]["images"]
        self.assertEqual([image["isPrimary"] for image in images], [True, False])

    def test_too_many_images_rejected(self):
        admin = self.make_admin()
        equipment = self.make_equipment(total=2)
        files = [("images", (f"{index}.png", b"x", "image/png")) for index in range(6)]
        response = self.client.post(
            f"/api/equipment/{equipment.EquipmentID}/images",
            files=files,
            headers=self.admin_headers(admin),
        )
        self.assertEqual(response.status_code, 400)


if __name__ == "__main__":
    unittest.main()
