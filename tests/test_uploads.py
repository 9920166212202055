import os

import pytest

from agromart import config
from agromart.errors import AppError
from agromart.uploads import delete_image

PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 64


def test_upload_image_stores_file(client, user, auth_header):
    res = client.post("/api/upload/image", files={"file": ("leaf.png", PNG, "image/png")},
                      data={"type": "reviews"}, headers=auth_header(user))

    assert res.status_code == 201
    data = res.json()["data"]
    assert data["url"] == f"/uploads/reviews/{data['filename']}"
    assert data["size"] == len(PNG)
    assert os.path.isfile(os.path.join(config.UPLOAD_DIR, "reviews", data["filename"]))


def test_upload_rejects_non_images(client, user, auth_header):
    res = client.post("/api/upload/image", files={"file": ("notes.txt", b"hello", "text/plain")},
                      headers=auth_header(user))
    assert res.status_code == 400
    assert res.json()["error"]["code"] == "INVALID_FILE_TYPE"


def test_upload_rejects_large_files(client, user, auth_header, monkeypatch):
    monkeypatch.setattr(config, "MAX_UPLOAD_BYTES", 16)
    res = client.post("/api/upload/image", files={"file": ("big.png", PNG, "image/png")},
                      headers=auth_header(user))
    assert res.status_code == 400
    assert res.json()["error"]["code"] == "FILE_TOO_LARGE"


def test_upload_requires_login(client):
    res = client.post("/api/upload/image", files={"file": ("leaf.png", PNG, "image/png")})
    assert res.status_code == 401


def test_upload_many(client, user, auth_header):
    files = [("files", (f"leaf{i}.png", PNG, "image/png")) for i in range(3)]
    res = client.post("/api/upload/images", files=files, headers=auth_header(user))
    assert res.status_code == 201
    assert len(res.json()["data"]) == 3


def test_admin_deletes_upload(client, user, admin, auth_header):
    uploaded = client.post("/api/upload/image", files={"file": ("leaf.png", PNG, "image/png")},
                           headers=auth_header(user)).json()["data"]

    forbidden = client.delete(f"/api/upload/products/{uploaded['filename']}", headers=auth_header(user))
    assert forbidden.status_code == 403

    res = client.delete(f"/api/upload/products/{uploaded['filename']}", headers=auth_header(admin))
    assert res.status_code == 200
    missing = client.delete(f"/api/upload/products/{uploaded['filename']}", headers=auth_header(admin))
    assert missing.json()["error"]["code"] == "FILE_NOT_FOUND"


def test_delete_rejects_unexpected_filenames():
    with pytest.raises(AppError) as exc:
        delete_image("products", "../secret.png")
    assert exc.value.code == "INVALID_FILENAME"


def test_batch_with_invalid_file_writes_nothing(client, user, auth_header):
    files = [
        ("files", ("leaf.png", PNG, "image/png")),
        ("files", ("notes.txt", b"hello", "text/plain")),
    ]
    res = client.post("/api/upload/images", files=files, headers=auth_header(user))

    assert res.status_code == 400
    assert res.json()["error"]["code"] == "INVALID_FILE_TYPE"
    products_dir = os.path.join(config.UPLOAD_DIR, "products")
    assert not os.path.isdir(products_dir) or os.listdir(products_dir) == []
