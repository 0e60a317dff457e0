import sys
from urllib.parse import parse_qs, urlsplit

import pytest
from sqlmodel import select

from conftest import expire_room, png_bytes

MiB = 1024 * 1024


def _file_rows():
    from roomdrop.db import session_scope
    from roomdrop.models import File as FileModel

    with session_scope() as session:
        return session.exec(select(FileModel)).all()


def _stored_objects(upload_dir):
    if not upload_dir.exists():
        return []
    return [p for p in upload_dir.rglob("*") if p.is_file()]


def test_upload_png_returns_signed_url_and_lists_it(client, make_room):
    room = make_room()
    code = room["room_code"]

    response = client.post(
        f"/rooms/{code}/files", files={"file": ("holiday.png", png_bytes(MiB), "image/png")}
    )
    assert response.status_code == 201
    uploaded = response.json()
    assert uploaded["signed_url"]
    assert uploaded["room_id"] == room["id"]
    assert uploaded["file_name"] == "holiday.png"
    assert uploaded["file_path"].startswith(f"rooms/{room['id']}/")
    assert uploaded["file_path"].endswith("_holiday.png")

    listing = client.get(f"/rooms/{code}/files")
    assert listing.status_code == 200
    files = listing.json()
    assert len(files) == 1
    assert files[0]["file_name"] == "holiday.png"
    assert files[0]["id"] == uploaded["id"]
    assert files[0]["signed_url"]


def test_signed_url_serves_the_bytes(client, make_room):
    code = make_room()["room_code"]
    payload = png_bytes(2048)
    uploaded = client.post(
        f"/rooms/{code}/files", files={"file": ("shot.png", payload, "image/png")}
    ).json()

    response = client.get(uploaded["signed_url"])
    assert response.status_code == 200
    assert response.content == payload
    assert "shot.png" in response.headers["content-disposition"]


def test_tampered_signature_is_rejected(client, make_room):
    code = make_room()["room_code"]
    uploaded = client.post(
        f"/rooms/{code}/files", files={"file": ("a.png", png_bytes(64), "image/png")}
    ).json()

    parts = urlsplit(uploaded["signed_url"])
    expires = parse_qs(parts.query)["expires"][0]
    response = client.get(f"{parts.path}?expires={expires}&signature={'0' * 64}")
    assert response.status_code == 403

    unsigned = client.get(parts.path)
    assert unsigned.status_code == 403


def test_plain_text_upload_is_rejected_without_side_effects(client, make_room):
    code = make_room()["room_code"]
    response = client.post(f"/rooms/{code}/files", files={"file": ("notes.txt", b"hi", "text/plain")})
    assert response.status_code == 400
    assert "File type not allowed" in response.json()["detail"]

    assert _file_rows() == []
    assert _stored_objects(client.upload_dir) == []
    assert client.get(f"/rooms/{code}/files").json() == []


def test_oversized_upload_is_rejected_without_side_effects(client, make_room):
    code = make_room()["room_code"]
    response = client.post(
        f"/rooms/{code}/files", files={"file": ("huge.jpg", b"\xff" * (11 * MiB), "image/jpeg")}
    )
    assert response.status_code == 400
    assert "File too large" in response.json()["detail"]

    assert _file_rows() == []
    assert _stored_objects(client.upload_dir) == []


def test_upload_to_unknown_room_returns_404(client):
    response = client.post("/rooms/ZZZZZZ/files", files={"file": ("a.png", png_bytes(64), "image/png")})
    assert response.status_code == 404


def test_upload_to_expired_room_returns_410(client, make_room):
    room = make_room()
    expire_room(room["id"])
    response = client.post(
        f"/rooms/{room['room_code']}/files", files={"file": ("a.png", png_bytes(64), "image/png")}
    )
    assert response.status_code == 410
    assert _file_rows() == []


def test_listing_an_expired_room_still_works(client, make_room):
    room = make_room()
    client.post(f"/rooms/{room['room_code']}/files", files={"file": ("a.png", png_bytes(64), "image/png")})
    expire_room(room["id"])
    response = client.get(f"/rooms/{room['room_code']}/files")
    assert response.status_code == 200
    assert len(response.json()) == 1


def test_list_files_for_unknown_room_returns_404(client):
    assert client.get("/rooms/ZZZZZZ/files").status_code == 404


def test_upload_without_file_returns_400(client, make_room):
    code = make_room()["room_code"]
    response = client.post(f"/rooms/{code}/files", data={"other": "x"})
    assert response.status_code == 400
    assert response.json()["detail"] == "No file provided"


def test_files_are_listed_newest_first(client, make_room):
    code = make_room()["room_code"]
    for name in ("first.png", "second.png", "third.pdf"):
        content_type = "application/pdf" if name.endswith(".pdf") else "image/png"
        response = client.post(f"/rooms/{code}/files", files={"file": (name, b"data", content_type)})
        assert response.status_code == 201

    names = [f["file_name"] for f in client.get(f"/rooms/{code}/files").json()]
    assert names == ["third.pdf", "second.png", "first.png"]


def test_unsafe_file_names_are_sanitized_in_the_storage_key(client, make_room):
    code = make_room()["room_code"]
    response = client.post(
        f"/rooms/{code}/files", files={"file": ("my photo (1).png", png_bytes(64), "image/png")}
    )
    assert response.status_code == 201
    body = response.json()
    assert body["file_name"] == "my photo (1).png"
    assert body["file_path"].endswith("_my_photo__1_.png")


@pytest.mark.parametrize(
    "name,expected",
    [
        ("report.pdf", "report.pdf"),
        ("../../etc/passwd", ".._.._etc_passwd"),
        ("a b\tc.webp", "a_b_c.webp"),
        ("café.jpg", "caf_.jpg"),
    ],
)
def test_sanitize_filename(name, expected):
    from roomdrop.services.files import sanitize_filename

    assert sanitize_filename(name) == expected
    assert len(sanitize_filename(name)) == len(name)


def test_build_file_path_layout():
    from roomdrop.services.files import build_file_path

    assert build_file_path("room-1", "x y.png", timestamp_ms=1700000000123) == "rooms/room-1/1700000000123_x_y.png"


def test_storage_failure_leaves_no_metadata(client, make_room):
    from roomdrop.core.exceptions import StorageError
    from roomdrop.storage import ObjectStore, get_object_store

    class _BrokenStore(ObjectStore):
        def put(self, key, data, content_type):
            raise StorageError("bucket unavailable")

    client.app.dependency_overrides[get_object_store] = lambda: _BrokenStore()

    code = make_room()["room_code"]
    response = client.post(f"/rooms/{code}/files", files={"file": ("a.png", png_bytes(64), "image/png")})
    assert response.status_code == 500
    assert response.json()["detail"] == "bucket unavailable"
    assert _file_rows() == []


def test_signing_failure_still_returns_the_upload(client, make_room):
    from roomdrop.core.exceptions import StorageError
    from roomdrop.storage import LocalObjectStore, get_object_store

    class _UnsignableStore(LocalObjectStore):
        def sign(self, key, expires_in):
            raise StorageError("signing unavailable")

    store = _UnsignableStore(str(client.upload_dir), "secret")
    client.app.dependency_overrides[get_object_store] = lambda: store

    code = make_room()["room_code"]
    response = client.post(f"/rooms/{code}/files", files={"file": ("a.png", png_bytes(64), "image/png")})
    assert response.status_code == 201
    assert response.json()["signed_url"] is None
    assert len(_file_rows()) == 1


def test_metadata_failure_removes_stored_bytes(client, tmp_path):
    from roomdrop.core.exceptions import MetadataWriteFailed
    from roomdrop.db import session_scope
    from roomdrop.services.files import upload_file
    from roomdrop.storage import LocalObjectStore

    store = LocalObjectStore(str(tmp_path / "objects"), "secret")

    # No such room: the foreign key rejects the row after the bytes are stored
    with session_scope() as session:
        with pytest.raises(MetadataWriteFailed):
            upload_file(session, store, "missing-room", png_bytes(64), "a.png", "image/png")

    assert _stored_objects(tmp_path / "objects") == []
    assert _file_rows() == []


def test_upload_counts_in_metrics(client, make_room):
    code = make_room()["room_code"]
    client.post(f"/rooms/{code}/files", files={"file": ("a.png", png_bytes(100), "image/png")})
    client.post(f"/rooms/{code}/files", files={"file": ("a.txt", b"x", "text/plain")})

    payload = client.get("/metrics").json()
    assert payload["uploads"] == 1
    assert payload["bytes_uploaded"] == 100
    assert payload["uploads_rejected"] == 1
    assert payload["rooms_created"] == 1
    assert payload["total_files"] == 1
    assert payload["active_rooms"] == 1
    assert sys.modules["roomdrop.core.metrics"].metrics.snapshot()["uploads"] == 1


def test_refresh_failure_after_commit_keeps_row_and_bytes(client, make_room, tmp_path, monkeypatch):
    from sqlalchemy.exc import OperationalError

    from roomdrop.core.exceptions import PersistenceError
    from roomdrop.db import session_scope
    from roomdrop.services.files import upload_file
    from roomdrop.storage import LocalObjectStore

    room = make_room()
    store = LocalObjectStore(str(tmp_path / "objects"), "secret")

    def _dropped_connection(*args, **kwargs):
        raise OperationalError("SELECT file", {}, Exception("connection timed out"))

    with session_scope() as session:
        monkeypatch.setattr(session, "refresh", _dropped_connection)
        with pytest.raises(PersistenceError):
            upload_file(session, store, room["id"], png_bytes(64), "a.png", "image/png")

    rows = _file_rows()
    assert len(rows) == 1
    assert (tmp_path / "objects" / rows[0].file_path).read_bytes() == png_bytes(64)
