import io
import os
import zipfile

import pytest

import models
from conftest import csrf_token


@pytest.fixture
def tree(share_root):
    (share_root / "docs" / "images").mkdir(parents=True)
    (share_root / "docs" / "readme.md").write_text("# hello\n")
    (share_root / "docs" / "images" / "logo.png").write_bytes(b"\x89PNG\r\n\x1a\n")
    (share_root / "blob.bin").write_bytes(b"\x00\x01\x02\xff" * 10)
    return share_root


def test_anonymous_is_refused_when_guest_mode_off(client, tree):
    resp = client.get("/api/list")
    assert resp.status_code == 401
    assert resp.json() == {"error": "authentication required"}


def test_guest_read_mode_allows_browsing(client, tree, settings_update):
    settings_update(guest_mode="read")
    assert client.get("/api/list").status_code == 200
    resp = client.post("/api/upload", files=[("files", ("x.txt", b"x"))],
                       headers={"X-CSRF-Token": csrf_token(client)})
    assert resp.status_code == 403


def test_list_directory(user_client, tree):
    body = user_client.get("/api/list", params={"path": "docs"}).json()
    assert body["path"] == "docs"
    names = [e["name"] for e in body["entries"]]
    assert names == ["images", "readme.md"]
    assert body["entries"][0]["isDir"] is True
    assert body["entries"][1]["path"] == "docs/readme.md"
    assert body["entries"][1]["size"] == len("# hello\n")
    assert body["breadcrumbs"] == [{"name": "/", "path": ""}, {"name": "docs", "path": "docs"}]


def test_traversal_is_clamped_to_root(user_client, tree):
    body = user_client.get("/api/list", params={"path": "../../.."}).json()
    assert body["path"] == ""
    assert {e["name"] for e in body["entries"]} == {"docs", "blob.bin"}


def test_symlink_escape_is_rejected(user_client, tree, tmp_path):
    outside = tmp_path / "outside"
    outside.mkdir()
    (outside / "secret.txt").write_text("top secret")
    os.symlink(str(outside), str(tree / "escape"))

    for url in ["/api/list", "/api/download", "/api/preview", "/api/zip"]:
        resp = user_client.get(url, params={"path": "escape/secret.txt" if url != "/api/list" else "escape"})
        assert resp.status_code == 400, url
        assert resp.json() == {"error": "invalid path"}


def test_listing_does_not_describe_targets_outside_root(user_client, tree, tmp_path):
    outside = tmp_path / "outside"
    outside.mkdir()
    (outside / "secret.bin").write_bytes(b"s" * 12345)
    os.symlink(str(outside / "secret.bin"), str(tree / "peek"))
    os.symlink(str(outside), str(tree / "away"))
    os.symlink(str(tree / "docs" / "readme.md"), str(tree / "inside"))

    entries = {e["name"]: e for e in user_client.get("/api/list").json()["entries"]}
    assert entries["peek"]["size"] == os.lstat(tree / "peek").st_size
    assert entries["peek"]["size"] != 12345
    assert entries["away"]["isDir"] is False
    # links that stay inside the root still describe their target
    assert entries["inside"]["size"] == len("# hello\n")


def test_download_file(user_client, tree):
    resp = user_client.get("/api/download", params={"path": "docs/readme.md"})
    assert resp.status_code == 200
    assert resp.content == b"# hello\n"
    assert "attachment" in resp.headers["content-disposition"]


def test_download_directory_redirects_to_zip(user_client, tree):
    resp = user_client.get("/api/download", params={"path": "docs"}, follow_redirects=False)
    assert resp.status_code == 303
    assert resp.headers["location"] == "/api/zip?path=docs"


def test_missing_file_is_404(user_client, tree):
    assert user_client.get("/api/download", params={"path": "nope.txt"}).status_code == 404


def test_preview(user_client, tree):
    text = user_client.get("/api/preview", params={"path": "docs/readme.md"}).json()
    assert text == {"type": "text", "content": "# hello\n", "truncated": False}
    assert user_client.get("/api/preview", params={"path": "docs/images/logo.png"}).json()["type"] == "image"
    assert user_client.get("/api/preview", params={"path": "blob.bin"}).json()["type"] == "binary"
    assert user_client.get("/api/preview", params={"path": "docs"}).json() == {"type": "directory"}


def test_zip_skips_symlinks(user_client, tree, tmp_path):
    outside = tmp_path / "outside.txt"
    outside.write_text("secret")
    os.symlink(str(outside), str(tree / "docs" / "link.txt"))

    resp = user_client.get("/api/zip", params={"path": "docs"})
    assert resp.status_code == 200
    assert resp.headers["content-type"] == "application/zip"
    with zipfile.ZipFile(io.BytesIO(resp.content)) as zf:
        names = sorted(zf.namelist())
        assert names == ["docs/images/logo.png", "docs/readme.md"]
        assert zf.read("docs/readme.md") == b"# hello\n"


def test_upload(user_client, tree, db):
    resp = user_client.post("/api/upload", data={"path": "docs"},
                            files=[("files", ("new.txt", b"fresh")), ("files", ("../evil.txt", b"x"))])
    assert resp.status_code == 200
    body = resp.json()
    assert body["uploaded"] == ["docs/new.txt", "docs/evil.txt"]
    assert body["errors"] == []
    assert (tree / "docs" / "new.txt").read_bytes() == b"fresh"
    assert not (tree / "evil.txt").exists()
    assert not list((tree / "docs").glob("*.part"))
    assert db.query(models.AuditLog).filter_by(action="upload").count() == 1


def test_upload_collision_rename_and_overwrite(user_client, tree, settings_update):
    resp = user_client.post("/api/upload", data={"path": "docs"}, files=[("files", ("readme.md", b"v2"))])
    assert resp.json()["uploaded"] == ["docs/readme_1.md"]
    assert (tree / "docs" / "readme.md").read_text() == "# hello\n"

    settings_update(collision_policy="overwrite")
    resp = user_client.post("/api/upload", data={"path": "docs"}, files=[("files", ("readme.md", b"v3"))])
    assert resp.json()["uploaded"] == ["docs/readme.md"]
    assert (tree / "docs" / "readme.md").read_bytes() == b"v3"


def test_upload_policy(user_client, tree, settings_update):
    settings_update(upload_allow_regex=r"\.(txt|md)$", upload_deny_regex=r"^secret")
    resp = user_client.post("/api/upload", files=[
        ("files", ("ok.txt", b"1")),
        ("files", ("bad.exe", b"2")),
        ("files", ("secret.txt", b"3")),
    ])
    body = resp.json()
    assert body["uploaded"] == ["ok.txt"]
    assert body["errors"] == ["rejected by allow policy: bad.exe", "rejected by deny policy: secret.txt"]


def test_upload_subdir(user_client, tree, settings_update):
    settings_update(upload_subdir="incoming")
    resp = user_client.post("/api/upload", data={"path": "docs"}, files=[("files", ("a.txt", b"a"))])
    assert resp.json()["uploaded"] == ["docs/incoming/a.txt"]


def test_upload_size_ceiling(user_client, tree, settings_update):
    settings_update(max_upload_size_mb=1)
    big = b"x" * (1024 * 1024 + 10)
    resp = user_client.post("/api/upload", files=[("files", ("big.bin", big))])
    assert resp.status_code == 413
    assert not (tree / "big.bin").exists()


def test_upload_checks_run_before_body_is_parsed(user_client, tree, settings_update):
    from fastapi.testclient import TestClient
    from main import app

    # not valid multipart: a 400 here would mean the body was read first
    headers = {"Content-Type": "multipart/form-data; boundary=zz"}
    anonymous = TestClient(app)
    resp = anonymous.post("/api/upload", content=b"x" * 64, headers=headers)
    assert resp.status_code == 403
    assert resp.json() == {"error": "upload not allowed"}

    settings_update(max_upload_size_mb=1)
    resp = user_client.post("/api/upload", content=b"x" * (1024 * 1024 + 1), headers=headers)
    assert resp.status_code == 413


def test_upload_without_files(user_client, tree):
    resp = user_client.post("/api/upload", data={"path": "docs"})
    assert resp.status_code == 400
    assert resp.json() == {"error": "no files uploaded"}


def test_upload_into_symlinked_escape_is_refused(user_client, tree, tmp_path):
    outside = tmp_path / "outside"
    outside.mkdir()
    os.symlink(str(outside), str(tree / "drop"))
    resp = user_client.post("/api/upload", data={"path": "drop"}, files=[("files", ("x.txt", b"x"))])
    assert resp.json()["uploaded"] == []
    assert resp.json()["errors"] == ["invalid destination for x.txt"]
    assert not (outside / "x.txt").exists()


def test_delete_needs_permission(user_client, tree, settings_update):
    resp = user_client.post("/api/delete", json={"path": "blob.bin"})
    assert resp.status_code == 403
    assert resp.json() == {"error": "delete not allowed"}

    settings_update(allow_delete=True)
    assert user_client.post("/api/delete", json={"path": "blob.bin"}).status_code == 200
    assert not (tree / "blob.bin").exists()


def test_delete_never_removes_root(admin_client, tree):
    for path in ["", "/", ".", "../.."]:
        resp = admin_client.post("/api/delete", json={"path": path})
        assert resp.status_code == 400
    assert tree.exists()


def test_rename(admin_client, tree):
    resp = admin_client.post("/api/rename", json={"path": "docs/readme.md", "newName": "README.txt"})
    assert resp.json() == {"ok": True, "path": "docs/README.txt"}
    assert (tree / "docs" / "README.txt").exists()

    for bad in ["../x", "a/b", "", ".."]:
        resp = admin_client.post("/api/rename", json={"path": "docs/README.txt", "newName": bad})
        assert resp.status_code == 400


def test_read_only_blocks_admin_writes(admin_client, tree, settings_update):
    settings_update(read_only=True)
    for url, kwargs in [
        ("/api/delete", {"json": {"path": "blob.bin"}}),
        ("/api/rename", {"json": {"path": "blob.bin", "newName": "b.bin"}}),
        ("/api/upload", {"files": [("files", ("x.txt", b"x"))]}),
    ]:
        resp = admin_client.post(url, **kwargs)
        assert resp.status_code == 403
        assert resp.json() == {"error": "read-only mode enabled"}
    assert (tree / "blob.bin").exists()
