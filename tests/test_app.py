import importlib
import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from budgetsync.core.exceptions import NoRecordUpdatedError

TOKEN = "test-token"
AUTH = {"x-actual-token": TOKEN}
ADMIN = {"x-admin-password": "test-admin"}


def _prepare_client(tmp_path, monkeypatch, *, token=TOKEN, max_size=str(1024 * 1024)):
    project_root = Path(__file__).resolve().parents[1]
    project_root_str = str(project_root)
    if project_root_str not in sys.path:
        sys.path.insert(0, project_root_str)

    db_path = tmp_path / "account.sqlite"
    monkeypatch.setenv("DB_URL", f"sqlite:///{db_path}")
    monkeypatch.setenv("USER_FILES_DIR", str(tmp_path / "user-files"))
    monkeypatch.setenv("SERVER_TOKEN", token)
    monkeypatch.setenv("ADMIN_PASSWORD", "test-admin")
    monkeypatch.setenv("MAX_FILE_SIZE_BYTES", max_size)
    monkeypatch.setenv("DB_BUSY_BACKOFF_SECONDS", "0.01")

    # Reload modules so configuration changes take effect cleanly.
    module_order = [
        "budgetsync.config",
        "budgetsync.core.metrics",
        "budgetsync.blobs",
        "budgetsync.api.routes",
        "budgetsync.main",
    ]

    for module_name in module_order:
        module = importlib.import_module(module_name)
        importlib.reload(module)

    main = sys.modules["budgetsync.main"]

    test_client = TestClient(main.app)
    test_client.files_dir = tmp_path / "user-files"  # type: ignore[attr-defined]
    return test_client


@pytest.fixture
def client(tmp_path, monkeypatch):
    test_client = _prepare_client(tmp_path, monkeypatch)
    with test_client as c:
        yield c


def _upload(
    client,
    file_id="budget-1",
    body=b"blob-v1",
    *,
    group_id=None,
    name="My Budget",
    version="2",
    encrypt_meta='{"keyId":null}',
):
    headers = {
        **AUTH,
        "x-actual-file-id": file_id,
        "x-actual-name": name,
        "x-actual-encrypt-meta": encrypt_meta,
        "x-actual-format": version,
    }
    if group_id is not None:
        headers["x-actual-group-id"] = group_id
    return client.post("/sync/upload-user-file", content=body, headers=headers)


def test_sync_requires_token(client):
    response = client.get("/sync/list-user-files")
    assert response.status_code == 401

    response = client.get("/sync/list-user-files", headers={"x-actual-token": "wrong"})
    assert response.status_code == 401


def test_sync_disabled_without_server_token(tmp_path, monkeypatch):
    with _prepare_client(tmp_path, monkeypatch, token="") as c:
        response = c.get("/sync/list-user-files", headers={"x-actual-token": "anything"})
        assert response.status_code == 403


def test_upload_new_file_creates_record(client):
    response = _upload(client)
    assert response.status_code == 200
    group_id = response.json()["groupId"]
    assert group_id

    listing = client.get("/sync/list-user-files", headers=AUTH).json()
    assert listing == {
        "status": "ok",
        "data": [
            {
                "deleted": False,
                "fileId": "budget-1",
                "groupId": group_id,
                "name": "My Budget",
                "encryptKeyId": None,
            }
        ],
    }
    assert (client.files_dir / "file-budget-1.blob").read_bytes() == b"blob-v1"


def test_upload_existing_file_keeps_group(client):
    group_id = _upload(client).json()["groupId"]

    response = _upload(client, body=b"blob-v2", group_id=group_id, name="Renamed", version="3")

    assert response.json()["groupId"] == group_id
    info = client.get("/sync/get-user-file-info", headers={**AUTH, "x-actual-file-id": "budget-1"})
    assert info.json()["data"]["name"] == "Renamed"
    download = client.get("/sync/download-user-file", headers={**AUTH, "x-actual-file-id": "budget-1"})
    assert download.status_code == 200
    assert download.content == b"blob-v2"


def test_reset_then_upload_assigns_new_group(client):
    group_id = _upload(client).json()["groupId"]

    reset = client.post("/sync/reset-user-file", json={"fileId": "budget-1"}, headers=AUTH)
    assert reset.json() == {"status": "ok"}
    info = client.get("/sync/get-user-file-info", headers={**AUTH, "x-actual-file-id": "budget-1"})
    assert info.json()["data"]["groupId"] is None

    new_group = _upload(client, body=b"blob-v2").json()["groupId"]
    assert new_group and new_group != group_id


def test_upload_with_stale_group_after_reset_is_rejected(client):
    group_id = _upload(client).json()["groupId"]
    client.post("/sync/reset-user-file", json={"fileId": "budget-1"}, headers=AUTH)

    response = _upload(client, body=b"blob-v2", group_id=group_id)

    assert response.status_code == 400
    assert response.json() == {"status": "error", "reason": "file-has-reset"}
    assert (client.files_dir / "file-budget-1.blob").read_bytes() == b"blob-v1"
    info = client.get("/sync/get-user-file-info", headers={**AUTH, "x-actual-file-id": "budget-1"})
    assert info.json()["data"]["groupId"] is None


def test_upload_with_other_group_is_rejected(client):
    _upload(client)

    response = _upload(client, body=b"blob-v2", group_id="some-other-group")

    assert response.status_code == 400
    assert response.json()["reason"] == "file-has-reset"
    assert (client.files_dir / "file-budget-1.blob").read_bytes() == b"blob-v1"


def test_upload_after_key_change_is_rejected(client):
    group_id = _upload(client).json()["groupId"]
    client.post(
        "/sync/user-create-key",
        json={"fileId": "budget-1", "keyId": "key-1", "keySalt": "salt-1", "testContent": "test-1"},
        headers=AUTH,
    )

    stale = _upload(client, body=b"blob-v2", group_id=group_id)
    assert stale.status_code == 400
    assert stale.json() == {"status": "error", "reason": "file-has-new-key"}
    assert (client.files_dir / "file-budget-1.blob").read_bytes() == b"blob-v1"

    current = _upload(client, body=b"blob-v3", group_id=group_id, encrypt_meta='{"keyId":"key-1"}')
    assert current.status_code == 200
    assert current.json()["groupId"] == group_id
    assert (client.files_dir / "file-budget-1.blob").read_bytes() == b"blob-v3"
    assert client.get("/metrics").json()["uploads_rejected"] == 1


def test_failed_registry_update_keeps_previous_blob(client, monkeypatch):
    group_id = _upload(client).json()["groupId"]

    def fail_update(file_id, *args):
        raise NoRecordUpdatedError(file_id)

    monkeypatch.setattr(client.app.state.file_store, "update", fail_update)

    response = _upload(client, body=b"blob-v2", group_id=group_id)

    assert response.status_code == 400
    assert response.json()["reason"] == "file-not-found"
    assert (client.files_dir / "file-budget-1.blob").read_bytes() == b"blob-v1"
    assert list(client.files_dir.glob("*.tmp")) == []


def test_reset_unknown_file(client):
    response = client.post("/sync/reset-user-file", json={"fileId": "nope"}, headers=AUTH)
    assert response.status_code == 400
    assert response.json() == {"status": "error", "reason": "file-not-found"}


def test_get_user_file_info(client):
    _upload(client)
    response = client.get("/sync/get-user-file-info", headers={**AUTH, "x-actual-file-id": "budget-1"})
    data = response.json()["data"]
    assert data["fileId"] == "budget-1"
    assert data["deleted"] is False
    assert data["encryptMeta"] == '{"keyId":null}'


def test_get_user_file_info_unknown(client):
    response = client.get("/sync/get-user-file-info", headers={**AUTH, "x-actual-file-id": "nope"})
    assert response.status_code == 404
    assert response.json()["reason"] == "file-not-found"


def test_create_and_get_key(client):
    _upload(client)
    empty = client.post("/sync/user-get-key", json={"fileId": "budget-1"}, headers=AUTH)
    assert empty.json()["data"] == {"id": None, "salt": None, "test": None}

    created = client.post(
        "/sync/user-create-key",
        json={"fileId": "budget-1", "keyId": "key-1", "keySalt": "salt-1", "testContent": "test-1"},
        headers=AUTH,
    )
    assert created.json() == {"status": "ok"}

    key = client.post("/sync/user-get-key", json={"fileId": "budget-1"}, headers=AUTH)
    assert key.json()["data"] == {"id": "key-1", "salt": "salt-1", "test": "test-1"}
    listing = client.get("/sync/list-user-files", headers=AUTH).json()["data"]
    assert listing[0]["encryptKeyId"] == "key-1"


def test_create_key_unknown_file(client):
    response = client.post(
        "/sync/user-create-key",
        json={"fileId": "nope", "keyId": "k", "keySalt": "s", "testContent": "t"},
        headers=AUTH,
    )
    assert response.status_code == 400


def test_update_user_filename(client):
    _upload(client)
    response = client.post(
        "/sync/update-user-filename", json={"fileId": "budget-1", "name": "Household"}, headers=AUTH
    )
    assert response.json() == {"status": "ok"}
    listing = client.get("/sync/list-user-files", headers=AUTH).json()["data"]
    assert listing[0]["name"] == "Household"

    missing = client.post("/sync/update-user-filename", json={"fileId": "nope", "name": "x"}, headers=AUTH)
    assert missing.status_code == 404


def test_delete_user_file_tombstones(client):
    _upload(client)

    response = client.post("/sync/delete-user-file", json={"fileId": "budget-1"}, headers=AUTH)
    assert response.json() == {"status": "ok"}

    listing = client.get("/sync/list-user-files", headers=AUTH).json()["data"]
    assert [f["deleted"] for f in listing] == [True]
    info = client.get("/sync/get-user-file-info", headers={**AUTH, "x-actual-file-id": "budget-1"})
    assert info.status_code == 404
    download = client.get("/sync/download-user-file", headers={**AUTH, "x-actual-file-id": "budget-1"})
    assert download.status_code == 404

    again = client.post("/sync/delete-user-file", json={"fileId": "budget-1"}, headers=AUTH)
    assert again.status_code == 200
    assert client.get("/metrics").json()["deleted"] == 1


def test_delete_unknown_file(client):
    response = client.post("/sync/delete-user-file", json={"fileId": "nope"}, headers=AUTH)
    assert response.status_code == 404


def test_admin_purge_requires_password(client):
    _upload(client)
    response = client.delete("/admin/files/budget-1")
    assert response.status_code == 401


def test_admin_purge_removes_record_and_blob(client):
    _upload(client)
    _upload(client, file_id="budget-2")

    response = client.delete("/admin/files/budget-1", headers=ADMIN)

    assert response.status_code == 200
    assert response.json()["data"] == {"fileId": "budget-1", "wasDeleted": False}
    assert not (client.files_dir / "file-budget-1.blob").exists()
    listing = client.get("/sync/list-user-files", headers=AUTH).json()["data"]
    assert [f["fileId"] for f in listing] == ["budget-2"]
    assert client.delete("/admin/files/budget-1", headers=ADMIN).status_code == 404


def test_admin_purge_when_blob_already_gone(client):
    _upload(client)
    (client.files_dir / "file-budget-1.blob").unlink()

    response = client.delete("/admin/files/budget-1", headers=ADMIN)

    assert response.status_code == 200
    assert client.get("/sync/list-user-files", headers=AUTH).json()["data"] == []


def test_upload_rejects_files_over_limit(tmp_path, monkeypatch):
    with _prepare_client(tmp_path, monkeypatch, max_size="16") as c:
        response = _upload(c, body=b"x" * 32)
        assert response.status_code == 413
        assert "File too large" in response.json()["detail"]
        assert c.get("/sync/list-user-files", headers=AUTH).json()["data"] == []


def test_upload_rejects_path_like_file_id(client):
    response = _upload(client, file_id="../escape")
    assert response.status_code == 400


def test_metrics_and_health(client):
    _upload(client)
    _upload(client, file_id="budget-2")

    payload = client.get("/metrics").json()
    assert payload["files"] == 2
    assert payload["uploads"] == 2

    client.post("/sync/reset-user-file", json={"fileId": "budget-1"}, headers=AUTH)
    client.delete("/admin/files/budget-2", headers=ADMIN)

    payload = client.get("/metrics").json()
    assert payload["files"] == 1
    assert payload["resets"] == 1
    assert payload["purged"] == 1
    assert payload["bytes_uploaded"] == 14

    health = client.get("/health")
    assert health.json() == {"status": "ok"}
