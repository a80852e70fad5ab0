from unittest import mock

import pytest

from displaypush.api import create_app
from displaypush.models import STATUS_CANCELLED, STATUS_QUEUED

UPLOAD_DIR = "/srv/uploads"


@pytest.fixture
def notifier():
    return mock.Mock()


@pytest.fixture
def client(store, config, notifier):
    config["upload_dir"] = UPLOAD_DIR
    app = create_app(store, config, notifier)
    app.config["TESTING"] = True
    return app.test_client()


def job_body(**overrides):
    body = {
        "userId": "user-1",
        "portalUser": "alice",
        "portalPass": "s3cret",
        "displayValue": "12",
        "interval": "1",
        "cycle": "false",
        "images": [{"path": f"{UPLOAD_DIR}/1-a.png", "name": "a.png"}],
    }
    body.update(overrides)
    return body


def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.get_json()["status"] == "ok"


def test_create_job_then_query_status(client, store, notifier):
    resp = client.post("/api/create-job", json=job_body())

    assert resp.status_code == 201
    job_id = resp.get_json()["jobId"]
    job = store.get_job(job_id)
    assert job.settings == {"interval_minutes": 1, "cycle": False, "display": "12"}
    notifier.job_created.assert_called_once_with(job_id, "user-1", 1)

    status = client.get("/api/job-status/user-1").get_json()
    assert status["id"] == job_id
    assert status["status"] == STATUS_QUEUED


@pytest.mark.parametrize("missing", ["userId", "portalUser", "portalPass", "displayValue", "images"])
def test_create_job_missing_fields(client, missing):
    body = job_body()
    del body[missing]
    assert client.post("/api/create-job", json=body).status_code == 400


def test_create_job_invalid_settings(client):
    resp = client.post("/api/create-job", json=job_body(interval="-3"))
    assert resp.status_code == 400


def test_create_job_rejects_path_outside_upload_dir(client, tmp_path):
    victim = tmp_path / "outside" / "important.txt"
    victim.parent.mkdir()
    victim.write_text("keep me")

    resp = client.post("/api/create-job", json=job_body(images=[{"path": str(victim), "name": "x.png"}]))

    assert resp.status_code == 400
    assert "upload directory" in resp.get_json()["message"]
    assert client.get("/api/job-status/user-1").status_code == 404
    assert victim.exists()


@pytest.mark.parametrize("path", [
    f"{UPLOAD_DIR}/../etc/passwd",
    UPLOAD_DIR,
    "relative/a.png",
])
def test_create_job_rejects_escaping_paths(client, path):
    resp = client.post("/api/create-job", json=job_body(images=[{"path": path}]))
    assert resp.status_code == 400


def test_create_job_rejects_symlink_out_of_upload_dir(client, config, tmp_path):
    uploads = tmp_path / "uploads"
    uploads.mkdir()
    victim = tmp_path / "important.txt"
    victim.write_text("keep me")
    (uploads / "a.png").symlink_to(victim)
    config["upload_dir"] = str(uploads)

    resp = client.post("/api/create-job", json=job_body(images=[{"path": str(uploads / "a.png")}]))

    assert resp.status_code == 400
    assert victim.exists()


def test_status_for_unknown_owner(client):
    assert client.get("/api/job-status/nobody").status_code == 404


def test_stop_job(client, store):
    job_id = client.post("/api/create-job", json=job_body()).get_json()["jobId"]

    first = client.post(f"/api/stop-job/{job_id}")
    second = client.post(f"/api/stop-job/{job_id}")

    assert first.status_code == 200
    assert second.status_code == 404
    assert store.get_status(job_id) == STATUS_CANCELLED


def test_fetch_displays(client):
    displays = [{"value": "12", "text": "Lobby"}]
    with mock.patch("displaypush.api.fetch_displays", return_value=displays) as fetch:
        resp = client.post("/api/fetch-displays", json={"username": "alice", "password": "s3cret"})

    assert resp.status_code == 200
    assert resp.get_json() == displays
    assert fetch.call_args.args[1:] == ("alice", "s3cret")


def test_fetch_displays_failure(client):
    with mock.patch("displaypush.api.fetch_displays", side_effect=RuntimeError("login failed")):
        resp = client.post("/api/fetch-displays", json={"username": "alice", "password": "bad"})
    assert resp.status_code == 500


def test_fetch_displays_requires_credentials(client):
    assert client.post("/api/fetch-displays", json={"username": "alice"}).status_code == 400


def test_fetch_display_details(client):
    url = "https://portal.example/previews/12.png"
    with mock.patch("displaypush.api.fetch_display_preview", return_value=url):
        resp = client.post(
            "/api/fetch-display-details",
            json={"username": "alice", "password": "s3cret", "displayValue": "12"},
        )
    assert resp.get_json() == {"imageUrl": url}
