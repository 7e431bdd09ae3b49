from __future__ import annotations

import io

import pytest
from conftest import make_jpeg

from photolessons.app import create_app


@pytest.fixture
def client(tmp_path, store, paths):
    app = create_app(root=tmp_path, store=store)
    app.config["TESTING"] = True
    return app.test_client()


def _post_photo(client, category="life-science", filename="frog.jpg"):
    return client.post(
        f"/uploads/{category}",
        data={"file": (io.BytesIO(make_jpeg()), filename)},
        content_type="multipart/form-data",
    )


def test_upload_stores_file_and_queues_job(client, paths):
    response = _post_photo(client)

    assert response.status_code == 202
    payload = response.get_json()
    assert payload["status"] == "queued"
    assert payload["job"]["status"] == "pending"
    assert payload["job"]["sourceRef"] == "uploads/life-science/frog.jpg"
    assert (paths.uploads_dir / "life-science" / "frog.jpg").exists()


def test_upload_rejects_bad_category_and_non_images(client):
    assert _post_photo(client, category="art").status_code == 400
    assert _post_photo(client, filename="notes.txt").status_code == 400
    assert client.post("/uploads/life-science", data={}).status_code == 400


def test_queue_monitor_lists_and_counts(client):
    job_id = _post_photo(client).get_json()["job"]["id"]

    listing = client.get("/queue").get_json()
    counts = client.get("/queue/counts").get_json()
    status = client.get(f"/queue/{job_id}").get_json()

    assert [job["id"] for job in listing["jobs"]] == [job_id]
    assert counts["pending"] == 1
    assert status["filename"] == "frog.jpg"
    assert status["result"] == {}
    assert client.get("/queue?status=pending").get_json()["jobs"][0]["id"] == job_id
    assert client.get("/queue?type=followup-generation").get_json()["jobs"] == []


def test_queue_rejects_unknown_filters(client):
    assert client.get("/queue?status=stale").status_code == 400
    assert client.get("/queue?type=thumbnail").status_code == 400


def test_unknown_job_is_404(client):
    response = client.get("/queue/999")

    assert response.status_code == 404
    assert response.get_json() == {"error": "Job not found"}


def test_clear_completed(client, store):
    job_id = _post_photo(client).get_json()["job"]["id"]
    store.claim_next()
    store.complete(job_id, {"status": "published"})

    response = client.post("/queue/clear-completed")

    assert response.get_json() == {"status": "ok", "removed": 1}
    assert store.get(job_id) is None


def test_retry_only_failed_jobs(client, store):
    job_id = _post_photo(client).get_json()["job"]["id"]

    assert client.post(f"/queue/{job_id}/retry").status_code == 409
    assert client.post("/queue/999/retry").status_code == 404

    store.claim_next()
    store.fail(job_id, "service overloaded", attempts=3)
    response = client.post(f"/queue/{job_id}/retry")

    assert response.status_code == 202
    assert response.get_json()["job"]["id"] != job_id


def test_reprocess_asset(client, paths):
    assert client.post("/assets/life-science/frog.jpg/reprocess").status_code == 404

    processed = paths.processed_dir / "life-science" / "frog.jpg"
    processed.parent.mkdir(parents=True, exist_ok=True)
    processed.write_bytes(make_jpeg())
    response = client.post("/assets/life-science/frog.jpg/reprocess")

    assert response.status_code == 202
    assert response.get_json()["job"]["reprocess"] is True
    assert client.post("/assets/art/frog.jpg/reprocess").status_code == 400


def test_reprocess_conflicts_with_queued_upload(client, paths):
    processed = paths.processed_dir / "life-science" / "frog.jpg"
    processed.parent.mkdir(parents=True, exist_ok=True)
    processed.write_bytes(make_jpeg())
    job_id = _post_photo(client).get_json()["job"]["id"]

    response = client.post("/assets/life-science/frog.jpg/reprocess")

    assert response.status_code == 409
    assert f"job {job_id}" in response.get_json()["error"]
