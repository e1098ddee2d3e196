"""
Tests for the upload API endpoints.

Tests cover:
- Health check
- Enqueueing uploads (multipart)
- Task listing, lookup and stats
- Completion polling
- Retry and clear
- Metadata recorded for completed uploads
- WebSocket snapshot stream
"""

from doc_upload_backend.main import app, get_scheduler
from doc_upload_backend.scheduler import UploadScheduler


class InterleavingScheduler(UploadScheduler):
    """Scheduler that queues one file the first time a snapshot is requested."""

    def __init__(self, client, make_payload):
        super().__init__(client, max_concurrent=1)
        self._make_payload = make_payload
        self._interleaved = False

    def snapshot(self):
        if not self._interleaved:
            self._interleaved = True
            self.enqueue(self._make_payload("interleaved.txt"))
        return super().snapshot()


def _enqueue(client, *names, folder_id=None):
    files = [("files", (name, f"body of {name}".encode(), "text/plain")) for name in names]
    data = {"folderId": folder_id} if folder_id else {}
    response = client.post("/uploads", files=files, data=data)
    assert response.status_code == 202
    return response.json()["task_ids"]


def _wait_done(client, wait_until, task_ids):
    wait_until(lambda: client.post("/uploads/status", json={"task_ids": task_ids}).json()["completed"])


class TestHealthCheck:
    """Tests for the /healthz endpoint."""

    def test_health_check_returns_ok(self, client):
        response = client.get("/healthz")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}


class TestEnqueue:
    """Tests for POST /uploads."""

    def test_enqueue_returns_ids_in_order(self, client, api_scheduler, wait_until):
        task_ids = _enqueue(client, "a.txt", "b.txt", "c.txt", folder_id="folder-1")

        assert len(task_ids) == 3
        assert [api_scheduler.get_task(i).filename for i in task_ids] == ["a.txt", "b.txt", "c.txt"]
        assert {api_scheduler.get_task(i).folder_id for i in task_ids} == {"folder-1"}
        _wait_done(client, wait_until, task_ids)

    def test_enqueue_without_files_fails(self, client):
        response = client.post("/uploads", data={"folderId": "folder-1"})
        assert response.status_code == 400
        assert response.json()["detail"] == "No files provided"


class TestTaskQueries:
    """Tests for listing, lookup and stats."""

    def test_get_task_after_completion(self, client, wait_until):
        (task_id,) = _enqueue(client, "report.pdf")
        _wait_done(client, wait_until, [task_id])

        response = client.get(f"/uploads/{task_id}")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "completed"
        assert data["progress"] == 100
        assert data["result"]["url"] == "https://files.example.com/report.pdf"

    def test_get_unknown_task_returns_404(self, client):
        response = client.get("/uploads/upload_missing")
        assert response.status_code == 404
        assert "upload_missing" in response.json()["detail"]

    def test_list_and_stats(self, client, wait_until):
        task_ids = _enqueue(client, "one.txt", "two.txt")
        _wait_done(client, wait_until, task_ids)

        listed = client.get("/uploads").json()
        assert {item["id"] for item in listed} == set(task_ids)

        stats = client.get("/uploads/stats").json()
        assert stats == {"total": 2, "pending": 0, "active": 0, "completed": 2, "failed": 0}

    def test_status_with_unknown_id_is_not_completed(self, client):
        response = client.post("/uploads/status", json={"task_ids": ["upload_missing"]})
        assert response.status_code == 200
        assert response.json() == {"completed": False}


class TestRetryAndClear:
    """Tests for POST /uploads/retry and DELETE /uploads/completed."""

    def test_retry_failed_uploads(self, client, auto_client, wait_until):
        auto_client.fail_names = {"broken.txt"}
        task_ids = _enqueue(client, "broken.txt", "fine.txt")
        _wait_done(client, wait_until, task_ids)
        assert client.get("/uploads/stats").json()["failed"] == 1

        auto_client.fail_names = set()
        response = client.post("/uploads/retry")
        assert response.status_code == 200
        assert response.json()["task_ids"] == [task_ids[0]]

        _wait_done(client, wait_until, task_ids)
        stats = client.get("/uploads/stats").json()
        assert (stats["completed"], stats["failed"]) == (2, 0)

    def test_retry_with_nothing_failed(self, client):
        response = client.post("/uploads/retry")
        assert response.json() == {"task_ids": []}

    def test_retry_after_shutdown_returns_503(self, client, api_scheduler):
        api_scheduler.shutdown()
        response = client.post("/uploads/retry")
        assert response.status_code == 503

    def test_clear_completed_is_idempotent(self, client, wait_until):
        task_ids = _enqueue(client, "x.txt", "y.txt")
        _wait_done(client, wait_until, task_ids)

        assert client.delete("/uploads/completed").json() == {"cleared": 2}
        assert client.delete("/uploads/completed").json() == {"cleared": 0}
        assert client.get("/uploads").json() == []


class TestStoredFiles:
    """Tests for metadata recorded after successful transfers."""

    def test_completed_uploads_are_recorded(self, client, auto_client, wait_until):
        auto_client.fail_names = {"skip.txt"}
        task_ids = _enqueue(client, "keep.txt", "skip.txt", folder_id="folder-2")
        _wait_done(client, wait_until, task_ids)

        wait_until(lambda: len(client.get("/files", params={"folder_id": "folder-2"}).json()) == 1)
        (stored,) = client.get("/files", params={"folder_id": "folder-2"}).json()
        assert stored["name"] == "keep.txt"
        assert stored["task_id"] == task_ids[0]
        assert stored["url"] == "https://files.example.com/keep.txt"
        assert stored["file_type"] == "text/plain"

    def test_retried_upload_is_recorded(self, client, auto_client, wait_until):
        auto_client.fail_names = {"late.txt"}
        task_ids = _enqueue(client, "late.txt")
        _wait_done(client, wait_until, task_ids)
        assert client.get("/files").json() == []

        auto_client.fail_names = set()
        client.post("/uploads/retry")
        wait_until(lambda: len(client.get("/files").json()) == 1)


class TestWebSocket:
    """Tests for the /uploads/ws snapshot stream."""

    def test_stream_sends_current_then_updates(self, client, api_scheduler, make_payload):
        with client.websocket_connect("/uploads/ws") as websocket:
            initial = websocket.receive_json()
            assert initial["tasks"] == []

            task_id = api_scheduler.enqueue(make_payload("streamed.txt"))
            update = websocket.receive_json()
            assert update["version"] > initial["version"]
            assert task_id in {task["id"] for task in update["tasks"]}

    def test_stream_never_goes_backwards(self, client, gated_client, make_payload):
        """A change made while the connection is being set up is not sent after the newer initial snapshot."""
        gated_client.progress_at = None
        scheduler = InterleavingScheduler(gated_client, make_payload)
        app.dependency_overrides[get_scheduler] = lambda: scheduler
        try:
            with client.websocket_connect("/uploads/ws") as websocket:
                initial = websocket.receive_json()
                assert [task["filename"] for task in initial["tasks"]] == ["interleaved.txt"]

                scheduler.enqueue(make_payload("after.txt"))
                update = websocket.receive_json()
                assert update["version"] > initial["version"]
                assert update["stats"]["total"] == 2
        finally:
            gated_client.release_all()
            scheduler.shutdown(wait=True)
