"""HTTP API tests against the full application."""

import hashlib
import uuid

import pytest
from fastapi.testclient import TestClient

from media_pipeline.core.exceptions import QueueFullError
from media_pipeline.main import create_app
from media_pipeline.modules.media.repository import MediaItemRepository

HEADERS = {"X-User-Id": "user-1"}
VIDEO = bytes(range(256)) * 10  # 3 chunks of 1024 bytes


def _sha256(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


class RecordingDispatcher:
    def __init__(self, full: bool = False):
        self.jobs = []
        self.full = full

    async def submit(self, job) -> bool:
        if self.full:
            raise QueueFullError("Processing queue is full")
        self.jobs.append(job)
        return True


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture
def client(settings, dispatcher):
    app = create_app(settings)
    with TestClient(app) as client:
        app.state.pipeline.media_service.dispatcher = dispatcher
        yield client


def _chunks(data: bytes) -> list[bytes]:
    return [data[i:i + 1024] for i in range(0, len(data), 1024)]


def _initiate(client, data: bytes = VIDEO, mime_type: str = "video/mp4") -> str:
    chunks = _chunks(data)
    response = client.post(
        "/api/v1/uploads",
        json={
            "file_name": "lecture.mp4",
            "file_size": len(data),
            "mime_type": mime_type,
            "total_chunks": len(chunks),
            "chunk_hashes": [_sha256(c) for c in chunks],
        },
        headers=HEADERS,
    )
    assert response.status_code == 201, response.text
    return response.json()["session_id"]


def _put_chunk(client, session_id: str, index: int, chunk: bytes, claimed_hash: str = None):
    return client.put(
        f"/api/v1/uploads/{session_id}/chunks/{index}",
        data={"chunk_hash": claimed_hash or _sha256(chunk)},
        files={"chunk": ("chunk", chunk, "application/octet-stream")},
        headers=HEADERS,
    )


def _upload(client, data: bytes = VIDEO) -> str:
    session_id = _initiate(client, data)
    chunks = _chunks(data)
    for index in reversed(range(len(chunks))):
        assert _put_chunk(client, session_id, index, chunks[index]).status_code == 200
    response = client.post(
        f"/api/v1/uploads/{session_id}/complete",
        json={"final_hash": _sha256(data)},
        headers=HEADERS,
    )
    assert response.status_code == 200, response.text
    return session_id


class TestUploadApi:

    def test_full_upload_flow(self, client) -> None:
        session_id = _initiate(client)
        chunks = _chunks(VIDEO)

        first = _put_chunk(client, session_id, 1, chunks[1])
        assert first.status_code == 200
        assert first.json()["uploaded_count"] == 1

        status = client.get(f"/api/v1/uploads/{session_id}", headers=HEADERS).json()
        assert status["status"] == "uploading"
        assert status["received_chunks"] == [1]

        incomplete = client.post(
            f"/api/v1/uploads/{session_id}/complete",
            json={"final_hash": _sha256(VIDEO)},
            headers=HEADERS,
        )
        assert incomplete.status_code == 409
        assert incomplete.json()["error"]["code"] == "INCOMPLETE"

        for index in (0, 2):
            assert _put_chunk(client, session_id, index, chunks[index]).status_code == 200
        done = client.post(
            f"/api/v1/uploads/{session_id}/complete",
            json={"final_hash": _sha256(VIDEO)},
            headers=HEADERS,
        )
        assert done.status_code == 200
        assert done.json()["file_hash"] == _sha256(VIDEO)

        status = client.get(f"/api/v1/uploads/{session_id}", headers=HEADERS).json()
        assert status["status"] == "completed"
        assert status["progress_percent"] == 100

    def test_corrupted_chunk_is_rejected(self, client) -> None:
        session_id = _initiate(client)
        chunk = _chunks(VIDEO)[0]

        response = _put_chunk(client, session_id, 0, b"\xff" + chunk[1:], claimed_hash=_sha256(chunk))

        assert response.status_code == 422
        assert response.json()["error"]["code"] == "INTEGRITY_MISMATCH"
        assert response.json()["error"]["details"]["chunk_index"] == 0

    def test_out_of_range_chunk(self, client) -> None:
        session_id = _initiate(client)

        response = _put_chunk(client, session_id, 3, b"x")

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "OUT_OF_RANGE"

    def test_oversized_chunk_is_rejected(self, client) -> None:
        session_id = _initiate(client)
        oversized = VIDEO[:2048]

        response = _put_chunk(client, session_id, 0, oversized)

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "INVALID_INPUT"
        status = client.get(f"/api/v1/uploads/{session_id}", headers=HEADERS).json()
        assert status["received_chunks"] == []

    def test_disallowed_type_is_rejected(self, client) -> None:
        response = client.post(
            "/api/v1/uploads",
            json={
                "file_name": "setup.exe",
                "file_size": 10,
                "mime_type": "application/x-msdownload",
                "total_chunks": 1,
                "chunk_hashes": [_sha256(b"0123456789")],
            },
            headers=HEADERS,
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "INVALID_INPUT"

    def test_missing_identity_is_unauthorized(self, client) -> None:
        response = client.get("/api/v1/uploads/00000000-0000-0000-0000-000000000000")

        assert response.status_code == 401

    def test_unknown_session(self, client) -> None:
        response = client.get(
            "/api/v1/uploads/00000000-0000-0000-0000-000000000000", headers=HEADERS
        )

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "NOT_FOUND"

    def test_other_user_is_forbidden(self, client) -> None:
        session_id = _initiate(client)

        response = client.get(f"/api/v1/uploads/{session_id}", headers={"X-User-Id": "user-2"})

        assert response.status_code == 403

    def test_cancel(self, client) -> None:
        session_id = _initiate(client)

        response = client.delete(f"/api/v1/uploads/{session_id}", headers=HEADERS)

        assert response.status_code == 200
        assert response.json()["status"] == "failed"
        late = _put_chunk(client, session_id, 0, _chunks(VIDEO)[0])
        assert late.status_code == 409


class TestMediaApi:

    def test_register_and_poll(self, client, dispatcher) -> None:
        session_id = _upload(client)

        response = client.post(
            "/api/v1/media",
            json={"upload_session_id": session_id, "title": "Lecture 1"},
            headers=HEADERS,
        )

        assert response.status_code == 202
        body = response.json()
        assert body["status"] == "pending"
        assert body["adaptive_manifest_url"] is None
        assert len(dispatcher.jobs) == 1

        status = client.get(
            f"/api/v1/media/{body['media_item_id']}/processing-status", headers=HEADERS
        )
        assert status.status_code == 200
        assert status.json()["status"] == "pending"

        reprocess = client.post(f"/api/v1/media/{body['media_item_id']}/reprocess", headers=HEADERS)
        assert reprocess.status_code == 409
        assert reprocess.json()["error"]["code"] == "INVALID_STATE"

    def test_queue_full_then_reprocess(self, client, dispatcher) -> None:
        session_id = _upload(client)
        dispatcher.full = True

        response = client.post(
            "/api/v1/media",
            json={"upload_session_id": session_id, "title": "Lecture 1"},
            headers=HEADERS,
        )
        assert response.status_code == 503
        assert response.json()["error"]["code"] == "QUEUE_FULL"

        item_id = _registered_item_id(client, session_id)
        status = client.get(f"/api/v1/media/{item_id}/processing-status", headers=HEADERS).json()
        assert status["status"] == "failed"

        # Terminal items get a snapshot and an immediate end of stream
        stream = client.get(f"/api/v1/media/{item_id}/progress/stream", headers=HEADERS)
        assert stream.status_code == 200
        assert stream.headers["content-type"].startswith("text/event-stream")
        assert '"status": "failed"' in stream.text
        assert "event: complete" in stream.text

        dispatcher.full = False
        retry = client.post(f"/api/v1/media/{item_id}/reprocess", headers=HEADERS)
        assert retry.status_code == 202
        assert retry.json()["status"] == "pending"
        assert dispatcher.jobs[-1].kind == "reprocess_requested"


class TestOperationalEndpoints:

    def test_health(self, client) -> None:
        assert client.get("/health").json() == {"status": "healthy"}

    def test_metrics(self, client) -> None:
        client.get("/health")

        response = client.get("/metrics")

        assert response.status_code == 200
        assert "http_requests_total" in response.text
        assert "upload_sessions_total" in response.text

    def test_correlation_id_is_echoed(self, client) -> None:
        response = client.get("/health", headers={"X-Correlation-ID": "trace-123"})

        assert response.headers["X-Correlation-ID"] == "trace-123"


def _registered_item_id(client, session_id: str) -> str:
    """Look up the media item created for an upload, on the app's event loop."""
    service = client.app.state.pipeline.media_service

    async def lookup():
        async with service.session_maker() as db:
            item = await MediaItemRepository(db).get_by_upload_session(uuid.UUID(session_id))
            return str(item.id)

    return client.portal.call(lookup)
