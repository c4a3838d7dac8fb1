"""
Shared pytest fixtures for modelvc tests.

Provides a tracked model file in a temporary directory, the snapshot store
and commit tree bound to it, and an in-memory sync backend served through
httpx.MockTransport.
"""

import json
from pathlib import Path
from typing import Dict, List, Set

import httpx
import pytest

from modelvc.api_clients.network_error_handler import RetryConfig
from modelvc.api_clients.sync_client import CloudSyncClient
from modelvc.storage.snapshot_store import SnapshotStore
from modelvc.tree.commit_tree import CommitTree

MODEL_BYTES = b"3DM-v7\x00\x01binary-model-payload"

BACKEND_URL = "https://sync.test"
STORAGE_HOST = "storage.test"
PROJECT_ID = "p1"
TOKEN = "token-123"


class FakeSyncBackend:
    """In-memory backend issuing transfer URLs and storing objects by key.

    Objects are keyed by their project-relative key (``tree.json``,
    ``commits/<id>.3dm``). Keys listed in ``rejected_uploads`` answer PUT with
    ``reject_status``, mimicking an expired or invalid transfer URL.
    """

    def __init__(self):
        self.objects: Dict[str, bytes] = {}
        self.requests: List[httpx.Request] = []
        self.rejected_uploads: Set[str] = set()
        self.reject_status = 403

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.host == STORAGE_HOST:
            return self._storage(request)

        prefix = f"/api/projects/{PROJECT_ID}/sync/"
        path = request.url.path
        if not path.startswith(prefix):
            return httpx.Response(404, json={"detail": "Project not found"})
        if request.headers.get("Authorization") != f"Bearer {TOKEN}":
            return httpx.Response(401, json={"detail": "Invalid token"})

        action = path[len(prefix) :]
        if action in ("push-url", "pull-url") and request.method == "POST":
            key = json.loads(request.content)["file_key"]
            url_field = "upload_url" if action == "push-url" else "download_url"
            return httpx.Response(
                200,
                json={
                    url_field: f"https://{STORAGE_HOST}/{key}?signature=abc",
                    "s3_key": f"projects/{PROJECT_ID}/{key}",
                },
            )
        if action == "list" and request.method == "GET":
            files = [
                {"file_key": key, "size": len(data), "lastModified": "2024-06-10T12:00:00Z"}
                for key, data in self.objects.items()
            ]
            return httpx.Response(200, json={"files": files})
        return httpx.Response(404, json={"detail": "Unknown endpoint"})

    def _storage(self, request: httpx.Request) -> httpx.Response:
        key = request.url.path.lstrip("/")
        if request.method == "PUT":
            if key in self.rejected_uploads:
                return httpx.Response(self.reject_status, text="Request has expired")
            self.objects[key] = request.content
            return httpx.Response(200)
        if request.method == "GET":
            if key not in self.objects:
                return httpx.Response(404, text="NoSuchKey")
            return httpx.Response(200, content=self.objects[key])
        return httpx.Response(405)

    def tree_json(self) -> dict:
        return json.loads(self.objects["tree.json"])

    def client(self) -> CloudSyncClient:
        return CloudSyncClient(
            BACKEND_URL,
            lambda: TOKEN,
            project_id=PROJECT_ID,
            retry_config=RetryConfig(max_retries=1, initial_delay=0.0, jitter_enabled=False),
            transport=httpx.MockTransport(self.handler),
        )


@pytest.fixture
def model_file(tmp_path: Path) -> Path:
    """A tracked model file with some binary content."""
    path = tmp_path / "model.3dm"
    path.write_bytes(MODEL_BYTES)
    return path


@pytest.fixture
def model_bytes() -> bytes:
    return MODEL_BYTES


@pytest.fixture
def store(model_file: Path) -> SnapshotStore:
    return SnapshotStore(model_file)


@pytest.fixture
def tree(store: SnapshotStore) -> CommitTree:
    """Fresh tree (main branch, no commits) persisting blobs through the store."""
    return CommitTree.create(store)


@pytest.fixture
def fake_backend() -> FakeSyncBackend:
    return FakeSyncBackend()
