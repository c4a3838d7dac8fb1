"""Cloud sync client: scoped transfer URLs and object transfer.

Remote layout per project::

    tree.json                 serialized tree record
    commits/<commitId>.3dm    one snapshot blob per commit

The backend never streams objects itself. It issues short-lived, pre-authorized
URLs, separately for upload and download, and the client transfers bytes
directly against those URLs without the session token.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from ..exceptions import RemoteNotFoundError, TransportError
from .base_client import BaseSyncAPIClient, TokenSupplier

logger = logging.getLogger(__name__)

TREE_OBJECT_KEY = "tree.json"


@dataclass
class TransferTarget:
    """A pre-authorized URL for one object and one direction."""

    url: str
    object_key: str


@dataclass
class RemoteObject:
    file_key: str
    size: int
    last_modified: Optional[str] = None


def commit_object_key(commit_id: str, extension: str = ".3dm") -> str:
    return f"commits/{commit_id}{extension}"


class CloudSyncClient(BaseSyncAPIClient):
    """Client for the per-project sync endpoints."""

    def __init__(
        self,
        backend_url: str,
        token_supplier: TokenSupplier,
        project_id: str,
        extension: str = ".3dm",
        **kwargs: Any,
    ):
        super().__init__(backend_url, token_supplier, **kwargs)
        self.project_id = project_id
        self.extension = extension

    def _endpoint(self, action: str) -> str:
        return f"/api/projects/{self.project_id}/sync/{action}"

    async def _transfer_target(self, action: str, url_field: str, file_key: str) -> TransferTarget:
        response = await self.post(self._endpoint(action), json={"file_key": file_key})
        try:
            data = response.json()
            return TransferTarget(url=data[url_field], object_key=data.get("s3_key", file_key))
        except (ValueError, KeyError, TypeError) as e:
            raise TransportError(f"Malformed {action} response for {file_key}: {e}")

    async def get_push_url(self, file_key: str) -> TransferTarget:
        """Request an upload URL scoped to one object.

        Raises:
            TransportError: If the backend cannot issue the URL
        """
        return await self._transfer_target("push-url", "upload_url", file_key)

    async def get_pull_url(self, file_key: str) -> TransferTarget:
        """Request a download URL scoped to one object."""
        return await self._transfer_target("pull-url", "download_url", file_key)

    async def list_remote_files(self) -> List[RemoteObject]:
        response = await self.get(self._endpoint("list"))
        try:
            files: List[Dict[str, Any]] = response.json().get("files", [])
        except (ValueError, AttributeError) as e:
            raise TransportError(f"Malformed list response: {e}")
        return [
            RemoteObject(
                file_key=f["file_key"],
                size=int(f.get("size", 0)),
                last_modified=f.get("lastModified"),
            )
            for f in files
        ]

    async def upload(self, target: TransferTarget, data: bytes, content_type: str) -> None:
        await self._request(
            "PUT",
            target.url,
            authenticated=False,
            content=data,
            headers={"Content-Type": content_type},
        )
        logger.debug(f"Uploaded {target.object_key} ({len(data)} bytes)")

    async def download(self, target: TransferTarget) -> bytes:
        response = await self._request("GET", target.url, authenticated=False)
        logger.debug(f"Downloaded {target.object_key} ({len(response.content)} bytes)")
        return response.content

    async def push_tree(self, serialized: str) -> None:
        """Upload the tree record."""
        target = await self.get_push_url(TREE_OBJECT_KEY)
        await self.upload(target, serialized.encode("utf-8"), "application/json")

    async def pull_tree(self) -> Optional[str]:
        """Download the tree record; None if the project has none yet."""
        try:
            target = await self.get_pull_url(TREE_OBJECT_KEY)
            data = await self.download(target)
        except RemoteNotFoundError:
            logger.info(f"No remote tree for project {self.project_id}")
            return None
        return data.decode("utf-8")

    async def push_commit_blob(self, commit_id: str, data: bytes) -> None:
        target = await self.get_push_url(commit_object_key(commit_id, self.extension))
        await self.upload(target, data, "application/octet-stream")

    async def pull_commit_blob(self, commit_id: str) -> bytes:
        target = await self.get_pull_url(commit_object_key(commit_id, self.extension))
        return await self.download(target)
