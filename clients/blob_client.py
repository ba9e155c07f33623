"""
Blob storage client for avatar files.

The store is opaque: uploads return a public_id and URL, deletes take the
public_id. Requests carry an API key and an HMAC-SHA256 signature, the same
scheme the email gateway uses.
"""

import logging
import time
from dataclasses import dataclass

import requests

from clients.signing import sign_body

logger = logging.getLogger(__name__)


class BlobStorageError(Exception):
    """Blob store request failed."""


@dataclass
class StoredBlob:
    """Reference returned by the store after an upload."""

    public_id: str
    url: str
    size: int


class BlobStorageClient:
    """Upload and delete avatar blobs over HTTP."""

    def __init__(self, base_url: str, api_key: str, hmac_secret: str, folder: str = "avatars", timeout: float = 30):
        if not base_url:
            raise ValueError("base_url is required")
        if not api_key:
            raise ValueError("api_key is required")
        if not hmac_secret:
            raise ValueError("hmac_secret is required")

        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.hmac_secret = hmac_secret
        self.folder = folder
        self.timeout = timeout

    def _headers(self, signed: str | bytes) -> dict:
        return {"X-API-Key": self.api_key, "X-Signature": sign_body(self.hmac_secret, signed)}

    def _json(self, response: requests.Response, action: str) -> dict:
        try:
            result = response.json()
        except ValueError:
            raise BlobStorageError(f"{action} failed: invalid response (HTTP {response.status_code})")

        if response.status_code >= 400 or not result.get("success", False):
            reason = result.get("message", f"HTTP {response.status_code}")
            logger.error(f"Blob store {action} failed: {reason}")
            raise BlobStorageError(f"{action} failed: {reason}")
        return result

    def upload(self, filename: str, content: bytes, content_type: str = "application/octet-stream") -> StoredBlob:
        """
        Store a file and return its reference.

        Args:
            filename: Original client filename (informational only)
            content: File bytes
            content_type: MIME type reported by the client

        Returns:
            StoredBlob with the store-assigned public_id and URL

        Raises:
            BlobStorageError: On connection or store failure
        """
        if not content:
            raise BlobStorageError("upload failed: empty file")

        # Millisecond timestamp ids keep uploads from clobbering each other
        public_id = f"{self.folder}/{int(time.time() * 1000)}"

        try:
            response = requests.post(
                f"{self.base_url}/upload",
                data={"public_id": public_id, "filename": filename},
                files={"file": (filename, content, content_type)},
                headers=self._headers(content),
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as e:
            logger.error(f"Blob store unreachable: {e}")
            raise BlobStorageError(f"upload failed: {e}")

        result = self._json(response, "upload")
        logger.info(f"Uploaded blob {result.get('public_id', public_id)} ({len(content)} bytes)")
        return StoredBlob(
            public_id=result.get("public_id", public_id),
            url=result["url"],
            size=result.get("size", len(content)),
        )

    def delete(self, public_id: str) -> None:
        """
        Remove a stored file. Deleting an unknown id is not an error.

        Raises:
            BlobStorageError: On connection or store failure
        """
        try:
            response = requests.delete(
                f"{self.base_url}/files/{public_id}",
                headers=self._headers(public_id),
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as e:
            logger.error(f"Blob store unreachable: {e}")
            raise BlobStorageError(f"delete failed: {e}")

        if response.status_code == 404:
            logger.info(f"Blob {public_id} already gone")
            return

        self._json(response, "delete")
        logger.info(f"Deleted blob {public_id}")
