import logging
import posixpath

import requests
from supabase import Client

from errors import EmptyDownload, StorageObjectMissing, StorageUnavailable

logger = logging.getLogger(__name__)


class DocumentStorage:
    """Objects in one Supabase storage bucket, keyed by "<user_id>/<file>"."""

    def __init__(self, client: Client, bucket: str, signed_url_ttl_seconds: int = 3600, timeout: float = 30.0):
        self.client = client
        self.bucket = bucket
        self.signed_url_ttl_seconds = signed_url_ttl_seconds
        self.timeout = timeout

    @property
    def _bucket(self):
        return self.client.storage.from_(self.bucket)

    def exists(self, path: str) -> bool:
        folder, name = posixpath.split(path)
        try:
            entries = self._bucket.list(folder, {"limit": 100, "offset": 0, "search": name})
        except Exception as e:
            logger.error(f"Error listing storage folder {folder}: {e}")
            raise StorageUnavailable("Could not access document storage")
        return any(entry.get("name") == name for entry in entries or [])

    def signed_url(self, path: str) -> str:
        try:
            data = self._bucket.create_signed_url(path, self.signed_url_ttl_seconds)
        except Exception as e:
            logger.error(f"Error creating signed URL for {path}: {e}")
            raise StorageUnavailable("Could not generate a download link")
        url = (data or {}).get("signedURL") or (data or {}).get("signedUrl")
        if not url:
            raise StorageUnavailable("Download link was not generated correctly")
        return url

    def fetch(self, path: str) -> bytes:
        """Download through a signed URL, telling missing objects apart from network failures."""
        if not self.exists(path):
            logger.error(f"File missing in storage: {path}")
            raise StorageObjectMissing()
        url = self.signed_url(path)
        try:
            response = requests.get(url, timeout=self.timeout)
        except requests.RequestException as e:
            logger.error(f"Network error downloading {path}: {e}")
            raise StorageUnavailable("Network error while downloading the file")
        if not response.ok:
            logger.error(f"Download of {path} failed: {response.status_code} {response.reason}")
            raise StorageUnavailable(f"Error downloading the file: {response.status_code} {response.reason}")
        if not response.content:
            raise EmptyDownload()
        return response.content

    def upload(self, path: str, content: bytes, content_type: str) -> None:
        self._bucket.upload(path, content, {"content-type": content_type})

    def remove(self, path: str) -> None:
        self._bucket.remove([path])
