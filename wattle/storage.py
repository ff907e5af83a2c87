"""
Blob storage for uploaded documents and generated audio
"""
import logging
import threading
import uuid
from typing import Dict, Optional, Tuple
from urllib.parse import quote, unquote

from firebase_admin import storage

from .errors import NotFoundError, UpstreamError
from .firebase import get_firebase_app

logger = logging.getLogger(__name__)


class BlobStorage:
    backend = "abstract"

    def upload(self, path: str, data: bytes, content_type: str) -> str:
        raise NotImplementedError

    def download(self, path: str) -> bytes:
        raise NotImplementedError

    def delete(self, path: str) -> None:
        raise NotImplementedError

    def path_from_url(self, url: str) -> Optional[str]:
        """Blob path behind a URL this storage issued, or None for foreign URLs"""
        raise NotImplementedError


class MemoryStorage(BlobStorage):
    backend = "memory"

    def __init__(self):
        self._blobs: Dict[str, Tuple[bytes, str]] = {}
        self._lock = threading.Lock()

    def upload(self, path: str, data: bytes, content_type: str) -> str:
        with self._lock:
            self._blobs[path] = (bytes(data), content_type)
        return f"memory://{path}"

    def download(self, path: str) -> bytes:
        with self._lock:
            if path not in self._blobs:
                raise NotFoundError(f"Blob {path} not found")
            return self._blobs[path][0]

    def content_type(self, path: str) -> str:
        with self._lock:
            return self._blobs.get(path, (b"", ""))[1]

    def delete(self, path: str) -> None:
        with self._lock:
            self._blobs.pop(path, None)

    def path_from_url(self, url: str) -> Optional[str]:
        prefix = "memory://"
        return url[len(prefix):] if (url or "").startswith(prefix) else None


class FirebaseStorage(BlobStorage):
    """Firebase Storage bucket with tokenized download URLs"""
    backend = "firebase"

    def __init__(self, bucket):
        self.bucket = bucket

    @classmethod
    def from_config(cls, config) -> "FirebaseStorage":
        fb_app = get_firebase_app(config)
        return cls(storage.bucket(name=config.get("FIREBASE_STORAGE_BUCKET") or None, app=fb_app))

    def upload(self, path: str, data: bytes, content_type: str) -> str:
        token = uuid.uuid4().hex
        blob = self.bucket.blob(path)
        blob.metadata = {"firebaseStorageDownloadTokens": token}
        try:
            blob.upload_from_string(data, content_type=content_type)
        except Exception as e:
            raise UpstreamError(f"Storage upload failed: {e}")
        return (
            f"https://firebasestorage.googleapis.com/v0/b/{self.bucket.name}/o/"
            f"{quote(path, safe='')}?alt=media&token={token}"
        )

    def download(self, path: str) -> bytes:
        blob = self.bucket.blob(path)
        try:
            return blob.download_as_bytes()
        except Exception as e:
            raise UpstreamError(f"Storage download failed: {e}")

    def delete(self, path: str) -> None:
        try:
            self.bucket.blob(path).delete()
        except Exception as e:
            raise UpstreamError(f"Storage delete failed: {e}")

    def path_from_url(self, url: str) -> Optional[str]:
        prefix = f"https://firebasestorage.googleapis.com/v0/b/{self.bucket.name}/o/"
        if not (url or "").startswith(prefix):
            return None
        return unquote(url[len(prefix):].split("?", 1)[0]) or None


def build_storage(config) -> BlobStorage:
    backend = (config.get("BLOB_STORAGE") or "firebase").strip().lower()
    if backend == "memory":
        return MemoryStorage()
    if backend == "firebase":
        return FirebaseStorage.from_config(config)
    raise ValueError(f"Unknown BLOB_STORAGE: {backend}")
