"""
Artifact Storage

Stores generated binary artifacts (images, narration audio, merged videos,
subtitle files) and resolves artifact URLs back into bytes.
"""

import logging
import os
from abc import ABC, abstractmethod
from typing import Optional, Tuple
from urllib.parse import urlparse

import requests
from google.cloud import storage

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class ArtifactStorage(ABC):
    """Abstract base class for artifact storage backends."""

    @abstractmethod
    def upload(self, path: str, data: bytes, content_type: str) -> str:
        """Store bytes under a relative path and return a URL for them."""
        pass

    @staticmethod
    def _is_gcs_path(path: str) -> bool:
        """Check if a path is a Google Cloud Storage URL."""
        return path.startswith("gs://")

    @staticmethod
    def _parse_gcs_path(gcs_path: str) -> Tuple[str, str]:
        """Parse a GCS path into bucket and blob path."""
        parsed = urlparse(gcs_path)
        if not parsed.netloc:
            raise ValueError(f"Invalid GCS path: {gcs_path}")
        return parsed.netloc, parsed.path.lstrip("/")

    def fetch(self, url: str, timeout: int = 60) -> bytes:
        """Read an artifact from a gs://, http(s):// or local path."""
        if self._is_gcs_path(url):
            bucket_name, blob_path = self._parse_gcs_path(url)
            return storage.Client().bucket(bucket_name).blob(blob_path).download_as_bytes()

        if url.startswith(("http://", "https://")):
            response = requests.get(url, timeout=timeout)
            response.raise_for_status()
            return response.content

        local_path = url[len("file://") :] if url.startswith("file://") else url
        with open(local_path, "rb") as f:
            return f.read()


class GcsArtifactStorage(ArtifactStorage):
    """Artifact storage backed by a Google Cloud Storage bucket."""

    PUBLIC_URL = "https://storage.googleapis.com/{bucket}/{path}"

    def __init__(self, bucket_name: str):
        self.bucket_name = bucket_name
        self._client: Optional[storage.Client] = None

    @property
    def client(self) -> storage.Client:
        if self._client is None:
            self._client = storage.Client()
        return self._client

    def upload(self, path: str, data: bytes, content_type: str) -> str:
        blob = self.client.bucket(self.bucket_name).blob(path)
        blob.upload_from_string(data, content_type=content_type)
        logger.info(f"Uploaded {len(data)} bytes to gs://{self.bucket_name}/{path}")
        return self.PUBLIC_URL.format(bucket=self.bucket_name, path=path)

    def exists(self, path: str) -> bool:
        return self.client.bucket(self.bucket_name).blob(path).exists()

    def url_for(self, path: str) -> str:
        return self.PUBLIC_URL.format(bucket=self.bucket_name, path=path)


class LocalArtifactStorage(ArtifactStorage):
    """Artifact storage on the local filesystem, used in development."""

    def __init__(self, root_dir: str):
        self.root_dir = root_dir

    def upload(self, path: str, data: bytes, content_type: str) -> str:
        full_path = os.path.join(self.root_dir, path)
        os.makedirs(os.path.dirname(full_path), exist_ok=True)
        with open(full_path, "wb") as f:
            f.write(data)
        logger.info(f"Saved {len(data)} bytes ({content_type}) to {full_path}")
        return full_path
