"""Cloud Storage wrapper for pet photos."""

from __future__ import annotations

import logging
import os
import uuid
from typing import Optional

from google.api_core.exceptions import GoogleAPIError, NotFound
from google.cloud import storage

from petradar.common.errors import ExternalServiceError

logger = logging.getLogger(__name__)

PUBLIC_URL_PREFIX = "https://storage.googleapis.com"


def generate_unique_filename(original_name: Optional[str]) -> str:
    ext = os.path.splitext(original_name or "")[1].lower() or ".jpg"
    return f"{uuid.uuid4().hex}{ext}"


class ObjectStore:
    """Uploads raw images to a bucket and hands back durable URLs"""

    def __init__(self, bucket_name: str, project_id: Optional[str] = None,
                 client: Optional[storage.Client] = None) -> None:
        self._bucket_name = bucket_name
        self._project_id = project_id
        self._client = client  # lazy client

    @property
    def bucket(self) -> storage.Bucket:
        if self._client is None:
            self._client = storage.Client(project=self._project_id)
        return self._client.bucket(self._bucket_name)

    def upload(self, data: bytes, path: str, content_type: str) -> str:
        try:
            blob = self.bucket.blob(path)
            blob.upload_from_string(data, content_type=content_type)
        except GoogleAPIError as exc:
            logger.error(f"Upload to {path} failed: {exc}")
            raise ExternalServiceError(f"Failed to upload image: {exc}")
        logger.info(f"Uploaded {len(data)} bytes to {path}")
        return blob.public_url

    def delete(self, path: str) -> None:
        try:
            self.bucket.blob(path).delete()
        except NotFound:
            logger.warning(f"Object already gone: {path}")
        except GoogleAPIError as exc:
            raise ExternalServiceError(f"Failed to delete image: {exc}")

    def path_for_url(self, url: str) -> Optional[str]:
        prefix = f"{PUBLIC_URL_PREFIX}/{self._bucket_name}/"
        return url[len(prefix):] if url.startswith(prefix) else None
