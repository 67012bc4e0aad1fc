from __future__ import annotations

import asyncio
from collections.abc import Iterable
import logging
import re

from google.api_core.exceptions import NotFound
from google.cloud import storage

from .config import StorageConfig

LOGGER = logging.getLogger(__name__)


def _sanitize_folder(folder: str | None) -> str:
    """Restrict folder names to safe characters and fall back to 'figures'."""
    if not folder:
        return "figures"
    cleaned = re.sub(r"[^a-z0-9/_-]+", "-", folder.strip().lower())
    cleaned = cleaned.strip("/-")
    return cleaned or "figures"


def figure_object_name(question_id: str, figure_index: int = 0, folder: str = "figures") -> str:
    """Deterministic object name so re-running a paper overwrites its figures."""
    safe_id = re.sub(r"[^A-Za-z0-9_-]+", "-", str(question_id)).strip("-") or "question"
    suffix = "" if figure_index == 0 else f"_{figure_index}"
    return f"{_sanitize_folder(folder)}/{safe_id}{suffix}.png"


class FigureStorage:
    """Upload and delete figure images in a Firebase (GCS) bucket."""

    def __init__(self, config: StorageConfig, client: storage.Client | None = None) -> None:
        self.folder = _sanitize_folder(config.folder)
        self.bucket_name = config.bucket_name
        self._client = client
        self._bucket: storage.Bucket | None = None

    def _get_bucket(self) -> storage.Bucket:
        if self._bucket is None:
            # Relies on GOOGLE_APPLICATION_CREDENTIALS or ADC
            client = self._client or storage.Client()
            self._bucket = client.bucket(self.bucket_name)
        return self._bucket

    async def upload_png(self, image_bytes: bytes, object_name: str) -> str:
        """Upload (overwriting) a PNG and return its public URL."""
        if not isinstance(image_bytes, (bytes, bytearray)):
            raise TypeError("image_bytes must be bytes or bytearray")
        return await asyncio.to_thread(self._upload, bytes(image_bytes), object_name)

    def object_name_for(self, url: str) -> str | None:
        return object_name_from_url(url, self.bucket_name)

    async def delete_objects(self, object_names: Iterable[str]) -> int:
        """Delete objects, ignoring ones that are already gone."""
        return await asyncio.to_thread(self._delete, list(object_names))

    def _upload(self, image_bytes: bytes, object_name: str) -> str:
        bucket = self._get_bucket()
        LOGGER.info("Uploading %s to bucket %s", object_name, self.bucket_name)
        blob = bucket.blob(object_name)
        try:
            blob.upload_from_string(image_bytes, content_type="image/png")
        except Exception as e:
            LOGGER.error("Failed to upload %s: %s", object_name, e)
            raise
        return blob.public_url

    def _delete(self, object_names: list[str]) -> int:
        bucket = self._get_bucket()
        deleted = 0
        for name in object_names:
            try:
                bucket.blob(name).delete()
                deleted += 1
            except NotFound:
                LOGGER.info("Object %s already removed", name)
        return deleted


def object_name_from_url(url: str, bucket_name: str) -> str | None:
    """Map a stored public or gs:// URL back to its object name."""
    for prefix in (
        f"gs://{bucket_name}/",
        f"https://storage.googleapis.com/{bucket_name}/",
    ):
        if url.startswith(prefix):
            return url[len(prefix) :].split("?", 1)[0]
    return None
