"""
Supabase Storage for worksheet uploads and their processed images.
Files live in the configured bucket under <owner_id>/<timestamp>-<name>.
"""

import logging
import re
from typing import Iterable, Optional

from storage3.exceptions import StorageApiError

logger = logging.getLogger(__name__)

EXTENSION_PATTERN = re.compile(r"\.[^./]+$")


def processed_key_for(storage_key: str, extension: str) -> str:
    """
    Key of the processed image stored next to an upload.

        abc/123-sheet.pdf -> abc/123-sheet_processed.png
        abc/123-sheet     -> abc/123-sheet_processed.png
    """
    suffix = f"_processed.{extension}"
    if EXTENSION_PATTERN.search(storage_key):
        return EXTENSION_PATTERN.sub(suffix, storage_key)
    return f"{storage_key}{suffix}"


class SupabaseBlobStore:
    """put/get/delete over one Supabase Storage bucket."""

    def __init__(self, client, bucket: str):
        self.client = client
        self.bucket = bucket

    def _bucket(self):
        return self.client.storage.from_(self.bucket)

    def put(self, key: str, data: bytes, content_type: Optional[str] = None) -> str:
        self._bucket().upload(
            path=key,
            file=data,
            file_options={
                "content-type": content_type or "application/octet-stream",
                "upsert": "true",  # Overwrite if exists
            },
        )
        return key

    def get(self, key: str) -> bytes:
        """Download a file. Raises FileNotFoundError when the key does not exist."""
        try:
            return self._bucket().download(key)
        except StorageApiError as e:
            if getattr(e, "code", None) == "not_found" or "not_found" in str(e).lower():
                raise FileNotFoundError(f"File not found in storage: {key}")
            raise

    def delete(self, keys: Iterable[Optional[str]]) -> None:
        paths = [k for k in keys if k]
        if not paths:
            return
        for i in range(0, len(paths), 100):
            self._bucket().remove(paths[i:i + 100])
        logger.info(f"🗑️ Removed {len(paths)} file(s) from {self.bucket}")
