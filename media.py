"""Media storage for post and profile images, kept on local disk and served under MEDIA_URL."""
import logging
import os
import uuid
from typing import NamedTuple, Optional

import config
from errors import ValidationFailed

logger = logging.getLogger(__name__)

ALLOWED_TYPES = {
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/gif": "gif",
    "image/webp": "webp",
}


class MediaUpload(NamedTuple):
    filename: str
    content_type: str
    data: bytes


class MediaStore:
    def __init__(self, root: Optional[str] = None, base_url: Optional[str] = None, max_bytes: Optional[int] = None):
        self.root = root or config.MEDIA_ROOT
        self.base_url = (base_url or config.MEDIA_URL).rstrip("/")
        self.max_bytes = max_bytes or config.MAX_UPLOAD_BYTES
        os.makedirs(self.root, exist_ok=True)

    def save(self, upload: MediaUpload, folder: str = "posts") -> str:
        """Store an uploaded image and return its public URL."""
        filename, content_type, data = upload
        content_type = (content_type or "").split(";")[0].strip().lower()
        if content_type not in ALLOWED_TYPES:
            raise ValidationFailed("Only JPEG, PNG, GIF or WebP images are allowed")
        if len(data) > self.max_bytes:
            raise ValidationFailed(f"File too large. Maximum size is {self.max_bytes // (1024 * 1024)}MB.")
        name = f"{uuid.uuid4().hex}.{ALLOWED_TYPES[content_type]}"
        os.makedirs(os.path.join(self.root, folder), exist_ok=True)
        with open(os.path.join(self.root, folder, name), "wb") as fh:
            fh.write(data)
        return f"{self.base_url}/{folder}/{name}"

    def delete(self, url: Optional[str]) -> bool:
        """Best-effort removal of a stored file; failures are logged, not raised."""
        if not url or not url.startswith(self.base_url + "/"):
            return False
        relative = url[len(self.base_url) + 1:]
        path = os.path.normpath(os.path.join(self.root, relative))
        if not path.startswith(os.path.normpath(self.root) + os.sep):
            return False
        try:
            os.remove(path)
            return True
        except OSError as exc:
            logger.warning("Could not delete media %s: %s", url, exc)
            return False
