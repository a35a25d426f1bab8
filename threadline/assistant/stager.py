"""Turn inbound attachment bytes into backend file references."""

import mimetypes
import tempfile
import time
import uuid
from pathlib import Path

from loguru import logger

from threadline.assistant.errors import UploadError
from threadline.providers.base import AssistantBackend

DEFAULT_SUFFIX = ".jpg"


def suffix_for(mime_type: str | None) -> str:
    """File extension for a MIME type, defaulting to ``.jpg``."""
    if not mime_type:
        return DEFAULT_SUFFIX
    base = mime_type.split(";", 1)[0].strip().lower()
    if base == "image/jpeg":
        return ".jpg"
    return mimetypes.guess_extension(base) or DEFAULT_SUFFIX


class AttachmentStager:
    """
    Stage bytes to a temp file, upload it, and always remove the file.

    Each call owns exactly one staging file, named with a nanosecond timestamp
    plus a random tag so concurrent uploads never collide.
    """

    def __init__(self, backend: AssistantBackend, staging_dir: Path | None = None):
        self.backend = backend
        self.staging_dir = staging_dir or Path(tempfile.gettempdir())

    def _staging_path(self, mime_type: str | None) -> Path:
        name = f"upload_{time.time_ns()}_{uuid.uuid4().hex[:8]}{suffix_for(mime_type)}"
        return self.staging_dir / name

    async def stage(self, data: bytes, mime_type: str | None = None) -> str:
        """
        Upload ``data`` and return the backend file id.

        Raises:
            UploadError: the staging write or the upload failed.
        """
        path = self._staging_path(mime_type)
        try:
            try:
                self.staging_dir.mkdir(parents=True, exist_ok=True)
                path.write_bytes(data)
            except OSError as e:
                raise UploadError(f"could not stage attachment at {path}: {e}") from e

            try:
                file_id = await self.backend.upload_file(path, purpose="assistants")
            except Exception as e:
                raise UploadError(f"attachment upload rejected: {e}") from e

            logger.debug(f"Uploaded {len(data)} bytes as {file_id}")
            return file_id
        finally:
            try:
                path.unlink(missing_ok=True)
            except OSError as e:
                logger.error(f"Failed to remove staging file {path}: {e}")
