"""
Media Upload Storage.

A minimal blob store on the local filesystem. Uploads are streamed chunk by
chunk to a randomly named file in the uploads directory and are referenced by
messages only through the returned `/uploads/<name>` URL.
"""

import asyncio
import logging
import os
import re
import secrets
from pathlib import Path
from typing import AsyncIterator, Optional

from core.exceptions import ValidationError

logger = logging.getLogger(__name__)

UPLOADS_URL_PREFIX = "/uploads"
_EXTENSION_PATTERN = re.compile(r"^\.[A-Za-z0-9]{1,10}$")


class MediaStorage:
    """Streams uploads to disk under unguessable names"""

    def __init__(self, uploads_dir: str, max_bytes: int):
        self.uploads_dir = Path(uploads_dir)
        self.max_bytes = max_bytes

    def ensure_directory(self) -> Path:
        self.uploads_dir.mkdir(parents=True, exist_ok=True)
        return self.uploads_dir

    @staticmethod
    def safe_extension(original_name: Optional[str]) -> str:
        """Extension of the client-supplied name, or '' if it looks unsafe"""
        if not original_name:
            return ""
        extension = os.path.splitext(os.path.basename(original_name))[1]
        return extension.lower() if _EXTENSION_PATTERN.match(extension) else ""

    async def save_stream(
        self, chunks: AsyncIterator[bytes], original_name: Optional[str] = None
    ) -> str:
        """
        Write an upload to disk.

        Returns:
            URL path under which the file is served

        Raises:
            ValidationError: empty upload or upload above the size limit
        """
        self.ensure_directory()
        file_name = f"{secrets.token_hex(16)}{self.safe_extension(original_name)}"
        file_path = self.uploads_dir / file_name

        written = 0
        destination = await asyncio.to_thread(open, file_path, "wb")
        try:
            try:
                async for chunk in chunks:
                    written += len(chunk)
                    if written > self.max_bytes:
                        raise ValidationError(
                            "file",
                            original_name,
                            f"File too large (max {self.max_bytes // (1024 * 1024)}MB)",
                        )
                    await asyncio.to_thread(destination.write, chunk)
            finally:
                await asyncio.to_thread(destination.close)
        except BaseException:
            file_path.unlink(missing_ok=True)
            raise

        if written == 0:
            file_path.unlink(missing_ok=True)
            raise ValidationError("file", original_name, "Upload is empty")

        logger.info(
            f"Saved upload {file_name}",
            extra={"file_name": file_name, "size_bytes": written},
        )
        return f"{UPLOADS_URL_PREFIX}/{file_name}"
