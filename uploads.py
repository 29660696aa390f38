import logging
import re
import time
from contextlib import asynccontextmanager
from pathlib import Path
from typing import List, Optional

from fastapi import UploadFile
from starlette.concurrency import run_in_threadpool

from errors import ValidationFailed

logger = logging.getLogger(__name__)

URL_PREFIX = "/uploads"


class LocalUploads:
    """Stores uploaded images on local disk; the app serves them under /uploads."""

    def __init__(self, directory: str, max_bytes: int, max_files: int):
        self.directory = Path(directory)
        self.max_bytes = max_bytes
        self.max_files = max_files

    def init(self) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)

    @staticmethod
    def stored_name(original: str) -> str:
        name = Path(original or "upload").name
        return re.sub(r"\s+", "_", f"{int(time.time() * 1000)}-{name}")

    async def _read(self, upload: UploadFile) -> bytes:
        data = await upload.read()
        if len(data) > self.max_bytes:
            raise ValidationFailed(f"{upload.filename} is larger than {self.max_bytes} bytes")
        return data

    async def _write(self, original: str, data: bytes) -> str:
        filename = self.stored_name(original)
        await run_in_threadpool((self.directory / filename).write_bytes, data)
        logger.info("Stored upload %s (%d bytes)", filename, len(data))
        return f"{URL_PREFIX}/{filename}"

    async def save(self, upload: UploadFile) -> str:
        return await self._write(upload.filename, await self._read(upload))

    async def save_all(self, uploads: List[UploadFile]) -> List[str]:
        """Store a batch; nothing is written unless every file is within limits."""
        if not uploads:
            raise ValidationFailed("No files")
        if len(uploads) > self.max_files:
            raise ValidationFailed(f"At most {self.max_files} files per upload")
        contents = [await self._read(u) for u in uploads]
        return [await self._write(u.filename, data) for u, data in zip(uploads, contents)]

    async def discard(self, url: str) -> None:
        path = self.directory / Path(url).name
        await run_in_threadpool(path.unlink, missing_ok=True)
        logger.info("Removed upload %s", path.name)

    @asynccontextmanager
    async def staged(self, upload: Optional[UploadFile]):
        """Save `upload` (if any) and yield its URL; the file is removed if the block raises."""
        if upload is None:
            yield None
            return
        url = await self.save(upload)
        try:
            yield url
        except Exception:
            await self.discard(url)
            raise
