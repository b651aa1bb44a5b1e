"""
Blob storage for imported models, backed by the local filesystem
"""

import hashlib
import hmac
import logging
import time
from pathlib import Path
from typing import Optional
from urllib.parse import quote

import aiofiles
import aiofiles.os

from config.settings import settings

logger = logging.getLogger(__name__)


class LocalBlobStore:
    """
    Stores blobs under a root directory and hands out HMAC-signed download
    URLs. Paths are relative keys such as "imports/<job_id>-model.stl".
    """

    def __init__(self, root: Optional[Path] = None, signing_secret: Optional[str] = None,
                 public_base_url: Optional[str] = None):
        self.root = Path(root or settings.uploads_dir).resolve()
        self.signing_secret = (signing_secret or settings.storage_signing_secret).encode()
        self.public_base_url = (public_base_url or settings.public_base_url).rstrip("/")

    def resolve(self, path: str) -> Path:
        """Absolute filesystem location for a key; refuses keys escaping the root."""
        full_path = (self.root / path).resolve()
        if full_path != self.root and self.root not in full_path.parents:
            raise ValueError(f"Blob path escapes storage root: {path}")
        return full_path

    async def upload(self, data: bytes, path: str, content_type: str = "application/octet-stream") -> dict:
        """
        Write bytes under `path`.

        Returns:
            {"path", "file_path", "signed_url", "public_url"}
        """
        full_path = self.resolve(path)
        full_path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = full_path.with_suffix(full_path.suffix + ".tmp")
        async with aiofiles.open(temp_path, "wb") as f:
            await f.write(data)
        await aiofiles.os.replace(temp_path, full_path)
        logger.debug(f"Stored {len(data)} bytes ({content_type}) at {full_path}")
        return {
            "path": path,
            "file_path": str(full_path),
            "signed_url": self.signed_url(path),
            "public_url": f"{self.public_base_url}/files/{quote(path)}",
        }

    def signed_url(self, path: str, ttl: int = 3600) -> str:
        expires = int(time.time()) + ttl
        signature = self._sign(path, expires)
        return f"{self.public_base_url}/files/{quote(path)}?expires={expires}&signature={signature}"

    def verify_signature(self, path: str, expires: int, signature: str) -> bool:
        if expires < int(time.time()):
            return False
        return hmac.compare_digest(self._sign(path, expires), signature)

    def key_for(self, file_path: str) -> str:
        """Storage key of an absolute path returned by upload()."""
        return Path(file_path).resolve().relative_to(self.root).as_posix()

    async def exists(self, path: str) -> bool:
        return await aiofiles.os.path.isfile(self.resolve(path))

    async def delete(self, file_path: str) -> bool:
        """Delete a stored file by absolute path; missing files are not an error."""
        try:
            await aiofiles.os.remove(file_path)
            return True
        except FileNotFoundError:
            return False

    def _sign(self, path: str, expires: int) -> str:
        message = f"{path}:{expires}".encode()
        return hmac.new(self.signing_secret, message, hashlib.sha256).hexdigest()
