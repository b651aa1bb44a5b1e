"""
Security utilities for STL upload validation and sanitization
"""
import re
import struct
from pathlib import Path
from fastapi import HTTPException, UploadFile

from config.settings import settings


# Security constants
ALLOWED_MIME_TYPES = [
    "model/stl",
    "model/x.stl-ascii",
    "model/x.stl-binary",
    "application/sla",
    "application/vnd.ms-pki.stl",
    "application/octet-stream",
]

ALLOWED_EXTENSIONS = [".stl"]

# Binary STL: 80-byte header + uint32 triangle count + 50 bytes per triangle
BINARY_STL_HEADER_SIZE = 84
BINARY_STL_TRIANGLE_SIZE = 50


def sanitize_filename(filename: str) -> str:
    """
    Sanitize filename to prevent path traversal attacks.

    Removes:
    - Directory separators (/ and \\)
    - Path traversal sequences (..)
    - Null bytes (\\x00)
    - Any other potentially dangerous characters

    Args:
        filename: Original filename

    Returns:
        Sanitized filename safe for use in file paths
    """
    if not filename:
        raise ValueError("Filename cannot be empty")

    filename = filename.replace("\x00", "")
    filename = filename.replace("/", "").replace("\\", "")

    while ".." in filename:
        filename = filename.replace("..", "")

    # Keep letters, numbers, dots, hyphens, underscores and spaces
    filename = re.sub(r'[^a-zA-Z0-9._\-\s]', '', filename)

    filename = filename.strip('. ')

    if not filename:
        raise ValueError("Filename is invalid after sanitization")

    if len(filename) > 200:
        ext = Path(filename).suffix
        name_without_ext = Path(filename).stem[:200 - len(ext)]
        filename = name_without_ext + ext

    return filename


def get_file_extension(filename: str) -> str:
    """
    Extract file extension from filename (lowercase).

    Args:
        filename: Filename

    Returns:
        File extension with leading dot (e.g., ".stl") or empty string
    """
    return Path(filename).suffix.lower()


def ensure_stl_filename(filename: str) -> str:
    """Sanitize a user-supplied model name and make sure it ends in .stl."""
    sanitized = sanitize_filename(filename)
    if get_file_extension(sanitized) not in ALLOWED_EXTENSIONS:
        sanitized = f"{sanitized}.stl"
    return sanitized


def detect_stl_format(content: bytes):
    """
    Detect whether content is an ASCII or binary STL.

    Args:
        content: File content bytes

    Returns:
        "ascii", "binary" or None if the content is not an STL
    """
    if not content:
        return None

    if len(content) >= BINARY_STL_HEADER_SIZE:
        (triangles,) = struct.unpack_from("<I", content, 80)
        if len(content) == BINARY_STL_HEADER_SIZE + triangles * BINARY_STL_TRIANGLE_SIZE:
            return "binary"

    head = content[:512].lstrip()
    if head[:5].lower() == b"solid" and b"facet" in content[:4096]:
        return "ascii"

    return None


def check_content_size(content: bytes, max_size: int = None) -> None:
    """Reject empty or oversized content with ValueError."""
    max_size = max_size or settings.max_upload_bytes
    if len(content) == 0:
        raise ValueError("File is empty")
    if len(content) > max_size:
        size_mb = len(content) / (1024 * 1024)
        max_mb = max_size / (1024 * 1024)
        raise ValueError(f"File size ({size_mb:.2f}MB) exceeds maximum allowed size ({max_mb}MB)")


def validate_stl_content(content: bytes, max_size: int = None) -> str:
    """
    Validate model content (size and STL structure).

    Args:
        content: File content bytes
        max_size: Maximum accepted size in bytes (defaults to MAX_UPLOAD_BYTES)

    Returns:
        Detected STL format ("ascii" or "binary")

    Raises:
        ValueError: If validation fails
    """
    check_content_size(content, max_size)

    stl_format = detect_stl_format(content)
    if stl_format is None:
        raise ValueError("File content is not a valid STL model")
    return stl_format


async def validate_uploaded_file(file: UploadFile) -> tuple[str, bytes]:
    """
    Comprehensive validation of an uploaded STL file.

    This function:
    1. Sanitizes the filename
    2. Validates file extension and declared MIME type
    3. Reads the content and checks its size; STL structure is checked by the import job

    Args:
        file: FastAPI UploadFile object

    Returns:
        Tuple of (sanitized_filename, file_content)

    Raises:
        HTTPException: If any validation fails
    """
    if not file.filename:
        raise HTTPException(status_code=400, detail="Filename is required")

    try:
        sanitized_filename = sanitize_filename(file.filename)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    ext = get_file_extension(sanitized_filename)
    if ext not in ALLOWED_EXTENSIONS and file.content_type not in ALLOWED_MIME_TYPES:
        raise HTTPException(status_code=400, detail="Only STL files are allowed")

    content = await file.read()

    try:
        check_content_size(content)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    await file.seek(0)

    return ensure_stl_filename(sanitized_filename), content
