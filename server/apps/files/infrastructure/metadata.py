"""Metadata extraction utilities for files."""

import hashlib
import mimetypes
from io import BytesIO
from pathlib import Path
from typing import Final

from PIL import Image, UnidentifiedImageError

from server.apps.files.models import DEFAULT_MIME

_FALLBACK_EXTENSION: Final = 'bin'


def detect_mime_type(data: bytes, filename: str) -> str:
    """Detect MIME type of file content.

    Image content is sniffed with Pillow so a mislabeled upload
    still gets its real type. Everything else falls back to
    guessing from the filename extension.

    Args:
        data: File content.
        filename: Filename with extension.

    Returns:
        MIME type string (e.g., 'image/jpeg', 'application/pdf').
        Returns 'application/octet-stream' if type cannot be determined.
    """
    sniffed = _sniff_image_mime(data)
    if sniffed is not None:
        return sniffed

    mime_type, _ = mimetypes.guess_type(filename)
    if mime_type is None:
        return DEFAULT_MIME
    return mime_type


def _sniff_image_mime(data: bytes) -> str | None:
    try:
        with Image.open(BytesIO(data)) as image:
            image_format = image.format
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError):
        # Oversized images are identified by name, handlers reject them later
        return None
    if image_format is None:
        return None
    return Image.MIME.get(image_format)


def calculate_checksum(data: bytes) -> str:
    """Calculate SHA256 checksum of file content.

    Args:
        data: File content.

    Returns:
        Hex-encoded SHA256 hash string.
    """
    return hashlib.sha256(data).hexdigest()


def mime_group(mime: str) -> str:
    """Coarse group of a MIME type.

    Example: 'image/png' -> 'image'

    Args:
        mime: Full MIME type.

    Returns:
        Part before the slash, lowercase.
    """
    return mime.split('/', 1)[0].strip().lower()


def mime_subtype(mime: str) -> str:
    """Subtype of a MIME type.

    Example: 'image/svg+xml' -> 'svg+xml'

    Args:
        mime: Full MIME type.

    Returns:
        Part after the slash, lowercase, or empty string.
    """
    _, _, subtype = mime.partition('/')
    return subtype.strip().lower()


def get_file_extension(filename: str) -> str:
    """Get file extension from filename.

    Args:
        filename: Filename (e.g., 'document.pdf').

    Returns:
        Extension without dot, lowercase (e.g., 'pdf').
        Returns empty string if no extension.
    """
    extension = Path(filename).suffix
    return extension.lstrip('.').lower()


def extension_for_mime(mime: str) -> str:
    """Best extension for content of the given MIME type.

    Args:
        mime: Full MIME type.

    Returns:
        Extension without dot, 'bin' when nothing is known.
    """
    guessed = mimetypes.guess_extension(mime)
    if guessed is None:
        return _FALLBACK_EXTENSION
    return guessed.lstrip('.')


def title_from_filename(filename: str) -> str:
    """Human-readable title for a client filename.

    Example: 'holiday photo.jpg' -> 'holiday photo'

    Args:
        filename: Client-supplied filename.

    Returns:
        Filename without folders and extension.
    """
    return Path(filename).stem
