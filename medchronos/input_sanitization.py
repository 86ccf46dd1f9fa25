"""
Input Sanitization Module for the MedChronos AI Service

Cleans user-supplied text before it is embedded in model prompts, and
validates uploaded filenames and image types. Text is stored unescaped;
escaping for display happens where it is rendered.
"""

import re
from typing import Optional


MAX_CHAT_MESSAGE_LENGTH = 5000
MAX_FREE_TEXT_LENGTH = 2000
MAX_TITLE_LENGTH = 200

ALLOWED_IMAGE_TYPES = {
    "image/png",
    "image/jpeg",
    "image/jpg",
    "image/webp",
    "image/bmp",
    "image/gif",
    "image/tiff",
}


def sanitize_text(
    text: str,
    max_length: Optional[int] = None,
    strip_html: bool = True
) -> str:
    """Sanitize text input.

    Args:
        text: Input text to sanitize
        max_length: Maximum allowed length (truncates if exceeded)
        strip_html: Whether to strip HTML tags

    Returns:
        Sanitized text
    """
    if not text:
        return ""

    text = text.strip()

    if strip_html:
        text = _strip_html_tags(text)

    text = _remove_control_chars(text)

    if max_length and len(text) > max_length:
        text = text[:max_length]

    return text


def sanitize_chat_message(text: str) -> str:
    """Sanitize one chat turn."""
    return sanitize_text(text, max_length=MAX_CHAT_MESSAGE_LENGTH)


def sanitize_free_text(text: Optional[str]) -> Optional[str]:
    """Sanitize optional patient free text (reason for imaging, MRN)."""
    if text is None:
        return None
    return sanitize_text(text, max_length=MAX_FREE_TEXT_LENGTH) or None


def sanitize_title(text: str) -> str:
    return sanitize_text(text, max_length=MAX_TITLE_LENGTH)


def sanitize_filename(filename: str) -> str:
    """Sanitize filename to prevent path traversal.

    Args:
        filename: Original filename

    Returns:
        Safe filename
    """
    if not filename:
        return "unnamed"

    filename = filename.replace("\\", "/").split("/")[-1]

    filename = re.sub(r'[<>:"/\\|?*\s]', '_', filename)

    filename = re.sub(r'\.{2,}', '.', filename)

    filename = re.sub(r'^\.+', '', filename)

    if len(filename) > 255:
        name, dot, ext = filename.rpartition(".")
        filename = name[:250] + dot + ext if dot else filename[:255]

    return filename or "unnamed"


def _strip_html_tags(text: str) -> str:
    """Remove HTML tags from text."""
    text = re.sub(r'<script[^>]*>.*?</script>', '', text, flags=re.IGNORECASE | re.DOTALL)
    text = re.sub(r'<style[^>]*>.*?</style>', '', text, flags=re.IGNORECASE | re.DOTALL)
    text = re.sub(r"</?[A-Za-z][^>]*>", "", text)
    return text


def _remove_control_chars(text: str) -> str:
    """Remove potentially dangerous control characters."""
    text = re.sub(r'[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]', '', text)
    return text


def validate_image_type(content_type: Optional[str]) -> bool:
    """Validate image content type."""
    if not content_type:
        return False
    return content_type.split(";")[0].strip().lower() in ALLOWED_IMAGE_TYPES
