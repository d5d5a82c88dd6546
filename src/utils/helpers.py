import hashlib
import re
import uuid
from typing import Optional

__all__ = [
    "clean_text",
    "count_words",
    "md5_hash",
    "sha256_hash",
    "chunk_point_id",
    "preview_text",
    "sanitize_filename",
]

# Namespace for deterministic vector point ids
CHUNK_NAMESPACE = uuid.UUID("6f1c9a52-3c55-4d5e-9a47-2a9e51f0b6d3")


def clean_text(text: str) -> str:
    """Normalize extracted text while keeping paragraph breaks."""
    if not isinstance(text, str):
        return text

    replacements = {
        '\u2018': "'",  # Left single quotation mark
        '\u2019': "'",  # Right single quotation mark
        '\u201c': '"',  # Left double quotation mark
        '\u201d': '"',  # Right double quotation mark
        '\u2013': '-',  # En dash
        '\u2014': '--',  # Em dash
        '\u00a0': ' ',  # Non-breaking space
        '\x00': '',
    }

    for old, new in replacements.items():
        text = text.replace(old, new)

    text = text.replace('\r\n', '\n').replace('\r', '\n')

    # Collapse runs of spaces/tabs, keep newlines for the splitters
    text = re.sub(r'[ \t\f\v]+', ' ', text)
    text = re.sub(r' *\n *', '\n', text)
    text = re.sub(r'\n{3,}', '\n\n', text)

    return text.strip()


def count_words(text: str) -> int:
    if not text:
        return 0
    return len(text.split())


def md5_hash(text: str) -> str:
    return hashlib.md5(text.encode("utf-8")).hexdigest()


def sha256_hash(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def chunk_point_id(file_id: str, chunk_index: int) -> str:
    """
    Deterministic vector id for a chunk.

    Re-upserting the same chunk always targets the same point.
    """
    return str(uuid.uuid5(CHUNK_NAMESPACE, f"{file_id}:{chunk_index}"))


def preview_text(text: Optional[str], length: int = 200) -> str:
    if not text:
        return ""
    if len(text) <= length:
        return text
    return text[:length] + "..."


def sanitize_filename(filename: str) -> str:
    """Make a filename safe to use inside an object storage key."""
    name = filename.strip().replace("\\", "/").split("/")[-1]
    name = re.sub(r'[^A-Za-z0-9._-]+', '_', name)
    return name or "file"
