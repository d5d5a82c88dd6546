"""
Upload validation: type, size, file name and content signature checks.
"""

import os
import re
import logging
from typing import Dict, List, Optional

from src.core.exceptions import UploadValidationError

logger = logging.getLogger(__name__)

MB = 1024 * 1024

PDF = "application/pdf"
DOCX = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"
DOC = "application/msword"
OCTET_STREAM = "application/octet-stream"

# Allowed MIME types with their extensions and size limits
ALLOWED_MIME_TYPES: Dict[str, Dict] = {
    PDF: {"ext": [".pdf"], "max_size": 10 * MB},
    "text/plain": {"ext": [".txt"], "max_size": 5 * MB},
    DOC: {"ext": [".doc"], "max_size": 10 * MB},
    DOCX: {"ext": [".docx"], "max_size": 10 * MB},
    "text/markdown": {"ext": [".md", ".markdown"], "max_size": 5 * MB},
    "application/json": {"ext": [".json"], "max_size": 2 * MB},
    "text/csv": {"ext": [".csv"], "max_size": 5 * MB},
    "application/rtf": {"ext": [".rtf"], "max_size": 5 * MB},
    # Generic binary, resolved by extension
    OCTET_STREAM: {"ext": [".docx", ".doc", ".pdf"], "max_size": 10 * MB},
}

OCTET_STREAM_BY_EXTENSION = {".pdf": PDF, ".docx": DOCX, ".doc": DOC}

SUSPICIOUS_FILE_PATTERNS = [
    re.compile(rf"\.{ext}$", re.IGNORECASE)
    for ext in ("exe", "bat", "cmd", "scr", "com", "pif", "vbs", "js", "jar", "msi", "dll")
]

FILE_SIGNATURES: Dict[str, bytes] = {
    PDF: b"%PDF",
    DOCX: b"PK\x03\x04",
    DOC: bytes([0xD0, 0xCF, 0x11, 0xE0]),
}

MAX_FILENAME_LENGTH = 255


class UploadErrorCode:
    EMPTY_FILE = "EMPTY_FILE"
    INVALID_FILE_TYPE = "INVALID_FILE_TYPE"
    FILE_TOO_LARGE = "FILE_TOO_LARGE"
    EXTENSION_MISMATCH = "EXTENSION_MISMATCH"
    SUSPICIOUS_FILE = "SUSPICIOUS_FILE"
    SIGNATURE_MISMATCH = "SIGNATURE_MISMATCH"
    INVALID_FILENAME = "INVALID_FILENAME"


def file_extension(filename: str) -> str:
    return os.path.splitext(filename.lower())[1]


def is_suspicious_filename(filename: str) -> bool:
    return any(pattern.search(filename) for pattern in SUSPICIOUS_FILE_PATTERNS)


def resolve_mime_type(mime_type: str, filename: str) -> str:
    """Map a generic binary upload to the concrete type its extension names."""
    if mime_type == OCTET_STREAM:
        return OCTET_STREAM_BY_EXTENSION.get(file_extension(filename), mime_type)
    return mime_type


def validate_upload(data: bytes, filename: str, mime_type: str) -> str:
    """
    Validate an upload before anything is stored.

    Args:
        data: File content
        filename: Original file name
        mime_type: Declared MIME type

    Returns:
        The effective MIME type of the file

    Raises:
        UploadValidationError: With one of the UploadErrorCode codes
    """
    if not filename or not filename.strip() or len(filename) > MAX_FILENAME_LENGTH:
        raise UploadValidationError("File name is missing or too long", UploadErrorCode.INVALID_FILENAME)

    if is_suspicious_filename(filename):
        logger.warning(f"Rejected suspicious upload: {filename}")
        raise UploadValidationError(f"File {filename} has a forbidden extension", UploadErrorCode.SUSPICIOUS_FILE)

    if not data:
        raise UploadValidationError(f"File {filename} is empty", UploadErrorCode.EMPTY_FILE)

    allowed = ALLOWED_MIME_TYPES.get(mime_type)
    if allowed is None:
        raise UploadValidationError(
            f"Invalid file type: {mime_type}. Allowed types: {', '.join(ALLOWED_MIME_TYPES)}",
            UploadErrorCode.INVALID_FILE_TYPE,
        )

    if len(data) > allowed["max_size"]:
        raise UploadValidationError(
            f"File {filename} exceeds size limit of {allowed['max_size'] // MB}MB",
            UploadErrorCode.FILE_TOO_LARGE,
        )

    extension = file_extension(filename)
    expected_extensions: List[str] = allowed["ext"]
    if extension not in expected_extensions:
        raise UploadValidationError(
            f"File extension {extension or '(none)'} doesn't match MIME type {mime_type}. "
            f"Expected: {', '.join(expected_extensions)}",
            UploadErrorCode.EXTENSION_MISMATCH,
        )

    effective_type = resolve_mime_type(mime_type, filename)
    signature: Optional[bytes] = FILE_SIGNATURES.get(effective_type)
    if signature is not None and not data.startswith(signature):
        raise UploadValidationError(
            f"Content of {filename} does not match its declared type {effective_type}",
            UploadErrorCode.SIGNATURE_MISMATCH,
        )

    return effective_type
