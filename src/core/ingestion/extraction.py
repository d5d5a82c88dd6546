"""
Text extraction from uploaded document bytes.
"""

import io
import json
import logging
from typing import Callable, Dict

import docx
from pypdf import PdfReader

from src.core.exceptions import DocumentDataError
from src.models.document_models import ExtractionResult
from src.utils.helpers import clean_text, count_words

logger = logging.getLogger(__name__)

PDF_MIME_TYPE = "application/pdf"
DOCX_MIME_TYPE = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"
DOC_MIME_TYPE = "application/msword"
JSON_MIME_TYPE = "application/json"

PLAIN_TEXT_MIME_TYPES = (
    "text/plain",
    "text/markdown",
    "text/csv",
    "text/html",
    "text/xml",
    "application/xml",
)

# Below both thresholds a PDF probably holds page images rather than text
SCANNED_DENSITY_THRESHOLD = 0.001
SCANNED_TEXT_LENGTH = 100


class TextExtractor:
    """
    Routes document bytes to the parser for their MIME type.

    Nothing here raises for bad input: corrupt PDF and DOCX files and formats
    without a parser produce a marker text flagged as unsupported.
    """

    def __init__(self):
        self._parsers: Dict[str, Callable[[bytes, str], ExtractionResult]] = {
            PDF_MIME_TYPE: self.extract_pdf,
            DOCX_MIME_TYPE: self.extract_docx,
            DOC_MIME_TYPE: self.extract_doc,
            JSON_MIME_TYPE: self.extract_json,
        }
        for mime_type in PLAIN_TEXT_MIME_TYPES:
            self._parsers[mime_type] = self.extract_plain_text

    def supports(self, mime_type: str) -> bool:
        return mime_type in self._parsers

    def extract(self, data: bytes, mime_type: str, filename: str = "") -> ExtractionResult:
        """
        Extract text from a document.

        Args:
            data: Raw document bytes
            mime_type: Declared MIME type
            filename: Original file name, used in messages

        Returns:
            Extracted text and its statistics
        """
        logger.info(f"Extracting text from {filename or 'document'} ({mime_type}, {len(data)} bytes)")

        parser = self._parsers.get(mime_type)
        if parser is None:
            logger.warning(f"Unsupported MIME type: {mime_type} for {filename}")
            text = (
                f"[Unsupported Format] - {filename}\n"
                f"MIME Type: {mime_type}\n"
                f"File size: {len(data)} bytes\n\n"
                "This file format is not currently supported for text extraction."
            )
            return self._result(text, "unsupported-format", supported=False)

        result = parser(data, filename)
        logger.info(f"Extracted {result.char_count} characters from {filename} with {result.extraction_method}")
        return result

    @staticmethod
    def _result(text: str, method: str, **kwargs) -> ExtractionResult:
        return ExtractionResult(
            text=text,
            extraction_method=method,
            word_count=count_words(text),
            char_count=len(text),
            **kwargs,
        )

    def _failed(self, kind: str, method: str, data: bytes, filename: str, error: Exception) -> ExtractionResult:
        text = (
            f"[{kind} Extraction Failed] - {filename}\n"
            f"Error: {error}\n"
            f"File size: {len(data)} bytes"
        )
        return self._result(text, method, supported=False, warnings=[f"{kind} extraction failed: {error}"])

    def extract_pdf(self, data: bytes, filename: str) -> ExtractionResult:
        try:
            reader = PdfReader(io.BytesIO(data))
            pages = [page.extract_text() or "" for page in reader.pages]
        except Exception as e:
            logger.error(f"PDF extraction failed for {filename}: {e}")
            return self._failed("PDF", "pypdf-failed", data, filename, e)

        text = clean_text("\n\n".join(page for page in pages if page.strip()))
        text_density = len(text) / len(data) if data else 0.0
        is_likely_scanned = text_density < SCANNED_DENSITY_THRESHOLD and len(text) < SCANNED_TEXT_LENGTH

        warnings = []
        if is_likely_scanned:
            logger.warning(f"PDF might be scanned - low text density: {filename}")
            warnings.append("Low text density; the PDF is likely scanned")

        return self._result(
            text,
            "pypdf",
            page_count=len(pages),
            text_density=round(text_density, 6),
            is_likely_scanned=is_likely_scanned,
            warnings=warnings,
        )

    @staticmethod
    def _read_docx(data: bytes, filename: str):
        try:
            return docx.Document(io.BytesIO(data))
        except Exception as e:
            raise DocumentDataError(f"Could not read DOCX {filename}: {e}") from e

    def extract_docx(self, data: bytes, filename: str) -> ExtractionResult:
        try:
            document = self._read_docx(data, filename)
        except DocumentDataError as e:
            logger.error(f"DOCX extraction failed for {filename}: {e}")
            return self._failed("DOCX", "python-docx-failed", data, filename, e.__cause__ or e)
        return self._docx_text(document)

    def _docx_text(self, document) -> ExtractionResult:
        blocks = [paragraph.text for paragraph in document.paragraphs if paragraph.text.strip()]
        for table in document.tables:
            for row in table.rows:
                cells = [cell.text.strip() for cell in row.cells if cell.text.strip()]
                if cells:
                    blocks.append(" | ".join(cells))

        return self._result(clean_text("\n\n".join(blocks)), "python-docx")

    def extract_doc(self, data: bytes, filename: str) -> ExtractionResult:
        """Legacy .doc files only work when they are really DOCX packages."""
        try:
            document = self._read_docx(data, filename)
        except DocumentDataError as e:
            text = (
                f"[DOC Format Not Supported] - {filename}\n\n"
                "Legacy .doc files are not fully supported. "
                "Please convert to .docx format for better compatibility.\n\n"
                f"Error: {e}"
            )
            return self._result(text, "doc-unsupported", supported=False,
                                warnings=["Legacy DOC format - convert to DOCX"])

        result = self._docx_text(document)
        result.extraction_method = "python-docx-legacy"
        result.warnings.append("Legacy DOC format - DOCX recommended for better compatibility")
        return result

    def extract_plain_text(self, data: bytes, filename: str) -> ExtractionResult:
        try:
            return self._result(data.decode("utf-8"), "utf-8-decode")
        except UnicodeDecodeError:
            logger.warning(f"{filename} is not valid UTF-8, decoding as latin-1")
            return self._result(data.decode("latin-1"), "latin-1-decode")

    def extract_json(self, data: bytes, filename: str) -> ExtractionResult:
        raw = data.decode("utf-8", errors="replace")
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.warning(f"JSON parsing failed for {filename}: {e}; keeping raw text")
            return self._result(raw, "json-parse-failed", warnings=[f"Invalid JSON: {e}"])

        return self._result(json.dumps(parsed, indent=2, ensure_ascii=False), "json-parse")
