"""
Tests for text extraction.
"""

import io
import json

import docx
import pytest
from pypdf import PdfWriter

from src.core.ingestion.extraction import DOC_MIME_TYPE, DOCX_MIME_TYPE, TextExtractor


@pytest.fixture
def extractor():
    return TextExtractor()


def make_docx(paragraphs, table_rows=None) -> bytes:
    document = docx.Document()
    for paragraph in paragraphs:
        document.add_paragraph(paragraph)
    if table_rows:
        table = document.add_table(rows=len(table_rows), cols=len(table_rows[0]))
        for row, values in zip(table.rows, table_rows):
            for cell, value in zip(row.cells, values):
                cell.text = value
    buffer = io.BytesIO()
    document.save(buffer)
    return buffer.getvalue()


def blank_pdf() -> bytes:
    writer = PdfWriter()
    writer.add_blank_page(width=612, height=792)
    buffer = io.BytesIO()
    writer.write(buffer)
    return buffer.getvalue()


def test_plain_text_utf8(extractor):
    result = extractor.extract("Überblick über die Bremsen".encode("utf-8"), "text/plain", "notes.txt")

    assert result.text == "Überblick über die Bremsen"
    assert result.extraction_method == "utf-8-decode"
    assert result.word_count == 4
    assert result.char_count == len(result.text)


def test_plain_text_falls_back_to_latin1(extractor):
    result = extractor.extract("café".encode("latin-1"), "text/plain", "notes.txt")

    assert result.text == "café"
    assert result.extraction_method == "latin-1-decode"


def test_json_is_pretty_printed(extractor):
    data = json.dumps({"model": "X", "range_km": 500}).encode("utf-8")

    result = extractor.extract(data, "application/json", "specs.json")

    assert result.extraction_method == "json-parse"
    assert json.loads(result.text) == {"model": "X", "range_km": 500}
    assert "\n" in result.text


def test_invalid_json_keeps_raw_text(extractor):
    result = extractor.extract(b"{not json", "application/json", "broken.json")

    assert result.extraction_method == "json-parse-failed"
    assert result.text == "{not json"
    assert result.warnings


def test_unsupported_type_produces_marker(extractor):
    result = extractor.extract(b"\x00\x01", "image/png", "photo.png")

    assert not result.supported
    assert result.extraction_method == "unsupported-format"
    assert result.text.startswith("[Unsupported Format] - photo.png")
    assert not extractor.supports("image/png")


def test_docx_paragraphs_and_tables(extractor):
    data = make_docx(["Service intervals", "Change the oil every 15,000 km."],
                     table_rows=[["Part", "Interval"], ["Brake fluid", "2 years"]])

    result = extractor.extract(data, DOCX_MIME_TYPE, "manual.docx")

    assert result.extraction_method == "python-docx"
    assert "Change the oil every 15,000 km." in result.text
    assert "Brake fluid | 2 years" in result.text


def test_corrupt_docx_is_marked_failed(extractor):
    data = b"PK\x03\x04 definitely not a zip"

    result = extractor.extract(data, DOCX_MIME_TYPE, "broken.docx")

    assert not result.supported
    assert result.extraction_method == "python-docx-failed"
    assert result.text.startswith("[DOCX Extraction Failed] - broken.docx\nError: ")
    assert result.text.endswith(f"File size: {len(data)} bytes")


def test_legacy_doc_marker(extractor):
    result = extractor.extract(bytes([0xD0, 0xCF, 0x11, 0xE0]) + b"\x00" * 64, DOC_MIME_TYPE, "old.doc")

    assert not result.supported
    assert result.extraction_method == "doc-unsupported"
    assert result.text.startswith("[DOC Format Not Supported] - old.doc")


def test_doc_that_is_really_docx(extractor):
    result = extractor.extract(make_docx(["Renamed document"]), DOC_MIME_TYPE, "renamed.doc")

    assert result.extraction_method == "python-docx-legacy"
    assert result.text == "Renamed document"


def test_corrupt_pdf_is_marked_failed(extractor):
    result = extractor.extract(b"this is not a pdf", "application/pdf", "broken.pdf")

    assert not result.supported
    assert result.extraction_method == "pypdf-failed"
    assert result.text.startswith("[PDF Extraction Failed] - broken.pdf\nError: ")
    assert result.warnings


def test_blank_pdf_is_flagged_as_scanned(extractor):
    result = extractor.extract(blank_pdf(), "application/pdf", "scan.pdf")

    assert result.extraction_method == "pypdf"
    assert result.page_count == 1
    assert result.text == ""
    assert result.is_likely_scanned
