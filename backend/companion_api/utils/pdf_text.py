"""Text extraction for companion source PDFs.

The primary path reads the text layer with pdfplumber. Documents that
pdfplumber cannot open (damaged xref tables, odd producers) fall back
to scanning the raw bytes for literal string operands inside content
streams. Both paths give up below `MIN_TEXT_CHARS` characters, which in
practice means a scanned/image-only or encrypted document.
"""

import io
import logging
import re
from typing import List

import pdfplumber

from ..errors import ValidationFailed

PDF_MIME_TYPE = "application/pdf"
MIN_TEXT_CHARS = 10
TRUNCATION_MARKER = "\n\n[Content truncated...]"

logger = logging.getLogger("companion_api.pdf")

_STREAM_RE = re.compile(rb"stream\r?\n(.*?)\r?\nendstream", re.DOTALL)
_LITERAL_RE = re.compile(rb"\(((?:\\.|[^\\)])*)\)", re.DOTALL)
_TEXT_BLOCK_RE = re.compile(rb"BT\s+(.*?)\s+ET", re.DOTALL)
_TJ_ARRAY_RE = re.compile(rb"\[(.*?)\]\s*TJ", re.DOTALL)
_SIMPLE_ESCAPES = {
    ord("n"): "\n",
    ord("r"): "\r",
    ord("t"): "\t",
    ord("b"): "\b",
    ord("f"): "\f",
    ord("("): "(",
    ord(")"): ")",
    ord("\\"): "\\",
}


class PdfValidationError(ValidationFailed):
    """The upload is not an acceptable PDF (type or size)."""


class PdfExtractionError(ValidationFailed):
    """No usable text could be read from the PDF."""


def validate_pdf_upload(content_type: str, size: int, max_bytes: int) -> None:
    """Reject anything that is not a non-empty PDF of at most `max_bytes`."""
    if content_type != PDF_MIME_TYPE:
        raise PdfValidationError(f"Only PDF files are allowed (got {content_type or 'unknown type'})")
    if size <= 0:
        raise PdfValidationError("File is empty")
    if size > max_bytes:
        raise PdfValidationError(
            f"File size must be at most {max_bytes // 1024}KB (got {size // 1024}KB)"
        )


def clean_text(text: str) -> str:
    """Collapse runs of whitespace into single spaces."""
    return re.sub(r"\s+", " ", text).strip()


def extract_pdf_text(data: bytes) -> str:
    """Return the cleaned text of a PDF or raise `PdfExtractionError`."""
    text = ""
    try:
        text = clean_text(_extract_with_pdfplumber(data))
    except Exception as e:
        logger.warning("pdfplumber failed, using raw stream scan: %s", e)
    if len(text) >= MIN_TEXT_CHARS:
        return text
    text = clean_text(extract_text_from_raw_streams(data))
    if len(text) < MIN_TEXT_CHARS:
        raise PdfExtractionError(
            "No readable text found in PDF; it is likely image-based or encrypted"
        )
    return text


def truncate_text(text: str, limit: int) -> str:
    """Cut `text` to `limit` characters and mark that it was cut."""
    if len(text) <= limit:
        return text
    return text[:limit] + TRUNCATION_MARKER


def _extract_with_pdfplumber(data: bytes) -> str:
    out = []
    with pdfplumber.open(io.BytesIO(data)) as pdf:
        for page in pdf.pages:
            out.append(page.extract_text() or "")
    return "\n".join(out)


def extract_text_from_raw_streams(data: bytes) -> str:
    """Best-effort text recovery by scanning uncompressed content streams.

    Literal string operands `( ... )` inside `stream ... endstream` blocks
    are decoded and joined. When that yields too little, `BT ... ET` text
    objects and `TJ` arrays anywhere in the file are tried instead.
    """
    parts: List[str] = []
    for stream in _STREAM_RE.findall(data):
        for literal in _LITERAL_RE.findall(stream):
            if literal:
                parts.append(decode_pdf_literal(literal))
    text = " ".join(parts)
    if len(text.strip()) >= MIN_TEXT_CHARS:
        return text.strip()

    parts = []
    for pattern in (_TEXT_BLOCK_RE, _TJ_ARRAY_RE):
        for block in pattern.findall(data):
            literals = _LITERAL_RE.findall(block)
            if literals:
                parts.extend(decode_pdf_literal(lit) for lit in literals)
        if len(" ".join(parts).strip()) >= MIN_TEXT_CHARS:
            break
    return " ".join(parts).strip()


def decode_pdf_literal(raw: bytes) -> str:
    """Decode the backslash escapes of a PDF literal string body."""
    out = []
    i = 0
    n = len(raw)
    while i < n:
        c = raw[i]
        if c != 0x5C or i + 1 >= n:
            out.append(chr(c))
            i += 1
            continue
        nxt = raw[i + 1]
        if nxt in _SIMPLE_ESCAPES:
            out.append(_SIMPLE_ESCAPES[nxt])
            i += 2
        elif 0x30 <= nxt <= 0x37:
            j = i + 1
            while j < n and j < i + 4 and 0x30 <= raw[j] <= 0x37:
                j += 1
            out.append(chr(int(raw[i + 1:j], 8) & 0xFF))
            i = j
        elif nxt in (0x0A, 0x0D):
            # escaped line break continues the string
            i += 2
            if nxt == 0x0D and i < n and raw[i] == 0x0A:
                i += 1
        else:
            out.append(chr(nxt))
            i += 2
    return "".join(out)
