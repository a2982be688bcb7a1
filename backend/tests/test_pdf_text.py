from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.exc import OperationalError

from companion_api import repositories
from companion_api.config import settings
from companion_api.main import app
from companion_api.storage import get_storage, object_path_for
from companion_api.utils import pdf_text
from companion_api.utils.pdf_text import (
    TRUNCATION_MARKER,
    PdfExtractionError,
    PdfValidationError,
    decode_pdf_literal,
    extract_pdf_text,
    extract_text_from_raw_streams,
    truncate_text,
    validate_pdf_upload,
)

client = TestClient(app)

LESSON = "Photosynthesis converts light energy into chemical energy"


def _make_pdf(content: bytes) -> bytes:
    """Single-page PDF with the given content stream and a Helvetica font."""
    objects = [
        b"<< /Type /Catalog /Pages 2 0 R >>",
        b"<< /Type /Pages /Kids [3 0 R] /Count 1 >>",
        b"<< /Type /Page /Parent 2 0 R /MediaBox [0 0 612 792] /Contents 4 0 R "
        b"/Resources << /Font << /F1 5 0 R >> >> >>",
        b"<< /Length %d >>\nstream\n" % len(content) + content + b"\nendstream",
        b"<< /Type /Font /Subtype /Type1 /BaseFont /Helvetica >>",
    ]
    out = bytearray(b"%PDF-1.4\n")
    offsets = []
    for i, body in enumerate(objects, start=1):
        offsets.append(len(out))
        out += b"%d 0 obj\n" % i + body + b"\nendobj\n"
    xref_at = len(out)
    out += b"xref\n0 %d\n0000000000 65535 f \n" % (len(objects) + 1)
    for off in offsets:
        out += b"%010d 00000 n \n" % off
    out += b"trailer\n<< /Size %d /Root 1 0 R >>\nstartxref\n%d\n%%%%EOF\n" % (len(objects) + 1, xref_at)
    return bytes(out)


def _text_pdf(text: str = LESSON) -> bytes:
    return _make_pdf(b"BT /F1 12 Tf 72 720 Td (" + text.encode("latin-1") + b") Tj ET")


def _drawing_pdf() -> bytes:
    # vector drawing only, no text operators
    return _make_pdf(b"0 0 m 200 200 l S")


def _create_companion(headers):
    r = client.post('/api/companions', headers=headers, json={
        "name": "Leaf Lab", "subject": "science", "topic": "Photosynthesis",
        "voice": "female", "style": "formal", "duration": 10,
    })
    assert r.status_code == 201, r.text
    return r.json()


class RecordingStorage:
    def __init__(self):
        self.objects = {}
        self.removed = []

    def upload(self, path, data, content_type):
        self.objects[path] = data
        return path

    def remove(self, path):
        self.removed.append(path)
        self.objects.pop(path, None)

    def public_url(self, path):
        return f"https://cdn.example.test/{path}"


def test_validate_pdf_upload_rules():
    validate_pdf_upload("application/pdf", 1024, 1024)
    with pytest.raises(PdfValidationError, match="Only PDF"):
        validate_pdf_upload("text/plain", 10, 1024)
    with pytest.raises(PdfValidationError, match="empty"):
        validate_pdf_upload("application/pdf", 0, 1024)
    with pytest.raises(PdfValidationError, match="at most 1KB"):
        validate_pdf_upload("application/pdf", 1025, 1024)


def test_extract_pdf_text_reads_text_layer():
    text = extract_pdf_text(_text_pdf())
    assert "Photosynthesis" in text
    assert "  " not in text


def test_extract_falls_back_to_raw_streams(monkeypatch):
    def broken(_data):
        raise RuntimeError("damaged xref")

    monkeypatch.setattr(pdf_text, "_extract_with_pdfplumber", broken)
    assert extract_pdf_text(_text_pdf()) == LESSON


def test_image_only_pdf_is_rejected():
    with pytest.raises(PdfExtractionError, match="image-based or encrypted"):
        extract_pdf_text(_drawing_pdf())


def test_raw_stream_scan_handles_tj_arrays_and_escapes():
    data = _make_pdf(b"BT /F1 12 Tf [(Mito) -20 (chondria \\(cell\\)) ] TJ ET")
    assert extract_text_from_raw_streams(data) == "Mito chondria (cell)"
    assert decode_pdf_literal(b"line\\nbreak \\101\\102 \\\\ end") == "line\nbreak AB \\ end"
    assert decode_pdf_literal(b"joined\\\nhere") == "joinedhere"


def test_truncate_text_marks_cut():
    assert truncate_text("short", 20000) == "short"
    cut = truncate_text("x" * 25, 20)
    assert cut == "x" * 20 + TRUNCATION_MARKER


def test_object_path_is_per_user_and_sanitised():
    now = datetime(2025, 1, 2, tzinfo=timezone.utc)
    path = object_path_for("user_1", "../My Notes (final).pdf", now=now)
    assert path == f"user_1/{int(now.timestamp() * 1000)}_My_Notes_final_.pdf"


def test_extract_endpoint(auth_headers):
    h = auth_headers()
    r = client.post('/api/extract-pdf-text', headers=h,
                    files={'file': ('lesson.pdf', _text_pdf(), 'application/pdf')})
    assert r.status_code == 200, r.text
    body = r.json()
    assert "Photosynthesis" in body['text']
    assert body['length'] == len(body['text'])


def test_extract_endpoint_rejections(auth_headers, monkeypatch):
    h = auth_headers()
    r = client.post('/api/extract-pdf-text', headers=h)
    assert r.status_code == 400
    r = client.post('/api/extract-pdf-text', headers=h,
                    files={'file': ('notes.txt', b'plain text notes', 'text/plain')})
    assert r.status_code == 400
    assert 'Only PDF' in r.json()['error']
    r = client.post('/api/extract-pdf-text', headers=h,
                    files={'file': ('scan.pdf', _drawing_pdf(), 'application/pdf')})
    assert r.status_code == 400
    assert 'image-based' in r.json()['error']

    monkeypatch.setattr(settings, "MAX_PDF_BYTES", 64)
    r = client.post('/api/extract-pdf-text', headers=h,
                    files={'file': ('lesson.pdf', _text_pdf(), 'application/pdf')})
    assert r.status_code == 400
    assert 'File size' in r.json()['error']


def test_extract_endpoint_requires_auth():
    r = client.post('/api/extract-pdf-text', files={'file': ('lesson.pdf', _text_pdf(), 'application/pdf')})
    assert r.status_code in (401, 403)


def test_attach_pdf_stores_file_and_updates_companion(auth_headers):
    h = auth_headers()
    companion = _create_companion(h)
    data = _text_pdf()
    r = client.post(f"/api/companions/{companion['id']}/pdf", headers=h,
                    files={'file': ('leaf notes.pdf', data, 'application/pdf')})
    assert r.status_code == 200, r.text
    body = r.json()
    assert body['has_pdf'] is True
    assert body['content_source'] == 'pdf'
    assert body['pdf_name'] == 'leaf notes.pdf'
    assert "Photosynthesis" in body['pdf_content']
    assert 'pdf_path' not in body

    served = client.get(body['pdf_url'])
    assert served.status_code == 200
    assert served.content == data

    cfg = client.get(f"/api/companions/{companion['id']}/assistant", headers=h).json()
    assert "leaf notes.pdf" in cfg['assistant']['model']['messages'][0]['content']


def test_attach_pdf_replaces_previous_object(auth_headers):
    h = auth_headers()
    companion = _create_companion(h)
    first = client.post(f"/api/companions/{companion['id']}/pdf", headers=h,
                        files={'file': ('first.pdf', _text_pdf(), 'application/pdf')}).json()
    second = client.post(f"/api/companions/{companion['id']}/pdf", headers=h,
                         files={'file': ('second.pdf', _text_pdf(), 'application/pdf')}).json()
    assert second['pdf_name'] == 'second.pdf'
    assert client.get(first['pdf_url']).status_code == 404
    assert client.get(second['pdf_url']).status_code == 200


def test_attach_pdf_other_users_companion(auth_headers, overrides):
    storage = RecordingStorage()
    overrides[get_storage] = lambda: storage
    companion = _create_companion(auth_headers())
    r = client.post(f"/api/companions/{companion['id']}/pdf", headers=auth_headers(),
                    files={'file': ('x.pdf', _text_pdf(), 'application/pdf')})
    assert r.status_code == 403
    assert storage.objects == {}


def test_attach_pdf_removes_upload_when_update_fails(auth_headers, overrides, monkeypatch):
    storage = RecordingStorage()
    overrides[get_storage] = lambda: storage
    h = auth_headers()
    companion = _create_companion(h)

    def failing_update(self, companion):
        raise OperationalError("UPDATE companions", {}, Exception("database is locked"))

    monkeypatch.setattr(repositories.CompanionRepository, "update", failing_update)
    r = client.post(f"/api/companions/{companion['id']}/pdf", headers=h,
                    files={'file': ('notes.pdf', _text_pdf(), 'application/pdf')})
    assert r.status_code == 500
    assert 'Database error' in r.json()['error']
    assert len(storage.removed) == 1
    assert storage.objects == {}

    monkeypatch.undo()
    fresh = client.get(f"/api/companions/{companion['id']}", headers=h).json()
    assert fresh['has_pdf'] is False
