import time

import pytest
from fastapi.testclient import TestClient

from conftest import CopyConverter, FakeStrategy, make_scanned_pdf
from conv_service.config import Settings
from conv_service.conversion import Dispatcher, ProcessingError, ToolUnavailable
from conv_service.conversion.documents import OCR_FALLBACK_WARNING, DocumentConverter, OcrExtraction
from conv_service.conversion.formats import ConverterFamily
from conv_service.webapi import create_app


def _client(tmp_path, converter=None, **overrides):
    settings = Settings.for_data_dir(tmp_path, **overrides)
    dispatcher = Dispatcher({ConverterFamily.DOCUMENT: converter or CopyConverter()})
    return TestClient(create_app(settings, dispatcher=dispatcher))


@pytest.fixture
def client(tmp_path):
    with _client(tmp_path) as c:
        yield c


def _upload(client, name="notes.txt", data=b"hello", target="pdf", session="s1", path="/convert", **fields):
    headers = {"X-Session-Id": session} if session else {}
    form = {"targetFormat": target, **fields} if target is not None else dict(fields)
    return client.post(path, files={"file": (name, data, "text/plain")}, data=form, headers=headers)


def _poll(client, job_id, timeout=5.0):
    deadline = time.monotonic() + timeout
    while True:
        body = client.get(f"/conversion/{job_id}").json()
        if body["status"] != "processing" or time.monotonic() > deadline:
            return body
        time.sleep(0.02)


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_formats_listing(client):
    listing = client.get("/formats").json()
    assert "png" in listing["image"]
    assert "docx" in listing["document"]


class TestConvert:
    def test_accepts_and_reports_processing(self, client):
        resp = _upload(client)
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "processing"
        assert body["sessionId"] == "s1"
        assert body["jobId"]
        assert body["message"]

    def test_session_generated_when_absent(self, client):
        resp = _upload(client, session=None)
        assert resp.status_code == 200
        assert resp.headers["X-Session-Id"] == resp.json()["sessionId"]

    def test_api_prefix_alias(self, client):
        assert _upload(client, path="/api/convert").status_code == 200

    def test_missing_file(self, client):
        resp = client.post("/convert", data={"targetFormat": "pdf"})
        assert resp.status_code == 400
        assert resp.json()["detail"]["code"] == "bad_request"

    def test_missing_target(self, client):
        assert _upload(client, target=None).status_code == 400

    def test_malformed_target(self, client):
        assert _upload(client, target="p/df").status_code == 400

    def test_bad_quality(self, client):
        assert _upload(client, quality="ultra").status_code == 400

    def test_oversize_upload(self, tmp_path):
        with _client(tmp_path, max_upload_mb=1) as c:
            resp = _upload(c, data=b"x" * (1024 * 1024 + 10))
        assert resp.status_code == 413
        assert resp.json()["detail"]["code"] == "payload_too_large"


def test_poll_then_download(client):
    job_id = _upload(client, name="notes.txt", data=b"converted bytes", quality="high").json()["jobId"]
    body = _poll(client, job_id)

    assert body["status"] == "completed"
    assert body["downloadUrl"] == f"/download/{job_id}"
    assert body["fileName"] == "notes.pdf"
    assert body["originalFileName"] == "notes.txt"
    assert body["targetFormat"] == "pdf"
    assert "completedAt" in body
    assert "errorMessage" not in body

    resp = client.get(body["downloadUrl"])
    assert resp.status_code == 200
    assert resp.content == b"converted bytes"
    assert "notes.pdf" in resp.headers["content-disposition"]


def test_failed_job_reports_error(tmp_path):
    with _client(tmp_path, CopyConverter(error=ProcessingError("file is damaged"))) as c:
        job_id = _upload(c).json()["jobId"]
        body = _poll(c, job_id)
        assert body["status"] == "failed"
        assert "file is damaged" in body["errorMessage"]
        assert "downloadUrl" not in body
        assert c.get(f"/download/{job_id}").status_code == 404


def test_unknown_job_is_404(client):
    assert client.get("/conversion/does-not-exist").status_code == 404
    assert client.get("/download/does-not-exist").status_code == 404


def test_download_before_completion_is_404(tmp_path):
    import threading

    gate = threading.Event()
    with _client(tmp_path, CopyConverter(gate=gate)) as c:
        job_id = _upload(c).json()["jobId"]
        try:
            assert c.get(f"/download/{job_id}").status_code == 404
        finally:
            gate.set()


def test_recent_conversions_are_per_session(client):
    ids = [_upload(client, name=f"f{i}.txt").json()["jobId"] for i in range(3)]
    _upload(client, session="someone-else")
    for job_id in ids:
        _poll(client, job_id)

    mine = client.get("/conversions", headers={"X-Session-Id": "s1"}).json()["conversions"]
    assert {c["id"] for c in mine} == set(ids)
    assert all("createdAt" in c for c in mine)
    assert client.get("/conversions").json() == {"conversions": []}


def test_download_releases_artifact_after_grace(tmp_path):
    with _client(tmp_path, download_grace_sec=0.05) as c:
        job_id = _upload(c).json()["jobId"]
        _poll(c, job_id)
        assert c.get(f"/download/{job_id}").status_code == 200

        deadline = time.monotonic() + 5
        while "downloadUrl" in c.get(f"/conversion/{job_id}").json() and time.monotonic() < deadline:
            time.sleep(0.02)
        body = c.get(f"/conversion/{job_id}").json()
        assert body["status"] == "completed"
        assert "downloadUrl" not in body
        assert c.get(f"/download/{job_id}").status_code == 404


def test_scanned_pdf_to_docx_through_http(tmp_path):
    scan = make_scanned_pdf(tmp_path / "scan.pdf", pages=10)
    pages = []

    def recognize(img):
        pages.append(img.size)
        return f"Invoice line recognised on page {len(pages)}"

    converter = DocumentConverter(
        ocr=OcrExtraction(recognize=recognize, dpi=36),
        generic=FakeStrategy("generic", error=ToolUnavailable("soffice not found")),
    )
    settings = Settings.for_data_dir(tmp_path / "data")
    app = create_app(settings, dispatcher=Dispatcher({ConverterFamily.DOCUMENT: converter}))

    with TestClient(app) as c:
        job_id = _upload(c, name="scan.pdf", data=scan.read_bytes(), target="docx").json()["jobId"]
        body = _poll(c, job_id, timeout=30)

        assert body["status"] == "completed"
        assert body["downloadUrl"] == f"/download/{job_id}"
        assert body["fileName"] == "scan.docx"
        assert OCR_FALLBACK_WARNING in body["warnings"]
        assert len(pages) == 10

        resp = c.get(body["downloadUrl"])
        assert resp.status_code == 200
        assert resp.content[:2] == b"PK"
