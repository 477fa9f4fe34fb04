"""Shared fixtures and fakes for the conversion service tests."""

import io
import shutil
import threading
import time
from pathlib import Path

import fitz
import pytest

from conv_service.conversion.adapters import LocalStorage
from conv_service.conversion.interfaces import ConversionArtifact, ConversionRequest
from conv_service.conversion.store import InMemoryJobStore

LOREM = (
    "The quarterly report covers revenue, operating costs and staffing. "
    "Revenue grew in every region while costs stayed flat for the period. "
    "Headcount increased slightly to support the new product line rollout. "
    "Details for each region follow in the tables on the next pages here."
)


def make_text_pdf(path: Path, text: str = LOREM, pages: int = 1) -> Path:
    doc = fitz.open()
    for _ in range(pages):
        page = doc.new_page()
        y = 72
        # one sentence per line keeps every line inside the page width
        for line in text.split(". "):
            page.insert_text((50, y), line.strip(), fontsize=9)
            y += 14
    doc.save(str(path))
    doc.close()
    return path


def make_scanned_pdf(path: Path, pages: int = 1) -> Path:
    """A PDF whose pages carry only drawings, no extractable text."""
    doc = fitz.open()
    for i in range(pages):
        page = doc.new_page()
        page.draw_rect(fitz.Rect(60, 60 + i, 300, 200), color=(0, 0, 0), fill=(0.6, 0.6, 0.6))
    doc.save(str(path))
    doc.close()
    return path


def reader_for(data: bytes):
    buf = io.BytesIO(data)

    async def read(n: int) -> bytes:
        return buf.read(n)

    return read


class FakeStrategy:
    """Strategy double: writes ``content`` or raises ``error``."""

    def __init__(self, name, *, error=None, content="converted text", applies=True, warnings=None):
        self.name = name
        self.label = name
        self.error = error
        self.content = content
        self._applies = applies
        self.warnings = warnings or []
        self.calls = 0

    def applies(self, request: ConversionRequest) -> bool:
        return self._applies

    def run(self, request: ConversionRequest) -> ConversionArtifact:
        self.calls += 1
        if self.error is not None:
            raise self.error
        out = request.output_path()
        out.write_text(self.content, encoding="utf-8")
        return ConversionArtifact.from_file(out, request.target_format, self.name, self.warnings)


class CopyConverter:
    """Converter double: copies the input into the work dir under the target extension."""

    def __init__(self, *, delay: float = 0.0, gate: threading.Event | None = None, error: Exception | None = None):
        self.delay = delay
        self.gate = gate
        self.error = error
        self.inputs: list[Path] = []
        self.active = 0
        self.peak = 0
        self._lock = threading.Lock()

    def convert(self, input_path, target_format, options, work_dir):
        with self._lock:
            self.active += 1
            self.peak = max(self.peak, self.active)
        try:
            return self._convert(input_path, target_format, work_dir)
        finally:
            with self._lock:
                self.active -= 1

    def _convert(self, input_path, target_format, work_dir):
        self.inputs.append(input_path)
        if self.gate is not None:
            self.gate.wait(timeout=10)
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        out = work_dir / f"{input_path.stem}.{target_format}"
        shutil.copyfile(input_path, out)
        return ConversionArtifact.from_file(out, target_format, "copy")


@pytest.fixture
def storage(tmp_path):
    return LocalStorage(tmp_path / "uploads", tmp_path / "downloads", tmp_path / "scratch")


@pytest.fixture
def store():
    return InMemoryJobStore()


@pytest.fixture
def text_pdf(tmp_path):
    return make_text_pdf(tmp_path / "report.pdf")


@pytest.fixture
def scanned_pdf(tmp_path):
    return make_scanned_pdf(tmp_path / "scan.pdf")
