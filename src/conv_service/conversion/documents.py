"""Document conversion: source classification plus the fallback chain.

A document target can usually be produced several ways with different
fidelity. The source is classified once (machine-readable PDF, scanned PDF,
image, other office file) and that decides the chain:

    tables       pdfplumber, only when requested and the target is tabular
    structured   pdf2docx / docling, keeps layout; output is inspected
    ocr          PyMuPDF page render + Tesseract, rebuilds a plain document
    image_pdf    Pillow, image sources to PDF
    generic      LibreOffice headless, broad coverage, plain handling
"""

import csv
import html
import json
import logging
import re
from enum import Enum
from pathlib import Path
from typing import Callable, Iterator

import fitz  # PyMuPDF
import pdfplumber
import pytesseract
from docx import Document as DocxDocument
from openpyxl import Workbook
from PIL import Image, ImageSequence

from .chain import Strategy, run_chain
from .errors import ProcessingError, StrategyFailure, ToolUnavailable
from .formats import IMAGE_FORMATS, format_of, normalize_format
from .interfaces import ConversionArtifact, ConversionRequest
from .options import ConversionOptions
from .tools import DEFAULT_TOOL_TIMEOUT_SEC, find_tool, run_tool

logger = logging.getLogger(__name__)

# Below this many characters of extractable text a PDF is treated as scanned.
# Empirical cutoff, tunable through Settings.scanned_text_min_chars.
SCANNED_TEXT_MIN_CHARS = 200

# A structured conversion whose output holds less text than this is discarded.
RECOVERED_TEXT_MIN_CHARS = 50

OCR_FALLBACK_WARNING = "OCR fallback used: original layout was not preserved"

TABULAR_TARGETS = frozenset({"csv", "xlsx"})
OCR_TARGETS = frozenset({"docx", "txt", "md", "html"})
DOCLING_SOURCES = frozenset({"pdf", "docx", "pptx", "xlsx", "html", "md", "csv"})
DOCLING_TARGETS = frozenset({"md", "html", "txt", "json"})
LIBREOFFICE_TARGETS = frozenset({
    "pdf", "docx", "doc", "odt", "rtf", "txt", "html",
    "xlsx", "xls", "ods", "csv", "pptx", "ppt", "odp", "epub",
})
LIBREOFFICE_FILTERS = {
    "docx": "docx:MS Word 2007 XML",
    "doc": "doc:MS Word 97",
    "xlsx": "xlsx:Calc MS Excel 2007 XML",
    "pptx": "pptx:Impress MS PowerPoint 2007 XML",
    "txt": "txt:Text (encoded):UTF8",
}
# Targets LibreOffice can only reach from a PDF through the Writer importer
WRITER_TARGETS = frozenset({"docx", "doc", "odt", "rtf", "txt", "html", "epub"})


class SourceKind(str, Enum):
    TEXT_PDF = "text_pdf"
    SCANNED_PDF = "scanned_pdf"
    IMAGE = "image"
    OFFICE = "office"


def count_pdf_text(path: Path) -> int:
    """Number of characters PyMuPDF can extract from the whole PDF."""
    try:
        with fitz.open(str(path)) as doc:
            text = "".join(page.get_text("text") for page in doc)
    except Exception as e:
        raise ProcessingError(f"cannot read PDF: {e}") from e
    return len(text.strip())


def classify_source(path: Path, threshold: int = SCANNED_TEXT_MIN_CHARS) -> SourceKind:
    source = format_of(path)
    if source == "pdf":
        chars = count_pdf_text(path)
        logger.debug("%s has %d extractable characters", path.name, chars)
        return SourceKind.TEXT_PDF if chars >= threshold else SourceKind.SCANNED_PDF
    if source in IMAGE_FORMATS:
        return SourceKind.IMAGE
    return SourceKind.OFFICE


def read_output_text(path: Path) -> str | None:
    """Recovered text of a produced file, or None when the format can't be inspected."""
    fmt = format_of(path)
    if fmt == "docx":
        doc = DocxDocument(str(path))
        parts = [p.text for p in doc.paragraphs]
        for table in doc.tables:
            for row in table.rows:
                parts.extend(cell.text for cell in row.cells)
        return "\n".join(parts)
    if fmt in {"txt", "md", "json", "csv"}:
        return path.read_text(encoding="utf-8", errors="replace")
    if fmt == "html":
        return re.sub(r"<[^>]+>", " ", path.read_text(encoding="utf-8", errors="replace"))
    if fmt == "pdf":
        with fitz.open(str(path)) as doc:
            return "".join(page.get_text("text") for page in doc)
    return None


def write_text_document(pages: list[str], out: Path, fmt: str) -> None:
    """Write recognised page texts as a new, plain document."""
    if fmt == "docx":
        doc = DocxDocument()
        for i, page in enumerate(pages):
            if i:
                doc.add_page_break()
            for para in re.split(r"\n\s*\n", page):
                para = " ".join(para.split())
                if para:
                    doc.add_paragraph(para)
        doc.save(str(out))
    elif fmt == "html":
        body = "\n".join(
            "<section>" + "".join(f"<p>{html.escape(p.strip())}</p>" for p in re.split(r"\n\s*\n", page) if p.strip()) + "</section>"
            for page in pages
        )
        out.write_text(f"<!DOCTYPE html>\n<html><body>\n{body}\n</body></html>\n", encoding="utf-8")
    elif fmt in {"txt", "md"}:
        out.write_text("\n\n".join(p.strip() for p in pages) + "\n", encoding="utf-8")
    else:
        raise StrategyFailure(f"cannot write recognised text as .{fmt}")


class StructuredExtraction:
    """Layout preserving conversion: pdf2docx for PDF->DOCX, docling for text targets."""

    name = "structured"
    label = "structured extraction"

    def __init__(self, min_recovered_chars: int = RECOVERED_TEXT_MIN_CHARS) -> None:
        self._min_recovered_chars = min_recovered_chars

    def applies(self, request: ConversionRequest) -> bool:
        source = format_of(request.input_path)
        target = request.target_format
        if source == "pdf" and target == "docx":
            return True
        return source in DOCLING_SOURCES and target in DOCLING_TARGETS and source != target

    def run(self, request: ConversionRequest) -> ConversionArtifact:
        out = request.output_path()
        if format_of(request.input_path) == "pdf" and request.target_format == "docx":
            self._pdf_to_docx(request.input_path, out)
        else:
            self._docling_export(request.input_path, out, request.target_format)

        text = read_output_text(out)
        if text is not None and len(text.strip()) < self._min_recovered_chars:
            out.unlink(missing_ok=True)
            raise StrategyFailure(f"recovered only {len(text.strip())} characters of text")
        return ConversionArtifact.from_file(out, request.target_format, self.name)

    @staticmethod
    def _pdf_to_docx(pdf: Path, out: Path) -> None:
        try:
            from pdf2docx import Converter
        except ImportError as e:
            raise ToolUnavailable("pdf2docx is not installed") from e
        cv = Converter(str(pdf))
        try:
            cv.convert(str(out))
        finally:
            cv.close()

    @staticmethod
    def _docling_export(source: Path, out: Path, target: str) -> None:
        try:
            from docling.document_converter import DocumentConverter
        except ImportError as e:
            raise ToolUnavailable("docling is not installed") from e
        result = DocumentConverter().convert(str(source))
        doc = result.document
        # export method names vary across docling versions
        candidates = {
            "md": ("export_to_markdown", "to_markdown", "as_markdown"),
            "html": ("export_to_html",),
            "txt": ("export_to_text", "export_to_markdown"),
            "json": ("export_to_dict",),
        }[target]
        for m in candidates:
            fn = getattr(doc, m, None)
            if callable(fn):
                content = fn()
                break
        else:
            raise StrategyFailure(f"docling document cannot export .{target}")
        if target == "json":
            content = json.dumps(content, ensure_ascii=False, indent=2)
        out.write_text(content, encoding="utf-8")


class OcrExtraction:
    """Render pages, recognise them one by one and rebuild a plain document."""

    name = "ocr"
    label = "OCR"

    def __init__(
        self,
        recognize: Callable[[Image.Image], str] | None = None,
        *,
        dpi: int = 300,
        lang: str = "eng",
    ) -> None:
        self._recognize = recognize
        self._dpi = dpi
        self._lang = lang

    def applies(self, request: ConversionRequest) -> bool:
        source = format_of(request.input_path)
        return request.target_format in OCR_TARGETS and (source == "pdf" or source in IMAGE_FORMATS)

    def run(self, request: ConversionRequest) -> ConversionArtifact:
        recognize = self._recognize or self._tesseract()
        pages = [recognize(img).strip() for img in self._pages(request.input_path)]
        if not any(pages):
            raise StrategyFailure("OCR recognised no text")
        out = request.output_path()
        write_text_document(pages, out, request.target_format)
        logger.info("OCR recovered text from %d page(s)", len(pages))
        return ConversionArtifact.from_file(out, request.target_format, self.name, [OCR_FALLBACK_WARNING])

    def _tesseract(self) -> Callable[[Image.Image], str]:
        try:
            pytesseract.get_tesseract_version()
        except pytesseract.TesseractNotFoundError as e:
            raise ToolUnavailable("tesseract OCR engine is not installed") from e
        return lambda img: pytesseract.image_to_string(img, lang=self._lang)

    def _pages(self, path: Path) -> Iterator[Image.Image]:
        if format_of(path) == "pdf":
            yield from render_pdf_pages(path, self._dpi)
            return
        with Image.open(path) as img:
            for frame in ImageSequence.Iterator(img):
                yield frame.convert("RGB")


def render_pdf_pages(path: Path, dpi: int = 300) -> Iterator[Image.Image]:
    with fitz.open(str(path)) as doc:
        for page in doc:
            pix = page.get_pixmap(dpi=dpi)
            yield Image.frombytes("RGB", (pix.width, pix.height), pix.samples)


class TableExtraction:
    """Pull table structure out of a PDF into CSV or XLSX."""

    name = "tables"
    label = "table extraction"

    def applies(self, request: ConversionRequest) -> bool:
        return (
            request.options.table_extraction
            and request.target_format in TABULAR_TARGETS
            and format_of(request.input_path) == "pdf"
        )

    def run(self, request: ConversionRequest) -> ConversionArtifact:
        tables: list[list[list[str]]] = []
        with pdfplumber.open(str(request.input_path)) as pdf:
            for page in pdf.pages:
                for table in page.extract_tables():
                    rows = [[cell or "" for cell in row] for row in table if any(row)]
                    if rows:
                        tables.append(rows)
        if not tables:
            raise StrategyFailure("no tables found")

        out = request.output_path()
        if request.target_format == "csv":
            with out.open("w", newline="", encoding="utf-8") as f:
                writer = csv.writer(f)
                for i, rows in enumerate(tables):
                    if i:
                        writer.writerow([])
                    writer.writerows(rows)
        else:
            wb = Workbook()
            wb.remove(wb.active)
            for i, rows in enumerate(tables, 1):
                ws = wb.create_sheet(f"Table {i}")
                for row in rows:
                    ws.append(row)
            wb.save(str(out))
        return ConversionArtifact.from_file(out, request.target_format, self.name)


class ImageToPdf:
    name = "image_pdf"
    label = "image to PDF"

    def applies(self, request: ConversionRequest) -> bool:
        return request.target_format == "pdf" and format_of(request.input_path) in IMAGE_FORMATS

    def run(self, request: ConversionRequest) -> ConversionArtifact:
        out = request.output_path()
        with Image.open(request.input_path) as img:
            frames = [frame.convert("RGB") for frame in ImageSequence.Iterator(img)]
        frames[0].save(out, "PDF", save_all=True, append_images=frames[1:], resolution=150.0)
        return ConversionArtifact.from_file(out, "pdf", self.name)


class LibreOfficeTranscode:
    """Generic office conversion through ``soffice --headless --convert-to``."""

    name = "generic"
    label = "generic office conversion"

    def __init__(self, soffice_bin: str | None = None, timeout: float = DEFAULT_TOOL_TIMEOUT_SEC) -> None:
        self._soffice_bin = soffice_bin
        self._timeout = timeout

    def applies(self, request: ConversionRequest) -> bool:
        target = request.target_format
        return target in LIBREOFFICE_TARGETS and format_of(request.input_path) != target

    def run(self, request: ConversionRequest) -> ConversionArtifact:
        soffice = find_tool("soffice", "libreoffice", explicit=self._soffice_bin)
        target = request.target_format
        outdir = request.work_dir / "generic"
        outdir.mkdir(parents=True, exist_ok=True)
        # Own profile per job so concurrent soffice processes don't lock each other
        profile = request.work_dir / "lo-profile"

        args = [soffice, f"-env:UserInstallation={profile.resolve().as_uri()}", "--headless", "--norestore"]
        if format_of(request.input_path) == "pdf" and target in WRITER_TARGETS:
            args.append("--infilter=writer_pdf_import")
        args += ["--convert-to", LIBREOFFICE_FILTERS.get(target, target), "--outdir", str(outdir), str(request.input_path)]
        run_tool(args, timeout=self._timeout)

        produced = outdir / f"{request.input_path.stem}.{target}"
        if not produced.exists():
            raise ProcessingError(f"LibreOffice produced no .{target} output")
        return ConversionArtifact.from_file(produced, target, self.name)


class DocumentConverter:
    """Converter for the document family; the chain policy lives in ``build_chain``."""

    def __init__(
        self,
        *,
        structured: Strategy | None = None,
        ocr: Strategy | None = None,
        generic: Strategy | None = None,
        tables: Strategy | None = None,
        image_pdf: Strategy | None = None,
        scanned_text_min_chars: int = SCANNED_TEXT_MIN_CHARS,
        classifier: Callable[[Path, int], SourceKind] = classify_source,
    ) -> None:
        self.structured = structured or StructuredExtraction()
        self.ocr = ocr or OcrExtraction()
        self.generic = generic or LibreOfficeTranscode()
        self.tables = tables or TableExtraction()
        self.image_pdf = image_pdf or ImageToPdf()
        self.scanned_text_min_chars = scanned_text_min_chars
        self._classify = classifier

    def build_chain(self, kind: SourceKind, request: ConversionRequest) -> list[Strategy]:
        options = request.options
        target = request.target_format
        is_pdf = kind in (SourceKind.TEXT_PDF, SourceKind.SCANNED_PDF)

        if is_pdf and options.table_extraction and target in TABULAR_TARGETS:
            return [self.tables, self.generic]
        if kind is SourceKind.TEXT_PDF:
            chain = [self.structured]
            if options.ocr_enabled:
                chain.append(self.ocr)
            return chain + [self.generic]
        if kind is SourceKind.SCANNED_PDF:
            return [self.ocr, self.generic]
        if kind is SourceKind.IMAGE:
            if target == "pdf":
                return [self.image_pdf, self.generic]
            return [self.ocr, self.generic]
        return [self.structured, self.generic]

    def convert(
        self,
        input_path: Path,
        target_format: str,
        options: ConversionOptions,
        work_dir: Path,
    ) -> ConversionArtifact:
        target = normalize_format(target_format)
        work_dir.mkdir(parents=True, exist_ok=True)
        request = ConversionRequest(input_path=input_path, target_format=target, options=options, work_dir=work_dir)
        kind = self._classify(input_path, self.scanned_text_min_chars)
        chain = self.build_chain(kind, request)
        logger.info("document source classified as %s; chain: %s", kind.value, " -> ".join(s.name for s in chain))
        return run_chain(chain, request)
