"""
Best-effort plain-text extraction from downloaded office and PDF files.

PDF goes through pdfplumber. DOCX, PPTX and XLSX are zip containers of XML parts and
are read with BeautifulSoup's XML parser. Legacy binary formats (doc, ppt, xls) are not
supported. Extraction never raises: failures are logged and yield an empty string.
"""

import io
import logging
import re
import zipfile
from typing import List, Optional

import pdfplumber
from bs4 import BeautifulSoup

logger = logging.getLogger(__name__)

MAX_PDF_PAGES = 50

_SLIDE_RE = re.compile(r"^ppt/slides/slide(\d+)\.xml$")
_SHEET_RE = re.compile(r"^xl/worksheets/sheet(\d+)\.xml$")


def _xml(data: bytes) -> BeautifulSoup:
    return BeautifulSoup(data, "lxml-xml")


def _extract_pdf(data: bytes) -> str:
    pages: List[str] = []
    with pdfplumber.open(io.BytesIO(data)) as pdf:
        for page in pdf.pages[:MAX_PDF_PAGES]:
            text = page.extract_text() or ""
            if text.strip():
                pages.append(text.strip())
    return "\n".join(pages)


def _extract_docx(data: bytes) -> str:
    with zipfile.ZipFile(io.BytesIO(data)) as archive:
        soup = _xml(archive.read("word/document.xml"))
    paragraphs = []
    for para in soup.find_all("p"):
        text = "".join(t.get_text() for t in para.find_all("t")).strip()
        if text:
            paragraphs.append(text)
    return "\n".join(paragraphs)


def _numbered_parts(archive: zipfile.ZipFile, pattern: re.Pattern) -> List[str]:
    parts = []
    for name in archive.namelist():
        match = pattern.match(name)
        if match:
            parts.append((int(match.group(1)), name))
    return [name for _, name in sorted(parts)]


def _extract_pptx(data: bytes) -> str:
    slides = []
    with zipfile.ZipFile(io.BytesIO(data)) as archive:
        for name in _numbered_parts(archive, _SLIDE_RE):
            soup = _xml(archive.read(name))
            text = " ".join(t.get_text().strip() for t in soup.find_all("t") if t.get_text().strip())
            if text:
                slides.append(text)
    return "\n".join(slides)


def _extract_xlsx(data: bytes) -> str:
    with zipfile.ZipFile(io.BytesIO(data)) as archive:
        shared: List[str] = []
        if "xl/sharedStrings.xml" in archive.namelist():
            soup = _xml(archive.read("xl/sharedStrings.xml"))
            shared = [si.get_text() for si in soup.find_all("si")]

        rows = []
        for name in _numbered_parts(archive, _SHEET_RE):
            soup = _xml(archive.read(name))
            for row in soup.find_all("row"):
                cells = []
                for cell in row.find_all("c"):
                    value = cell.find("v")
                    if value is None:
                        inline = cell.find("is")
                        if inline is not None:
                            cells.append(inline.get_text().strip())
                        continue
                    raw = value.get_text()
                    if cell.get("t") == "s":
                        try:
                            raw = shared[int(raw)]
                        except (ValueError, IndexError):
                            continue
                    cells.append(raw.strip())
                line = "\t".join(c for c in cells if c)
                if line:
                    rows.append(line)
    return "\n".join(rows)


_EXTRACTORS = {
    "pdf": _extract_pdf,
    "docx": _extract_docx,
    "pptx": _extract_pptx,
    "xlsx": _extract_xlsx,
}


def extract_text(data: bytes, ext: Optional[str]) -> str:
    """
    Extract plain text from a file body.

    Args:
        data: File bytes
        ext: File extension (with or without leading dot)

    Returns:
        Extracted text, or "" when the format is unsupported or parsing fails
    """
    normalized = (ext or "").lstrip(".").lower()
    extractor = _EXTRACTORS.get(normalized)
    if extractor is None:
        logger.debug(f"No text extractor for extension {normalized!r}")
        return ""
    try:
        return extractor(data).strip()
    except Exception as e:
        logger.warning(f"Text extraction failed for .{normalized} file: {e}")
        return ""
