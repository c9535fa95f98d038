"""
Tests for office/PDF text extraction.

Office files are assembled in memory with only the XML parts the extractor reads.
"""

import io
import zipfile

from regintel.ingest.text_extract import extract_text

W_NS = 'xmlns:w="http://schemas.openxmlformats.org/wordprocessingml/2006/main"'
A_NS = (
    'xmlns:a="http://schemas.openxmlformats.org/drawingml/2006/main" '
    'xmlns:p="http://schemas.openxmlformats.org/presentationml/2006/main"'
)
S_NS = 'xmlns="http://schemas.openxmlformats.org/spreadsheetml/2006/main"'


def build_zip(parts):
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as archive:
        for name, body in parts.items():
            archive.writestr(name, body)
    return buffer.getvalue()


def docx(*paragraphs):
    body = "".join(
        "<w:p>" + "".join(f"<w:r><w:t>{run}</w:t></w:r>" for run in runs) + "</w:p>"
        for runs in paragraphs
    )
    return build_zip({"word/document.xml": f"<w:document {W_NS}><w:body>{body}</w:body></w:document>"})


def slide(text):
    return f"<p:sld {A_NS}><a:p><a:r><a:t>{text}</a:t></a:r></a:p></p:sld>"


class TestDocx:
    def test_paragraphs_joined_from_runs(self):
        data = docx(["Regulation ", "No. 155"], [], ["Annex 5"])
        assert extract_text(data, "docx") == "Regulation No. 155\nAnnex 5"

    def test_extension_normalized(self):
        assert extract_text(docx(["Scope"]), ".DOCX") == "Scope"


class TestPptx:
    def test_slides_in_numeric_order(self):
        data = build_zip({
            "ppt/slides/slide10.xml": slide("Timeline"),
            "ppt/slides/slide2.xml": slide("Scope"),
            "ppt/slides/slide1.xml": slide("Overview"),
            "ppt/slides/_rels/slide1.xml.rels": "<Relationships/>",
        })
        assert extract_text(data, "pptx") == "Overview\nScope\nTimeline"


class TestXlsx:
    def test_shared_and_inline_values(self):
        shared = f'<sst {S_NS}><si><t>Regulation</t></si><si><t>UN R155</t></si></sst>'
        sheet = (
            f"<worksheet {S_NS}><sheetData>"
            '<row r="1"><c r="A1" t="s"><v>0</v></c><c r="B1"><v>2024</v></c></row>'
            '<row r="2"><c r="A2" t="s"><v>1</v></c><c r="B2" t="inlineStr"><is><t>July 2024</t></is></c></row>'
            '<row r="3"><c r="A3" t="s"><v>99</v></c></row>'
            "</sheetData></worksheet>"
        )
        data = build_zip({"xl/sharedStrings.xml": shared, "xl/worksheets/sheet1.xml": sheet})

        assert extract_text(data, "xlsx") == "Regulation\t2024\nUN R155\tJuly 2024"


class TestUnsupported:
    def test_unknown_extension(self):
        assert extract_text(b"anything", "doc") == ""
        assert extract_text(b"anything", None) == ""

    def test_corrupt_pdf(self):
        assert extract_text(b"not a pdf", "pdf") == ""

    def test_corrupt_docx(self):
        assert extract_text(b"not a zip", "docx") == ""
