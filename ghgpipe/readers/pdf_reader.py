"""PDF reader: PyMuPDF text per page, pdfplumber tables as markdown.

Text comes from PyMuPDF ``get_text("blocks")``; each text block becomes one
paragraph.  pdfplumber is used only for table detection on each page
(``find_tables``).  Text blocks that overlap a detected table are dropped and
the table is emitted instead, rendered as a markdown table, so emission
figures keep their row and column labels.

Pages are released with ``doc._forget_page(page)`` as soon as they are done.
"""
from __future__ import annotations

import logging

import fitz  # PyMuPDF
import pdfplumber

from ghgpipe.readers.base import BaseReader, ConvertedDocument
from ghgpipe.tasks.error_handler import ConversionError

logger = logging.getLogger(__name__)


def _bbox_overlaps(
    block_bbox: tuple[float, float, float, float],
    table_bbox: tuple[float, float, float, float],
) -> bool:
    """Return True if block_bbox and table_bbox share any area."""
    bx0, by0, bx1, by1 = block_bbox
    tx0, ty0, tx1, ty1 = table_bbox
    return not (bx1 <= tx0 or bx0 >= tx1 or by1 <= ty0 or by0 >= ty1)


def _cell(value: object) -> str:
    if value is None:
        return ""
    return " ".join(str(value).split()).replace("|", "\\|")


def table_to_markdown(rows: list[list[object]]) -> str:
    """Render extracted table rows as a markdown table (first row is the header)."""
    rows = [row for row in rows if row and any(c not in (None, "") for c in row)]
    if not rows:
        return ""
    width = max(len(row) for row in rows)
    cells = [[_cell(c) for c in row] + [""] * (width - len(row)) for row in rows]
    lines = [
        "| " + " | ".join(cells[0]) + " |",
        "| " + " | ".join(["---"] * width) + " |",
    ]
    lines.extend("| " + " | ".join(row) + " |" for row in cells[1:])
    return "\n".join(lines)


class PDFReader(BaseReader):
    """Read a PDF page by page into markdown."""

    content_type = "pdf"

    def read(self) -> ConvertedDocument:
        try:
            doc = fitz.open(str(self.path), filetype="pdf")
        except (fitz.FileDataError, RuntimeError) as exc:
            raise ConversionError(f"Unreadable PDF {self.path.name}: {exc}") from exc

        sections: list[str] = []
        try:
            with pdfplumber.open(str(self.path)) as plumber_doc:
                for page_num in range(len(doc)):
                    page = doc.load_page(page_num)
                    sections.extend(self._read_page(page, plumber_doc.pages[page_num]))
                    doc._forget_page(page)
            page_count = len(doc)
        finally:
            doc.close()

        logger.debug("Read %d page(s), %d section(s) from %s", page_count, len(sections), self.path.name)
        return ConvertedDocument(
            markdown="\n\n".join(sections),
            content_type="pdf",
            page_count=page_count,
        )

    def _read_page(self, page: object, plumber_page: object) -> list[str]:
        tables = plumber_page.find_tables()
        table_bboxes = [t.bbox for t in tables]

        sections: list[str] = []
        for block in page.get_text("blocks"):
            x0, y0, x1, y1, text, _block_no, block_type = block[:7]
            if block_type != 0:  # image block
                continue
            if any(_bbox_overlaps((x0, y0, x1, y1), tb) for tb in table_bboxes):
                continue
            text = " ".join(text.split())
            if text:
                sections.append(text)

        for table in tables:
            rendered = table_to_markdown(table.extract())
            if rendered:
                sections.append(rendered)
        return sections
