"""HTML reader: BeautifulSoup4 tag-stripped extraction.

Block-level elements become paragraphs; tables are rendered as markdown
tables.  Script, style and navigation chrome are removed entirely.
"""
from __future__ import annotations

from bs4 import BeautifulSoup

from ghgpipe.readers.base import BaseReader, ConvertedDocument
from ghgpipe.readers.pdf_reader import table_to_markdown

# Tags whose content is removed entirely (not just the tag itself)
_SKIP_TAGS = {"script", "style", "head", "meta", "link", "nav", "footer", "noscript"}

_BLOCK_TAGS = ["h1", "h2", "h3", "h4", "h5", "h6", "p", "li", "table", "pre", "blockquote"]


class HTMLReader(BaseReader):
    """Extract visible text from an HTML page."""

    content_type = "html"

    def read(self) -> ConvertedDocument:
        raw = self.path.read_text(encoding="utf-8", errors="replace")
        soup = BeautifulSoup(raw, "html.parser")

        for tag in soup(_SKIP_TAGS):
            tag.decompose()

        sections: list[str] = []
        for element in soup.find_all(_BLOCK_TAGS):
            # Nested blocks are emitted by their outermost block ancestor.
            if element.find_parent(_BLOCK_TAGS) is not None:
                continue
            if element.name == "table":
                rows = [
                    [cell.get_text(" ", strip=True) for cell in tr.find_all(["th", "td"])]
                    for tr in element.find_all("tr")
                ]
                rendered = table_to_markdown(rows)
            else:
                rendered = " ".join(element.get_text(" ", strip=True).split())
            if rendered:
                sections.append(rendered)

        if not sections:
            text = soup.get_text(separator="\n")
            sections = [line.strip() for line in text.splitlines() if line.strip()]

        return ConvertedDocument(markdown="\n\n".join(sections), content_type="html")
