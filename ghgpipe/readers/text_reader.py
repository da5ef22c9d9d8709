"""Plain text / markdown reader.  The text is passed through unchanged."""
from __future__ import annotations

from ghgpipe.readers.base import BaseReader, ConvertedDocument
from ghgpipe.tasks.error_handler import ConversionError


class TextReader(BaseReader):
    content_type = "text"

    def read(self) -> ConvertedDocument:
        raw = self.path.read_bytes()
        try:
            text = raw.decode("utf-8-sig")
        except UnicodeDecodeError as exc:
            raise ConversionError(f"{self.path.name} is neither PDF, HTML nor UTF-8 text") from exc
        return ConvertedDocument(markdown=text.replace("\r\n", "\n"), content_type="text")
