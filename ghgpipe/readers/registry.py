"""Reader registry: maps sniffed content type to the correct reader class.

Usage
-----
    from ghgpipe.readers.registry import get_reader

    reader = get_reader(store.path_for(fingerprint))
    document = reader.read()

Rules
-----
- Always route document loading through get_reader().
- Stored reports are named by fingerprint and have no extension, so the
  type is sniffed from the leading bytes, never from the name.
- Anything that is neither PDF nor HTML is read as UTF-8 text.
"""
from __future__ import annotations

import importlib
from pathlib import Path

from ghgpipe.readers.base import BaseReader, ConvertedDocument  # noqa: F401 -- re-exported

_SNIFF_BYTES = 1024

# Content type -> (module_path, class_name); imports are deferred to
# get_reader() so PyMuPDF is only loaded by workers that convert PDFs.
_LAZY_REGISTRY: dict[str, tuple[str, str]] = {
    "pdf": ("ghgpipe.readers.pdf_reader", "PDFReader"),
    "html": ("ghgpipe.readers.html_reader", "HTMLReader"),
    "text": ("ghgpipe.readers.text_reader", "TextReader"),
}

_REGISTRY: dict[str, type[BaseReader]] = {}


def register(content_type: str, reader_cls: type[BaseReader]) -> None:
    """Register a reader class for a content type, overriding the default."""
    if not content_type or not content_type.strip():
        raise ValueError("content_type must be a non-empty string (e.g. 'pdf')")
    _REGISTRY[content_type.lower()] = reader_cls


def sniff_content_type(head: bytes) -> str:
    """Classify a document by its first bytes: "pdf", "html" or "text"."""
    stripped = head.lstrip(b"\xef\xbb\xbf \t\r\n")
    if stripped.startswith(b"%PDF"):
        return "pdf"
    lowered = stripped[:_SNIFF_BYTES].lower()
    if lowered.startswith((b"<!doctype html", b"<html")) or b"<html" in lowered or b"<body" in lowered:
        return "html"
    return "text"


def get_reader(path: str | Path) -> BaseReader:
    """Return an instantiated reader for the stored document at *path*."""
    p = Path(path)
    with open(p, "rb") as fh:
        content_type = sniff_content_type(fh.read(_SNIFF_BYTES))

    reader_cls = _REGISTRY.get(content_type)
    if reader_cls is not None:
        return reader_cls(p)

    module_path, class_name = _LAZY_REGISTRY[content_type]
    mod = importlib.import_module(module_path)
    return getattr(mod, class_name)(p)
