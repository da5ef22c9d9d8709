"""Canonical output shared by all document readers.

Every reader in ghgpipe/readers/ turns one stored report into a
``ConvertedDocument``: the whole report as markdown.  Downstream stages
(segmentation, indexing) consume only the markdown and must not know which
reader produced it.

Field contract
--------------
markdown     : report text; paragraphs separated by blank lines, tables
               rendered as markdown tables
content_type : "pdf" | "html" | "text"
page_count   : number of pages for paginated formats; None otherwise
"""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Literal

ContentType = Literal["pdf", "html", "text"]
_VALID_CONTENT_TYPES: frozenset[str] = frozenset({"pdf", "html", "text"})


@dataclass
class ConvertedDocument:
    markdown: str
    content_type: ContentType
    page_count: int | None = None

    def __post_init__(self) -> None:
        if self.content_type not in _VALID_CONTENT_TYPES:
            raise ValueError(
                f"content_type must be one of {sorted(_VALID_CONTENT_TYPES)!r}; "
                f"got {self.content_type!r}"
            )


class BaseReader:
    """Base class for all document readers.

    Subclasses override read() to return a ConvertedDocument.
    """

    content_type: ContentType = "text"

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def read(self) -> ConvertedDocument:
        raise NotImplementedError(
            f"{type(self).__name__}.read() is not yet implemented"
        )
