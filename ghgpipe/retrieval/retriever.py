"""Per-document context retrieval for one field group.

Each query is embedded and searched in the paragraph collection restricted
to the document; hits from all queries are de-duplicated by sequence number
and returned in reading order, not score order, so the model sees the
report's own flow.
"""
from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Protocol

from ghgpipe.retrieval.vector_store import RetrievedParagraph, VectorStore

logger = logging.getLogger(__name__)


class Embedder(Protocol):
    def embed(self, texts: Sequence[str]) -> list[list[float]]: ...


def format_context(paragraphs: Sequence[RetrievedParagraph]) -> str:
    """Render paragraphs as ``[seq] text`` blocks for a prompt."""
    return "\n\n".join(f"[{p.seq}] {p.text}" for p in paragraphs)


class Retriever:
    def __init__(self, embedder: Embedder, store: VectorStore, top_k: int = 8) -> None:
        self.embedder = embedder
        self.store = store
        self.top_k = top_k

    def retrieve(self, fingerprint: str, queries: Sequence[str]) -> list[RetrievedParagraph]:
        if not queries:
            return []
        vectors = self.embedder.embed(list(queries))
        best: dict[int, RetrievedParagraph] = {}
        for vector in vectors:
            for hit in self.store.search(fingerprint, vector, top_k=self.top_k):
                known = best.get(hit.seq)
                if known is None or (hit.score or 0.0) > (known.score or 0.0):
                    best[hit.seq] = hit
        ordered = [best[seq] for seq in sorted(best)]
        logger.debug("Retrieved %d paragraph(s) for %d query(ies)", len(ordered), len(queries))
        return ordered
