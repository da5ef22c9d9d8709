"""Qdrant-based dense vector store.

Two collections are used:

- paragraphs: one point per ``(fingerprint, seq)``; searched per document
  during extraction
- reports: one point per verified emissions record, keyed by record id

Collections are created when missing and never recreated, so re-indexing a
document only overwrites its own points.
"""
from __future__ import annotations

import logging
import uuid
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from qdrant_client import QdrantClient
from qdrant_client.http import models as qmodels

from ghgpipe.core.settings import Settings, get_settings

logger = logging.getLogger(__name__)


@dataclass
class RetrievedParagraph:
    seq: int
    text: str
    score: float | None = None


def paragraph_point_id(fingerprint: str, seq: int) -> str:
    return str(uuid.uuid5(uuid.NAMESPACE_URL, f"{fingerprint}:{seq}"))


def report_point_id(record_id: str) -> str:
    return str(uuid.uuid5(uuid.NAMESPACE_URL, f"report:{record_id}"))


def build_qdrant_client(settings: Settings | None = None) -> QdrantClient:
    """Client for ``QDRANT_URL``; ``:memory:`` selects the embedded local mode."""
    settings = settings or get_settings()
    if settings.qdrant_url == ":memory:":
        return QdrantClient(location=":memory:")
    return QdrantClient(url=settings.qdrant_url, api_key=settings.qdrant_api_key or None)


def _document_filter(fingerprint: str, *extra: qmodels.FieldCondition) -> qmodels.Filter:
    return qmodels.Filter(
        must=[
            qmodels.FieldCondition(key="fingerprint", match=qmodels.MatchValue(value=fingerprint)),
            *extra,
        ]
    )


class VectorStore:
    """Wrapper around the paragraph and report collections."""

    def __init__(
        self,
        client: QdrantClient,
        *,
        paragraph_collection: str | None = None,
        report_collection: str | None = None,
        dim: int | None = None,
    ) -> None:
        settings = get_settings()
        self.client = client
        self.paragraph_collection = paragraph_collection or settings.qdrant_paragraph_collection
        self.report_collection = report_collection or settings.qdrant_report_collection
        self.dim = dim or settings.embedding_dim
        self._ready: set[str] = set()

    def ensure_collection(self, collection: str, *, keyword_fields: Sequence[str] = ()) -> None:
        if collection in self._ready:
            return
        if not self.client.collection_exists(collection):
            logger.info("Creating Qdrant collection %s (dim=%d)", collection, self.dim)
            self.client.create_collection(
                collection_name=collection,
                vectors_config=qmodels.VectorParams(size=self.dim, distance=qmodels.Distance.COSINE),
            )
            for field_name in keyword_fields:
                self.client.create_payload_index(
                    collection_name=collection,
                    field_name=field_name,
                    field_schema=qmodels.PayloadSchemaType.KEYWORD,
                )
        self._ready.add(collection)

    # -- paragraphs ---------------------------------------------------------

    def upsert_paragraphs(
        self,
        fingerprint: str,
        paragraphs: Sequence[tuple[int, str]],
        vectors: Sequence[Sequence[float]],
    ) -> int:
        """Upsert ``(seq, text)`` paragraphs with their vectors.  Returns the count."""
        if len(paragraphs) != len(vectors):
            raise ValueError(f"{len(paragraphs)} paragraphs but {len(vectors)} vectors")
        if not paragraphs:
            return 0
        self.ensure_collection(self.paragraph_collection, keyword_fields=("fingerprint",))
        points = [
            qmodels.PointStruct(
                id=paragraph_point_id(fingerprint, seq),
                vector=list(vector),
                payload={"fingerprint": fingerprint, "seq": seq, "text": text},
            )
            for (seq, text), vector in zip(paragraphs, vectors)
        ]
        self.client.upsert(collection_name=self.paragraph_collection, points=points, wait=True)
        return len(points)

    def delete_stale(self, fingerprint: str, count: int) -> None:
        """Remove points of *fingerprint* whose seq is ``>= count``."""
        self.ensure_collection(self.paragraph_collection, keyword_fields=("fingerprint",))
        self.client.delete(
            collection_name=self.paragraph_collection,
            points_selector=qmodels.FilterSelector(
                filter=_document_filter(
                    fingerprint,
                    qmodels.FieldCondition(key="seq", range=qmodels.Range(gte=count)),
                )
            ),
            wait=True,
        )

    def search(
        self,
        fingerprint: str,
        query_vector: Sequence[float],
        top_k: int = 8,
    ) -> list[RetrievedParagraph]:
        self.ensure_collection(self.paragraph_collection, keyword_fields=("fingerprint",))
        response = self.client.query_points(
            collection_name=self.paragraph_collection,
            query=list(query_vector),
            query_filter=_document_filter(fingerprint),
            limit=top_k,
            with_payload=True,
        )
        retrieved: list[RetrievedParagraph] = []
        for point in response.points:
            payload = point.payload or {}
            retrieved.append(
                RetrievedParagraph(
                    seq=int(payload["seq"]),
                    text=payload.get("text", ""),
                    score=float(point.score) if point.score is not None else None,
                )
            )
        return retrieved

    def count_paragraphs(self, fingerprint: str) -> int:
        self.ensure_collection(self.paragraph_collection, keyword_fields=("fingerprint",))
        return self.client.count(
            collection_name=self.paragraph_collection,
            count_filter=_document_filter(fingerprint),
            exact=True,
        ).count

    # -- reports ------------------------------------------------------------

    def index_report(self, record_id: str, vector: Sequence[float], payload: dict[str, Any]) -> None:
        """Upsert a verified record into the report search index, one point per record."""
        self.ensure_collection(self.report_collection)
        self.client.upsert(
            collection_name=self.report_collection,
            points=[qmodels.PointStruct(id=report_point_id(record_id), vector=list(vector), payload=payload)],
            wait=True,
        )

    def remove_report(self, record_id: str) -> None:
        self.ensure_collection(self.report_collection)
        self.client.delete(
            collection_name=self.report_collection,
            points_selector=qmodels.PointIdsList(points=[report_point_id(record_id)]),
            wait=True,
        )
