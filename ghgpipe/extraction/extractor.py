"""Retrieval-augmented structured extraction.

For each field group of ``field_groups.yaml`` the extractor retrieves the
document's most relevant paragraphs, asks the model for a schema-shaped
record and keeps only the fields that group owns.  The merged draft is
normalised through ``policy.normalize_draft``; the paragraph sequence
numbers used as context are returned with it so the reflector can reload
exactly what the model saw.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

from pydantic import ValidationError

from ghgpipe.extraction.field_groups import FieldGroup, FieldGroupConfig, default_field_groups
from ghgpipe.extraction.parsing import parse_json_object
from ghgpipe.extraction.policy import normalize_draft
from ghgpipe.extraction.schema import empty_record, get_path, json_schema, set_path
from ghgpipe.llm.prompts import EXTRACT_FIELD_GROUP, SYSTEM_PROMPT, language_name
from ghgpipe.retrieval.retriever import Retriever, format_context
from ghgpipe.tasks.error_handler import SchemaViolationError

logger = logging.getLogger(__name__)


class Generator(Protocol):
    def generate(
        self,
        prompt: str,
        system: str | None = None,
        *,
        schema: dict[str, Any] | None = None,
        use_case: str = "general",
        fingerprint: str | None = None,
    ) -> str: ...


@dataclass
class Extraction:
    draft: dict[str, Any]
    context: list[int] = field(default_factory=list)
    skipped_groups: list[str] = field(default_factory=list)


class Extractor:
    def __init__(
        self,
        llm: Generator,
        retriever: Retriever,
        *,
        field_groups: FieldGroupConfig | None = None,
        language: str = "sv",
    ) -> None:
        self.llm = llm
        self.retriever = retriever
        self.field_groups = field_groups or default_field_groups()
        self.language = language
        self._schema = json_schema()
        self._schema_text = json.dumps(self._schema, ensure_ascii=False, indent=2)

    def extract(self, fingerprint: str, url: str) -> Extraction:
        """Run every field group and return the merged, normalised draft.

        Raises ``SchemaViolationError`` when any group's output is not a
        schema-valid record.
        """
        merged = empty_record()
        context: set[int] = set()
        skipped: list[str] = []

        for group in self.field_groups.groups:
            paragraphs = self.retriever.retrieve(fingerprint, group.queries)
            if not paragraphs:
                logger.info("No context for field group %s of %s; left unknown", group.name, fingerprint)
                skipped.append(group.name)
                continue
            context.update(p.seq for p in paragraphs)
            group_record = self._extract_group(fingerprint, group, format_context(paragraphs))
            for path in group.fields:
                set_path(merged, path, get_path(group_record, path))

        merged["url"] = url
        return Extraction(draft=normalize_draft(merged), context=sorted(context), skipped_groups=skipped)

    def _extract_group(self, fingerprint: str, group: FieldGroup, context: str) -> dict[str, Any]:
        prompt = EXTRACT_FIELD_GROUP.format(
            fields=", ".join(group.fields),
            language=language_name(self.language),
            context=context,
            schema=self._schema_text,
        )
        raw = self.llm.generate(
            prompt,
            SYSTEM_PROMPT,
            schema=self._schema,
            use_case=f"extract:{group.name}",
            fingerprint=fingerprint,
        )
        output = parse_json_object(raw)
        try:
            return normalize_draft(output)
        except ValidationError as exc:
            raise SchemaViolationError(
                f"Field group {group.name} failed schema validation: {exc.error_count()} error(s)",
                raw_response=raw,
            ) from exc

