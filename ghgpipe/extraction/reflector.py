"""Self-check of a draft against the paragraphs it was extracted from.

Two passes:

1. deterministic: ``policy.strip_unreported_totals`` removes totals the
   model calculated instead of reading
2. model critique: a review comment, a reliability rating and proposed
   corrections.  A correction is applied only when it names a known field
   and carries a justification; each applied correction is noted in the
   review comment.  Reliability can only go down.

Corrections can introduce a calculated total too, so the deterministic pass
runs again afterwards.
"""
from __future__ import annotations

import copy
import json
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, ConfigDict, ValidationError

from ghgpipe.extraction.extractor import Generator
from ghgpipe.extraction.parsing import parse_json_object
from ghgpipe.extraction.policy import append_comment, lower_reliability, strip_unreported_totals
from ghgpipe.extraction.schema import complete_record, get_path, schema_paths, set_path
from ghgpipe.llm.prompts import REFLECT_ON_DRAFT, REFLECTION_SCHEMA, SYSTEM_PROMPT, language_name
from ghgpipe.retrieval.retriever import format_context
from ghgpipe.retrieval.vector_store import RetrievedParagraph
from ghgpipe.tasks.error_handler import SchemaViolationError

logger = logging.getLogger(__name__)

# Owned by the reflector itself or by the pipeline, never by a correction.
_PROTECTED_FIELDS: frozenset[str] = frozenset({"url", "reliability", "reviewComment"})


class Correction(BaseModel):
    model_config = ConfigDict(extra="ignore")

    field: str
    value: Any = None
    justification: str = ""


class Critique(BaseModel):
    model_config = ConfigDict(extra="ignore")

    reviewComment: str = ""
    reliability: str = ""
    corrections: list[Correction] = []


@dataclass
class Reflection:
    draft: dict[str, Any]
    applied: list[Correction] = field(default_factory=list)
    notes: list[str] = field(default_factory=list)


class Reflector:
    def __init__(self, llm: Generator, *, language: str = "sv") -> None:
        self.llm = llm
        self.language = language
        self._correctable = {p for p in schema_paths() if p not in _PROTECTED_FIELDS}

    def reflect(
        self,
        fingerprint: str,
        draft: dict[str, Any],
        paragraphs: Sequence[RetrievedParagraph],
    ) -> Reflection:
        context = format_context(paragraphs)
        texts = [p.text for p in paragraphs]
        record, notes = strip_unreported_totals(complete_record(draft), texts)

        critique = self._critique(fingerprint, record, context)
        if critique.reviewComment.strip():
            append_comment(record, critique.reviewComment.strip())

        applied: list[Correction] = []
        for correction in critique.corrections:
            if self._apply(record, correction):
                applied.append(correction)

        record, late_notes = strip_unreported_totals(record, texts)
        notes.extend(late_notes)
        record["reliability"] = lower_reliability(
            record.get("reliability") or "", critique.reliability.strip().lower()
        )
        return Reflection(draft=record, applied=applied, notes=notes)

    def _critique(self, fingerprint: str, record: dict[str, Any], context: str) -> Critique:
        prompt = REFLECT_ON_DRAFT.format(
            draft=json.dumps(record, ensure_ascii=False, indent=2),
            context=context,
            language=language_name(self.language),
        )
        raw = self.llm.generate(
            prompt,
            SYSTEM_PROMPT,
            schema=REFLECTION_SCHEMA,
            use_case="reflect",
            fingerprint=fingerprint,
        )
        try:
            return Critique.model_validate(parse_json_object(raw))
        except ValidationError as exc:
            raise SchemaViolationError(
                f"Reflection output failed validation: {exc.error_count()} error(s)",
                raw_response=raw,
            ) from exc

    def _apply(self, record: dict[str, Any], correction: Correction) -> bool:
        if not correction.justification.strip():
            logger.info("Ignoring unjustified correction of %s", correction.field)
            return False
        if correction.field not in self._correctable:
            logger.info("Ignoring correction of unknown or protected field %s", correction.field)
            return False

        before = get_path(record, correction.field)
        candidate = copy.deepcopy(record)
        set_path(candidate, correction.field, correction.value)
        try:
            candidate = complete_record(candidate)
        except ValidationError:
            logger.info("Ignoring correction of %s: value does not fit the schema", correction.field)
            return False

        after = get_path(candidate, correction.field)
        if after == before:
            return False
        record.clear()
        record.update(candidate)
        append_comment(
            record,
            f"Corrected {correction.field}: {before} -> {after} ({correction.justification.strip()}).",
        )
        return True
