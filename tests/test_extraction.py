"""Tests for the extractor, the reflector and model-output parsing.

The model is a ``FakeLLM`` answering per use case; retrieval runs against
Qdrant in local mode with the bag-of-words ``HashEmbedder``.
"""
from __future__ import annotations

import json

import pytest

from ghgpipe.extraction.extractor import Extractor
from ghgpipe.extraction.parsing import parse_json_object
from ghgpipe.extraction.reflector import Reflector
from ghgpipe.extraction.schema import complete_record
from ghgpipe.llm.prompts import PROMPT_TEMPLATES, language_name
from ghgpipe.retrieval.retriever import Retriever
from ghgpipe.retrieval.vector_store import RetrievedParagraph
from ghgpipe.tasks.error_handler import SchemaViolationError

H1_PARAGRAPHS = [
    (0, "Exempel AB Hållbarhetsrapport 2023. Exempel AB är ett svenskt fastighetsbolag."),
    (1, "Direkta utsläpp scope 1 uppgick till 1 200 ton CO2e under 2023."),
    (2, "Biogena utsläpp från förbränning av biobränsle var 300 ton CO2e och redovisas separat."),
    (3, "Scope 2 marknadsbaserade utsläpp var 560 ton CO2e, platsbaserade 610 ton CO2e."),
]


@pytest.fixture()
def retriever(vector_store, embedder) -> Retriever:
    vectors = embedder.embed([text for _, text in H1_PARAGRAPHS])
    vector_store.upsert_paragraphs("H1", H1_PARAGRAPHS, vectors)
    return Retriever(embedder, vector_store, top_k=3)


# ===========================================================================
# parse_json_object
# ===========================================================================

class TestParsing:
    def test_plain_object(self) -> None:
        assert parse_json_object('{"a": 1}') == {"a": 1}

    def test_fenced_object(self) -> None:
        assert parse_json_object('```json\n{"a": 1}\n```') == {"a": 1}

    def test_not_json_keeps_raw(self) -> None:
        with pytest.raises(SchemaViolationError) as excinfo:
            parse_json_object("Sure! Here is the data.")
        assert excinfo.value.raw_response == "Sure! Here is the data."

    def test_array_is_rejected(self) -> None:
        with pytest.raises(SchemaViolationError, match="list"):
            parse_json_object("[1, 2]")


def test_prompt_templates_format_cleanly() -> None:
    for template in PROMPT_TEMPLATES.values():
        template.format(fields="x", language="Swedish", context="[0] text", schema="{}", draft="{}")
    assert language_name("sv") == "Swedish"
    assert language_name("xx") == "xx"


# ===========================================================================
# Extractor
# ===========================================================================

class TestExtractor:
    def test_biogenic_lands_in_scope1_and_total_stays_null(self, fake_llm, retriever) -> None:
        fake_llm.responses["extract:scope1_2"] = json.dumps({
            "emissions": {
                "reportingYear": 2023,
                "scope1": {"emissions": 1200},
                "biogenic": 300,
                "scope2": {"marketBased": 560, "locationBased": 610},
            }
        })
        fake_llm.responses["extract:totals"] = json.dumps({"emissions": {"totalEmissions": None}})

        extraction = Extractor(fake_llm, retriever).extract("H1", "https://example.com/h1.pdf")
        emissions = extraction.draft["emissions"]

        assert emissions["scope1"]["emissions"] == 1200
        assert emissions["scope1"]["biogenic"] == 300
        assert "biogenic" not in emissions
        assert "biogenic" not in extraction.draft
        assert emissions["scope2"]["emissions"] == 560
        assert emissions["totalEmissions"] is None
        assert extraction.draft["url"] == "https://example.com/h1.pdf"
        assert extraction.skipped_groups == []
        assert extraction.context == sorted(set(extraction.context))

    def test_groups_only_contribute_owned_fields(self, fake_llm, retriever) -> None:
        fake_llm.responses["extract:company"] = json.dumps({
            "companyName": "Exempel AB",
            "emissions": {"scope1": {"emissions": 99999}},
        })
        fake_llm.responses["extract:scope1_2"] = json.dumps({"companyName": "Wrong AB"})

        draft = Extractor(fake_llm, retriever).extract("H1", "u").draft

        assert draft["companyName"] == "Exempel AB"
        assert draft["emissions"]["scope1"]["emissions"] is None

    def test_one_call_per_group_with_context_and_language(self, fake_llm, retriever) -> None:
        Extractor(fake_llm, retriever, language="en").extract("H1", "u")

        assert fake_llm.use_cases() == [
            "extract:company", "extract:industry", "extract:scope1_2", "extract:scope3",
            "extract:totals", "extract:goals", "extract:commentary",
        ]
        _, prompt = fake_llm.calls[2]
        assert "Fill in the following fields of the JSON record: baseYear, emissions.reportingYear" in prompt
        assert "Write all free text in English" in prompt
        assert any("[1] Direkta utsläpp scope 1" in p for _, p in fake_llm.calls)

    def test_document_without_paragraphs_skips_every_group(self, fake_llm, retriever) -> None:
        extraction = Extractor(fake_llm, retriever).extract("unknown-fingerprint", "u")
        assert fake_llm.calls == []
        assert len(extraction.skipped_groups) == 7
        assert extraction.draft["emissions"]["scope1"]["emissions"] is None

    def test_unparseable_output(self, fake_llm, retriever) -> None:
        fake_llm.responses["extract:scope3"] = "I could not find scope 3."
        with pytest.raises(SchemaViolationError):
            Extractor(fake_llm, retriever).extract("H1", "u")

    def test_schema_invalid_output(self, fake_llm, retriever) -> None:
        fake_llm.responses["extract:scope3"] = json.dumps({"emissions": {"scope3": {"emissions": "a lot"}}})
        with pytest.raises(SchemaViolationError, match="scope3") as excinfo:
            Extractor(fake_llm, retriever).extract("H1", "u")
        assert "a lot" in excinfo.value.raw_response


# ===========================================================================
# Reflector
# ===========================================================================

CONTEXT = [
    RetrievedParagraph(seq=1, text="Direkta utsläpp scope 1 uppgick till 1 100 ton CO2e under 2023."),
    RetrievedParagraph(seq=3, text="Scope 2 marknadsbaserade utsläpp var 560 ton CO2e."),
]


def _draft(**fields) -> dict:
    base = {
        "reliability": "high",
        "emissions": {"scope1": {"emissions": 1200}, "scope2": {"emissions": 560}},
    }
    base.update(fields)
    return complete_record(base)


def _critique(fake_llm, reliability: str = "high", comment: str = "", corrections: list | None = None) -> None:
    fake_llm.responses["reflect"] = json.dumps({
        "reviewComment": comment,
        "reliability": reliability,
        "corrections": corrections or [],
    })


class TestReflector:
    def test_justified_correction_applied_and_noted(self, fake_llm) -> None:
        _critique(fake_llm, comment="Scope 1 avviker.", corrections=[{
            "field": "emissions.scope1.emissions",
            "value": 1100,
            "justification": "Direkta utsläpp scope 1 uppgick till 1 100 ton",
        }])

        reflection = Reflector(fake_llm).reflect("H1", _draft(), CONTEXT)

        assert reflection.draft["emissions"]["scope1"]["emissions"] == 1100
        assert [c.field for c in reflection.applied] == ["emissions.scope1.emissions"]
        assert reflection.draft["reviewComment"].startswith("Scope 1 avviker.")
        assert "Corrected emissions.scope1.emissions: 1200.0 -> 1100.0" in reflection.draft["reviewComment"]

    @pytest.mark.parametrize(
        "correction",
        [
            {"field": "emissions.scope1.emissions", "value": 1100, "justification": ""},
            {"field": "reliability", "value": "high", "justification": "because"},
            {"field": "url", "value": "http://elsewhere", "justification": "because"},
            {"field": "emissions.scope4", "value": 1, "justification": "because"},
            {"field": "emissions.scope1.emissions", "value": "lots", "justification": "because"},
        ],
    )
    def test_rejected_corrections(self, fake_llm, correction: dict) -> None:
        _critique(fake_llm, corrections=[correction])
        reflection = Reflector(fake_llm).reflect("H1", _draft(url="http://report"), CONTEXT)
        assert reflection.applied == []
        assert reflection.draft["emissions"]["scope1"]["emissions"] == 1200
        assert reflection.draft["url"] == "http://report"

    def test_reliability_never_raised(self, fake_llm) -> None:
        _critique(fake_llm, reliability="high")
        reflection = Reflector(fake_llm).reflect("H1", _draft(reliability="low"), CONTEXT)
        assert reflection.draft["reliability"] == "low"

    def test_reliability_lowered(self, fake_llm) -> None:
        _critique(fake_llm, reliability="Medium")
        reflection = Reflector(fake_llm).reflect("H1", _draft(), CONTEXT)
        assert reflection.draft["reliability"] == "medium"

    def test_calculated_total_removed_before_critique(self, fake_llm) -> None:
        _critique(fake_llm)
        reflection = Reflector(fake_llm).reflect("H1", _draft(emissions={
            "scope1": {"emissions": 1200}, "scope2": {"emissions": 560}, "totalEmissions": 1760,
        }), CONTEXT)
        assert reflection.draft["emissions"]["totalEmissions"] is None
        assert len(reflection.notes) == 1
        assert reflection.draft["reliability"] == "medium"
        _, prompt = fake_llm.calls[0]
        assert '"totalEmissions": null' in prompt

    def test_correction_introducing_calculated_total_is_removed(self, fake_llm) -> None:
        _critique(fake_llm, corrections=[{
            "field": "emissions.totalEmissions",
            "value": 1760,
            "justification": "scope 1 plus scope 2",
        }])
        reflection = Reflector(fake_llm).reflect("H1", _draft(), CONTEXT)
        assert reflection.draft["emissions"]["totalEmissions"] is None
        assert len(reflection.notes) == 1

    def test_invalid_critique(self, fake_llm) -> None:
        fake_llm.responses["reflect"] = json.dumps({"corrections": "none"})
        with pytest.raises(SchemaViolationError):
            Reflector(fake_llm).reflect("H1", _draft(), CONTEXT)
