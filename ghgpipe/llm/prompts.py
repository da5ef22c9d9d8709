"""Prompt templates for structured emissions extraction and self-review.

Each template uses Python string ``.format()`` placeholders and instructs
the model to answer with JSON only.  The record shape is NOT written into
the templates: callers pass the current JSON schema from
``ghgpipe.extraction.schema`` as ``{schema}``, so the wording stays valid
when the contract is versioned.

Use cases:
- Extract one field group of the record from retrieved report paragraphs.
- Critique a complete draft against the same paragraphs.
"""
from __future__ import annotations

# ---------------------------------------------------------------------------
# System prompt shared by all calls
# ---------------------------------------------------------------------------

SYSTEM_PROMPT = (
    "You are an assistant that reads corporate sustainability reports and "
    "extracts greenhouse-gas emissions data.  "
    "You ONLY output valid JSON.  No prose, no markdown fences, no commentary.  "
    "You never guess: when a figure is not stated in the text, it is null."
)

# ---------------------------------------------------------------------------
# EXTRACT_FIELD_GROUP
# ---------------------------------------------------------------------------

EXTRACT_FIELD_GROUP = (
    "Below are paragraphs retrieved from a company's sustainability report.  "
    "Fill in the following fields of the JSON record: {fields}.\n"
    "\n"
    "Rules:\n"
    "  - NEVER use \"N/A\" or similar.  A value that is not reported is null "
    "(numbers) or an empty string (text).\n"
    "  - NEVER calculate emissions.  If only individual categories are "
    "reported, leave the totals null; never sum them yourself.\n"
    "  - Units may be converted (e.g. kt CO2e to tCO2e), but two fields must "
    "never be merged into one.  All emissions are metric tonnes CO2e.\n"
    "  - Biogenic CO2 belongs in scope1.biogenic, never in the totals.\n"
    "  - If market-based scope 2 emissions are reported, also use them as "
    "the scope 2 emissions.\n"
    "  - If the text links a Wikidata article for the company, put its URL "
    "in \"verified\"; otherwise leave \"verified\" empty.\n"
    "  - Write all free text in {language}; translate if the report is in "
    "another language.\n"
    "  - Every property of the schema must be present in the output, even "
    "the ones you were not asked to fill in.\n"
    "\n"
    "Report paragraphs (numbered by position in the report):\n"
    "```\n"
    "{context}\n"
    "```\n"
    "\n"
    "JSON schema of the record:\n"
    "```json\n"
    "{schema}\n"
    "```\n"
    "\n"
    "Respond ONLY with valid JSON matching the schema.  No additional text."
)

# ---------------------------------------------------------------------------
# REFLECT_ON_DRAFT
# ---------------------------------------------------------------------------

REFLECT_ON_DRAFT = (
    "An extraction pipeline produced the draft emissions record below from "
    "the report paragraphs that follow.  Check every figure against the "
    "paragraphs.\n"
    "\n"
    "Draft record:\n"
    "```json\n"
    "{draft}\n"
    "```\n"
    "\n"
    "Report paragraphs:\n"
    "```\n"
    "{context}\n"
    "```\n"
    "\n"
    "Respond with a JSON object containing exactly these keys:\n"
    "  - \"reviewComment\": short notes for the human reviewer, in {language}\n"
    "  - \"reliability\": one of \"high\", \"medium\", \"low\"\n"
    "  - \"corrections\": a list of objects with keys \"field\" (dotted path, "
    "e.g. \"emissions.scope2.emissions\"), \"value\" and \"justification\" "
    "(the sentence from the paragraphs that supports the value).  May be empty.\n"
    "\n"
    "Respond ONLY with valid JSON.  No additional text."
)

REFLECTION_SCHEMA: dict = {
    "type": "object",
    "properties": {
        "reviewComment": {"type": "string"},
        "reliability": {"type": "string", "enum": ["high", "medium", "low"]},
        "corrections": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "field": {"type": "string"},
                    "value": {},
                    "justification": {"type": "string"},
                },
                "required": ["field", "value", "justification"],
            },
        },
    },
    "required": ["reviewComment", "reliability", "corrections"],
}

LANGUAGE_NAMES: dict[str, str] = {
    "sv": "Swedish",
    "en": "English",
    "no": "Norwegian",
    "da": "Danish",
    "fi": "Finnish",
    "de": "German",
}


def language_name(code: str) -> str:
    return LANGUAGE_NAMES.get(code.lower(), code)


# ---------------------------------------------------------------------------
# Template registry for programmatic access
# ---------------------------------------------------------------------------

PROMPT_TEMPLATES: dict[str, str] = {
    "extract_field_group": EXTRACT_FIELD_GROUP,
    "reflect_on_draft": REFLECT_ON_DRAFT,
}
