"""Stage names, lifecycle states and review vocabulary.

Stage order
-----------
fetch    -- download the report, fingerprint it, claim the fingerprint
convert  -- raw bytes to markdown
segment  -- markdown to ordered paragraphs
index    -- embed paragraphs into the vector index
extract  -- retrieval-augmented structured extraction
reflect  -- self-check of the draft against its context
review   -- publish the draft to the review channel (does not wait)
resolve  -- apply the human decision delivered by the interaction handler

``resolve`` is not reachable from ``review`` through the chain: it is
enqueued out of band when the reviewer clicks a control.
"""
from __future__ import annotations

STAGE_FETCH = "fetch"
STAGE_CONVERT = "convert"
STAGE_SEGMENT = "segment"
STAGE_INDEX = "index"
STAGE_EXTRACT = "extract"
STAGE_REFLECT = "reflect"
STAGE_REVIEW = "review"
STAGE_RESOLVE = "resolve"

PIPELINE_STAGES: tuple[str, ...] = (
    STAGE_FETCH,
    STAGE_CONVERT,
    STAGE_SEGMENT,
    STAGE_INDEX,
    STAGE_EXTRACT,
    STAGE_REFLECT,
    STAGE_REVIEW,
)

ALL_STAGES: tuple[str, ...] = PIPELINE_STAGES + (STAGE_RESOLVE,)

# ---------------------------------------------------------------------------
# Document (fingerprint claim) lifecycle
# ---------------------------------------------------------------------------

DOC_PROCESSING = "processing"
DOC_CONVERTED = "converted"
DOC_SEGMENTED = "segmented"
DOC_INDEXED = "indexed"
DOC_EXTRACTED = "extracted"
DOC_IN_REVIEW = "in_review"
DOC_FAILED = "failed"

# ---------------------------------------------------------------------------
# Persisted record review states
# ---------------------------------------------------------------------------

RECORD_PENDING_REVIEW = "pending_review"
RECORD_APPROVED = "approved"
RECORD_EDITED = "edited"
RECORD_REJECTED = "rejected"

TERMINAL_RECORD_STATES: frozenset[str] = frozenset({
    RECORD_APPROVED,
    RECORD_EDITED,
    RECORD_REJECTED,
})

# Review request lifecycle
REQUEST_PENDING = "pending"
REQUEST_PUBLISHED = "published"
REQUEST_RESOLVED = "resolved"

# ---------------------------------------------------------------------------
# Reviewer controls: action prefix in the control id -> decision
# ---------------------------------------------------------------------------

DECISION_APPROVED = "approved"
DECISION_EDITED = "edited"
DECISION_REJECTED = "rejected"

CONTROL_ACTIONS: dict[str, str] = {
    "approve": DECISION_APPROVED,
    "edit": DECISION_EDITED,
    "reject": DECISION_REJECTED,
}

VALID_DECISIONS: frozenset[str] = frozenset(CONTROL_ACTIONS.values())

# Reliability levels, most reliable first
RELIABILITY_LEVELS: tuple[str, ...] = ("high", "medium", "low")
