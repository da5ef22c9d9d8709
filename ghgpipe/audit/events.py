"""Event type constants for the append-only audit trail."""
from __future__ import annotations

EVENT_DRAFT_EXTRACTED = "draft_extracted"
EVENT_DRAFT_REFLECTED = "draft_reflected"
EVENT_REVIEW_PUBLISHED = "review_published"
EVENT_APPROVAL = "approval"
EVENT_EDIT = "edit"
EVENT_REJECTION = "rejection"
EVENT_RESOLUTION_IGNORED = "resolution_ignored"
EVENT_DEAD_LETTER = "dead_letter"

VALID_EVENT_TYPES: frozenset[str] = frozenset({
    EVENT_DRAFT_EXTRACTED,
    EVENT_DRAFT_REFLECTED,
    EVENT_REVIEW_PUBLISHED,
    EVENT_APPROVAL,
    EVENT_EDIT,
    EVENT_REJECTION,
    EVENT_RESOLUTION_IGNORED,
    EVENT_DEAD_LETTER,
})

# Review decision -> audit event type
DECISION_EVENTS: dict[str, str] = {
    "approved": EVENT_APPROVAL,
    "edited": EVENT_EDIT,
    "rejected": EVENT_REJECTION,
}
