"""Accumulating job payload carried from stage to stage.

Fields are filled in as the document moves downstream::

    fetch    -> url
    convert  -> + fingerprint, run_id
    extract  -> + draft, context
    review   -> + recordId, channelId, messageId (after publish)
    resolve  -> recordId, decision, patch?, actor   (enqueued out of band)

The wire format uses camelCase keys; Python code uses the snake_case names.
"""
from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

Decision = Literal["approved", "edited", "rejected"]


class JobPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    url: str = ""
    fingerprint: str | None = None
    run_id: str | None = Field(default=None, alias="runId")
    draft: dict[str, Any] | None = None
    context: list[int] | None = None
    record_id: str | None = Field(default=None, alias="recordId")
    channel_id: str | None = Field(default=None, alias="channelId")
    message_id: str | None = Field(default=None, alias="messageId")
    decision: Decision | None = None
    patch: dict[str, Any] | None = None
    actor: str | None = None

    def to_job_data(self) -> dict[str, Any]:
        """Serialize for the broker: camelCase keys, unset fields omitted."""
        return self.model_dump(by_alias=True, exclude_none=True)

    def advance(self, **changes: Any) -> JobPayload:
        """Return a copy with *changes* applied; the original is left intact."""
        return self.model_copy(update=changes, deep=True)


def chain_job_id(stage: str, payload: JobPayload) -> str:
    """Deterministic id for the job that runs *stage* for this document run.

    A retried upstream job re-enqueues under the same id, which the broker
    treats as the existing job rather than a second one.
    """
    return f"{stage}:{payload.fingerprint}:{payload.run_id}"
