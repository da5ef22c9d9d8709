"""Review channel -- publishes a draft with approve / edit / reject controls.

The gate never waits for the reviewer.  It posts one message whose three
controls carry the record id (``approve-<id>``, ``edit-<id>``,
``reject-<id>``); the click comes back later through the interaction
handler as a separate job.

Publishing is made idempotent twice over: the gate skips the call when a
message id is already recorded, and every post carries a nonce derived from
the record id with ``enforce_nonce`` set, so Discord itself drops a second
post whose first confirmation was lost.
"""
from __future__ import annotations

import hashlib
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

import httpx

from ghgpipe.core.constants import CONTROL_ACTIONS
from ghgpipe.core.settings import get_settings
from ghgpipe.review.tables import scope3_table, summary_table
from ghgpipe.tasks.error_handler import ReviewChannelError

logger = logging.getLogger(__name__)

MESSAGE_LIMIT = 2000
NONCE_LENGTH = 25

# Discord component styles: success, primary, danger
_CONTROL_STYLES: dict[str, int] = {"approve": 3, "edit": 1, "reject": 4}
_CONTROL_LABELS: dict[str, str] = {"approve": "Approve", "edit": "Edit", "reject": "Reject"}


# ---------------------------------------------------------------------------
# Message model
# ---------------------------------------------------------------------------

@dataclass
class Control:
    custom_id: str
    label: str
    style: int


@dataclass
class ReviewMessage:
    content: str
    controls: list[Control] = field(default_factory=list)


@dataclass
class PublishReceipt:
    channel_id: str
    message_id: str


def publish_token(record_id: str) -> str:
    """Idempotency token for publishing *record_id*; stable across retries."""
    return hashlib.sha256(f"review:{record_id}".encode()).hexdigest()[:NONCE_LENGTH]


def control_ids(record_id: str) -> list[str]:
    return [f"{action}-{record_id}" for action in CONTROL_ACTIONS]


def _heading(record_id: str, draft: dict[str, Any]) -> str:
    company = draft.get("companyName") or "Unknown company"
    industry = draft.get("industry") or "-"
    return f"# {company} (*{industry}*, reportId: {record_id})"


def build_review_message(
    record_id: str,
    draft: dict[str, Any],
    url: str,
    *,
    preview_chars: int = 100,
    limit: int = MESSAGE_LIMIT,
) -> ReviewMessage:
    """Render the review message for *draft*.

    The scope 3 table is dropped first when the content exceeds *limit*;
    whatever still does not fit is cut.
    """
    comment = (draft.get("reviewComment") or "").strip()
    comment_line = f"Review comment: {comment[:preview_chars]}" if comment else ""

    def assemble(with_scope3: bool) -> str:
        parts = [_heading(record_id, draft), url, f"```\n{summary_table(draft)}\n```"]
        if with_scope3:
            parts.append(f"## Scope 3:\n```\n{scope3_table(draft)}\n```")
        else:
            parts.append("## Scope 3: see the record")
        if comment_line:
            parts.append(comment_line)
        return "\n".join(parts)

    content = assemble(with_scope3=True)
    if len(content) > limit:
        content = assemble(with_scope3=False)
    if len(content) > limit:
        content = content[: limit - 1] + "…"

    controls = [
        Control(custom_id=custom_id, label=_CONTROL_LABELS[action], style=_CONTROL_STYLES[action])
        for action, custom_id in zip(CONTROL_ACTIONS, control_ids(record_id))
    ]
    return ReviewMessage(content=content, controls=controls)


# ---------------------------------------------------------------------------
# Channels
# ---------------------------------------------------------------------------

class ReviewChannel(ABC):
    channel_id: str

    @abstractmethod
    def publish(self, message: ReviewMessage, *, idempotency_token: str) -> PublishReceipt:
        """Post *message*; raise ``ReviewChannelError`` when it was not accepted."""


class DiscordChannel(ReviewChannel):
    """Posts review messages to one Discord channel through the REST API."""

    def __init__(
        self,
        *,
        token: str | None = None,
        channel_id: str | None = None,
        api_base: str | None = None,
        timeout_s: float = 30.0,
    ) -> None:
        settings = get_settings()
        self.token = token or settings.discord_token
        self.channel_id = channel_id or settings.discord_channel_id
        self.api_base = (api_base or settings.discord_api_base).rstrip("/")
        self.timeout_s = timeout_s
        if not self.token or not self.channel_id:
            raise ValueError("DISCORD_TOKEN and DISCORD_CHANNEL_ID must be configured")

    def _body(self, message: ReviewMessage, idempotency_token: str) -> dict[str, Any]:
        return {
            "content": message.content,
            "components": [
                {
                    "type": 1,
                    "components": [
                        {"type": 2, "style": c.style, "label": c.label, "custom_id": c.custom_id}
                        for c in message.controls
                    ],
                }
            ],
            "nonce": idempotency_token[:NONCE_LENGTH],
            "enforce_nonce": True,
        }

    def publish(self, message: ReviewMessage, *, idempotency_token: str) -> PublishReceipt:
        url = f"{self.api_base}/channels/{self.channel_id}/messages"
        try:
            response = httpx.post(
                url,
                json=self._body(message, idempotency_token),
                headers={"Authorization": f"Bot {self.token}"},
                timeout=self.timeout_s,
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise ReviewChannelError(
                f"Discord rejected the review message: HTTP {exc.response.status_code}"
            ) from exc
        except httpx.HTTPError as exc:
            raise ReviewChannelError(f"Discord unreachable: {exc}") from exc

        data = response.json()
        return PublishReceipt(
            channel_id=str(data.get("channel_id") or self.channel_id),
            message_id=str(data["id"]),
        )
