"""Interaction handler -- turns a reviewer's click into a resolve job.

Control ids have the form ``<action>-<recordId>`` with action one of
``approve``, ``edit`` or ``reject``.  An ``edit`` click without a patch is
answered with the edit form; the form submission (same control id, now
carrying the patch) enqueues the resolution.

Resolve jobs get a deterministic id, so a click that the channel delivers
twice enqueues one job.
"""
from __future__ import annotations

import hashlib
import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Literal

from ghgpipe.core.constants import CONTROL_ACTIONS, DECISION_EDITED, STAGE_RESOLVE
from ghgpipe.pipeline.payload import JobPayload
from ghgpipe.queue.broker import StageBroker

logger = logging.getLogger(__name__)

_CONTROL_ID = re.compile(r"^(?P<action>[a-z]+)-(?P<record_id>[A-Za-z0-9][A-Za-z0-9\-]*)$")

# Discord interaction types and callback types
INTERACTION_PING = 1
INTERACTION_COMPONENT = 3
INTERACTION_MODAL_SUBMIT = 5
CALLBACK_PONG = 1
CALLBACK_MESSAGE = 4
CALLBACK_MODAL = 9

PATCH_INPUT_ID = "patch"


@dataclass(frozen=True)
class ControlAction:
    action: str
    decision: str
    record_id: str


@dataclass
class InteractionResult:
    kind: Literal["enqueued", "edit_form"]
    record_id: str
    decision: str
    job_id: str | None = None


def parse_control_id(custom_id: str) -> ControlAction:
    """Parse ``<action>-<recordId>``.  Raises ``ValueError`` when malformed."""
    match = _CONTROL_ID.match(custom_id or "")
    if match is None or match.group("action") not in CONTROL_ACTIONS:
        raise ValueError(f"Malformed control id {custom_id!r}")
    action = match.group("action")
    return ControlAction(action=action, decision=CONTROL_ACTIONS[action], record_id=match.group("record_id"))


def resolution_job_id(record_id: str, decision: str, patch: dict[str, Any] | None) -> str:
    digest = ""
    if patch:
        digest = hashlib.sha256(json.dumps(patch, sort_keys=True).encode()).hexdigest()[:16]
    return f"{STAGE_RESOLVE}:{record_id}:{decision}:{digest}"


def handle_interaction(
    broker: StageBroker,
    custom_id: str,
    actor: str,
    patch: dict[str, Any] | None = None,
) -> InteractionResult:
    control = parse_control_id(custom_id)
    if not actor or not actor.strip():
        raise ValueError("actor must be a non-empty string")

    if control.decision == DECISION_EDITED and not patch:
        return InteractionResult(kind="edit_form", record_id=control.record_id, decision=control.decision)

    payload = JobPayload(
        record_id=control.record_id,
        decision=control.decision,
        patch=patch if control.decision == DECISION_EDITED else None,
        actor=actor,
    )
    job_id = broker.enqueue(
        STAGE_RESOLVE,
        payload.to_job_data(),
        job_id=resolution_job_id(control.record_id, control.decision, payload.patch),
    )
    logger.info("Enqueued %s for record %s (%s)", job_id, control.record_id, control.decision)
    return InteractionResult(
        kind="enqueued", record_id=control.record_id, decision=control.decision, job_id=job_id
    )


# ---------------------------------------------------------------------------
# Discord interaction payloads
# ---------------------------------------------------------------------------

def _actor_of(body: dict[str, Any]) -> str:
    user = (body.get("member") or {}).get("user") or body.get("user") or {}
    return str(user.get("username") or user.get("id") or "")


def _patch_of(body: dict[str, Any]) -> dict[str, Any]:
    for row in (body.get("data") or {}).get("components") or []:
        for component in row.get("components") or []:
            if component.get("custom_id") == PATCH_INPUT_ID:
                try:
                    patch = json.loads(component.get("value") or "")
                except json.JSONDecodeError as exc:
                    raise ValueError(f"Edit patch is not valid JSON: {exc.msg}") from exc
                if not isinstance(patch, dict):
                    raise ValueError("Edit patch must be a JSON object")
                return patch
    raise ValueError("Edit form submitted without a patch")


def edit_form(custom_id: str) -> dict[str, Any]:
    return {
        "type": CALLBACK_MODAL,
        "data": {
            "custom_id": custom_id,
            "title": "Edit emissions record",
            "components": [
                {
                    "type": 1,
                    "components": [
                        {
                            "type": 4,
                            "custom_id": PATCH_INPUT_ID,
                            "label": "Changes as JSON",
                            "style": 2,
                            "required": True,
                            "placeholder": '{"emissions": {"scope1": {"emissions": 1200}}}',
                        }
                    ],
                }
            ],
        },
    }


def handle_discord_interaction(broker: StageBroker, body: dict[str, Any]) -> dict[str, Any]:
    """Answer a Discord interaction webhook call.

    Raises ``ValueError`` for interactions this handler does not understand.
    """
    kind = body.get("type")
    if kind == INTERACTION_PING:
        return {"type": CALLBACK_PONG}
    if kind not in (INTERACTION_COMPONENT, INTERACTION_MODAL_SUBMIT):
        raise ValueError(f"Unsupported interaction type {kind!r}")

    custom_id = (body.get("data") or {}).get("custom_id", "")
    patch = _patch_of(body) if kind == INTERACTION_MODAL_SUBMIT else None
    result = handle_interaction(broker, custom_id, _actor_of(body), patch)

    if result.kind == "edit_form":
        return edit_form(custom_id)
    return {
        "type": CALLBACK_MESSAGE,
        "data": {"content": f"Recorded: {result.decision} ({result.record_id})", "flags": 64},
    }
