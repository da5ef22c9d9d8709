"""POST /interactions -- review channel webhook.

Receives Discord interaction callbacks (control clicks and edit-form
submissions) and turns them into ``resolve`` jobs.  Request signature
verification belongs to the deployment's ingress, not to this route.
"""
from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException

from ghgpipe.api.deps import get_broker
from ghgpipe.queue.broker import StageBroker
from ghgpipe.review.interaction import handle_discord_interaction

router = APIRouter(tags=["review"])


@router.post("/interactions", summary="Review channel interaction webhook")
def receive_interaction(
    body: dict[str, Any] = Body(...),
    broker: StageBroker = Depends(get_broker),
):
    try:
        return handle_discord_interaction(broker, body)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
