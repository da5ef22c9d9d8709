"""LLM call auditing -- records every model invocation.

Every generation is persisted in the ``llm_call_logs`` table so reviewers and
whoever triages a dead-lettered extraction can see exactly what the model was
given and what it returned.
"""
from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.orm import Session

from ghgpipe.db.models import LLMCallLog


def log_llm_call(
    db_session: Session,
    *,
    fingerprint: str | None = None,
    use_case: str,
    model: str,
    prompt_text: str,
    response_text: str,
    accepted: bool | None = None,
    latency_ms: int | None = None,
    token_count: int | None = None,
) -> LLMCallLog:
    """Create an ``LLMCallLog`` row in the database.

    Flushes but does not commit -- the caller controls the transaction.
    """
    entry = LLMCallLog(
        fingerprint=fingerprint,
        use_case=use_case,
        model=model,
        prompt_text=prompt_text,
        response_text=response_text,
        accepted=accepted,
        latency_ms=latency_ms,
        token_count=token_count,
    )
    db_session.add(entry)
    db_session.flush()
    return entry


def get_llm_calls(
    db_session: Session,
    *,
    fingerprint: str | None = None,
    use_case: str | None = None,
    limit: int = 100,
) -> list[LLMCallLog]:
    """Return logged calls, newest first, optionally filtered."""
    stmt = select(LLMCallLog)
    if fingerprint is not None:
        stmt = stmt.where(LLMCallLog.fingerprint == fingerprint)
    if use_case is not None:
        stmt = stmt.where(LLMCallLog.use_case == use_case)
    stmt = stmt.order_by(LLMCallLog.created_at.desc()).limit(limit)
    return list(db_session.execute(stmt).scalars().all())
