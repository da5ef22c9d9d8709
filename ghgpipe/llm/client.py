"""Ollama client wrapper -- structured generation and embeddings, audit-logged.

Wraps two endpoints of the Ollama REST API:

- ``POST /api/generate`` with ``format`` set to a JSON schema, so the model is
  constrained to the extraction contract.
- ``POST /api/embed`` for paragraph and query embeddings.

Every generation is recorded in ``llm_call_logs`` via
:func:`ghgpipe.llm.audit.log_llm_call` in its own transaction, so the raw
response of a failing extraction survives the job's rollback.

The client uses ``httpx`` synchronously; stage workers are plain threads or
Celery processes, not an event loop.
"""
from __future__ import annotations

import logging
import time
from collections.abc import Sequence
from typing import Any

import httpx
from sqlalchemy.orm import sessionmaker

from ghgpipe.core.settings import get_settings
from ghgpipe.db.session import session_scope
from ghgpipe.llm.audit import log_llm_call

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Custom exceptions
# ---------------------------------------------------------------------------


class LLMConnectionError(ConnectionError):
    """Raised when Ollama is unreachable or answers with an HTTP error."""


class LLMTimeoutError(TimeoutError):
    """Raised when the Ollama request exceeds the configured timeout."""


# ---------------------------------------------------------------------------
# OllamaClient
# ---------------------------------------------------------------------------


class OllamaClient:
    """Synchronous client for the Ollama REST API.

    Parameters
    ----------
    base_url:
        Ollama base URL.  Defaults to ``settings.ollama_url``.
    model:
        Generation model tag.  Defaults to ``settings.ollama_model``.
    embed_model:
        Embedding model tag.  Defaults to ``settings.ollama_embed_model``.
    timeout_s:
        Request timeout in seconds.  Defaults to ``settings.ollama_timeout_s``.
    session_factory:
        Optional SQLAlchemy session factory for audit logging.  When ``None``,
        calls are NOT logged (useful for health checks and tests).
    """

    def __init__(
        self,
        *,
        base_url: str | None = None,
        model: str | None = None,
        embed_model: str | None = None,
        timeout_s: int | None = None,
        session_factory: sessionmaker | None = None,
    ) -> None:
        settings = get_settings()
        self.base_url = (base_url or settings.ollama_url).rstrip("/")
        self.model = model or settings.ollama_model
        self.embed_model = embed_model or settings.ollama_embed_model
        self.timeout_s = timeout_s if timeout_s is not None else settings.ollama_timeout_s
        self.session_factory = session_factory
        self._last_latency_ms: int | None = None

    # -- public API ---------------------------------------------------------

    def generate(
        self,
        prompt: str,
        system: str | None = None,
        *,
        schema: dict[str, Any] | None = None,
        use_case: str = "general",
        fingerprint: str | None = None,
    ) -> str:
        """Send a prompt to Ollama and return the generated text.

        Parameters
        ----------
        prompt:
            The user prompt.
        system:
            Optional system prompt.
        schema:
            Optional JSON schema; the response is constrained to it.
        use_case:
            Label for audit logging (e.g. ``"extract:scope3"``).
        fingerprint:
            Document fingerprint for audit logging.

        Raises
        ------
        LLMConnectionError
            If Ollama is unreachable.
        LLMTimeoutError
            If the request exceeds the configured timeout.
        """
        payload: dict[str, Any] = {
            "model": self.model,
            "prompt": prompt,
            "stream": False,
            "options": {"temperature": 0},
        }
        if system is not None:
            payload["system"] = system
        if schema is not None:
            payload["format"] = schema

        data, elapsed_ms = self._post("/api/generate", payload)
        response_text = data.get("response", "")

        if self.session_factory is not None:
            with session_scope(self.session_factory) as db:
                log_llm_call(
                    db,
                    fingerprint=fingerprint,
                    use_case=use_case,
                    model=self.model,
                    prompt_text=prompt,
                    response_text=response_text,
                    latency_ms=elapsed_ms,
                    token_count=data.get("eval_count"),
                )

        return response_text

    def embed(self, texts: Sequence[str]) -> list[list[float]]:
        """Return one embedding vector per input text, in input order."""
        if not texts:
            return []
        data, _ = self._post("/api/embed", {"model": self.embed_model, "input": list(texts)})
        vectors = data.get("embeddings") or []
        if len(vectors) != len(texts):
            raise LLMConnectionError(
                f"Ollama returned {len(vectors)} embeddings for {len(texts)} inputs"
            )
        return [list(map(float, vec)) for vec in vectors]

    def is_available(self) -> bool:
        """Check whether Ollama is reachable.

        Returns ``False`` if the server is not running or unreachable.
        Never raises an exception.
        """
        try:
            resp = httpx.get(f"{self.base_url}/api/tags", timeout=5)
            return resp.status_code == 200
        except httpx.HTTPError:
            return False

    @property
    def last_latency_ms(self) -> int | None:
        """Wall-clock latency of the most recent request (ms)."""
        return self._last_latency_ms

    # -- transport ----------------------------------------------------------

    def _post(self, path: str, payload: dict[str, Any]) -> tuple[dict[str, Any], int]:
        start = time.monotonic()
        try:
            response = httpx.post(
                f"{self.base_url}{path}",
                json=payload,
                timeout=self.timeout_s,
            )
            response.raise_for_status()
        except httpx.TimeoutException as exc:
            self._last_latency_ms = int((time.monotonic() - start) * 1000)
            raise LLMTimeoutError(
                f"Ollama request timed out after {self.timeout_s}s"
            ) from exc
        except httpx.ConnectError as exc:
            self._last_latency_ms = int((time.monotonic() - start) * 1000)
            raise LLMConnectionError(
                f"Cannot connect to Ollama at {self.base_url}"
            ) from exc
        except httpx.HTTPError as exc:
            self._last_latency_ms = int((time.monotonic() - start) * 1000)
            raise LLMConnectionError(
                f"Ollama HTTP error: {exc}"
            ) from exc

        elapsed_ms = int((time.monotonic() - start) * 1000)
        self._last_latency_ms = elapsed_ms
        logger.debug("Ollama %s answered in %d ms", path, elapsed_ms)
        return response.json(), elapsed_ms
