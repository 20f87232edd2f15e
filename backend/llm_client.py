"""LLM client for Ollama-compatible endpoints (Ollama /api/generate).

Used only for optional exploration narration; every caller has a template
fallback, so failures surface as LLMClientError rather than propagating httpx
exceptions.
"""

import json as _json
import os
import httpx
import logging
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

# Narration prompts are short; keep the default timeout tight so a slow model does not stall a request
_LLM_TIMEOUT = float(os.environ.get("OLLAMA_TIMEOUT", "30"))


class LLMClientError(Exception):
    """Raised when an LLM request fails."""


class LLMClient:
    """Client for interacting with Ollama-compatible LLM endpoints."""

    def __init__(
        self,
        base_url: str | None = None,
        model: Optional[str] = None,
        timeout: float | None = None,
        transport: httpx.BaseTransport | None = None,
    ):
        base_url = (base_url or "http://localhost:11434").strip()
        self.base_url = base_url.rstrip("/")
        self.model = model
        self._timeout = timeout or _LLM_TIMEOUT
        self.client = httpx.Client(timeout=self._timeout, transport=transport)

    def close(self) -> None:
        """Close the underlying HTTP client (optional, for clean shutdown)."""
        self.client.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()

    def generate(self, prompt: str, system_prompt: Optional[str] = None) -> str:
        """Call the LLM and return the stripped response text.

        Raises :class:`LLMClientError` on any transport, HTTP or decoding
        failure, or when the model returns nothing.
        """
        if not self.model:
            raise LLMClientError("No narration model configured")
        payload: Dict[str, Any] = {
            "model": self.model,
            "prompt": prompt,
            "stream": False,
        }
        if system_prompt:
            payload["system"] = system_prompt

        try:
            response = self.client.post(f"{self.base_url}/api/generate", json=payload)
            response.raise_for_status()
        except httpx.TimeoutException as exc:
            logger.error("LLM request timed out (model=%s): %s", self.model, exc)
            raise LLMClientError(f"LLM request timed out after {self._timeout}s") from exc
        except httpx.ConnectError as exc:
            logger.error(
                "Cannot connect to Ollama at %s – is the server running? %s",
                self.base_url, exc,
            )
            raise LLMClientError(
                f"Cannot connect to Ollama at {self.base_url} – is the server running?"
            ) from exc
        except httpx.HTTPStatusError as exc:
            logger.error(
                "Ollama returned HTTP %d: %s",
                exc.response.status_code,
                exc.response.text[:500],
            )
            raise LLMClientError(f"Ollama HTTP error {exc.response.status_code}") from exc
        except httpx.HTTPError as exc:
            logger.error("LLM network error: %s", exc)
            raise LLMClientError(f"LLM network error: {exc}") from exc

        try:
            body = response.json()
        except _json.JSONDecodeError as exc:
            logger.error(
                "Ollama response was not valid JSON (status %d, first 500 chars): %s",
                response.status_code,
                response.text[:500],
            )
            raise LLMClientError("Ollama returned non-JSON response") from exc

        text = str(body.get("response", "") or "").strip()
        if not text:
            raise LLMClientError("Ollama returned an empty response")
        return text
