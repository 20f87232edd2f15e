"""Narration: template text, LLM narration via Ollama and fallback on LLM failure."""
from __future__ import annotations

import httpx
import pytest

from backend.app.core.narration import ExplorationNarrator
from backend.app.models.entity_pool import EntityCategory
from backend.app.models.exploration import ExplorationActionType, ExplorationExecution
from backend.app.models.location_mapping import ExplorationIntensity
from backend.llm_client import LLMClient, LLMClientError


def _execution(**overrides) -> ExplorationExecution:
    data = {
        "id": "exec-1",
        "session_id": "sess-1",
        "character_id": "Aria",
        "target_entity_id": "ent-door",
        "target_entity_name": "the iron door",
        "action_type": ExplorationActionType.INVESTIGATE,
        "action_description": "Investigate closely",
        "requires_input": True,
        "initiated_at": "2026-01-01T00:00:00+00:00",
        "updated_at": "2026-01-01T00:00:00+00:00",
    }
    data.update(overrides)
    return ExplorationExecution(**data)


def _client(handler) -> LLMClient:
    return LLMClient(base_url="http://ollama.test", model="test-model", transport=httpx.MockTransport(handler))


def test_templates_without_llm() -> None:
    narrator = ExplorationNarrator()

    text = narrator.initial_description(_execution(), "Investigate closely")

    assert text.startswith("Aria investigates the iron door")
    assert text.endswith("How do you approach this? Describe what you do.")
    assert "How do you approach" not in narrator.initial_description(_execution(requires_input=False), "Look")
    assert narrator.resolution(_execution(), "critical_success", True).startswith("Aria succeeds brilliantly.")
    assert narrator.resolution(_execution(), "failure", False).endswith("Perhaps another approach would work better.")
    assert narrator.discovery_message("Old Map", EntityCategory.ITEM) == "You found Old Map!"
    assert narrator.exploration_narrative(ExplorationIntensity.LIGHT, 1) == (
        "You take a quick look around and come across 1 interesting thing."
    )


def test_llm_text_is_used_when_available() -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["body"] = request.read().decode()
        return httpx.Response(200, json={"response": "  The door groans as you lean closer.  "})

    with _client(handler) as llm:
        text = ExplorationNarrator(llm).initial_description(_execution(), "Investigate closely")

    assert text == "The door groans as you lean closer."
    assert seen["url"] == "http://ollama.test/api/generate"
    assert '"model": "test-model"' in seen["body"] or '"model":"test-model"' in seen["body"]


def test_llm_failure_falls_back_to_template() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, text="boom")

    with _client(handler) as llm:
        text = ExplorationNarrator(llm).resolution(_execution(), "success", True)

    assert text == "Aria's approach pays off. New clues come to light."


@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(200, json={"response": "   "}),
        httpx.Response(200, text="not json"),
        httpx.Response(404, text="model not found"),
    ],
)
def test_llm_client_raises_on_bad_responses(response) -> None:
    with _client(lambda request: response) as llm:
        with pytest.raises(LLMClientError):
            llm.generate("hello")


def test_llm_client_maps_connection_errors() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    with _client(handler) as llm:
        with pytest.raises(LLMClientError, match="Cannot connect"):
            llm.generate("hello")


def test_llm_client_requires_model() -> None:
    with LLMClient(base_url="http://ollama.test", model=None) as llm:
        with pytest.raises(LLMClientError):
            llm.generate("hello")
