"""DOER personas, prompts and reply markers."""
from __future__ import annotations

from pathlib import Path

import pytest

from arena.agents.doer import (
    AVAILABLE_DOER_TYPES,
    Doer,
    DoerContext,
    DoerDefinition,
    build_doer_personality,
    is_challenge,
    is_clarification_request,
    load_doer_definition,
)

from fakes import ScriptedAdapter


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.mark.parametrize("doer_type", AVAILABLE_DOER_TYPES)
def test_bundled_definitions_load(doer_type: str) -> None:
    definition = load_doer_definition(doer_type)

    assert definition is not None
    assert definition.id == f"doer-{doer_type}"
    assert definition.name == f"DOER-{doer_type.upper()}"
    assert definition.expertise


def test_missing_definition_returns_none(tmp_path: Path) -> None:
    assert load_doer_definition("backend", tmp_path) is None


def test_broken_yaml_returns_none(tmp_path: Path) -> None:
    (tmp_path / "qa.yaml").write_text("id: [unclosed\n", encoding="utf-8")
    assert load_doer_definition("qa", tmp_path) is None


def test_path_like_type_is_rejected() -> None:
    with pytest.raises(ValueError):
        load_doer_definition("../secrets")


def test_unknown_type_falls_back_to_default_persona(tmp_path: Path) -> None:
    doer = Doer("translator", "h", ScriptedAdapter())

    assert doer.id == "doer-translator"
    assert doer.definition == DoerDefinition.default("translator")


def test_personality_lists_sections() -> None:
    text = build_doer_personality(DoerDefinition.default("qa"))

    assert text.startswith("# DOER-QA\n\nSpecialized qa expert")
    assert "## Expertise\n- qa domain expertise" in text
    assert "## Constraints\n- Stay within scope" in text


def test_reply_markers() -> None:
    doer = Doer("backend", "h", ScriptedAdapter())
    question = doer.build_clarification_request("Which DB?", "Persisting users")
    challenge = doer.build_challenge("Use MongoDB", "Data is relational")

    assert question.startswith("[CLARIFICATION NEEDED from DOER-BACKEND]")
    assert is_clarification_request(question)
    assert not is_challenge(question)
    assert challenge.startswith("[CHALLENGE from DOER-BACKEND]")
    assert is_challenge(challenge)
    assert "My reasoning: Data is relational" in challenge
    assert not is_clarification_request("All done.")


@pytest.mark.anyio
async def test_execute_sends_context_and_instruction() -> None:
    adapter = ScriptedAdapter({"doer-backend": ["Implemented."]})
    doer = Doer("backend", "h-backend", adapter)
    context = DoerContext(
        mission="Build a TODO app",
        current_phase="implementation",
        director_instructions="Add the /todos endpoint",
        related_work=["doer-architect: schema drafted..."],
    )

    response = await doer.execute("Add the /todos endpoint", context)

    assert response.content == "Implemented."
    identity, handle, first, prompt = adapter.calls[0]
    assert (identity, handle, first) == ("doer-backend", "h-backend", True)
    assert "## Mission\nBuild a TODO app" in prompt
    assert "## Related Work from Other DOERs\n- doer-architect: schema drafted..." in prompt
    assert "## DIRECTOR Instructions\nAdd the /todos endpoint" in prompt
    assert not doer.is_first_turn
