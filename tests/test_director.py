"""DIRECTOR persona selection, context rendering and decision classification."""
from __future__ import annotations

import pytest

from arena.agents.director import (
    DirectorContext,
    DirectorStyle,
    Director,
    HeuristicDecisionClassifier,
    determine_style,
)
from arena.agents.doer import DoerDefinition
from arena.core.models import DecisionType

from fakes import ScriptedAdapter


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.mark.parametrize(
    ("mission", "style"),
    [
        ("Build a login page", DirectorStyle.TECH_LEAD),
        ("Research caching options", DirectorStyle.SOCRATIC),
        ("Audit the payment service", DirectorStyle.PROJECT_MANAGER),
        ("Make the team happy", DirectorStyle.ADAPTIVE),
    ],
)
def test_style_follows_mission_keywords(mission: str, style: DirectorStyle) -> None:
    assert determine_style(mission) is style


def test_task_assignment_names_the_doer() -> None:
    decision = HeuristicDecisionClassifier().classify("[TASK] DOER-Backend: add the /users endpoint")

    assert decision.type is DecisionType.TASK_ASSIGNMENT
    assert decision.target_doer == "doer-backend"
    assert "/users" in decision.instruction


def test_assignment_without_doer_has_no_target() -> None:
    decision = HeuristicDecisionClassifier().classify("I will assign this shortly.")

    assert decision.type is DecisionType.TASK_ASSIGNMENT
    assert decision.target_doer is None


def test_task_markers_win_over_completion() -> None:
    decision = HeuristicDecisionClassifier().classify("DOER-QA verified it. [COMPLETE]")
    assert decision.type is DecisionType.TASK_ASSIGNMENT


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ("[CLARIFICATION] Which cloud?", DecisionType.CLARIFICATION),
        ("We need more information about users.", DecisionType.CLARIFICATION),
        ("[DECISION] Keep REST.", DecisionType.CONFLICT_RESOLUTION),
        ("I've decided to keep REST.", DecisionType.CONFLICT_RESOLUTION),
        ("[PHASE] testing", DecisionType.PHASE_TRANSITION),
        ("[COMPLETE] shipped", DecisionType.COMPLETION),
        ("Looks like mission accomplished.", DecisionType.COMPLETION),
    ],
)
def test_marker_classification(text: str, expected: DecisionType) -> None:
    assert HeuristicDecisionClassifier().classify(text).type is expected


def test_phase_marker_carries_phase_name() -> None:
    decision = HeuristicDecisionClassifier().classify("Design is settled.\n[PHASE] implementation")
    assert decision.instruction == "implementation"


def test_plain_text_is_not_a_decision() -> None:
    assert HeuristicDecisionClassifier().classify("Let me think about the trade-offs.") is None


def test_context_summary_lists_board_and_recent_activity() -> None:
    director = Director("h", "Build it", ScriptedAdapter())
    context = DirectorContext(
        mission="Build it",
        current_phase="active",
        doers={"doer-backend": DoerDefinition.default("backend")},
        turns_used=3,
        budget=10,
        recent_messages=[{"from": "doer-backend", "content": "x" * 150}],
        task_board=[{"task": "API", "assignee": "doer-backend", "status": "in_progress"}],
    )

    summary = director.build_context_summary(context)

    assert "3/10 turns used" in summary
    assert "- DOER-BACKEND (doer-backend): Specialized backend expert" in summary
    assert "- [in_progress] API (doer-backend)" in summary
    assert "- doer-backend: " + "x" * 100 + "..." in summary


@pytest.mark.anyio
async def test_first_turn_flag_flips_only_after_success() -> None:
    adapter = ScriptedAdapter()
    director = Director("h-dir", "Build it", adapter)
    context = DirectorContext("Build it", "active", {}, 0, 10)

    failed = await director.get_next_action(context, "start")
    assert not failed.success
    assert director.is_first_turn

    adapter.script("director", "[TASK] DOER-QA test it")
    await director.get_next_action(context, "start")
    assert not director.is_first_turn
    assert [call[2] for call in adapter.calls] == [True, True]


@pytest.mark.anyio
async def test_get_next_action_sends_framed_prompt() -> None:
    adapter = ScriptedAdapter({"director": ["[TASK] DOER-QA test it"]})
    director = Director("h-dir", "Build it", adapter)
    context = DirectorContext("Build it", "active", {}, 0, 10)

    response = await director.get_next_action(context, "Assign the first task")

    assert response.success
    identity, handle, first, prompt = adapter.calls[0]
    assert (identity, handle, first) == ("director", "h-dir", True)
    assert "You are DIRECTOR (ID: director)." in prompt
    assert "## Your Style: Tech Lead" in prompt
    assert "## Your Task\nAssign the first task" in prompt
    assert not director.is_first_turn


def test_routed_message_includes_director_note() -> None:
    routed = Director.build_routed_message("doer-qa", "doer-backend", "Found a bug", "Please fix")

    assert routed.startswith("[ROUTED MESSAGE]\nFrom: doer-qa\nTo: doer-backend")
    assert "--- Original Message ---\nFound a bug\n--- End Message ---" in routed
    assert routed.endswith("[DIRECTOR Note]: Please fix\n")
