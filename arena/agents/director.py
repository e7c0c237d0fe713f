"""DIRECTOR: the coordinating role that decides what happens next."""
from __future__ import annotations

import abc
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

from arena.agents.adapter import AgentAdapter, AgentResponse, build_agent_prompt
from arena.agents.doer import DoerDefinition
from arena.core.models import DIRECTOR_ID, DOER_PREFIX, Decision, DecisionType
from arena.services.consult import DebateResult, ModelConsultant, ThinkResult


class DirectorStyle(str, Enum):
    TECH_LEAD = "tech-lead"
    PROJECT_MANAGER = "project-manager"
    SOCRATIC = "socratic"
    ADAPTIVE = "adaptive"


_STYLE_KEYWORDS = [
    (DirectorStyle.TECH_LEAD, ("build", "implement", "create")),
    (DirectorStyle.SOCRATIC, ("research", "explore", "investigate")),
    (DirectorStyle.PROJECT_MANAGER, ("review", "audit", "fix")),
]


def determine_style(mission: str) -> DirectorStyle:
    """Pick a coordination persona from keywords in the mission text."""
    mission_lower = mission.lower()
    for style, keywords in _STYLE_KEYWORDS:
        if any(keyword in mission_lower for keyword in keywords):
            return style
    return DirectorStyle.ADAPTIVE


_BASE_PERSONALITY = """You are the DIRECTOR - the coordinator of a multi-agent team.
Your role is to:
1. Assign tasks to specialized DOERs
2. Route messages between DOERs (they communicate through you)
3. Resolve conflicts and make decisions
4. Track progress and adjust plans as needed

You have authority, but DOERs can challenge your decisions with good reasoning.
Always explain your rationale for task assignments and decisions.

## Signalling
- Assign work by naming the DOER (e.g. DOER-BACKEND) and marking it [TASK]
- Ask the operator for input with [CLARIFICATION]
- Rule on a dispute with [DECISION]
- Move to a new phase with "[PHASE] <phase name>"
- Finish the mission with [COMPLETE]
"""

_STYLE_NOTES: Dict[DirectorStyle, str] = {
    DirectorStyle.TECH_LEAD: """
## Your Style: Tech Lead
- Focus on technical quality and architecture
- Challenge weak designs constructively
- Delegate implementation but review approaches
""",
    DirectorStyle.PROJECT_MANAGER: """
## Your Style: Project Manager
- Focus on progress and deliverables
- Identify and remove blockers quickly
- Balance scope with available turns
""",
    DirectorStyle.SOCRATIC: """
## Your Style: Socratic Guide
- Ask questions to guide understanding
- Encourage exploration before commitment
- Validate assumptions through inquiry
""",
    DirectorStyle.ADAPTIVE: """
## Your Style: Adaptive
- Read the situation and adjust your approach
- Tech lead for complex builds, project manager when progress stalls
- Socratic for research and exploration
""",
}


def build_director_personality(style: DirectorStyle) -> str:
    return _BASE_PERSONALITY + _STYLE_NOTES[style]


class DecisionClassifier(abc.ABC):
    """Turns a DIRECTOR reply into a control signal, or ``None``."""

    @abc.abstractmethod
    def classify(self, text: str) -> Optional[Decision]:
        ...


class HeuristicDecisionClassifier(DecisionClassifier):
    """Marker and keyword matching over the reply text.

    Checks run in a fixed order and the first match wins, so a reply that
    mentions ``DOER-`` anywhere is a task assignment even if it also says
    ``[COMPLETE]``.
    """

    DOER_MENTION = re.compile(r"DOER-(\w+)", re.IGNORECASE)
    PHASE_MARKER = re.compile(r"\[PHASE\]\s*(.+)")

    def classify(self, text: str) -> Optional[Decision]:
        if "[TASK]" in text or "assign" in text or "DOER-" in text:
            mention = self.DOER_MENTION.search(text)
            return Decision(
                type=DecisionType.TASK_ASSIGNMENT,
                target_doer=f"{DOER_PREFIX}{mention.group(1).lower()}" if mention else None,
                instruction=text,
                reasoning="Parsed from DIRECTOR response",
            )

        if "[CLARIFICATION]" in text or "need more information" in text:
            return Decision(type=DecisionType.CLARIFICATION, reasoning=text)

        if "[DECISION]" in text or "I've decided" in text:
            return Decision(
                type=DecisionType.CONFLICT_RESOLUTION,
                ruling=text,
                reasoning="Director ruling",
            )

        phase = self.PHASE_MARKER.search(text)
        if phase:
            return Decision(
                type=DecisionType.PHASE_TRANSITION,
                instruction=phase.group(1).strip(),
                reasoning=text,
            )

        if "[COMPLETE]" in text or "mission accomplished" in text:
            return Decision(type=DecisionType.COMPLETION, reasoning=text)

        return None


@dataclass
class DirectorContext:
    """Snapshot of the mission the DIRECTOR reasons over."""

    mission: str
    current_phase: str
    doers: Dict[str, DoerDefinition]
    turns_used: int
    budget: int
    recent_messages: List[Dict[str, str]] = field(default_factory=list)
    task_board: List[Dict[str, str]] = field(default_factory=list)


class Director:
    """Build coordination prompts and interpret the replies."""

    id = DIRECTOR_ID

    def __init__(
        self,
        session_handle: str,
        mission: str,
        adapter: AgentAdapter,
        classifier: Optional[DecisionClassifier] = None,
        *,
        consultant: Optional[ModelConsultant] = None,
        is_first_turn: bool = True,
    ) -> None:
        self.session_handle = session_handle
        self.style = determine_style(mission)
        self._adapter = adapter
        self._classifier = classifier or HeuristicDecisionClassifier()
        self._consultant = consultant
        self._is_first_turn = is_first_turn

    @property
    def is_first_turn(self) -> bool:
        return self._is_first_turn

    def build_context_summary(self, context: DirectorContext) -> str:
        parts = [
            f"## Mission\n{context.mission}\n",
            f"## Current Phase\n{context.current_phase}\n",
            f"## Budget\n{context.turns_used}/{context.budget} turns used\n",
            "## Available DOERs",
        ]
        for doer_id, definition in context.doers.items():
            first_line = definition.identity.split("\n")[0]
            parts.append(f"- {definition.name} ({doer_id}): {first_line}")
        parts.append("")

        if context.task_board:
            parts.append("## Task Board")
            for task in context.task_board:
                parts.append(f"- [{task['status']}] {task['task']} ({task['assignee']})")
            parts.append("")

        if context.recent_messages:
            parts.append("## Recent Activity")
            for msg in context.recent_messages[-5:]:
                preview = msg["content"][:100].replace("\n", " ")
                ellipsis = "..." if len(msg["content"]) > 100 else ""
                parts.append(f"- {msg['from']}: {preview}{ellipsis}")

        return "\n".join(parts).rstrip() + "\n"

    async def get_next_action(self, context: DirectorContext, prompt: str) -> AgentResponse:
        """Send ``prompt`` with the mission context and return the raw reply."""
        full_prompt = build_agent_prompt(
            self.id,
            "DIRECTOR",
            build_director_personality(self.style),
            self.build_context_summary(context),
            prompt,
        )
        response = await self._adapter.send(
            self.id, self.session_handle, self._is_first_turn, full_prompt
        )
        if response.success:
            self._is_first_turn = False
        return response

    def parse_decision(self, response: str) -> Optional[Decision]:
        return self._classifier.classify(response)

    async def think(self, question: str) -> Optional[ThinkResult]:
        """Gather other models' views before a strategic call; ``None`` without a consultant."""
        if self._consultant is None:
            return None
        return await self._consultant.think(question)

    async def debate(self, topic: str, rounds: int = 2) -> Optional[DebateResult]:
        if self._consultant is None:
            return None
        return await self._consultant.debate(topic, rounds)

    @staticmethod
    def build_routed_message(
        sender: str,
        recipient: str,
        original_message: str,
        director_comment: Optional[str] = None,
    ) -> str:
        routed = (
            f"[ROUTED MESSAGE]\nFrom: {sender}\nTo: {recipient}\n\n"
            f"--- Original Message ---\n{original_message}\n--- End Message ---\n\n"
        )
        if director_comment:
            routed += f"[DIRECTOR Note]: {director_comment}\n"
        return routed
