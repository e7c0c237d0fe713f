"""DOER: specialised worker agents that execute DIRECTOR instructions."""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from arena.agents.adapter import AgentAdapter, AgentResponse, build_agent_prompt
from arena.core.models import doer_id_for

logger = logging.getLogger(__name__)

DOERS_DIR = Path(__file__).resolve().parent.parent / "doers"

AVAILABLE_DOER_TYPES = [
    "architect",
    "backend",
    "frontend",
    "qa",
    "security",
    "docs",
    "researcher",
    "refactorer",
]

VALID_DOER_TYPE = re.compile(r"^[a-z0-9_-]+$")

CLARIFICATION_MARKER = "[CLARIFICATION NEEDED"
CHALLENGE_MARKER = "[CHALLENGE"


@dataclass
class DoerDefinition:
    """Persona of one DOER type."""

    id: str
    name: str
    identity: str
    expertise: List[str] = field(default_factory=list)
    style: List[str] = field(default_factory=list)
    constraints: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> DoerDefinition:
        return cls(
            id=data["id"],
            name=data["name"],
            identity=data.get("identity", "").strip(),
            expertise=list(data.get("expertise", [])),
            style=list(data.get("style", [])),
            constraints=list(data.get("constraints", [])),
        )

    @classmethod
    def default(cls, doer_type: str) -> DoerDefinition:
        return cls(
            id=doer_id_for(doer_type),
            name=f"DOER-{doer_type.upper()}",
            identity=f"Specialized {doer_type} expert",
            expertise=[f"{doer_type} domain expertise"],
            style=["Professional", "Thorough"],
            constraints=["Stay within scope"],
        )


def load_doer_definition(doer_type: str, doers_dir: Path = DOERS_DIR) -> Optional[DoerDefinition]:
    """Load a DOER persona from ``<doers_dir>/<type>.yaml``."""
    if not VALID_DOER_TYPE.match(doer_type):
        raise ValueError(f"Invalid DOER type '{doer_type}'")
    yaml_path = doers_dir / f"{doer_type}.yaml"
    if not yaml_path.exists():
        return None
    try:
        with open(yaml_path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as exc:
        logger.error("Failed to parse DOER definition %s: %s", yaml_path, exc)
        return None
    if not data:
        logger.error("DOER definition is empty: %s", yaml_path)
        return None
    return DoerDefinition.from_dict(data)


def build_doer_personality(definition: DoerDefinition) -> str:
    lines = [f"# {definition.name}", "", definition.identity, "", "## Expertise"]
    lines += [f"- {item}" for item in definition.expertise]
    lines += ["", "## Working Style"]
    lines += [f"- {item}" for item in definition.style]
    lines += ["", "## Constraints"]
    lines += [f"- {item}" for item in definition.constraints]
    return "\n".join(lines)


@dataclass
class DoerContext:
    mission: str
    current_phase: str
    director_instructions: str
    related_work: List[str] = field(default_factory=list)


def build_doer_prompt(definition: DoerDefinition, context: DoerContext, instruction: str) -> str:
    parts = [f"## Mission\n{context.mission}\n", f"## Current Phase\n{context.current_phase}\n"]
    if context.related_work:
        parts.append("## Related Work from Other DOERs")
        parts += [f"- {work}" for work in context.related_work]
        parts.append("")
    parts.append(f"## DIRECTOR Instructions\n{context.director_instructions}")
    return build_agent_prompt(
        definition.id,
        definition.name,
        build_doer_personality(definition),
        "\n".join(parts),
        instruction,
    )


def is_clarification_request(text: str) -> bool:
    return CLARIFICATION_MARKER in text


def is_challenge(text: str) -> bool:
    return CHALLENGE_MARKER in text


class Doer:
    """One specialised worker bound to its own agent conversation."""

    def __init__(
        self,
        doer_type: str,
        session_handle: str,
        adapter: AgentAdapter,
        *,
        definition: Optional[DoerDefinition] = None,
        is_first_turn: bool = True,
    ) -> None:
        self.type = doer_type
        self.id = doer_id_for(doer_type)
        self.session_handle = session_handle
        self.definition = definition or load_doer_definition(doer_type) or DoerDefinition.default(doer_type)
        self._adapter = adapter
        self._is_first_turn = is_first_turn

    @property
    def is_first_turn(self) -> bool:
        return self._is_first_turn

    async def execute(self, instruction: str, context: DoerContext) -> AgentResponse:
        prompt = build_doer_prompt(self.definition, context, instruction)
        response = await self._adapter.send(self.id, self.session_handle, self._is_first_turn, prompt)
        if response.success:
            self._is_first_turn = False
        return response

    def build_clarification_request(self, question: str, context: str) -> str:
        return (
            f"{CLARIFICATION_MARKER} from {self.definition.name}]\n\n"
            f"Question: {question}\n\n"
            f"Context: {context}\n\n"
            "Please provide guidance so I can proceed with the task."
        )

    def build_challenge(self, decision: str, reasoning: str) -> str:
        return (
            f"{CHALLENGE_MARKER} from {self.definition.name}]\n\n"
            f"Decision being challenged: {decision}\n\n"
            f"My reasoning: {reasoning}\n\n"
            "I'd like to discuss this before proceeding."
        )
