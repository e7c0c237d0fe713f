"""Multi-model consultation for strategic DIRECTOR decisions.

The DIRECTOR can put one question to every model registered in the LLM pool
(``think``) or run a few rounds in which each model sees the others' previous
answers (``debate``). Queries are text only. When the pool has no models the
consultant falls back to a single one-shot call through an agent adapter.
"""
from __future__ import annotations

import asyncio
import logging
import re
import time
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

from openai import OpenAIError

from arena.agents.adapter import AgentAdapter, generate_session_handle
from arena.services.llm_pool import LLMPool

logger = logging.getLogger(__name__)

FALLBACK_PROVIDER = "claude"
CONSULT_IDENTITY = "director-consult"

SYNTHESIS_PREVIEW_CHARS = 500
DEBATE_CONTEXT_CHARS = 300
DEBATE_SUMMARY_CHARS = 200
TITLE_CHARS = 50
MIN_THEME_WORD = 5
MAX_THEMES = 5


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


@dataclass(frozen=True)
class ProviderResponse:
    provider: str
    response: str
    success: bool
    error: Optional[str] = None
    duration_ms: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "provider": self.provider,
            "response": self.response,
            "success": self.success,
            "error": self.error,
            "durationMs": self.duration_ms,
        }


@dataclass(frozen=True)
class ThinkResult:
    question: str
    providers: List[str]
    responses: List[ProviderResponse]
    synthesis: str
    fallback_used: bool
    duration_ms: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "question": self.question,
            "providers": list(self.providers),
            "responses": [r.to_dict() for r in self.responses],
            "synthesis": self.synthesis,
            "fallbackUsed": self.fallback_used,
            "durationMs": self.duration_ms,
        }


@dataclass(frozen=True)
class DebateRound:
    round_number: int
    topic: str
    responses: List[ProviderResponse] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "roundNumber": self.round_number,
            "topic": self.topic,
            "responses": [r.to_dict() for r in self.responses],
        }


@dataclass(frozen=True)
class DebateResult:
    topic: str
    rounds: List[DebateRound]
    synthesis: str
    providers: List[str]
    fallback_used: bool
    duration_ms: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "topic": self.topic,
            "rounds": [r.to_dict() for r in self.rounds],
            "synthesis": self.synthesis,
            "providers": list(self.providers),
            "fallbackUsed": self.fallback_used,
            "durationMs": self.duration_ms,
        }


def build_debate_prompt(topic: str, round_number: int, previous_context: str) -> str:
    if round_number == 1:
        return (
            f'You are participating in a strategic discussion about: "{topic}"\n\n'
            "This is Round 1 of a multi-round debate. Other AI models are also participating.\n\n"
            "Share your initial perspective on this topic. Consider:\n"
            "- Key factors to evaluate\n"
            "- Potential risks and benefits\n"
            "- Your recommended approach\n\n"
            "Be concise but thorough. Your input will be synthesized with other perspectives."
        )
    return (
        f'You are participating in a strategic discussion about: "{topic}"\n\n'
        f"This is Round {round_number}. Here are perspectives from the previous round:\n\n"
        f"{previous_context}\n\n"
        "Based on these perspectives, provide your refined view:\n"
        "- Do you agree or disagree with specific points?\n"
        "- What nuances or considerations are missing?\n"
        "- What is your updated recommendation?\n\n"
        "Be concise and focus on adding value to the discussion."
    )


def common_themes(responses: Sequence[ProviderResponse]) -> List[str]:
    """Words of five or more letters seen at least as often as there are answers."""
    successful = [r for r in responses if r.success]
    words = [
        word
        for r in successful
        for word in re.split(r"\W+", r.response.lower())
        if len(word) >= MIN_THEME_WORD
    ]
    counts = Counter(words)
    ranked = sorted(
        (word for word, count in counts.items() if count >= len(successful)),
        key=lambda word: -counts[word],
    )
    return ranked[:MAX_THEMES]


def synthesize_responses(question: str, responses: Sequence[ProviderResponse]) -> str:
    successful = [r for r in responses if r.success]
    if not successful:
        return "No providers responded successfully."
    if len(successful) == 1:
        return successful[0].response

    lines = [f'## Multi-LLM Synthesis for: "{question[:TITLE_CHARS]}..."', ""]
    for r in successful:
        lines.append(f"### {r.provider.upper()} Perspective")
        lines.append(r.response[:SYNTHESIS_PREVIEW_CHARS])
        lines.append("")
    lines.append("### Key Themes Across Providers")
    themes = common_themes(successful)
    if themes:
        lines.append(f"Common concepts: {', '.join(themes)}")
    return "\n".join(lines)


def synthesize_debate(topic: str, rounds: Sequence[DebateRound]) -> str:
    lines = [f'## Debate Synthesis: "{topic[:TITLE_CHARS]}..."', ""]
    for debate_round in rounds:
        lines.append(f"### Round {debate_round.round_number}")
        for r in debate_round.responses:
            if r.success:
                lines.append(f"**{r.provider}**: {r.response[:DEBATE_SUMMARY_CHARS]}...")
        lines.append("")

    lines.append("### Key Takeaways")
    final = [r for r in rounds[-1].responses if r.success] if rounds else []
    if final:
        lines.append("The final round converged on these points:")
        for r in final:
            lines.append(f"- {r.provider}: {r.response.split('.')[0]}")
    return "\n".join(lines)


class ModelConsultant:
    """Query several pooled models in parallel and merge their answers."""

    def __init__(
        self,
        llm_pool: LLMPool,
        fallback: Optional[AgentAdapter] = None,
        *,
        models: Sequence[str] = (),
        max_parallel: int = 3,
        timeout_seconds: float = 30.0,
        handle_factory: Callable[[], str] = generate_session_handle,
    ) -> None:
        self._llm_pool = llm_pool
        self._fallback = fallback
        self._preferred = list(models)
        self.max_parallel = max_parallel
        self.timeout_seconds = timeout_seconds
        self._handle_factory = handle_factory

    @property
    def providers(self) -> List[str]:
        """Models that will be asked, preferred ones first when configured."""
        registered = self._llm_pool.model_names()
        if self._preferred:
            chosen = [name for name in self._preferred if name in registered]
        else:
            chosen = registered
        return chosen[: self.max_parallel]

    @property
    def is_available(self) -> bool:
        return bool(self.providers)

    async def think(self, question: str) -> ThinkResult:
        """Ask every provider ``question`` once and synthesize the answers."""
        started = time.monotonic()
        providers = self.providers
        fallback_used = not providers
        if fallback_used:
            providers = [FALLBACK_PROVIDER]
        responses = await self._ask(providers, question, fallback_used)
        logger.info(
            "Consulted %s on a strategic question (%d answered)",
            ", ".join(providers),
            sum(r.success for r in responses),
        )
        return ThinkResult(
            question=question,
            providers=providers,
            responses=responses,
            synthesis=synthesize_responses(question, responses),
            fallback_used=fallback_used,
            duration_ms=_elapsed_ms(started),
        )

    async def debate(self, topic: str, rounds: int = 2) -> DebateResult:
        """Run ``rounds`` rounds where each round sees the previous answers."""
        if rounds < 1:
            raise ValueError("a debate needs at least one round")
        started = time.monotonic()
        providers = self.providers
        fallback_used = not providers
        if fallback_used:
            providers = [FALLBACK_PROVIDER]

        debate_rounds: List[DebateRound] = []
        previous_context = ""
        for round_number in range(1, rounds + 1):
            prompt = build_debate_prompt(topic, round_number, previous_context)
            responses = await self._ask(providers, prompt, fallback_used)
            debate_rounds.append(DebateRound(round_number, topic, responses))
            previous_context = "\n\n".join(
                f"{r.provider}: {r.response[:DEBATE_CONTEXT_CHARS]}" for r in responses if r.success
            )

        logger.info("Debate over %d rounds with %s", rounds, ", ".join(providers))
        return DebateResult(
            topic=topic,
            rounds=debate_rounds,
            synthesis=synthesize_debate(topic, debate_rounds),
            providers=providers,
            fallback_used=fallback_used,
            duration_ms=_elapsed_ms(started),
        )

    async def _ask(
        self, providers: List[str], prompt: str, fallback_used: bool
    ) -> List[ProviderResponse]:
        if fallback_used:
            return [await self._ask_fallback(prompt)]
        return list(await asyncio.gather(*(self._ask_model(name, prompt) for name in providers)))

    async def _ask_model(self, model_name: str, prompt: str) -> ProviderResponse:
        started = time.monotonic()
        try:
            async with self._llm_pool.acquire(model_name) as client:
                response = await asyncio.wait_for(
                    client.chat.completions.create(
                        model=model_name,
                        messages=[{"role": "user", "content": prompt}],
                    ),
                    timeout=self.timeout_seconds,
                )
        except asyncio.TimeoutError:
            return self._failed(model_name, "Query timeout", started)
        except (KeyError, OpenAIError) as exc:
            return self._failed(model_name, str(exc), started)

        if not response.choices:
            return self._failed(model_name, "model returned no choices", started)
        content = (response.choices[0].message.content or "").strip()
        if not content:
            return self._failed(model_name, "model returned an empty response", started)
        return ProviderResponse(model_name, content, True, duration_ms=_elapsed_ms(started))

    async def _ask_fallback(self, prompt: str) -> ProviderResponse:
        started = time.monotonic()
        if self._fallback is None:
            return self._failed(FALLBACK_PROVIDER, "no model available for consultation", started)
        # One-shot conversation; never reuses the DIRECTOR's own handle.
        result = await self._fallback.send(CONSULT_IDENTITY, self._handle_factory(), True, prompt)
        if not result.success:
            return self._failed(FALLBACK_PROVIDER, result.error or "consultation failed", started)
        return ProviderResponse(FALLBACK_PROVIDER, result.content, True, duration_ms=_elapsed_ms(started))

    @staticmethod
    def _failed(provider: str, error: str, started: float) -> ProviderResponse:
        logger.warning("Consultation with %s failed: %s", provider, error)
        return ProviderResponse(provider, "", False, error=error, duration_ms=_elapsed_ms(started))
