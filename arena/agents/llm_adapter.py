"""Agent adapter backed by an OpenAI-compatible chat completions endpoint."""
from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Dict, List

from openai import OpenAIError

from arena.agents.adapter import AgentAdapter, AgentResponse, clean_response

if TYPE_CHECKING:
    from arena.services.llm_pool import LLMPool

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = "You are one participant in a DIRECTOR-led multi-agent team."


class LLMAgentAdapter(AgentAdapter):
    """Keep one chat history per conversation handle and replay it each turn.

    A first turn always starts a fresh history for the handle, mirroring how
    the CLI adapter binds a new conversation.
    """

    def __init__(
        self,
        llm_pool: LLMPool,
        model_name: str = "gpt-4",
        *,
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
        temperature: float = 0.7,
        timeout_seconds: float = 600.0,
    ) -> None:
        self._llm_pool = llm_pool
        self.model_name = model_name
        self.system_prompt = system_prompt
        self.temperature = temperature
        self.timeout_seconds = timeout_seconds
        self._histories: Dict[str, List[Dict[str, str]]] = {}

    def history(self, handle: str) -> List[Dict[str, str]]:
        return list(self._histories.get(handle, []))

    async def send(
        self,
        identity: str,
        handle: str,
        is_first_turn: bool,
        message: str,
    ) -> AgentResponse:
        if is_first_turn or handle not in self._histories:
            self._histories[handle] = [{"role": "system", "content": self.system_prompt}]
        messages = self._histories[handle] + [{"role": "user", "content": message}]

        try:
            async with self._llm_pool.acquire(self.model_name) as client:
                response = await asyncio.wait_for(
                    client.chat.completions.create(
                        model=self.model_name,
                        messages=messages,
                        temperature=self.temperature,
                    ),
                    timeout=self.timeout_seconds,
                )
        except asyncio.TimeoutError:
            return self._fail(identity, f"model call timed out after {self.timeout_seconds:g}s")
        except KeyError as exc:
            return self._fail(identity, str(exc.args[0] if exc.args else exc))
        except OpenAIError as exc:
            return self._fail(identity, f"model call failed: {exc}")

        if not response.choices:
            return self._fail(identity, "model returned no choices")
        raw = response.choices[0].message.content or ""
        content = clean_response(raw)
        if not content:
            return self._fail(identity, "model returned an empty response", raw=raw)

        self._histories[handle] = messages + [{"role": "assistant", "content": raw}]
        return AgentResponse(content=content, success=True, raw=raw)

    @staticmethod
    def _fail(identity: str, error: str, raw: str = "") -> AgentResponse:
        logger.error("%s: %s", identity, error)
        return AgentResponse.failure(f"{identity}: {error}", raw=raw)
