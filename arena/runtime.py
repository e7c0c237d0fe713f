"""Application runtime composition helpers."""
from __future__ import annotations

from dataclasses import replace
from functools import lru_cache

from arena.agents.adapter import AgentAdapter, ClaudeCLIAdapter
from arena.agents.llm_adapter import LLMAgentAdapter
from arena.config import BACKEND_AZURE_OPENAI, config
from arena.core.event_bus import ArenaEventBus
from arena.orchestration.controller import ArenaController
from arena.services.consult import ModelConsultant
from arena.services.llm_pool import LLMPool
from arena.storage.store import FileSessionStore, SessionRepository


@lru_cache
def get_store() -> SessionRepository:
    return FileSessionStore(config.sessions_dir)


@lru_cache
def get_event_bus() -> ArenaEventBus:
    return ArenaEventBus()


@lru_cache
def get_llm_pool() -> LLMPool:
    pool = LLMPool()

    # Register Azure OpenAI if configured
    if config.azure_openai:
        pool.register_azure_openai(config.azure_openai.deployment_name, config.azure_openai)

    return pool


@lru_cache
def get_adapter() -> AgentAdapter:
    if config.backend == BACKEND_AZURE_OPENAI:
        if config.azure_openai is None:
            raise RuntimeError("ARENA_BACKEND=azure-openai requires AZURE_OPENAI_KEY and AZURE_OPENAI_ENDPOINT")
        return LLMAgentAdapter(
            get_llm_pool(),
            model_name=config.azure_openai.deployment_name,
            timeout_seconds=config.agent.timeout_seconds,
        )
    return ClaudeCLIAdapter(config.agent)


@lru_cache
def get_consultant() -> ModelConsultant:
    return ModelConsultant(
        get_llm_pool(),
        # Text-only: consultation never runs with skipped permissions.
        ClaudeCLIAdapter(
            replace(config.agent, dangerous_mode=False, timeout_seconds=config.consult_timeout_seconds)
        ),
        models=config.consult_models,
        timeout_seconds=config.consult_timeout_seconds,
    )


@lru_cache
def get_controller() -> ArenaController:
    return ArenaController(
        store=get_store(),
        events=get_event_bus(),
        adapter=get_adapter(),
        consultant=get_consultant(),
    )
