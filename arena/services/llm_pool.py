"""LLM client pool for shared model access with concurrency control."""
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List

from openai import AsyncAzureOpenAI

from arena.config import AzureOpenAIConfig


class LLMPool:
    """Manages shared LLM clients with concurrency limiting."""

    def __init__(self) -> None:
        self._configs: Dict[str, AzureOpenAIConfig] = {}
        self._clients: Dict[str, Any] = {}
        self._semaphores: Dict[str, asyncio.Semaphore] = {}

    def register_azure_openai(self, name: str, config: AzureOpenAIConfig) -> None:
        """Register an Azure OpenAI model configuration."""
        self._configs[name] = config
        self._semaphores[name] = asyncio.Semaphore(config.max_concurrent)
        self._clients.pop(name, None)

    def register_client(self, name: str, client: Any, max_concurrent: int = 1) -> None:
        """Register an already constructed chat-completions client."""
        self._clients[name] = client
        self._semaphores[name] = asyncio.Semaphore(max_concurrent)

    def __contains__(self, model_name: str) -> bool:
        return model_name in self._semaphores

    def model_names(self) -> List[str]:
        """Registered model names, in registration order."""
        return list(self._semaphores)

    @asynccontextmanager
    async def acquire(self, model_name: str) -> AsyncIterator[Any]:
        """Acquire access to a model client with concurrency control."""
        if model_name not in self._semaphores:
            raise KeyError(f"Model '{model_name}' not registered in LLM pool")

        async with self._semaphores[model_name]:
            # Lazy initialization on first use
            if model_name not in self._clients:
                self._clients[model_name] = self._create_client(self._configs[model_name])
            yield self._clients[model_name]

    @staticmethod
    def _create_client(config: AzureOpenAIConfig) -> AsyncAzureOpenAI:
        return AsyncAzureOpenAI(
            api_key=config.api_key,
            api_version=config.api_version,
            azure_endpoint=config.endpoint,
        )
