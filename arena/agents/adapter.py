"""Adapters that deliver one prompt to an agent conversation and return its reply."""
from __future__ import annotations

import abc
import asyncio
import logging
import re
import uuid
from dataclasses import dataclass
from typing import List, Optional

from arena.config import AgentProcessConfig

logger = logging.getLogger(__name__)

_ARTIFACT_PATTERNS = [
    re.compile(r"<system-reminder>[\s\S]*?</system-reminder>"),
    re.compile(r"^.*\U0001F5E3.*$", re.MULTILINE),
    re.compile(r"^\U0001F4CB SUMMARY:.*$", re.MULTILINE),
    re.compile(r"^\U0001F50D ANALYSIS:.*$", re.MULTILINE),
    re.compile(r"^⚡ ACTIONS:.*$", re.MULTILINE),
    re.compile(r"^✅ RESULTS:.*$", re.MULTILINE),
    re.compile(r"^➡️? NEXT:.*$", re.MULTILINE),
]
_EXCESS_BLANK_LINES = re.compile(r"\n{3,}")


@dataclass(frozen=True, slots=True)
class AgentResponse:
    """Outcome of one turn with an agent process."""

    content: str
    success: bool
    raw: str = ""
    error: Optional[str] = None

    @classmethod
    def failure(cls, error: str, raw: str = "") -> AgentResponse:
        return cls(content="", success=False, raw=raw, error=error)


def clean_response(raw: str) -> str:
    """Strip framework-injected artifacts from raw agent output."""
    cleaned = raw
    for pattern in _ARTIFACT_PATTERNS:
        cleaned = pattern.sub("", cleaned)
    cleaned = _EXCESS_BLANK_LINES.sub("\n\n", cleaned)
    return cleaned.strip()


def generate_session_handle() -> str:
    return str(uuid.uuid4())


def build_agent_prompt(
    agent_id: str,
    agent_name: str,
    personality: str,
    context: str,
    instruction: str,
) -> str:
    """Render the prompt frame shared by the DIRECTOR and every DOER."""
    return (
        f"You are {agent_name} (ID: {agent_id}).\n\n"
        f"{personality}\n\n"
        f"## Current Context\n{context}\n\n"
        f"## Your Task\n{instruction}\n\n"
        "Respond concisely and stay in character."
    )


class AgentAdapter(abc.ABC):
    """Contract for talking to one long-lived agent conversation.

    ``send`` never raises: process level problems come back as
    ``AgentResponse(success=False, error=...)``.
    """

    @abc.abstractmethod
    async def send(
        self,
        identity: str,
        handle: str,
        is_first_turn: bool,
        message: str,
    ) -> AgentResponse:
        """Deliver ``message`` to the conversation bound to ``handle``."""


class ClaudeCLIAdapter(AgentAdapter):
    """Run the ``claude`` CLI in print mode, one subprocess per turn.

    The first turn binds a new conversation with ``--session-id``; later turns
    resume it with ``-r`` so the agent keeps its own memory.
    """

    def __init__(self, settings: Optional[AgentProcessConfig] = None) -> None:
        self.settings = settings or AgentProcessConfig()

    def build_command(self, handle: str, is_first_turn: bool, message: str) -> List[str]:
        cmd = [self.settings.binary, "-p", message]
        if is_first_turn:
            cmd += ["--session-id", handle]
        else:
            cmd += ["-r", handle]
        cmd += ["--output-format", self.settings.output_format]
        if self.settings.dangerous_mode:
            cmd.append("--dangerously-skip-permissions")
        return cmd

    async def send(
        self,
        identity: str,
        handle: str,
        is_first_turn: bool,
        message: str,
    ) -> AgentResponse:
        cmd = self.build_command(handle, is_first_turn, message)
        timeout = self.settings.timeout_seconds
        logger.info(
            "Sending %d chars to %s (%s conversation %s)",
            len(message),
            identity,
            "new" if is_first_turn else "resumed",
            handle,
        )

        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError:
            return self._fail(identity, f"Claude CLI not found: {self.settings.binary}")
        except OSError as exc:
            return self._fail(identity, f"Claude CLI could not start: {exc}")

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            return self._fail(identity, f"Claude CLI timed out after {timeout:g}s")

        stdout_text = stdout.decode("utf-8", errors="replace") if stdout else ""
        stderr_text = stderr.decode("utf-8", errors="replace") if stderr else ""

        if process.returncode != 0:
            detail = stderr_text.strip() or f"exit code {process.returncode}"
            return self._fail(identity, f"Claude CLI failed: {detail[:500]}", raw=stdout_text)

        content = clean_response(stdout_text)
        if not content:
            return self._fail(identity, "Claude CLI returned an empty response", raw=stdout_text)

        logger.info("Received %d chars from %s", len(content), identity)
        return AgentResponse(content=content, success=True, raw=stdout_text)

    @staticmethod
    def _fail(identity: str, error: str, raw: str = "") -> AgentResponse:
        logger.error("%s: %s", identity, error)
        return AgentResponse.failure(f"{identity}: {error}", raw=raw)
