"""
LLM Engine — provider-agnostic completion calls plus the threaded assistant client.

Used only by the resolution chain:
- LLMEngine.complete(): single-shot completion against Anthropic or OpenAI
- OpenAIAssistantClient: per-conversation assistant thread, submit + poll

Clients are created lazily; an unconfigured provider yields "" / None so the
chain can fall through to the next strategy.
"""
from __future__ import annotations

import asyncio
import json
import structlog
from typing import Any, Optional

from tenacity import retry, stop_after_attempt, wait_exponential

from config.settings import LLMConfig, get_settings

logger = structlog.get_logger()


def _configured(value: str) -> bool:
    return bool(value) and not value.startswith("${")


def strip_code_fence(text: str) -> str:
    """'```json\\n{...}\\n```' -> '{...}'."""
    text = (text or "").strip()
    if text.startswith("```"):
        parts = text.split("```")
        text = parts[1].strip() if len(parts) > 1 else text
        if text.startswith("json"):
            text = text[4:].strip()
    return text


class AssistantTimeout(Exception):
    """The assistant run did not finish within the poll cap."""


class LLMEngine:
    """
    Single-shot completions using Claude or OpenAI.
    Supports both Anthropic and OpenAI LLM providers.
    """

    def __init__(self, config: LLMConfig = None):
        self.config = config or get_settings().llm
        self._client = None
        self._provider = self.config.provider or "openai"

    @property
    def is_openai(self) -> bool:
        return self._provider == "openai"

    @property
    def is_configured(self) -> bool:
        return _configured(self.config.api_key)

    async def _get_client(self):
        if self._client is None and self.is_configured:
            try:
                if self.is_openai:
                    from openai import AsyncOpenAI
                    self._client = AsyncOpenAI(api_key=self.config.api_key)
                else:
                    import anthropic
                    self._client = anthropic.AsyncAnthropic(api_key=self.config.api_key)
                logger.info("llm_client_initialized", provider=self._provider, model=self.config.model)
            except Exception as e:
                logger.error("llm_client_init_failed", provider=self._provider, error=str(e))
                self._client = None
        return self._client

    @retry(stop=stop_after_attempt(2), wait=wait_exponential(min=1, max=5))
    async def _call_llm(
        self,
        system: str,
        messages: list[dict[str, str]],
        max_tokens: int = None,
        temperature: float = None,
    ) -> str:
        """Unified LLM call that handles both Anthropic and OpenAI APIs."""
        client = await self._get_client()
        if not client:
            return ""

        max_tokens = max_tokens or self.config.max_tokens
        temperature = temperature if temperature is not None else self.config.temperature

        if self.is_openai:
            # OpenAI: system prompt is a message in the messages list
            response = await client.chat.completions.create(
                model=self.config.model,
                max_tokens=max_tokens,
                temperature=temperature,
                messages=[{"role": "system", "content": system}] + messages,
            )
            return response.choices[0].message.content or ""
        else:
            # Anthropic: system prompt is a separate parameter
            response = await client.messages.create(
                model=self.config.model,
                max_tokens=max_tokens,
                temperature=temperature,
                system=system,
                messages=messages,
            )
            return response.content[0].text

    async def complete(self, system: str, user: str, max_tokens: int = None,
                       temperature: float = None) -> str:
        result = await self._call_llm(
            system=system,
            messages=[{"role": "user", "content": user}],
            max_tokens=max_tokens,
            temperature=temperature,
        )
        return (result or "").strip()


class OpenAIAssistantClient:
    """
    Threaded assistant: one thread per conversation, reused across problems
    so the assistant keeps the site's history.

    ask() returns (answer_text, thread_id). Polling stops after
    poll_max_attempts; exceeding it raises AssistantTimeout.
    """

    def __init__(self, config: LLMConfig = None):
        self.config = config or get_settings().llm
        self._client = None

    @property
    def is_configured(self) -> bool:
        return _configured(self.config.api_key) and _configured(self.config.assistant_id)

    def _get_client(self):
        if self._client is None:
            from openai import AsyncOpenAI
            self._client = AsyncOpenAI(api_key=self.config.api_key)
        return self._client

    async def ask(self, content: str, thread_id: Optional[str] = None,
                  instructions: str = "") -> tuple[str, str]:
        client = self._get_client()
        threads = client.beta.threads

        if not thread_id:
            thread = await threads.create()
            thread_id = thread.id
            logger.info("assistant_thread_created", thread_id=thread_id)

        await threads.messages.create(thread_id=thread_id, role="user", content=content)
        run = await threads.runs.create(
            thread_id=thread_id,
            assistant_id=self.config.assistant_id,
            instructions=instructions or None,
        )

        for attempt in range(self.config.poll_max_attempts):
            if run.status == "completed":
                break
            if run.status in ("failed", "cancelled", "expired", "requires_action"):
                raise RuntimeError(f"assistant run ended with status {run.status}")
            await asyncio.sleep(self.config.poll_interval_s)
            run = await threads.runs.retrieve(run.id, thread_id=thread_id)
        else:
            if run.status != "completed":
                logger.warning("assistant_poll_cap_reached",
                               thread_id=thread_id, attempts=self.config.poll_max_attempts)
                raise AssistantTimeout(f"run {run.id} still {run.status}")

        messages = await threads.messages.list(thread_id=thread_id, order="desc", limit=1)
        answer = ""
        for message in messages.data:
            for part in message.content:
                if getattr(part, "type", "") == "text":
                    answer += part.text.value
        return answer, thread_id


def parse_json_answer(text: str) -> dict[str, Any]:
    """Parse a JSON object out of a model answer; raises ValueError otherwise."""
    data = json.loads(strip_code_fence(text))
    if not isinstance(data, dict):
        raise ValueError("answer is not a JSON object")
    return data
