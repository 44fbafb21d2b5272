"""
Resolution Engine — tiered strategy chain that maps a problem description
to a known remedy from the failure-scenario catalog.

Strategies, in order; any failure falls through to the next:

  1. assistant   per-conversation AI thread, structured JSON answer
  2. ai          single-shot classification over the numbered catalog
  3. keywords    deterministic keyword-group scoring (core/keywords.py)
  4. not found   caller escalates to a technician

The response text always embeds the chosen entry's steps and notes verbatim.
"""
from __future__ import annotations

import asyncio
import re
import structlog
from typing import Optional, Sequence

from config.settings import ResolutionConfig, get_settings
from core import keywords
from core.engine import LLMEngine, OpenAIAssistantClient, parse_json_answer
from models.schemas import Customer, ResolutionCatalogEntry, ResolutionResult

logger = structlog.get_logger()

_INTEGER = re.compile(r"^\d+$")

ASSISTANT_INSTRUCTIONS = (
    "You are a support technician for parking equipment (entry/exit stations, "
    "barriers, pay stations). Match the customer's problem to one scenario from "
    "your knowledge files. Reply with JSON only: "
    '{"found": true|false, "scenario": "<label>", "steps": ["..."], "notes": "..."}'
)

CLASSIFY_SYSTEM = (
    "Classify the parking-equipment problem into one of the numbered scenarios. "
    "Answer with the scenario number only. Answer 0 if none fits."
)


class StrategyFailure(Exception):
    """A single resolution strategy could not produce an answer."""


def format_response(label: str, steps: Sequence[str], notes: str = "") -> str:
    lines = [f"🔍 Identified issue: {label}", "", "🛠️ Steps:"]
    lines += [f"{i}. {step}" for i, step in enumerate(steps, 1)]
    if notes:
        lines += ["", "⚠️ Notes:", notes]
    return "\n".join(lines)


def numbered_catalog(catalog: Sequence[ResolutionCatalogEntry]) -> str:
    return "\n".join(f"{i}. {entry.label}" for i, entry in enumerate(catalog, 1))


class ResolutionEngine:

    def __init__(
        self,
        catalog: Sequence[ResolutionCatalogEntry],
        llm: Optional[LLMEngine] = None,
        assistant: Optional[OpenAIAssistantClient] = None,
        config: ResolutionConfig = None,
        classify_timeout_s: float = None,
    ):
        self.catalog = list(catalog)
        self.llm = llm
        self.assistant = assistant
        self.config = config or get_settings().resolution
        self.classify_timeout_s = (
            classify_timeout_s if classify_timeout_s is not None
            else get_settings().llm.classify_timeout_s
        )

    async def resolve(
        self,
        problem_text: str,
        customer: Optional[Customer] = None,
        thread_handle: Optional[str] = None,
    ) -> ResolutionResult:
        strategies = (
            ("assistant", self._via_assistant),
            ("ai", self._via_classifier),
            ("keywords", self._via_keywords),
        )
        for name, strategy in strategies:
            try:
                result = await strategy(problem_text, customer, thread_handle)
            except Exception as e:
                logger.warning("resolution_strategy_failed", strategy=name, error=str(e))
                continue
            if result.thread_handle:
                thread_handle = result.thread_handle
            if result.found:
                logger.info("resolution_found",
                            strategy=name,
                            scenario=result.scenario,
                            customer_id=customer.id if customer else None)
                return result

        logger.info("resolution_not_found", customer_id=customer.id if customer else None)
        return ResolutionResult.not_found(thread_handle)

    # ── Strategies ────────────────────────────────────────

    async def _via_assistant(self, text: str, customer: Optional[Customer],
                             thread_handle: Optional[str]) -> ResolutionResult:
        if self.assistant is None or not self.assistant.is_configured:
            raise StrategyFailure("assistant not configured")

        site = f"Site: {customer.site}\n" if customer else ""
        answer, thread_id = await self.assistant.ask(
            f"{site}Problem: {text}",
            thread_id=thread_handle,
            instructions=ASSISTANT_INSTRUCTIONS,
        )
        data = parse_json_answer(answer)
        if not data.get("found"):
            return ResolutionResult.not_found(thread_id)

        label = str(data.get("scenario", "")).strip()
        entry = self._entry_by_label(label)
        if entry:
            response = format_response(entry.label, entry.steps, entry.notes)
        else:
            steps = [str(s) for s in data.get("steps") or []]
            if not steps:
                raise StrategyFailure("assistant answer has no steps")
            response = format_response(label or "Known issue", steps, str(data.get("notes") or ""))

        return ResolutionResult(
            found=True,
            response_text=response,
            source_tag="assistant",
            thread_handle=thread_id,
            scenario=entry.label if entry else label,
        )

    async def _via_classifier(self, text: str, customer: Optional[Customer],
                              thread_handle: Optional[str]) -> ResolutionResult:
        if self.llm is None or not self.llm.is_configured or not self.catalog:
            raise StrategyFailure("classifier not available")

        answer = await asyncio.wait_for(
            self.llm.complete(
                CLASSIFY_SYSTEM,
                f"Scenarios:\n{numbered_catalog(self.catalog)}\n\nProblem: {text}",
                max_tokens=10,
                temperature=0,
            ),
            timeout=self.classify_timeout_s,
        )
        answer = answer.strip()
        if not _INTEGER.match(answer):
            raise StrategyFailure(f"non-numeric classification: {answer!r}")

        index = int(answer)
        if index == 0:
            return ResolutionResult.not_found(thread_handle)
        if index > len(self.catalog):
            raise StrategyFailure(f"classification out of range: {index}")

        entry = self.catalog[index - 1]
        return ResolutionResult(
            found=True,
            response_text=format_response(entry.label, entry.steps, entry.notes),
            source_tag="ai",
            thread_handle=thread_handle,
            scenario=entry.label,
        )

    async def _via_keywords(self, text: str, customer: Optional[Customer],
                            thread_handle: Optional[str]) -> ResolutionResult:
        entry = keywords.classify(text, self.catalog, min_score=self.config.keyword_min_score)
        if entry is None:
            return ResolutionResult.not_found(thread_handle)
        return ResolutionResult(
            found=True,
            response_text=format_response(entry.label, entry.steps, entry.notes),
            source_tag="keywords",
            thread_handle=thread_handle,
            scenario=entry.label,
        )

    def _entry_by_label(self, label: str) -> Optional[ResolutionCatalogEntry]:
        if not label:
            return None
        needle = label.lower()
        exact = next((e for e in self.catalog if e.label.lower() == needle), None)
        return exact or next((e for e in self.catalog if needle in e.label.lower()), None)
