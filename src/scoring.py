"""Confidence scorers for the secondary faithfulness pass.

``LLMConfidenceScorer`` asks the validator model whether the proposed
parameters are supported by the transcript.  ``HeuristicConfidenceScorer``
needs no network: it scores the share of proposed values that are either
known entities or literally present in what the patient said.
"""

from __future__ import annotations

import json
import logging
import re
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from langchain_anthropic import ChatAnthropic
from langchain_core.messages import HumanMessage

from src import config
from src.functions import PARAM_TO_ENTITY, canonical_name, canonical_phone, to_entity_value
from src.models import ConversationState, HallucinationType, OfficePolicy, is_present
from src.prompts import get_confidence_prompt
from src.services.metrics import metrics

logger = logging.getLogger(__name__)


class ScoringError(Exception):
    """The scorer could not produce a usable score."""


@dataclass
class ConfidenceScore:
    confidence: float
    reasoning: str = ""
    unsupported_fields: list[str] = field(default_factory=list)
    tokens_used: int = 0
    cost: float = 0.0
    model: str | None = None
    # Set when the score is a stand-in for a failed pass.
    cause: HallucinationType | None = None


class ConfidenceScorer(ABC):
    model_name: str | None = None

    @abstractmethod
    async def score(
        self,
        state: ConversationState,
        function_name: str,
        parameters: dict[str, Any],
    ) -> ConfidenceScore: ...


# ── Cost estimation ─────────────────────────────────────────────────

# USD per 1M tokens; keys are model-name prefixes.
MODEL_PRICING_PER_MILLION: dict[str, float] = {
    "gpt-4o-mini": 0.15,
    "gpt-4o": 5.0,
    "claude-3-5-sonnet": 3.0,
    "claude-3-5-haiku": 0.8,
    "claude-sonnet-4": 3.0,
}
DEFAULT_PRICE_PER_MILLION = 3.0


def estimate_validation_cost(model: str | None, tokens: int) -> float:
    price = DEFAULT_PRICE_PER_MILLION
    if model:
        matches = [p for p in MODEL_PRICING_PER_MILLION if model.startswith(p)]
        if matches:
            price = MODEL_PRICING_PER_MILLION[max(matches, key=len)]
    return tokens / 1_000_000 * price


# ── LLM scorer ──────────────────────────────────────────────────────

_JSON_OBJECT_RE = re.compile(r"\{.*\}", re.DOTALL)


def _response_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for block in content:
            if isinstance(block, str):
                parts.append(block)
            elif isinstance(block, dict) and block.get("type") == "text":
                parts.append(block.get("text", ""))
        return "".join(parts)
    return str(content)


def parse_confidence_response(content: Any) -> tuple[float, str, list[str]]:
    """Pull ``confidence`` / ``reasoning`` / ``unsupported_fields`` out of a reply."""
    text = _response_text(content)
    match = _JSON_OBJECT_RE.search(text)
    if not match:
        raise ScoringError(f"no JSON object in validator reply: {text[:200]!r}")
    try:
        payload = json.loads(match.group(0))
        confidence = float(payload["confidence"])
    except (ValueError, KeyError, TypeError) as exc:
        raise ScoringError(f"malformed validator reply: {exc}") from exc
    if confidence != confidence:  # NaN
        raise ScoringError("validator returned NaN confidence")
    confidence = min(1.0, max(0.0, confidence))
    unsupported = payload.get("unsupported_fields") or []
    if not isinstance(unsupported, list):
        unsupported = [str(unsupported)]
    return confidence, str(payload.get("reasoning", "")), [str(f) for f in unsupported]


def _build_validator_llm() -> ChatAnthropic:
    return ChatAnthropic(
        model=config.VALIDATOR_MODEL_NAME,
        api_key=config.get_anthropic_api_key(),
        temperature=0.0,
        max_tokens=512,
    )


class LLMConfidenceScorer(ConfidenceScorer):
    def __init__(self, llm: Any = None, model_name: str | None = None) -> None:
        self._llm = llm
        self.model_name = model_name or config.VALIDATOR_MODEL_NAME

    @property
    def llm(self) -> Any:
        if self._llm is None:
            self._llm = _build_validator_llm()
        return self._llm

    async def score(
        self,
        state: ConversationState,
        function_name: str,
        parameters: dict[str, Any],
    ) -> ConfidenceScore:
        prompt = get_confidence_prompt(state, function_name, parameters)
        t0 = time.perf_counter()
        try:
            response = await self.llm.ainvoke([HumanMessage(content=prompt)])
        except Exception as exc:
            elapsed = (time.perf_counter() - t0) * 1000
            metrics.record_call_failure(
                "anthropic", "confidence_score",
                error_type=type(exc).__name__, latency_ms=elapsed,
            )
            raise ScoringError(f"validator model call failed: {exc}") from exc

        elapsed = (time.perf_counter() - t0) * 1000
        metrics.record_call_success("anthropic", "confidence_score", latency_ms=elapsed)

        confidence, reasoning, unsupported = parse_confidence_response(response.content)
        usage = getattr(response, "usage_metadata", None) or {}
        tokens = int(usage.get("total_tokens", 0))
        logger.debug(
            "Validator (%s) scored %s at %.2f in %.0fms (%d tokens)",
            self.model_name, function_name, confidence, elapsed, tokens,
        )
        return ConfidenceScore(
            confidence=confidence,
            reasoning=reasoning,
            unsupported_fields=unsupported,
            tokens_used=tokens,
            cost=estimate_validation_cost(self.model_name, tokens),
            model=self.model_name,
        )


# ── Heuristic scorer ────────────────────────────────────────────────


class HeuristicConfidenceScorer(ConfidenceScorer):
    model_name = "heuristic"

    def __init__(self, policy: OfficePolicy | None = None) -> None:
        self._policy = policy or OfficePolicy()

    def _is_default(self, param: str, value: Any) -> bool:
        defaults = {
            "provider": self._policy.default_provider,
            "operatory": self._policy.default_operatory,
            "lengthMinutes": self._policy.default_length_minutes,
        }
        default = defaults.get(param)
        return default is not None and str(default) == str(value)

    @staticmethod
    def _was_offered(state: ConversationState, param: str, value: Any) -> bool:
        attr = {"provider": "provider", "operatory": "operatory"}.get(param)
        return attr is not None and any(
            str(getattr(slot, attr)) == str(value) for slot in state.offered_slots
        )

    @staticmethod
    def _was_said(param: str, value: Any, user_text: str, user_digits: str) -> bool:
        if param == "phone":
            phone = canonical_phone(value)
            return bool(phone) and phone in user_digits
        needle = canonical_name(value)
        return bool(needle) and re.search(rf"(?<![\w'-]){re.escape(needle)}(?![\w'-])", user_text) is not None

    async def score(
        self,
        state: ConversationState,
        function_name: str,
        parameters: dict[str, Any],
    ) -> ConfidenceScore:
        user_text = canonical_name(" ".join(t.content for t in state.user_turns()))
        user_digits = re.sub(r"\D", "", user_text)

        checked, supported = 0, 0
        unsupported: list[str] = []
        for param, value in parameters.items():
            path = PARAM_TO_ENTITY.get(param)
            if path is None or not is_present(value):
                continue
            checked += 1
            known = state.get_entity(path)
            if (
                (is_present(known) and str(known) == str(to_entity_value(param, value)))
                or self._was_offered(state, param, value)
                or self._is_default(param, value)
                or self._was_said(param, value, user_text, user_digits)
            ):
                supported += 1
            else:
                unsupported.append(param)

        if checked == 0:
            return ConfidenceScore(
                confidence=1.0, reasoning="No checkable parameters.", model=self.model_name,
            )
        confidence = supported / checked
        reasoning = (
            f"{supported}/{checked} parameters supported by the conversation"
            + (f"; unsupported: {', '.join(unsupported)}" if unsupported else "")
        )
        return ConfidenceScore(
            confidence=confidence,
            reasoning=reasoning,
            unsupported_fields=unsupported,
            model=self.model_name,
        )


def build_scorer(mode: str | None = None, policy: OfficePolicy | None = None) -> ConfidenceScorer:
    mode = (mode or config.VALIDATOR_MODE).lower()
    if mode == "heuristic":
        return HeuristicConfidenceScorer(policy)
    if mode == "llm":
        return LLMConfidenceScorer()
    raise ValueError(f"Unknown VALIDATOR_MODE {mode!r} (expected 'llm' or 'heuristic')")
