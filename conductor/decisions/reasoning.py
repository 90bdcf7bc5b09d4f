"""Reasoning collaborator interface and an OpenAI-compatible implementation.

The decision gate asks a reasoning collaborator for an answer and a
self-assessed confidence whenever the knowledge base has no authoritative
answer. The collaborator is opaque to the core: any object implementing
``ReasoningClient`` can be plugged in.

``OpenAICompatibleReasoner`` talks to any server implementing the OpenAI
chat completions API (vLLM, LMStudio, Ollama, hosted endpoints). It asks for
a JSON answer and turns the reply into a ``ReasoningResult`` with
``parse_reasoning_response``:

1. The first ``{...}`` object in the reply is parsed as JSON and its
   confidence clamped to [0, 1]. A missing or non-numeric confidence counts
   as 0.5; a non-finite one (NaN, infinity) counts as 0.0.
2. The confidence is adjusted for answer clarity: certainty words raise it,
   hedging words and mentions of missing information lower it, and terse
   reasoning lowers it slightly. The result is clamped to [0.3, 0.9].
3. When no JSON object can be parsed, confidence is estimated from
   certainty words in the raw text.
"""

from __future__ import annotations

import json
import math
import re
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

import httpx
import structlog

from conductor.exceptions import ExternalCallError

log = structlog.get_logger(__name__)

_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")

_CERTAIN_WORDS = ("definitely", "clearly", "certain", "confident", "sure")
_HEDGING_WORDS = ("maybe", "perhaps", "might", "possibly", "unsure", "unclear")
_MISSING_INFO_PHRASES = ("missing", "insufficient", "need more")

SYSTEM_PROMPT = (
    "You are an autonomous decision-making assistant. Provide clear decisions with confidence assessments."
)


@dataclass(frozen=True)
class SamplingConfig:
    """Sampling parameters sent with every reasoning request."""

    temperature: float = 0.3
    max_tokens: int = 1000


@dataclass(frozen=True)
class ReasoningResult:
    """Answer returned by a reasoning collaborator.

    Attributes:
        value: Raw answer, later coerced into the requested decision kind
        confidence: Self-assessed confidence in [0, 1]
        reasoning: Explanation recorded with the decision or escalation
    """

    value: Any
    confidence: float
    reasoning: str


@runtime_checkable
class ReasoningClient(Protocol):
    """Interface of the external reasoning collaborator."""

    async def reason(
        self,
        question: str,
        context: dict[str, Any],
        sampling: SamplingConfig,
    ) -> ReasoningResult: ...


def clamp_confidence(confidence: Any) -> float:
    """Clamp a reported confidence to [0, 1]. Non-finite values become 0.0."""
    try:
        value = float(confidence)
    except (TypeError, ValueError):
        return 0.0
    if not math.isfinite(value):
        return 0.0
    return max(0.0, min(1.0, value))


def _mentions(text: str, words: tuple[str, ...]) -> bool:
    return any(re.search(rf"\b{re.escape(word)}\b", text) for word in words)


def adjust_confidence_for_clarity(value: Any, reasoning: str, confidence: float) -> float:
    """Adjust a self-reported confidence using wording of the answer."""
    confidence = clamp_confidence(confidence)
    text = f"{value} {reasoning}".lower()
    adjustment = 0.0

    if _mentions(text, _CERTAIN_WORDS):
        adjustment += 0.1
    if _mentions(text, _HEDGING_WORDS):
        adjustment -= 0.2
    if any(phrase in text for phrase in _MISSING_INFO_PHRASES):
        adjustment -= 0.15
    if len(reasoning) < 50:
        adjustment -= 0.05

    return max(0.3, min(0.9, confidence + adjustment))


def confidence_from_text(text: str) -> float:
    """Estimate confidence for an unstructured reply."""
    if not text:
        return 0.5

    lower = text.lower()
    if _mentions(lower, ("definitely", "clearly")):
        return 0.7
    if _mentions(lower, ("probably", "likely")):
        return 0.6
    if _mentions(lower, ("maybe", "perhaps")):
        return 0.4
    if _mentions(lower, ("unsure", "unclear")):
        return 0.3
    return 0.5


def parse_reasoning_response(content: str) -> ReasoningResult:
    """Turn a model reply into a ReasoningResult.

    Args:
        content: Raw message content returned by the model

    Returns:
        ReasoningResult with a clarity-adjusted confidence, or a text
        heuristic confidence when the reply holds no parsable JSON object.
    """
    match = _JSON_OBJECT.search(content or "")
    if match:
        try:
            parsed = json.loads(match.group(0))
        except json.JSONDecodeError:
            parsed = None

        if isinstance(parsed, dict):
            try:
                raw_confidence = float(parsed.get("confidence") or 0.5)
            except (TypeError, ValueError):
                raw_confidence = 0.5
            reasoning = str(parsed.get("reasoning") or "No reasoning provided")
            value = parsed.get("decision")
            confidence = adjust_confidence_for_clarity(value, reasoning, clamp_confidence(raw_confidence))
            return ReasoningResult(value=value, confidence=confidence, reasoning=reasoning)

    return ReasoningResult(
        value=content,
        confidence=confidence_from_text(content),
        reasoning="Unable to parse structured response, using text analysis",
    )


def build_decision_prompt(question: str, context: dict[str, Any]) -> str:
    context_lines = "\n".join(f"{key}: {json.dumps(value, default=str)}" for key, value in context.items())
    return (
        f"Question: {question}\n\n"
        f"Context:\n{context_lines}\n\n"
        "Provide a decision for this question, your confidence (0.0-1.0) and your reasoning.\n"
        "Respond with JSON only:\n"
        '{"decision": "...", "confidence": 0.8, "reasoning": "..."}'
    )


class OpenAICompatibleReasoner:
    """Reasoning client for OpenAI-compatible chat completion servers."""

    def __init__(
        self,
        base_url: str = "http://localhost:8000/v1",
        model: str = "default",
        api_key: str | None = None,
        timeout: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the reasoner.

        Args:
            base_url: API base URL, for example http://localhost:8000/v1
            model: Model identifier to request
            api_key: Optional bearer token
            timeout: HTTP timeout in seconds
            transport: Optional httpx transport, used to stub the server in tests
        """
        self.base_url = base_url.rstrip("/")
        self.model = model

        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"

        self.client = httpx.AsyncClient(timeout=timeout, headers=headers, transport=transport)

    async def reason(
        self,
        question: str,
        context: dict[str, Any],
        sampling: SamplingConfig,
    ) -> ReasoningResult:
        """Ask the model for a decision.

        Raises:
            ExternalCallError: On transport failures, HTTP error statuses or a
                reply without choices.
        """
        url = f"{self.base_url}/chat/completions"
        try:
            response = await self.client.post(
                url,
                json={
                    "model": self.model,
                    "messages": [
                        {"role": "system", "content": SYSTEM_PROMPT},
                        {"role": "user", "content": build_decision_prompt(question, context)},
                    ],
                    "temperature": sampling.temperature,
                    "max_tokens": sampling.max_tokens,
                },
            )
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPStatusError as e:
            log.error("reasoning_request_failed", status_code=e.response.status_code, url=url)
            raise ExternalCallError(
                "Reasoning provider returned an error",
                target=url,
                stderr=e.response.text,
                returncode=e.response.status_code,
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            log.error("reasoning_request_failed", error=str(e), url=url)
            raise ExternalCallError(f"Reasoning provider call failed: {e}", target=url) from e

        choices = payload.get("choices") or []
        if not choices:
            raise ExternalCallError("Reasoning provider returned no choices", target=url)

        content = choices[0].get("message", {}).get("content", "")
        result = parse_reasoning_response(content)
        log.info("reasoning_completed", model=self.model, confidence=result.confidence)
        return result

    async def aclose(self) -> None:
        await self.client.aclose()

    async def __aenter__(self) -> OpenAICompatibleReasoner:
        return self

    async def __aexit__(self, exc_type: type[BaseException] | None, exc_val: BaseException | None, exc_tb: Any) -> None:
        await self.client.aclose()
