"""Decision and escalation models.

This module defines the Pydantic models produced by the decision gate: the
``Decision`` returned for confident answers, the ``Escalation`` record
persisted when confidence is insufficient, and the aggregate
``EscalationMetrics`` reported to the escalation inbox.

Decision values are a tagged union keyed by ``kind``. Callers ask for a kind
when they pose a question and dispatch on ``value.kind`` when they consume the
answer, instead of inspecting the runtime shape of an arbitrary payload::

    decision = await gate.decide(
        "Which database should the service use?",
        {"category": "architecture"},
        owner_workflow_id="1-3",
        step=2,
        kind="choice",
    )
    if decision.value.kind == "choice":
        database = decision.value.choice
"""

from __future__ import annotations

import json
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from conductor.models.domain import utc_now


class DecisionSource(str, Enum):
    """Where a decision came from."""

    KNOWLEDGE = "knowledge"
    """Exact match in the local knowledge base."""

    REASONING = "reasoning"
    """Autonomous answer from the reasoning collaborator."""

    HUMAN = "human"
    """Operator response to an escalation."""


class EscalationStatus(str, Enum):
    """Escalation lifecycle. RESOLVED and CANCELLED are final."""

    PENDING = "pending"
    RESOLVED = "resolved"
    CANCELLED = "cancelled"


class TextValue(BaseModel):
    """Free-form textual answer."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["text"] = "text"
    text: str


class ChoiceValue(BaseModel):
    """One option selected from a known set."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["choice"] = "choice"
    choice: str
    options: tuple[str, ...] = ()


class FlagValue(BaseModel):
    """Yes/no answer."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["flag"] = "flag"
    flag: bool


class StructuredValue(BaseModel):
    """Arbitrary structured answer."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["structured"] = "structured"
    data: dict[str, Any]


DecisionValue = Annotated[
    TextValue | ChoiceValue | FlagValue | StructuredValue,
    Field(discriminator="kind"),
]

DecisionKind = Literal["text", "choice", "flag", "structured"]

_TRUE_WORDS = {"yes", "y", "true", "1", "approve", "approved", "ok"}
_FALSE_WORDS = {"no", "n", "false", "0", "reject", "rejected", "deny"}

_decision_value_adapter: TypeAdapter[Any] = TypeAdapter(DecisionValue)


def coerce_value(kind: str, raw: Any, options: tuple[str, ...] = ()) -> TextValue | ChoiceValue | FlagValue | StructuredValue:
    """Convert a raw reasoning output or operator response into a decision value.

    Args:
        kind: Requested variant ("text", "choice", "flag" or "structured")
        raw: Untyped value from the reasoning collaborator or a human
        options: Known options for "choice" values

    Returns:
        The matching DecisionValue variant.

    Raises:
        ValueError: If the kind is unknown or the raw value cannot be
            interpreted as that kind.
    """
    if isinstance(raw, dict) and raw.get("kind") == kind:
        return _decision_value_adapter.validate_python(raw)

    if kind == "text":
        return TextValue(text=raw if isinstance(raw, str) else json.dumps(raw))
    if kind == "choice":
        choice = str(raw).strip()
        if options and choice not in options:
            raise ValueError(f"Choice {choice!r} is not one of {list(options)}")
        return ChoiceValue(choice=choice, options=tuple(options))
    if kind == "flag":
        if isinstance(raw, bool):
            return FlagValue(flag=raw)
        word = str(raw).strip().lower()
        if word in _TRUE_WORDS:
            return FlagValue(flag=True)
        if word in _FALSE_WORDS:
            return FlagValue(flag=False)
        raise ValueError(f"Cannot interpret {raw!r} as a yes/no answer")
    if kind == "structured":
        if isinstance(raw, dict):
            return StructuredValue(data=raw)
        if isinstance(raw, str):
            try:
                parsed = json.loads(raw)
            except json.JSONDecodeError as e:
                raise ValueError(f"Structured answer is not valid JSON: {e}") from e
            if isinstance(parsed, dict):
                return StructuredValue(data=parsed)
        raise ValueError(f"Cannot interpret {raw!r} as a structured answer")
    raise ValueError(f"Unknown decision kind: {kind}")


class Decision(BaseModel):
    """An accepted answer to a question raised during a workflow step."""

    model_config = ConfigDict(frozen=True)

    question: str
    value: DecisionValue
    confidence: float = Field(ge=0.0, le=1.0)
    reasoning: str
    source: DecisionSource
    timestamp: datetime = Field(default_factory=utc_now)
    context: dict[str, Any] = Field(default_factory=dict)


class Escalation(BaseModel):
    """Persisted request for a human decision.

    Created as PENDING by the decision gate when confidence falls below the
    threshold. Once RESOLVED or CANCELLED the record is never modified again.
    """

    id: str
    owner_workflow_id: str = Field(min_length=1)
    step: int = Field(ge=0)
    question: str = Field(min_length=1)
    confidence: float = Field(ge=0.0, le=1.0)
    ai_reasoning: str = ""
    decision_kind: DecisionKind = "text"
    options: tuple[str, ...] = ()
    context: dict[str, Any] = Field(default_factory=dict)
    status: EscalationStatus = EscalationStatus.PENDING
    created_at: datetime = Field(default_factory=utc_now)
    resolved_at: datetime | None = None
    cancelled_at: datetime | None = None
    response: Any = None
    resolution_seconds: float | None = None

    @property
    def is_pending(self) -> bool:
        return self.status is EscalationStatus.PENDING

    @property
    def category(self) -> str:
        category = self.context.get("category")
        return str(category) if category else "uncategorized"


class EscalationMetrics(BaseModel):
    """Aggregate escalation statistics for the escalation inbox."""

    total: int = 0
    by_status: dict[str, int] = Field(default_factory=dict)
    average_resolution_seconds: float = 0.0
    resolution_percentiles: dict[str, float] = Field(default_factory=dict)
    category_breakdown: dict[str, int] = Field(default_factory=dict)
