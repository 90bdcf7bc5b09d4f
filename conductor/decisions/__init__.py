"""Confidence-gated decisions and the escalation inbox.

Key Components:
    - DecisionGate: Knowledge base, then reasoning, then human escalation
    - EscalationQueue: Persisted escalation records and metrics
    - KnowledgeBase: Authoritative local answers
    - OpenAICompatibleReasoner: Reasoning collaborator over HTTP
"""

from conductor.decisions.escalations import EscalationQueue
from conductor.decisions.gate import DecisionGate
from conductor.decisions.knowledge import KnowledgeBase
from conductor.decisions.reasoning import (
    OpenAICompatibleReasoner,
    ReasoningClient,
    ReasoningResult,
    SamplingConfig,
)

__all__ = [
    "DecisionGate",
    "EscalationQueue",
    "KnowledgeBase",
    "OpenAICompatibleReasoner",
    "ReasoningClient",
    "ReasoningResult",
    "SamplingConfig",
]
