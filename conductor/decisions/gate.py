"""
Confidence-gated decisions with human escalation.

The DecisionGate answers questions raised during workflow steps. It tries,
in order:

1. A previous escalation for the same question at the same step. A resolved
   one yields the human answer; a pending one blocks the step again without
   creating a duplicate; a cancelled one abandons the step.
2. The local knowledge base (authoritative, fixed confidence).
3. The reasoning collaborator, bounded by a timeout and retried with
   backoff. Persistent failure degrades to zero confidence.

An answer with confidence at or above the threshold is recorded in the
decision audit log and returned. Anything below the threshold is persisted
as a pending escalation and signalled with EscalationPendingError; the step
can be replayed once an operator resolves it.

Example:
    >>> gate = DecisionGate(store, knowledge=kb, reasoner=reasoner, threshold=0.75)
    >>> try:
    ...     decision = await gate.decide(
    ...         "Which database?", {"category": "architecture"},
    ...         owner_workflow_id="1-3", step=2, kind="choice",
    ...     )
    ... except EscalationPendingError as e:
    ...     await gate.wait_for_resolution(e.escalation.id)
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any

import structlog

from conductor.decisions.escalations import EscalationQueue
from conductor.decisions.knowledge import KnowledgeBase
from conductor.decisions.reasoning import ReasoningClient, ReasoningResult, SamplingConfig, clamp_confidence
from conductor.engine.state_store import StateStore
from conductor.exceptions import (
    EscalationCancelledError,
    EscalationPendingError,
    ExternalCallError,
)
from conductor.models.decisions import (
    Decision,
    DecisionKind,
    DecisionSource,
    Escalation,
    EscalationMetrics,
    EscalationStatus,
    coerce_value,
)
from conductor.utils.retry import async_retry

log = structlog.get_logger(__name__)

AUDIT_KEY = "audit/decisions"


class DecisionGate:
    """Decide autonomously when confident, escalate to a human otherwise.

    Attributes:
        threshold: Minimum confidence for an autonomous decision
        queue: Escalation queue backing the inbox
    """

    def __init__(
        self,
        store: StateStore,
        *,
        knowledge: KnowledgeBase | None = None,
        reasoner: ReasoningClient | None = None,
        threshold: float = 0.75,
        knowledge_confidence: float = 0.95,
        sampling: SamplingConfig | None = None,
        reasoning_timeout: float = 60.0,
        reasoning_attempts: int = 3,
        retry_base_delay: float = 1.0,
        retry_max_delay: float = 10.0,
    ) -> None:
        if not 0.0 <= threshold <= 1.0:
            raise ValueError(f"threshold must be within [0, 1], got {threshold}")

        self.store = store
        self.queue = EscalationQueue(store)
        self.knowledge = knowledge or KnowledgeBase()
        self.reasoner = reasoner
        self.threshold = threshold
        self.knowledge_confidence = knowledge_confidence
        self.sampling = sampling or SamplingConfig()
        self.reasoning_timeout = reasoning_timeout
        self._call_reasoner = async_retry(
            max_attempts=reasoning_attempts,
            base_delay=retry_base_delay,
            max_delay=retry_max_delay,
            exceptions=(TimeoutError, ExternalCallError),
        )(self._reason_once)

    async def decide(
        self,
        question: str,
        context: dict[str, Any] | None = None,
        *,
        owner_workflow_id: str,
        step: int,
        kind: DecisionKind = "text",
        options: tuple[str, ...] = (),
        ignore_cancelled_before: datetime | None = None,
    ) -> Decision:
        """Answer a question or escalate it.

        Args:
            question: The question raised by the step
            context: Context passed to the reasoner and shown to operators
            owner_workflow_id: Workflow raising the question
            step: Step pointer of the raising step
            kind: Decision value variant expected back
            options: Allowed answers for "choice" questions
            ignore_cancelled_before: Earlier cancelled escalations for this
                question created at or before this time are disregarded

        Returns:
            The accepted decision.

        Raises:
            EscalationPendingError: Confidence was below the threshold, or an
                earlier escalation for this question is still pending.
            EscalationCancelledError: An earlier escalation for this question
                was cancelled.
        """
        context = dict(context or {})

        existing = await self.queue.find(
            owner_workflow_id, step, question, ignore_cancelled_before=ignore_cancelled_before
        )
        if existing is not None:
            return self.resumed_decision(existing)

        entry = self.knowledge.lookup(question)
        if entry is not None:
            decision = Decision(
                question=question,
                value=coerce_value(kind, entry.answer, options),
                confidence=self.knowledge_confidence,
                reasoning=f"Answer found in knowledge base: {entry.question}",
                source=DecisionSource.KNOWLEDGE,
                context=context,
            )
            await self._record(decision, owner_workflow_id, step)
            return decision

        result = await self._reason(question, context)
        if result.confidence >= self.threshold:
            try:
                value = coerce_value(kind, result.value, options)
            except ValueError as e:
                result = ReasoningResult(
                    value=result.value,
                    confidence=0.0,
                    reasoning=f"{result.reasoning} (answer rejected: {e})",
                )
            else:
                decision = Decision(
                    question=question,
                    value=value,
                    confidence=result.confidence,
                    reasoning=result.reasoning,
                    source=DecisionSource.REASONING,
                    context=context,
                )
                await self._record(decision, owner_workflow_id, step)
                return decision

        escalation = await self.queue.create(
            owner_workflow_id,
            step,
            question,
            result.confidence,
            context=context,
            ai_reasoning=result.reasoning,
            decision_kind=kind,
            options=options,
        )
        log.warning(
            "decision_escalated",
            escalation_id=escalation.id,
            owner=owner_workflow_id,
            step=step,
            confidence=result.confidence,
            threshold=self.threshold,
        )
        raise EscalationPendingError(escalation)

    def resumed_decision(self, escalation: Escalation) -> Decision:
        """Decision carried by a settled escalation.

        Raises:
            EscalationPendingError: If the escalation is still pending.
            EscalationCancelledError: If it was cancelled.
        """
        if escalation.status is EscalationStatus.PENDING:
            raise EscalationPendingError(escalation)
        if escalation.status is EscalationStatus.CANCELLED:
            raise EscalationCancelledError(escalation)

        return Decision(
            question=escalation.question,
            value=coerce_value(escalation.decision_kind, escalation.response, escalation.options),
            confidence=1.0,
            reasoning=f"Resolved by operator (escalation {escalation.id})",
            source=DecisionSource.HUMAN,
            timestamp=escalation.resolved_at or escalation.created_at,
            context=escalation.context,
        )

    async def wait_for_resolution(
        self,
        escalation_id: str,
        poll_interval: float = 1.0,
        timeout: float | None = None,
    ) -> Escalation:
        """Poll the store until the escalation is resolved or cancelled.

        Escalations never expire on their own. The optional timeout only
        bounds this wait and leaves the escalation pending.

        Raises:
            TimeoutError: If the timeout elapses first.
            EscalationNotFoundError: If the escalation does not exist.
        """
        return await asyncio.wait_for(self._poll(escalation_id, poll_interval), timeout=timeout)

    async def _poll(self, escalation_id: str, poll_interval: float) -> Escalation:
        while True:
            escalation = await self.queue.get(escalation_id)
            if not escalation.is_pending:
                return escalation
            await asyncio.sleep(poll_interval)

    async def pending_for(self, owner_workflow_id: str) -> list[Escalation]:
        return await self.queue.list(status=EscalationStatus.PENDING, owner_workflow_id=owner_workflow_id)

    async def has_pending(self, owner_workflow_id: str) -> bool:
        return bool(await self.pending_for(owner_workflow_id))

    async def list_escalations(
        self,
        status: EscalationStatus | None = None,
        owner_workflow_id: str | None = None,
    ) -> list[Escalation]:
        return await self.queue.list(status=status, owner_workflow_id=owner_workflow_id)

    async def resolve(self, escalation_id: str, response: Any) -> Escalation:
        return await self.queue.resolve(escalation_id, response)

    async def cancel(self, escalation_id: str) -> Escalation:
        return await self.queue.cancel(escalation_id)

    async def metrics(self) -> EscalationMetrics:
        return await self.queue.metrics()

    async def audit_log(self) -> list[dict[str, Any]]:
        entries = await self.store.load(AUDIT_KEY)
        return entries if isinstance(entries, list) else []

    async def _reason(self, question: str, context: dict[str, Any]) -> ReasoningResult:
        if self.reasoner is None:
            return ReasoningResult(value=None, confidence=0.0, reasoning="No reasoning collaborator configured")

        try:
            return await self._call_reasoner(self.reasoner, question, context)
        except (TimeoutError, ExternalCallError) as e:
            log.error("reasoning_unavailable", question=question, error=str(e) or type(e).__name__)
            return ReasoningResult(
                value=None,
                confidence=0.0,
                reasoning=f"Reasoning unavailable: {str(e) or type(e).__name__}",
            )

    async def _reason_once(
        self, reasoner: ReasoningClient, question: str, context: dict[str, Any]
    ) -> ReasoningResult:
        result = await asyncio.wait_for(
            reasoner.reason(question, context, self.sampling),
            timeout=self.reasoning_timeout,
        )
        return ReasoningResult(
            value=result.value,
            confidence=clamp_confidence(result.confidence),
            reasoning=result.reasoning,
        )

    async def _record(self, decision: Decision, owner_workflow_id: str, step: int) -> None:
        entry = decision.model_dump(mode="json")
        entry.update(owner_workflow_id=owner_workflow_id, step=step)
        async with self.store.transaction(AUDIT_KEY, default=[]) as entries:
            entries.append(entry)

        log.info(
            "decision_made",
            owner=owner_workflow_id,
            step=step,
            source=decision.source.value,
            confidence=decision.confidence,
        )


