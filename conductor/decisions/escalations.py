"""
Persisted escalation queue.

Every escalation is stored under ``escalations/<id>`` in the state store, so
pending questions survive a restart of the orchestrator. Records move from
PENDING to RESOLVED or CANCELLED exactly once and are immutable afterwards.

The queue is the backing store of the escalation inbox consumed by the CLI:
``list``, ``get``, ``resolve``, ``cancel`` and ``metrics``.
"""

from __future__ import annotations

import math
import uuid
from collections import Counter
from datetime import datetime
from typing import Any

import structlog

from conductor.engine.state_store import NOT_FOUND, StateStore, validate_key
from conductor.exceptions import EscalationNotFoundError, EscalationNotPendingError
from conductor.models.decisions import (
    DecisionKind,
    Escalation,
    EscalationMetrics,
    EscalationStatus,
    coerce_value,
)
from conductor.models.domain import utc_now

log = structlog.get_logger(__name__)

ESCALATION_PREFIX = "escalations/"
PERCENTILES = (50, 90, 95)


def nearest_rank(sorted_values: list[float], percentile: int) -> float:
    """Nearest-rank percentile of an ascending list."""
    if not sorted_values:
        return 0.0
    rank = max(1, math.ceil(percentile / 100 * len(sorted_values)))
    return sorted_values[rank - 1]


class EscalationQueue:
    """Create, query and settle escalations.

    Attributes:
        store: State store holding the escalation records
    """

    def __init__(self, store: StateStore) -> None:
        self.store = store

    @staticmethod
    def _key(escalation_id: str) -> str:
        return f"{ESCALATION_PREFIX}{escalation_id}"

    async def create(
        self,
        owner_workflow_id: str,
        step: int,
        question: str,
        confidence: float,
        *,
        context: dict[str, Any] | None = None,
        ai_reasoning: str = "",
        decision_kind: DecisionKind = "text",
        options: tuple[str, ...] = (),
    ) -> Escalation:
        """Persist a new pending escalation.

        Args:
            owner_workflow_id: Workflow whose step is blocked
            step: Step pointer of the blocked step
            question: Question awaiting a human answer
            confidence: Confidence of the autonomous attempt, in [0, 1]
            context: Context shown to the operator
            ai_reasoning: Reasoning behind the autonomous attempt
            decision_kind: Value variant the caller expects back
            options: Allowed answers for "choice" escalations

        Returns:
            The persisted escalation.

        Raises:
            pydantic.ValidationError: If the question or owner is empty, or
                confidence is outside [0, 1].
        """
        escalation = Escalation(
            id=f"esc-{uuid.uuid4()}",
            owner_workflow_id=owner_workflow_id,
            step=step,
            question=question,
            confidence=confidence,
            context=dict(context or {}),
            ai_reasoning=ai_reasoning,
            decision_kind=decision_kind,
            options=tuple(options),
        )
        await self.store.persist(self._key(escalation.id), escalation)

        log.info(
            "escalation_created",
            escalation_id=escalation.id,
            owner=owner_workflow_id,
            step=step,
            confidence=confidence,
        )
        return escalation

    async def get(self, escalation_id: str) -> Escalation:
        """Return an escalation by id.

        Raises:
            EscalationNotFoundError: If no such escalation exists.
        """
        try:
            key = validate_key(self._key(escalation_id))
        except ValueError:
            raise EscalationNotFoundError(escalation_id) from None

        data = await self.store.load(key)
        if data is NOT_FOUND:
            raise EscalationNotFoundError(escalation_id)
        return Escalation.model_validate(data)

    async def list(
        self,
        status: EscalationStatus | None = None,
        owner_workflow_id: str | None = None,
    ) -> list[Escalation]:
        """Escalations ordered by creation time, optionally filtered."""
        escalations = []
        for key in await self.store.list_keys(ESCALATION_PREFIX):
            data = await self.store.load(key)
            if data is NOT_FOUND:
                continue
            escalation = Escalation.model_validate(data)
            if status is not None and escalation.status is not status:
                continue
            if owner_workflow_id is not None and escalation.owner_workflow_id != owner_workflow_id:
                continue
            escalations.append(escalation)
        return sorted(escalations, key=lambda e: (e.created_at, e.id))

    async def find(
        self,
        owner_workflow_id: str,
        step: int,
        question: str,
        *,
        ignore_cancelled_before: datetime | None = None,
    ) -> Escalation | None:
        """Most recent escalation raised for the same question at the same step.

        Cancelled escalations created at or before ``ignore_cancelled_before``
        are skipped. A workflow passes the time of its last rollback, so an
        attempt made after the rollback asks the question again instead of
        inheriting the earlier cancellation.
        """
        matches = [
            e
            for e in await self.list(owner_workflow_id=owner_workflow_id)
            if e.step == step
            and e.question == question
            and not (
                ignore_cancelled_before is not None
                and e.status is EscalationStatus.CANCELLED
                and e.created_at <= ignore_cancelled_before
            )
        ]
        return matches[-1] if matches else None

    async def resolve(self, escalation_id: str, response: Any) -> Escalation:
        """Record the operator's answer.

        The response must be interpretable as the escalation's decision kind
        (for example "yes" or "no" for a flag question, or one of the stored
        options for a choice question).

        Raises:
            EscalationNotFoundError: If no such escalation exists.
            EscalationNotPendingError: If it was already resolved or cancelled.
            ValueError: If the response does not fit the decision kind.
        """
        await self.get(escalation_id)
        async with self.store.transaction(self._key(escalation_id)) as data:
            escalation = Escalation.model_validate(data)
            if not escalation.is_pending:
                raise EscalationNotPendingError(escalation_id, escalation.status.value)

            coerce_value(escalation.decision_kind, response, escalation.options)

            resolved_at = utc_now()
            resolved = escalation.model_copy(
                update={
                    "status": EscalationStatus.RESOLVED,
                    "response": response,
                    "resolved_at": resolved_at,
                    "resolution_seconds": (resolved_at - escalation.created_at).total_seconds(),
                }
            )
            data.clear()
            data.update(resolved.model_dump(mode="json"))

        log.info(
            "escalation_resolved",
            escalation_id=escalation_id,
            owner=resolved.owner_workflow_id,
            resolution_seconds=resolved.resolution_seconds,
        )
        return resolved

    async def cancel(self, escalation_id: str) -> Escalation:
        """Cancel a pending escalation. The owning lane is abandoned.

        Raises:
            EscalationNotFoundError: If no such escalation exists.
            EscalationNotPendingError: If it was already resolved or cancelled.
        """
        await self.get(escalation_id)
        async with self.store.transaction(self._key(escalation_id)) as data:
            escalation = Escalation.model_validate(data)
            if not escalation.is_pending:
                raise EscalationNotPendingError(escalation_id, escalation.status.value)

            cancelled = escalation.model_copy(
                update={"status": EscalationStatus.CANCELLED, "cancelled_at": utc_now()}
            )
            data.clear()
            data.update(cancelled.model_dump(mode="json"))

        log.info("escalation_cancelled", escalation_id=escalation_id, owner=cancelled.owner_workflow_id)
        return cancelled

    async def metrics(self) -> EscalationMetrics:
        escalations = await self.list()
        by_status = Counter(e.status.value for e in escalations)
        durations = sorted(
            e.resolution_seconds
            for e in escalations
            if e.status is EscalationStatus.RESOLVED and e.resolution_seconds is not None
        )

        return EscalationMetrics(
            total=len(escalations),
            by_status={status.value: by_status.get(status.value, 0) for status in EscalationStatus},
            average_resolution_seconds=sum(durations) / len(durations) if durations else 0.0,
            resolution_percentiles={f"p{p}": nearest_rank(durations, p) for p in PERCENTILES},
            category_breakdown=dict(sorted(Counter(e.category for e in escalations).items())),
        )
