"""CascadeExecutor: walk a chain cheap to premium until an output is good enough.

State machine per request:

    PENDING -> EXECUTING(tier i) -> ACCEPTED
                                 -> ESCALATE -> EXECUTING(tier i+1)
                                 -> EXHAUSTED
                                 -> CANCELLED

Execution Rules:
- Every tier is asked for at most ``max_output_tokens`` completion tokens
- Before a tier runs, its worst-case cost (prompt estimate plus the
  completion cap) is reserved against the user's budget; a denied
  reservation ends the cascade (EXHAUSTED, budget-limited)
- Transient provider errors are retried once with backoff; a tier that
  still errors is skipped like a rejected output
- The judge scores each output and the QualityGate accepts or escalates
- EXHAUSTED returns the best output seen so far, flagged as below the floor
- Cancellation is checked between tiers; a cancelled task releases its
  open reservation and still persists its partial decision
- Exactly one RoutingDecision is persisted per execution
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from enum import StrEnum
from typing import Protocol
from uuid import uuid4

import stamina

from arbiter.budget.models import SpendDecision
from arbiter.config.models import CascadeConfig
from arbiter.core.errors import PersistenceError, ProviderError, TransientProviderError
from arbiter.core.types import Money, Score
from arbiter.observability.logging import get_logger
from arbiter.providers.base import GenerationResult, TextProvider
from arbiter.routing.classifier import estimate_prompt_tokens
from arbiter.routing.judge import JudgeInput, QualityGate, QualityJudge
from arbiter.routing.models import (
    AttemptStatus,
    CascadeChain,
    DecisionStatus,
    ModelCandidate,
    RoutingDecision,
    TaskClassification,
    TierAttempt,
)

log = get_logger(__name__)

TIER_RETRY_ATTEMPTS = 2


class CascadeState(StrEnum):
    PENDING = "pending"
    EXECUTING = "executing"
    ACCEPTED = "accepted"
    ESCALATE = "escalate"
    EXHAUSTED = "exhausted"
    CANCELLED = "cancelled"


class CancellationToken:
    """Cooperative cancellation, checked between tier calls."""

    def __init__(self) -> None:
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled


class SpendGate(Protocol):
    """The budget operations the executor needs (implemented by CostTracker)."""

    async def authorize(self, user_id: str, amount: Money) -> SpendDecision: ...

    async def release(self, user_id: str, amount: Money) -> None: ...

    async def record_spend(
        self,
        user_id: str,
        amount: Money,
        *,
        reserved: Money = 0.0,
        provider_id: str | None = None,
        tier: int | None = None,
        tokens_used: int = 0,
        decision_id: str | None = None,
        over_request_budget: bool = False,
    ) -> SpendDecision: ...


class DecisionSink(Protocol):
    async def save_decision(self, decision: RoutingDecision) -> None: ...


@dataclass(slots=True)
class _Hold:
    """A tier's budget reservation until it is charged or released."""

    amount: Money
    settled: bool = False


@dataclass(frozen=True, slots=True)
class _TierOutput:
    candidate: ModelCandidate
    text: str
    quality: Score
    cost: Money
    tokens_used: int


@dataclass(frozen=True, slots=True)
class CascadeOutcome:
    """Result of one cascade execution.

    Attributes:
        decision: The persisted routing decision.
        attempts: Per-tier record, in execution order.
        budget_limited: True when the budget stopped the cascade.
    """

    decision: RoutingDecision
    attempts: tuple[TierAttempt, ...]
    budget_limited: bool = False

    @property
    def text(self) -> str | None:
        return self.decision.response

    @property
    def executed(self) -> bool:
        """Whether any tier produced output."""
        return self.decision.response is not None


class CascadeExecutor:
    """Executes cascade chains against registered providers.

    Example:
        executor = CascadeExecutor(providers, HeuristicJudge(), tracker, store, config.cascade)
        outcome = await executor.execute(
            user_id="u1",
            query="Explain CAP theorem",
            classification=classification,
            chain=chain,
            acceptance_threshold=0.75,
        )
    """

    def __init__(
        self,
        providers: Mapping[str, TextProvider],
        judge: QualityJudge,
        tracker: SpendGate,
        sink: DecisionSink,
        config: CascadeConfig,
    ) -> None:
        self._providers = providers
        self._judge = judge
        self._tracker = tracker
        self._sink = sink
        self._config = config

    async def execute(
        self,
        *,
        user_id: str,
        query: str,
        classification: TaskClassification,
        chain: CascadeChain,
        acceptance_threshold: Score,
        cancel_token: CancellationToken | None = None,
        experiment_id: str | None = None,
        decision_id: str | None = None,
    ) -> CascadeOutcome:
        decision_id = decision_id or str(uuid4())
        gate = QualityGate(acceptance_threshold)
        max_tokens = self._config.max_output_tokens
        worst_case_tokens = estimate_prompt_tokens(query) + max_tokens
        attempts: list[TierAttempt] = []
        outputs: list[_TierOutput] = []
        escalations = 0
        budget_limited = False
        index = 0
        hold: _Hold | None = None

        state = CascadeState.PENDING
        try:
            hold = await self._reserve(user_id, chain[0], worst_case_tokens)
            if hold is None:
                budget_limited = True
                state = CascadeState.EXHAUSTED
            else:
                state = CascadeState.EXECUTING

            while state == CascadeState.EXECUTING:
                if cancel_token is not None and cancel_token.is_cancelled:
                    await self._release(user_id, hold)
                    state = CascadeState.CANCELLED
                    break

                candidate = chain[index]
                attempt, output = await self._run_tier(
                    user_id=user_id,
                    query=query,
                    candidate=candidate,
                    index=index,
                    hold=hold,
                    max_tokens=max_tokens,
                    classification=classification,
                    spent_so_far=sum(a.cost for a in attempts),
                    decision_id=decision_id,
                    gate=gate,
                )
                attempts.append(attempt)
                if output is not None:
                    outputs.append(output)

                if attempt.status == AttemptStatus.ACCEPTED:
                    state = CascadeState.ACCEPTED
                    break

                state = CascadeState.ESCALATE
                if index + 1 >= len(chain):
                    state = CascadeState.EXHAUSTED
                    break
                if cancel_token is not None and cancel_token.is_cancelled:
                    state = CascadeState.CANCELLED
                    break

                hold = await self._reserve(user_id, chain[index + 1], worst_case_tokens)
                if hold is None:
                    budget_limited = True
                    state = CascadeState.EXHAUSTED
                    break

                escalations += 1
                index += 1
                state = CascadeState.EXECUTING
                log.info(
                    "cascade.tier.escalated",
                    from_provider=candidate.provider_id,
                    to_provider=chain[index].provider_id,
                    escalations=escalations,
                    reason=attempt.status.value,
                )
        except asyncio.CancelledError:
            if hold is not None and not hold.settled:
                await self._release(user_id, hold)
            decision = self._build_decision(
                decision_id=decision_id,
                user_id=user_id,
                query=query,
                classification=classification,
                chain=chain,
                attempts=attempts,
                outputs=outputs,
                escalations=escalations,
                state=CascadeState.CANCELLED,
                budget_limited=budget_limited,
                experiment_id=experiment_id,
            )
            await asyncio.shield(self._persist(decision))
            raise

        decision = self._build_decision(
            decision_id=decision_id,
            user_id=user_id,
            query=query,
            classification=classification,
            chain=chain,
            attempts=attempts,
            outputs=outputs,
            escalations=escalations,
            state=state,
            budget_limited=budget_limited,
            experiment_id=experiment_id,
        )
        await self._persist(decision)

        log.info(
            "cascade.execution.completed",
            decision_id=decision.id,
            status=decision.status.value,
            final_provider=decision.final_provider,
            escalations=decision.escalations,
            total_cost=round(decision.total_cost, 6),
            final_quality=decision.final_quality,
        )
        return CascadeOutcome(
            decision=decision,
            attempts=tuple(attempts),
            budget_limited=budget_limited,
        )

    async def _reserve(
        self, user_id: str, candidate: ModelCandidate, tokens: int
    ) -> _Hold | None:
        """Reserve the tier's worst-case cost; None when the budget denies it."""
        amount = candidate.estimate_cost(tokens)
        decision = await self._tracker.authorize(user_id, amount)
        if not decision.allowed:
            log.warning(
                "cascade.tier.budget_denied",
                provider_id=candidate.provider_id,
                estimated_cost=amount,
                spent=decision.budget.spent_this_period,
                limit=decision.budget.monthly_limit,
            )
            return None
        return _Hold(amount)

    async def _release(self, user_id: str, hold: _Hold) -> None:
        hold.settled = True
        # Shielded so a cancelled request still returns its reservation.
        await asyncio.shield(self._tracker.release(user_id, hold.amount))

    async def _generate(
        self, provider: TextProvider, query: str, max_tokens: int
    ) -> tuple[GenerationResult, int]:
        calls = 0

        @stamina.retry(
            on=TransientProviderError,
            attempts=TIER_RETRY_ATTEMPTS,
            timeout=None,
            wait_initial=self._config.retry_backoff_seconds,
            wait_max=self._config.retry_backoff_seconds,
            wait_jitter=0.0,
        )
        async def _do_generate() -> GenerationResult:
            nonlocal calls
            calls += 1
            result = await provider.generate(query, max_tokens)
            if result.is_err:
                raise result.error
            return result.value

        try:
            return await _do_generate(), calls
        except ProviderError as e:
            e.details.setdefault("calls", calls)
            raise

    async def _run_tier(
        self,
        *,
        user_id: str,
        query: str,
        candidate: ModelCandidate,
        index: int,
        hold: _Hold,
        max_tokens: int,
        classification: TaskClassification,
        spent_so_far: Money,
        decision_id: str,
        gate: QualityGate,
    ) -> tuple[TierAttempt, _TierOutput | None]:
        provider = self._providers.get(candidate.provider_id)
        if provider is None:
            await self._release(user_id, hold)
            log.error("cascade.tier.provider_missing", provider_id=candidate.provider_id)
            return (
                TierAttempt(
                    provider_id=candidate.provider_id,
                    tier_index=index,
                    status=AttemptStatus.ERRORED,
                    calls=0,
                    error="no provider registered",
                ),
                None,
            )

        try:
            generation, calls = await self._generate(provider, query, max_tokens)
        except ProviderError as e:
            await self._release(user_id, hold)
            log.warning(
                "cascade.tier.failed",
                provider_id=candidate.provider_id,
                tier_index=index,
                transient=e.is_transient,
                error=e.message,
            )
            return (
                TierAttempt(
                    provider_id=candidate.provider_id,
                    tier_index=index,
                    status=AttemptStatus.ERRORED,
                    calls=int(e.details.get("calls", 1)),
                    error=e.message,
                ),
                None,
            )

        actual_cost = candidate.estimate_cost(generation.tokens_used)
        over_request_budget = (
            classification.budget_constraint > 0
            and spent_so_far + actual_cost > classification.budget_constraint
        )
        if over_request_budget:
            log.info(
                "cascade.tier.over_request_budget",
                provider_id=candidate.provider_id,
                cost=actual_cost,
                request_budget=classification.budget_constraint,
            )

        hold.settled = True
        spend = await asyncio.shield(
            self._tracker.record_spend(
                user_id,
                actual_cost,
                reserved=hold.amount,
                provider_id=candidate.provider_id,
                tier=candidate.tier,
                tokens_used=generation.tokens_used,
                decision_id=decision_id,
                over_request_budget=over_request_budget,
            )
        )
        cost = spend.amount

        quality = await self._judge.score(
            JudgeInput(
                query=query,
                text=generation.text,
                candidate=candidate,
                tokens_used=generation.tokens_used,
                max_tokens=max_tokens,
                completion_tokens=generation.completion_tokens,
                finish_reason=generation.finish_reason,
            )
        )
        accepted = gate.accepts(quality)
        log.debug(
            "cascade.tier.judged",
            provider_id=candidate.provider_id,
            tier_index=index,
            quality=round(quality, 3),
            threshold=gate.threshold,
            accepted=accepted,
        )

        output = _TierOutput(
            candidate=candidate,
            text=generation.text,
            quality=quality,
            cost=cost,
            tokens_used=generation.tokens_used,
        )
        attempt = TierAttempt(
            provider_id=candidate.provider_id,
            tier_index=index,
            status=AttemptStatus.ACCEPTED if accepted else AttemptStatus.REJECTED,
            quality=quality,
            cost=cost,
            tokens_used=generation.tokens_used,
            calls=calls,
        )
        return attempt, output

    def _build_decision(
        self,
        *,
        decision_id: str,
        user_id: str,
        query: str,
        classification: TaskClassification,
        chain: CascadeChain,
        attempts: list[TierAttempt],
        outputs: list[_TierOutput],
        escalations: int,
        state: CascadeState,
        budget_limited: bool,
        experiment_id: str | None,
    ) -> RoutingDecision:
        best = _best_output(outputs, accepted=state == CascadeState.ACCEPTED)

        if state == CascadeState.ACCEPTED:
            status = DecisionStatus.ACCEPTED
        elif state == CascadeState.CANCELLED:
            status = DecisionStatus.CANCELLED
        elif budget_limited:
            status = DecisionStatus.BUDGET_EXCEEDED
        else:
            status = DecisionStatus.EXHAUSTED

        return RoutingDecision(
            id=decision_id,
            user_id=user_id,
            query=query,
            classification=classification,
            chain=chain.provider_ids,
            chain_tried=tuple(a.provider_id for a in attempts),
            final_provider=best.candidate.provider_id if best else None,
            final_cost=best.cost if best else 0.0,
            total_cost=sum(a.cost for a in attempts),
            final_quality=best.quality if best else None,
            escalations=escalations,
            status=status,
            below_quality_floor=best is not None and status != DecisionStatus.ACCEPTED,
            tokens_used=sum(a.tokens_used for a in attempts),
            response=best.text if best else None,
            experiment_id=experiment_id,
        )

    async def _persist(self, decision: RoutingDecision) -> None:
        try:
            await self._sink.save_decision(decision)
        except PersistenceError as e:
            log.error(
                "cascade.decision.persist_failed",
                decision_id=decision.id,
                error=e.message,
            )


def _best_output(outputs: list[_TierOutput], *, accepted: bool) -> _TierOutput | None:
    if not outputs:
        return None
    if accepted:
        return outputs[-1]
    # Highest quality; on ties prefer the earlier (cheaper) tier.
    return max(outputs, key=lambda o: o.quality)


@dataclass(frozen=True, slots=True)
class CascadeAnalytics:
    """Aggregate cascade performance over a set of decisions.

    Attributes:
        decisions: Number of decisions considered.
        tier1_success_rate: Share accepted at the first tier without escalating.
        average_cost: Mean total cost per decision.
        average_escalations: Mean escalations per decision.
        premium_cost: What the same token volume would cost at the premium price.
        savings: premium_cost minus actual total cost.
    """

    decisions: int
    tier1_success_rate: float
    average_cost: Money
    average_escalations: float
    premium_cost: Money
    savings: Money

    @property
    def savings_ratio(self) -> float:
        if self.premium_cost <= 0:
            return 0.0
        return self.savings / self.premium_cost

    @classmethod
    def from_decisions(
        cls, decisions: Iterable[RoutingDecision], premium_cost_per_1k: Money
    ) -> CascadeAnalytics:
        rows = list(decisions)
        if not rows:
            return cls(0, 0.0, 0.0, 0.0, 0.0, 0.0)
        total_cost = sum(d.total_cost for d in rows)
        premium_cost = sum(d.tokens_used for d in rows) / 1000.0 * premium_cost_per_1k
        tier1 = sum(
            1 for d in rows if d.status == DecisionStatus.ACCEPTED and d.escalations == 0
        )
        return cls(
            decisions=len(rows),
            tier1_success_rate=tier1 / len(rows),
            average_cost=total_cost / len(rows),
            average_escalations=sum(d.escalations for d in rows) / len(rows),
            premium_cost=premium_cost,
            savings=premium_cost - total_cost,
        )
