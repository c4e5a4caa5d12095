"""Phase plans and the first-match-wins cascade runner.

A ``PhasePlan`` names a population of source records (by source tag and
direction) and an ordered list of ``CascadeStep``s, each binding a strategy to
the target collections it searches. Fallback strategies must come after every
linking strategy; the orchestrator runs them once, after the widened pass.
"""

from __future__ import annotations

import enum
from collections.abc import Mapping, Sequence, Set
from dataclasses import dataclass

from .config import MatchPolicy, Settings
from .extraction import DescriptionParser
from .index import IndexGroup
from .models import MatchCandidate, TransactionRecord
from .strategies import (
    AggregateWindowStrategy,
    AmountDateStrategy,
    CatchAllStrategy,
    DescriptionIdentifierStrategy,
    EmailAmountStrategy,
    EmailDateStrategy,
    ExactIdentifierStrategy,
    ExtractedNameStrategy,
    InternalTransferStrategy,
    NameAmountStrategy,
    NameDateStrategy,
    SourceDominantStrategy,
    Strategy,
    StrategyContext,
)
from .tables import LookupTables


class Direction(enum.Enum):
    INFLOW = "inflow"
    OUTFLOW = "outflow"


class Stage(enum.Enum):
    LINKING = "linking"
    FALLBACK = "fallback"


@dataclass(frozen=True, slots=True)
class CascadeStep:
    strategy: Strategy
    targets: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if self.strategy.needs_targets and not self.targets:
            raise ValueError(f"{self.strategy!r} needs at least one target collection")


@dataclass(frozen=True, slots=True)
class PhasePlan:
    name: str
    sources: tuple[str, ...]
    steps: tuple[CascadeStep, ...]
    direction: Direction | None = None

    def __post_init__(self) -> None:
        if not self.sources:
            raise ValueError(f"phase {self.name!r} has no source tags")
        seen_fallback = False
        for step in self.steps:
            if step.strategy.fallback:
                seen_fallback = True
            elif seen_fallback:
                raise ValueError(
                    f"phase {self.name!r}: linking strategy {step.strategy!r} after a fallback"
                )

    @property
    def target_tags(self) -> tuple[str, ...]:
        tags: dict[str, None] = {}
        for step in self.steps:
            for tag in step.targets:
                tags.setdefault(tag, None)
        return tuple(tags)

    @property
    def dated_target_tags(self) -> frozenset[str]:
        return frozenset(
            tag for step in self.steps if step.strategy.needs_dates for tag in step.targets
        )

    def accepts(self, record: TransactionRecord) -> bool:
        if self.direction is None:
            return True
        if record.amount is None:
            return False
        if self.direction is Direction.INFLOW:
            return record.amount > 0
        return record.amount < 0


class Cascade:
    """Steps of one phase resolved against built indices."""

    def __init__(self, steps: Sequence[tuple[Strategy, IndexGroup | None]]) -> None:
        self.steps = tuple(steps)

    def run(
        self,
        source: TransactionRecord,
        *,
        claimed: Set[str],
        policy: MatchPolicy,
        stage: Stage = Stage.LINKING,
        dominant: Mapping[str, str] | None = None,
    ) -> MatchCandidate | None:
        """Return the first candidate any strategy of ``stage`` accepts, in order."""

        want_fallback = stage is Stage.FALLBACK
        for strategy, targets in self.steps:
            if strategy.fallback != want_fallback or not strategy.applicable(source):
                continue
            ctx = StrategyContext(
                targets=targets, claimed=claimed, policy=policy, dominant=dominant or {}
            )
            found = strategy.attempt(source, ctx)
            if found is not None:
                return found
        return None


def default_plans(settings: Settings, tables: LookupTables | None = None) -> tuple[PhasePlan, ...]:
    """Gateway payments vs. the ledger, bank deposits vs. both, bank debits vs. payables."""

    parser = DescriptionParser(tables)
    ledger = settings.ledger_sources
    gateways = settings.gateway_sources
    payables = settings.payable_sources
    gateway_orders = PhasePlan(
        name="gateway-orders",
        sources=gateways,
        steps=(
            CascadeStep(ExactIdentifierStrategy(), ledger),
            CascadeStep(EmailAmountStrategy(), ledger),
            CascadeStep(EmailDateStrategy(), ledger),
            CascadeStep(NameAmountStrategy(), ledger),
            CascadeStep(NameDateStrategy(), ledger),
            CascadeStep(AmountDateStrategy(), ledger),
        ),
    )
    bank_deposits = PhasePlan(
        name="bank-deposits",
        sources=settings.bank_sources,
        direction=Direction.INFLOW,
        steps=(
            CascadeStep(InternalTransferStrategy(parser)),
            CascadeStep(DescriptionIdentifierStrategy(), ledger),
            CascadeStep(AggregateWindowStrategy(parser), gateways),
            CascadeStep(AmountDateStrategy(), gateways + ledger),
            CascadeStep(ExtractedNameStrategy(parser), ledger),
            CascadeStep(SourceDominantStrategy(parser)),
            CascadeStep(CatchAllStrategy(settings.default_classification)),
        ),
    )
    # Unexplained debits stay unmatched: there is no fallback label for spend.
    bank_debits = PhasePlan(
        name="bank-debits",
        sources=settings.bank_sources,
        direction=Direction.OUTFLOW,
        steps=(
            CascadeStep(InternalTransferStrategy(parser)),
            CascadeStep(DescriptionIdentifierStrategy(), payables),
            CascadeStep(ExtractedNameStrategy(parser), payables),
            CascadeStep(AmountDateStrategy(), payables),
            CascadeStep(AggregateWindowStrategy(parser), payables),
        ),
    )
    return gateway_orders, bank_deposits, bank_debits


__all__ = ["Cascade", "CascadeStep", "Direction", "PhasePlan", "Stage", "default_plans"]
