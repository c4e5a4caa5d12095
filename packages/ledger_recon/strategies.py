"""Matching strategies for the reconciliation cascade.

Every strategy answers one question for one source record: is there an
acceptable, unclaimed target (or, for classification-only fallbacks, an
acceptable label)? ``attempt`` returns at most one ``MatchCandidate``; when
several targets qualify the one with the smallest combined amount/date
distance wins, then the lowest target id, so results never depend on
collection order.

Strategies declare the record capabilities they need (``requires``); the
cascade skips a strategy whose requirements the record lacks. Records with an
unparseable amount or date simply yield no candidate from strategies that
need those fields.
"""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from collections import Counter
from collections.abc import Iterable, Mapping, Set
from dataclasses import dataclass, field, replace
from datetime import date
from decimal import Decimal
from typing import ClassVar

from .config import MatchPolicy
from .extraction import DescriptionParser
from .index import IndexGroup
from .models import Capability, MatchCandidate, TransactionRecord

# Per-day weight in the combined tie-break score.
_DAY_WEIGHT = 0.02

_REFERENCE_TOKEN_RE = re.compile(r"[A-Za-z0-9][A-Za-z0-9._-]*[A-Za-z0-9]")

INTERNAL_TRANSFER = "internal-transfer"


@dataclass(frozen=True, slots=True)
class StrategyContext:
    """Everything a strategy may read while attempting one record."""

    targets: IndexGroup | None
    claimed: Set[str]
    policy: MatchPolicy
    dominant: Mapping[str, str] = field(default_factory=dict)


def _days_between(a: date | None, b: date | None) -> int | None:
    if a is None or b is None:
        return None
    return abs((a - b).days)


def _amount_gap(source: TransactionRecord, target: TransactionRecord) -> Decimal | None:
    if source.amount is None or target.amount is None:
        return None
    return abs(abs(source.amount) - abs(target.amount))


def _combined_score(amount_gap: Decimal, amount: Decimal, days: int) -> float:
    base = abs(amount) if amount else Decimal(1)
    return float(amount_gap / max(base, Decimal(1))) + days * _DAY_WEIGHT


def _available(
    records: Iterable[TransactionRecord], source: TransactionRecord, claimed: Set[str]
) -> list[TransactionRecord]:
    out: list[TransactionRecord] = []
    seen: set[str] = set()
    for rec in records:
        if rec.id in seen or rec.id == source.id or rec.id in claimed:
            continue
        seen.add(rec.id)
        out.append(rec)
    return out


def _majority(labels: Iterable[str | None]) -> str | None:
    counts = Counter(label for label in labels if label)
    if not counts:
        return None
    top = max(counts.values())
    return min(label for label, n in counts.items() if n == top)


class Strategy(ABC):
    method: ClassVar[str]
    requires: ClassVar[frozenset[Capability]] = frozenset()
    needs_targets: ClassVar[bool] = True
    needs_dates: ClassVar[bool] = False
    fallback: ClassVar[bool] = False

    def applicable(self, source: TransactionRecord) -> bool:
        return self.requires <= source.capabilities

    @abstractmethod
    def attempt(self, source: TransactionRecord, ctx: StrategyContext) -> MatchCandidate | None:
        """Return the best acceptable candidate for ``source`` or ``None``."""

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"

    def _targets(self, ctx: StrategyContext) -> IndexGroup:
        if ctx.targets is None:
            raise ValueError(f"{self!r} was run without a target collection")
        return ctx.targets

    def _linked(
        self,
        source: TransactionRecord,
        target: TransactionRecord,
        *,
        confidence: float,
        score: float,
        rationale: str,
        method: str | None = None,
    ) -> MatchCandidate:
        return MatchCandidate(
            source_id=source.id,
            target_ids=(target.id,),
            method=method or self.method,
            confidence=confidence,
            score=score,
            rationale=rationale,
            classification=target.classification,
            attributes={"matched_external_id": target.external_id or target.id},
        )


def _best(scored: list[tuple[float, str, MatchCandidate]]) -> MatchCandidate | None:
    if not scored:
        return None
    scored.sort(key=lambda t: (t[0], t[1]))
    return scored[0][2]


# ---------------------------------------------------------------------------
# Identifier
# ---------------------------------------------------------------------------


class ExactIdentifierStrategy(Strategy):
    """Source external id equals a target id or external id (trimmed, case-insensitive).

    Falls back to the segment before the first ``-`` (processor order ids often
    carry an attempt suffix) at slightly lower confidence.
    """

    method = "exact_identifier"
    requires = frozenset({Capability.EXTERNAL_ID})
    _MIN_PREFIX_LEN = 4

    def _scan(
        self, source: TransactionRecord, ctx: StrategyContext, key: str, confidence: float, method: str
    ) -> MatchCandidate | None:
        targets = self._targets(ctx)
        scored: list[tuple[float, str, MatchCandidate]] = []
        for target in _available(targets.by_identifier(key), source, ctx.claimed):
            gap = _amount_gap(source, target) or Decimal(0)
            days = _days_between(source.date, target.date) or 0
            score = _combined_score(gap, source.amount or Decimal(0), days)
            cand = self._linked(
                source,
                target,
                confidence=confidence,
                score=score,
                rationale=f"identifier {key!r} equals target {target.id}",
                method=method,
            )
            scored.append((score, target.id, cand))
        return _best(scored)

    def attempt(self, source: TransactionRecord, ctx: StrategyContext) -> MatchCandidate | None:
        ext = (source.external_id or "").strip()
        if not ext:
            return None
        found = self._scan(source, ctx, ext, 1.0, self.method)
        if found is not None:
            return found
        head = ext.split("-", 1)[0].strip()
        if head != ext and len(head) >= self._MIN_PREFIX_LEN:
            return self._scan(source, ctx, head, 0.95, "identifier_prefix")
        return None


class DescriptionIdentifierStrategy(Strategy):
    """A target's identifier is quoted in the source description.

    Bank rows often carry the invoice or order number they settle
    (``"PAGO FRA INV-1042"``). Only tokens containing a digit are looked up, and
    the amounts must agree within ``reference_amount_tolerance``; the date only
    breaks ties.
    """

    method = "description_identifier"
    requires = frozenset({Capability.FREE_TEXT})
    _MIN_TOKEN_LEN = 3

    def tokens(self, description: str) -> list[str]:
        found = (
            tok
            for tok in _REFERENCE_TOKEN_RE.findall(description)
            if len(tok) >= self._MIN_TOKEN_LEN and any(ch.isdigit() for ch in tok)
        )
        return list(dict.fromkeys(found))

    def attempt(self, source: TransactionRecord, ctx: StrategyContext) -> MatchCandidate | None:
        targets = self._targets(ctx)
        if source.amount is None:
            return None
        policy = ctx.policy
        scored: list[tuple[float, str, MatchCandidate]] = []
        for token in self.tokens(source.description):
            for target in _available(targets.by_identifier(token), source, ctx.claimed):
                gap = _amount_gap(source, target)
                if gap is None or gap > policy.reference_amount_tolerance:
                    continue
                days = _days_between(source.date, target.effective_date) or 0
                score = _combined_score(gap, source.amount, days)
                cand = self._linked(
                    source,
                    target,
                    confidence=policy.scaled(0.90),
                    score=score,
                    rationale=f"description quotes {token!r} of target {target.id}; gap {gap}",
                )
                scored.append((score, target.id, cand))
        return _best(scored)


# ---------------------------------------------------------------------------
# Identity (email / name) keyed strategies
# ---------------------------------------------------------------------------


class _AmountWithinWindow(Strategy):
    """Closest amount within tolerance and within a date window."""

    base_confidence: ClassVar[float]

    @abstractmethod
    def _window(self, policy: MatchPolicy) -> int:
        """Maximum days between source and target dates."""

    def _pick(
        self,
        source: TransactionRecord,
        pool: Iterable[TransactionRecord],
        ctx: StrategyContext,
        *,
        base_confidence: float,
        label: str,
    ) -> MatchCandidate | None:
        if source.amount is None or source.date is None:
            return None
        policy = ctx.policy
        tolerance = policy.amount_tolerance(source.amount)
        window = self._window(policy)
        scored: list[tuple[float, str, MatchCandidate]] = []
        for target in _available(pool, source, ctx.claimed):
            gap = _amount_gap(source, target)
            days = _days_between(source.date, target.date)
            if gap is None or days is None or gap > tolerance or days > window:
                continue
            # Confidence degrades by up to 10% as the gap approaches the tolerance.
            used = float(gap / tolerance) if tolerance else 0.0
            confidence = policy.scaled(base_confidence * (1.0 - 0.1 * used))
            score = _combined_score(gap, source.amount, days)
            cand = self._linked(
                source,
                target,
                confidence=confidence,
                score=score,
                rationale=f"{label}; amount gap {gap} <= {tolerance:.2f}; {days}d apart",
            )
            scored.append((score, target.id, cand))
        return _best(scored)


class _NearestDate(Strategy):
    """Nearest date within the policy's maximum window, ignoring amount."""

    def _pick_nearest(
        self,
        source: TransactionRecord,
        pool: Iterable[TransactionRecord],
        ctx: StrategyContext,
        *,
        base_confidence: float,
        label: str,
    ) -> MatchCandidate | None:
        if source.date is None:
            return None
        policy = ctx.policy
        window = policy.nearest_date_max_days
        scored: list[tuple[float, str, MatchCandidate]] = []
        for target in _available(pool, source, ctx.claimed):
            days = _days_between(source.date, target.date)
            if days is None or days > window:
                continue
            gap = _amount_gap(source, target) or Decimal(0)
            confidence = policy.scaled(base_confidence * (1.0 - 0.5 * days / max(window, 1)))
            score = days + _combined_score(gap, source.amount or Decimal(0), 0)
            cand = self._linked(
                source,
                target,
                confidence=confidence,
                score=score,
                rationale=f"{label}; nearest date {days}d apart",
            )
            scored.append((score, target.id, cand))
        return _best(scored)


class EmailAmountStrategy(_AmountWithinWindow):
    method = "email_amount"
    requires = frozenset({Capability.EMAIL})
    base_confidence = 0.90

    def _window(self, policy: MatchPolicy) -> int:
        return policy.identity_window_days

    def attempt(self, source: TransactionRecord, ctx: StrategyContext) -> MatchCandidate | None:
        targets = self._targets(ctx)
        return self._pick(
            source,
            targets.by_email(source.customer_email),
            ctx,
            base_confidence=self.base_confidence,
            label="same email",
        )


class EmailDateStrategy(_NearestDate):
    method = "email_date"
    requires = frozenset({Capability.EMAIL})

    def attempt(self, source: TransactionRecord, ctx: StrategyContext) -> MatchCandidate | None:
        targets = self._targets(ctx)
        return self._pick_nearest(
            source,
            targets.by_email(source.customer_email),
            ctx,
            base_confidence=0.75,
            label="same email",
        )


class NameAmountStrategy(_AmountWithinWindow):
    """Exact normalized name first, then token-bounded fuzzy names."""

    method = "name_amount"
    requires = frozenset({Capability.NAME})
    base_confidence = 0.80
    fuzzy_confidence: ClassVar[float] = 0.72

    def _window(self, policy: MatchPolicy) -> int:
        return policy.name_window_days

    def match_name(
        self, source: TransactionRecord, name: str, ctx: StrategyContext
    ) -> MatchCandidate | None:
        targets = self._targets(ctx)
        exact = self._pick(
            source,
            targets.by_name(name),
            ctx,
            base_confidence=self.base_confidence,
            label="same name",
        )
        if exact is not None:
            return exact
        return self._pick(
            source,
            targets.similar_names(name, ctx.policy.name_similarity),
            ctx,
            base_confidence=self.fuzzy_confidence,
            label="similar name",
        )

    def attempt(self, source: TransactionRecord, ctx: StrategyContext) -> MatchCandidate | None:
        return self.match_name(source, source.customer_name or "", ctx)


class NameDateStrategy(_NearestDate):
    method = "name_date"
    requires = frozenset({Capability.NAME})

    def match_name(
        self, source: TransactionRecord, name: str, ctx: StrategyContext
    ) -> MatchCandidate | None:
        targets = self._targets(ctx)
        exact = self._pick_nearest(
            source, targets.by_name(name), ctx, base_confidence=0.65, label="same name"
        )
        if exact is not None:
            return exact
        return self._pick_nearest(
            source,
            targets.similar_names(name, ctx.policy.name_similarity),
            ctx,
            base_confidence=0.60,
            label="similar name",
        )

    def attempt(self, source: TransactionRecord, ctx: StrategyContext) -> MatchCandidate | None:
        return self.match_name(source, source.customer_name or "", ctx)


# ---------------------------------------------------------------------------
# Amount / date strategies
# ---------------------------------------------------------------------------


class AmountDateStrategy(Strategy):
    """Near-exact amount (rounded-amount neighborhood) within a short date window."""

    method = "amount_date"

    def attempt(self, source: TransactionRecord, ctx: StrategyContext) -> MatchCandidate | None:
        targets = self._targets(ctx)
        if source.amount is None or source.date is None:
            return None
        policy = ctx.policy
        scored: list[tuple[float, str, MatchCandidate]] = []
        for target in _available(targets.by_amount(source.amount), source, ctx.claimed):
            gap = _amount_gap(source, target)
            days = _days_between(source.date, target.effective_date)
            if gap is None or days is None:
                continue
            if gap > policy.amount_date_tolerance or days > policy.amount_date_window_days:
                continue
            score = _combined_score(gap, source.amount, days)
            cand = self._linked(
                source,
                target,
                confidence=policy.scaled(0.70 - 0.03 * days),
                score=score,
                rationale=f"amount gap {gap} within {policy.amount_date_tolerance}; {days}d apart",
            )
            scored.append((score, target.id, cand))
        return _best(scored)


class AggregateWindowStrategy(Strategy):
    """One lump deposit equals one payout batch of unclaimed target transactions.

    Targets are batched per settlement day, source tag and merchant account,
    so payouts from different gateways (or accounts) settling on the same day
    are never summed together. Each day within +/- ``aggregate_window_days``
    of the source date is tried; among batches whose net total is within
    tolerance, batches of the gateway family the deposit names come first,
    then the smallest combined amount/date distance, then the batch key. Every
    transaction of the winning batch is attributed to the deposit.
    """

    method = "aggregate_window"
    needs_dates = True

    def __init__(self, parser: DescriptionParser | None = None) -> None:
        self.parser = parser or DescriptionParser()

    def _named_family(self, source: TransactionRecord) -> str | None:
        return self.parser.gateway_family(
            source.attributes.payment_source
        ) or self.parser.gateway_family(source.description)

    @staticmethod
    def _batches(
        members: Iterable[TransactionRecord],
    ) -> dict[tuple[str, str], list[TransactionRecord]]:
        batches: dict[tuple[str, str], list[TransactionRecord]] = {}
        for t in members:
            key = (t.source, t.attributes.merchant_account_id or "")
            batches.setdefault(key, []).append(t)
        return batches

    def attempt(self, source: TransactionRecord, ctx: StrategyContext) -> MatchCandidate | None:
        targets = self._targets(ctx)
        if source.amount is None or source.date is None:
            return None
        policy = ctx.policy
        wanted = abs(source.amount)
        tolerance = policy.aggregate_tolerance(source.amount)
        family = self._named_family(source)
        ranked: list[tuple[tuple[int, float, str, str], int, list[TransactionRecord], Decimal]] = []
        for offset, day in targets.days_around(source.date, policy.aggregate_window_days):
            members = [
                t
                for t in _available(targets.on_date(day), source, ctx.claimed)
                if t.amount is not None
            ]
            for (tag, account), batch in self._batches(members).items():
                total = abs(sum((t.amount for t in batch), Decimal(0)))
                gap = abs(total - wanted)
                if gap > tolerance:
                    continue
                other_family = family is not None and self.parser.gateway_family(tag) != family
                score = _combined_score(gap, wanted, abs(offset))
                ranked.append(((int(other_family), score, tag, account), offset, batch, gap))
        if not ranked:
            return None
        rank, offset, members, gap = min(ranked, key=lambda r: r[0])
        score = rank[1]
        members.sort(key=lambda t: (t.effective_date or source.date, t.id))
        ids = tuple(t.id for t in members)
        return MatchCandidate(
            source_id=source.id,
            target_ids=ids,
            method=self.method,
            confidence=policy.scaled(0.80 - 0.02 * abs(offset)),
            score=score,
            rationale=(
                f"{len(ids)} {rank[2]} transactions settled {offset:+d}d from deposit; "
                f"gap {gap} <= {tolerance:.2f}"
            ),
            classification=_majority(t.classification for t in members),
            attributes={"matched_target_ids": list(ids)},
        )


# ---------------------------------------------------------------------------
# Free-text strategies
# ---------------------------------------------------------------------------


class InternalTransferStrategy(Strategy):
    """Own-account movements are classified without a counterpart link."""

    method = "internal_transfer"
    requires = frozenset({Capability.FREE_TEXT})
    needs_targets = False

    def __init__(self, parser: DescriptionParser | None = None) -> None:
        self.parser = parser or DescriptionParser()

    def attempt(self, source: TransactionRecord, ctx: StrategyContext) -> MatchCandidate | None:
        if not self.parser.is_internal_transfer(source.description):
            return None
        return MatchCandidate(
            source_id=source.id,
            target_ids=(),
            method=self.method,
            confidence=0.90,
            rationale="description names an own-account transfer",
            classification=INTERNAL_TRANSFER,
        )


class ExtractedNameStrategy(Strategy):
    """Pull a counterparty name out of the description and retry the name strategies."""

    method = "extracted_name"
    requires = frozenset({Capability.FREE_TEXT})

    def __init__(
        self,
        parser: DescriptionParser | None = None,
        *,
        name_amount: NameAmountStrategy | None = None,
        name_date: NameDateStrategy | None = None,
    ) -> None:
        self.parser = parser or DescriptionParser()
        self.inner = (name_amount or NameAmountStrategy(), name_date or NameDateStrategy())

    def attempt(self, source: TransactionRecord, ctx: StrategyContext) -> MatchCandidate | None:
        extracted = self.parser.extract_name(source.description)
        if extracted is None:
            return None
        cap = ctx.policy.scaled(ctx.policy.extraction_confidence_cap)
        for inner in self.inner:
            found = inner.match_name(source, extracted.name, ctx)
            if found is None:
                continue
            return replace(
                found,
                method=self.method,
                confidence=min(found.confidence, cap),
                rationale=f"{extracted.method} name {extracted.name!r}; {found.rationale}",
                attributes={**found.attributes, "extracted_name": extracted.name},
            )
        return None


# ---------------------------------------------------------------------------
# Fallbacks
# ---------------------------------------------------------------------------


class SourceDominantStrategy(Strategy):
    """Assign the classification most often seen for the record's gateway family."""

    method = "source_dominant"
    needs_targets = False
    fallback = True

    def __init__(self, parser: DescriptionParser | None = None) -> None:
        self.parser = parser or DescriptionParser()

    def family_of(self, source: TransactionRecord) -> str | None:
        return self.parser.gateway_family(
            source.attributes.payment_source
        ) or self.parser.gateway_family(source.description)

    def attempt(self, source: TransactionRecord, ctx: StrategyContext) -> MatchCandidate | None:
        family = self.family_of(source)
        if family is None:
            return None
        classification = ctx.dominant.get(family)
        if classification is None:
            return None
        return MatchCandidate(
            source_id=source.id,
            target_ids=(),
            method=self.method,
            confidence=0.30,
            rationale=f"dominant classification for {family} records",
            classification=classification,
        )


class CatchAllStrategy(Strategy):
    method = "catch_all"
    needs_targets = False
    fallback = True

    def __init__(self, classification: str) -> None:
        if not classification:
            raise ValueError("catch-all classification must be non-empty")
        self.classification = classification

    def __repr__(self) -> str:
        return f"CatchAllStrategy({self.classification!r})"

    def attempt(self, source: TransactionRecord, ctx: StrategyContext) -> MatchCandidate | None:
        return MatchCandidate(
            source_id=source.id,
            target_ids=(),
            method=self.method,
            confidence=0.05,
            rationale="no other strategy accepted the record",
            classification=self.classification,
        )


__all__ = [
    "INTERNAL_TRANSFER",
    "AggregateWindowStrategy",
    "AmountDateStrategy",
    "CatchAllStrategy",
    "DescriptionIdentifierStrategy",
    "EmailAmountStrategy",
    "EmailDateStrategy",
    "ExactIdentifierStrategy",
    "ExtractedNameStrategy",
    "InternalTransferStrategy",
    "NameAmountStrategy",
    "NameDateStrategy",
    "SourceDominantStrategy",
    "Strategy",
    "StrategyContext",
]
