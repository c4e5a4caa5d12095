"""Reconciliation run: load, index, cascade, aggregate, write back (or not).

A ``Reconciler`` drives one run through an explicit state machine::

    PENDING -> LOADED -> INDEXED -> STRATEGY_PASS* -> AGGREGATED -> WRITTEN_BACK | DRY_RUN

Per phase, every pending source record goes through the linking strategies
with the base policy, then (optionally) once more with the widened policy, and
finally through the fallback strategies. Accepted matches are queued; only
``RunMode.APPLY`` hands them to the ``WriteBackMerger``.

Guards
------
- Records that already carry a match state, or a classification without one
  (set by hand), are counted as previously matched and never re-offered,
  unless ``reconsider_below`` opts records under that confidence back in; a
  reconsidered record only changes when a strictly more confident candidate
  turns up.
- A target id claimed by any accepted or persisted match is never claimed
  again within the run.
- A fetch failure skips the phases that read that collection; the others run.
"""

from __future__ import annotations

import enum
from collections import Counter, defaultdict
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from datetime import date, datetime

from .cascade import Cascade, PhasePlan, Stage
from .config import MatchPolicy, Settings
from .index import IndexGroup, TransactionIndex
from .logging_setup import get_logger
from .merger import WriteBackMerger
from .models import MatchCandidate, MatchState, RecordUpdate, TransactionRecord, utcnow
from .normalizers import NameNormalizer
from .pmap import p_map_settled
from .report import PhaseSummary, RunReport, SourceTotals
from .store import DateRange, TransactionStore
from .tables import LookupTables, default_tables

_logger = get_logger("ledger_recon.orchestrator")


class RunMode(enum.Enum):
    DRY_RUN = "dry-run"
    APPLY = "apply"


class RunState(enum.Enum):
    PENDING = "pending"
    LOADED = "loaded"
    INDEXED = "indexed"
    STRATEGY_PASS = "strategy-pass"
    AGGREGATED = "aggregated"
    WRITTEN_BACK = "written-back"
    DRY_RUN = "dry-run"


_TRANSITIONS: dict[RunState, frozenset[RunState]] = {
    RunState.PENDING: frozenset({RunState.LOADED}),
    RunState.LOADED: frozenset({RunState.INDEXED}),
    RunState.INDEXED: frozenset({RunState.STRATEGY_PASS, RunState.AGGREGATED}),
    RunState.STRATEGY_PASS: frozenset({RunState.STRATEGY_PASS, RunState.AGGREGATED}),
    RunState.AGGREGATED: frozenset({RunState.WRITTEN_BACK, RunState.DRY_RUN}),
    RunState.WRITTEN_BACK: frozenset(),
    RunState.DRY_RUN: frozenset(),
}


@dataclass(frozen=True, slots=True)
class RunScope:
    date_range: DateRange | None = None
    sources: frozenset[str] | None = None

    def includes_source(self, tag: str) -> bool:
        return self.sources is None or tag in self.sources

    def includes_date(self, day: date | None) -> bool:
        return self.date_range is None or self.date_range.contains(day)


@dataclass(frozen=True, slots=True)
class AcceptedMatch:
    record: TransactionRecord
    candidate: MatchCandidate
    pass_label: str
    fallback: bool


def _claims_of(record: TransactionRecord) -> set[str]:
    ids: set[str] = set()
    if record.match is not None and record.match.target_id:
        ids.add(record.match.target_id)
    ids.update(record.attributes.matched_target_ids or ())
    return ids


def _dominant(counts: Mapping[str, Counter[str]]) -> dict[str, str]:
    out: dict[str, str] = {}
    for family, counter in counts.items():
        if not counter:
            continue
        top = max(counter.values())
        out[family] = min(label for label, n in counter.items() if n == top)
    return out


def _record_order(rec: TransactionRecord) -> tuple[date, str]:
    return rec.date or date.max, rec.id


class Reconciler:
    def __init__(
        self,
        store: TransactionStore,
        plans: Sequence[PhasePlan],
        *,
        policy: MatchPolicy | None = None,
        widen: bool = True,
        settings: Settings | None = None,
        tables: LookupTables | None = None,
        normalizer: NameNormalizer | None = None,
        merger: WriteBackMerger | None = None,
        reconsider_below: float | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if reconsider_below is not None and not 0.0 < reconsider_below <= 1.0:
            raise ValueError("reconsider_below must be within (0, 1]")
        self.store = store
        self.plans = tuple(plans)
        self.settings = settings or Settings()
        self.policy = policy or MatchPolicy()
        self.policies = (self.policy, self.policy.widened()) if widen else (self.policy,)
        self.tables = tables or default_tables()
        self.normalizer = normalizer or NameNormalizer(self.tables)
        self.merger = merger or WriteBackMerger(
            store,
            max_attempts=self.settings.write_retries,
            batch_size=self.settings.write_batch_size,
            concurrency=self.settings.write_concurrency,
        )
        self.reconsider_below = reconsider_below
        self._clock = clock
        self.state = RunState.PENDING
        self.accepted: list[AcceptedMatch] = []
        self.planned_updates: list[RecordUpdate] = []

    # ---- state machine ----------------------------------------------------

    def _advance(self, new: RunState) -> None:
        if new not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"invalid run transition {self.state.value} -> {new.value}")
        _logger.debug("orchestrator:state from=%s to=%s", self.state.value, new.value)
        self.state = new

    # ---- stages -----------------------------------------------------------

    def _phases_in_scope(self, scope: RunScope) -> list[tuple[PhasePlan, tuple[str, ...]]]:
        out: list[tuple[PhasePlan, tuple[str, ...]]] = []
        for plan in self.plans:
            sources = tuple(t for t in plan.sources if scope.includes_source(t))
            if sources:
                out.append((plan, sources))
        return out

    def _load(
        self,
        phases: Sequence[tuple[PhasePlan, tuple[str, ...]]],
        scope: RunScope,
        report: RunReport,
    ) -> dict[str, list[TransactionRecord]]:
        tags: dict[str, None] = {}
        for plan, sources in phases:
            for tag in (*sources, *plan.target_tags):
                tags.setdefault(tag, None)
        # Targets may settle days away from the scoped source dates.
        fetch_range = (
            scope.date_range.expanded(self.settings.target_margin_days)
            if scope.date_range is not None
            else None
        )
        settled = p_map_settled(
            list(tags),
            lambda tag: self.store.fetch(tag, fetch_range),
            concurrency=max(1, min(self.settings.fetch_concurrency, len(tags))),
        )
        collections: dict[str, list[TransactionRecord]] = {}
        for s in settled:
            if s.ok:
                collections[s.item] = list(s.value or ())
                _logger.info("orchestrator:loaded source=%s rows=%d", s.item, len(collections[s.item]))
            else:
                report.fetch_failures[s.item] = str(s.error)
                _logger.error(
                    "orchestrator:fetch_failed source=%s error=%s",
                    s.item,
                    s.error.__class__.__name__,
                )
        return collections

    def _build_indices(
        self,
        phases: Sequence[tuple[PhasePlan, tuple[str, ...]]],
        collections: Mapping[str, list[TransactionRecord]],
    ) -> dict[str, TransactionIndex]:
        dated: set[str] = set()
        wanted: dict[str, None] = {}
        for plan, _sources in phases:
            dated.update(plan.dated_target_tags)
            for tag in plan.target_tags:
                wanted.setdefault(tag, None)
        indices: dict[str, TransactionIndex] = {}
        for tag in wanted:
            if tag not in collections:
                continue
            indices[tag] = TransactionIndex(
                collections[tag], normalizer=self.normalizer, with_dates=tag in dated
            )
        return indices

    def _previously_classified(self, rec: TransactionRecord) -> bool:
        if rec.match is None:
            return rec.classification is not None
        return self.reconsider_below is None or rec.match.confidence >= self.reconsider_below

    def _attempt(
        self,
        cascade: Cascade,
        rec: TransactionRecord,
        claimed: set[str],
        policy: MatchPolicy,
        stage: Stage,
        dominant: Mapping[str, str] | None = None,
    ) -> MatchCandidate | None:
        if rec.match is None:
            return cascade.run(rec, claimed=claimed, policy=policy, stage=stage, dominant=dominant)
        # Reconsidered record: its own prior targets are available to it.
        own = _claims_of(rec) & claimed
        claimed.difference_update(own)
        found = cascade.run(rec, claimed=claimed, policy=policy, stage=stage, dominant=dominant)
        if found is not None and found.confidence > rec.match.confidence:
            return found
        claimed.update(own)
        return None

    def _run_phase(
        self,
        plan: PhasePlan,
        sources: tuple[str, ...],
        collections: Mapping[str, list[TransactionRecord]],
        indices: Mapping[str, TransactionIndex],
        scope: RunScope,
        claimed: set[str],
        class_counts: defaultdict[str, Counter[str]],
        report: RunReport,
    ) -> None:
        cascade = Cascade(
            [
                (
                    step.strategy,
                    IndexGroup([indices[t] for t in step.targets]) if step.targets else None,
                )
                for step in plan.steps
            ]
        )
        done = {a.record.id for a in self.accepted}
        population = sorted(
            (
                rec
                for tag in sources
                for rec in collections[tag]
                if rec.id not in done and scope.includes_date(rec.date) and plan.accepts(rec)
            ),
            key=_record_order,
        )
        pending: list[TransactionRecord] = []
        for rec in population:
            totals = report.sources.setdefault(rec.source, SourceTotals())
            totals.in_scope += 1
            if self._previously_classified(rec):
                totals.previously_matched += 1
            else:
                pending.append(rec)

        summary = PhaseSummary(name=plan.name, sources=list(sources), considered=len(pending))
        matched: set[str] = set()

        def _accept(rec: TransactionRecord, cand: MatchCandidate, label: str, fallback: bool) -> None:
            claimed.update(cand.target_ids)
            matched.add(rec.id)
            self.accepted.append(
                AcceptedMatch(record=rec, candidate=cand, pass_label=label, fallback=fallback)
            )
            report.strategies[cand.method] = report.strategies.get(cand.method, 0) + 1
            totals = report.sources[rec.source]
            if fallback:
                totals.matched_fallback += 1
            else:
                totals.matched_high += 1
                family = self.tables.gateway_family(rec.source)
                if family and cand.classification:
                    class_counts[family][cand.classification] += 1

        for policy in self.policies:
            self._advance(RunState.STRATEGY_PASS)
            n = 0
            for rec in pending:
                if rec.id in matched:
                    continue
                cand = self._attempt(cascade, rec, claimed, policy, Stage.LINKING)
                if cand is not None:
                    _accept(rec, cand, policy.label, False)
                    n += 1
            summary.matched_by_pass[policy.label] = n
            _logger.info(
                "orchestrator:pass_done phase=%s pass=%s matched=%d remaining=%d",
                plan.name,
                policy.label,
                n,
                len(pending) - len(matched),
            )

        self._advance(RunState.STRATEGY_PASS)
        dominant = _dominant(class_counts)
        n = 0
        for rec in pending:
            if rec.id in matched:
                continue
            cand = self._attempt(cascade, rec, claimed, self.policy, Stage.FALLBACK, dominant)
            if cand is not None:
                _accept(rec, cand, "fallback", True)
                n += 1
        summary.matched_by_pass["fallback"] = n

        for rec in pending:
            if rec.id not in matched:
                report.sources[rec.source].unmatched += 1
        report.phases.append(summary)
        _logger.info(
            "orchestrator:phase_done phase=%s considered=%d matched=%d unmatched=%d",
            plan.name,
            len(pending),
            len(matched),
            len(pending) - len(matched),
        )

    def build_update(self, accepted: AcceptedMatch, matched_at: datetime) -> RecordUpdate:
        cand = accepted.candidate
        attrs: dict[str, object] = dict(cand.attributes)
        attrs["match_rationale"] = cand.rationale
        attrs["needs_review"] = accepted.fallback
        if cand.classification is not None:
            attrs["classification"] = cand.classification
        if len(cand.target_ids) > 1:
            attrs["matched_target_ids"] = list(cand.target_ids)
        return RecordUpdate(
            record_id=accepted.record.id,
            attributes=attrs,
            match=MatchState(
                target_id=cand.primary_target,
                method=cand.method,
                confidence=cand.confidence,
                matched_at=matched_at,
            ),
        )

    # ---- entry point ------------------------------------------------------

    def run(self, mode: RunMode = RunMode.DRY_RUN, scope: RunScope | None = None) -> RunReport:
        """Execute one run; a ``Reconciler`` instance runs exactly once."""

        if self.state is not RunState.PENDING:
            raise RuntimeError("this Reconciler has already run; create a new one")
        scope = scope or RunScope()
        started = self._clock()
        report = RunReport(mode=mode.value, started_at=started)

        phases = self._phases_in_scope(scope)
        collections = self._load(phases, scope, report)
        self._advance(RunState.LOADED)

        indices = self._build_indices(phases, collections)
        self._advance(RunState.INDEXED)

        claimed: set[str] = set()
        class_counts: defaultdict[str, Counter[str]] = defaultdict(Counter)
        for records in collections.values():
            for rec in records:
                claimed |= _claims_of(rec)
                family = self.tables.gateway_family(rec.source)
                if family and rec.classification:
                    class_counts[family][rec.classification] += 1

        for plan, sources in phases:
            missing = [t for t in (*sources, *plan.target_tags) if t not in collections]
            if missing:
                report.skipped_phases[plan.name] = "fetch failed: " + ", ".join(missing)
                _logger.warning(
                    "orchestrator:phase_skipped phase=%s missing=%s", plan.name, ",".join(missing)
                )
                continue
            self._run_phase(
                plan, sources, collections, indices, scope, claimed, class_counts, report
            )

        self._advance(RunState.AGGREGATED)
        self.planned_updates = [self.build_update(a, started) for a in self.accepted]
        report.writes.planned = len(self.planned_updates)

        if mode is RunMode.APPLY:
            outcomes = self.merger.apply_many(self.planned_updates)
            report.writes.attempted = len(outcomes)
            report.writes.succeeded = sum(1 for o in outcomes if o.ok)
            report.writes.failed = len(outcomes) - report.writes.succeeded
            report.writes.failed_ids = [o.record_id for o in outcomes if not o.ok]
            self._advance(RunState.WRITTEN_BACK)
        else:
            self._advance(RunState.DRY_RUN)

        report.state = self.state.value
        report.finished_at = self._clock()
        _logger.info(
            "orchestrator:run_done mode=%s coverage=%.4f planned=%d succeeded=%d failed=%d "
            "fetch_failures=%d",
            mode.value,
            report.coverage,
            report.writes.planned,
            report.writes.succeeded,
            report.writes.failed,
            len(report.fetch_failures),
        )
        return report


__all__ = ["AcceptedMatch", "Reconciler", "RunMode", "RunScope", "RunState"]
