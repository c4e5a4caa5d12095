from __future__ import annotations

from datetime import UTC, date, datetime

import pytest

from ledger_recon.cascade import CascadeStep, PhasePlan, default_plans
from ledger_recon.config import Settings
from ledger_recon.models import MatchCandidate, MatchState
from ledger_recon.orchestrator import AcceptedMatch, Reconciler, RunMode, RunScope, RunState
from ledger_recon.store import DateRange, FetchError, InMemoryStore
from ledger_recon.strategies import EmailAmountStrategy, ExactIdentifierStrategy

from tests.helpers.records import build_fixture, mk_record

_NOW = datetime(2024, 6, 1, 12, 0, tzinfo=UTC)


def _clock() -> datetime:
    return _NOW


def _gateway_plan(name: str = "gateway-orders", sources: tuple[str, ...] = ("stripe",)) -> PhasePlan:
    return PhasePlan(
        name=name,
        sources=sources,
        steps=(
            CascadeStep(ExactIdentifierStrategy(), ("invoices",)),
            CascadeStep(EmailAmountStrategy(), ("invoices",)),
        ),
    )


def _reconciler(store: InMemoryStore, plans=None, **kwargs) -> Reconciler:
    return Reconciler(store, plans or [_gateway_plan()], clock=_clock, **kwargs)


def _snapshot(store: InMemoryStore) -> dict[str, tuple[dict, MatchState | None]]:
    return {r.id: (r.attributes.as_bag(), r.match) for r in store.all()}


class _FailingStore(InMemoryStore):
    def __init__(self, records, failing: set[str]) -> None:
        super().__init__(records)
        self.failing = failing

    def fetch(self, source, date_range=None):
        if source in self.failing:
            raise FetchError(source, "connection reset")
        return super().fetch(source, date_range)


# ---------------------------------------------------------------------------
# Claims
# ---------------------------------------------------------------------------


def test_a_target_is_never_consumed_twice() -> None:
    store = InMemoryStore(
        [
            mk_record("inv-1", "invoices", "100.00", "2024-03-10", customer_email="a@x.com"),
            mk_record("s-a", "stripe", "100.00", "2024-03-10", customer_email="a@x.com"),
            mk_record("s-b", "stripe", "100.00", "2024-03-10", customer_email="a@x.com"),
        ]
    )
    rec = _reconciler(store)
    report = rec.run()

    assert [(a.record.id, a.candidate.target_ids) for a in rec.accepted] == [("s-a", ("inv-1",))]
    assert report.sources["stripe"].unmatched == 1


def test_persisted_matches_claim_their_targets() -> None:
    old_match = MatchState(target_id="inv-1", method="email_amount", confidence=0.9, matched_at=_NOW)
    store = InMemoryStore(
        [
            mk_record("inv-1", "invoices", "100.00", "2024-03-10", customer_email="a@x.com"),
            mk_record("s-old", "stripe", "100.00", "2024-03-09", match=old_match),
            mk_record("s-new", "stripe", "100.00", "2024-03-10", customer_email="a@x.com"),
        ]
    )
    rec = _reconciler(store)
    report = rec.run()

    assert rec.accepted == []
    assert report.sources["stripe"].previously_matched == 1
    assert report.sources["stripe"].unmatched == 1


def test_aggregate_member_ids_count_as_claimed() -> None:
    prior = MatchState(target_id="inv-1", method="aggregate_window", confidence=0.8, matched_at=_NOW)
    store = InMemoryStore(
        [
            mk_record("inv-1", "invoices", "50.00", "2024-03-10"),
            mk_record("inv-2", "invoices", "50.00", "2024-03-10", customer_email="a@x.com"),
            mk_record(
                "s-old",
                "stripe",
                "100.00",
                "2024-03-10",
                match=prior,
                attributes={"matched_target_ids": ["inv-1", "inv-2"]},
            ),
            mk_record("s-new", "stripe", "50.00", "2024-03-10", customer_email="a@x.com"),
        ]
    )
    rec = _reconciler(store)
    rec.run()
    assert rec.accepted == []


# ---------------------------------------------------------------------------
# Passes
# ---------------------------------------------------------------------------


def _widening_records():
    return [
        mk_record("inv-1", "invoices", "100.00", "2024-03-10", customer_email="a@x.com"),
        mk_record("inv-2", "invoices", "103.00", "2024-03-10", customer_email="b@x.com"),
        mk_record("s-1", "stripe", "100.00", "2024-03-10", customer_email="a@x.com"),
        mk_record("s-2", "stripe", "100.00", "2024-03-10", customer_email="b@x.com"),
    ]


def test_widened_pass_only_adds_matches() -> None:
    strict = _reconciler(InMemoryStore(_widening_records()), widen=False)
    strict.run()
    wide = _reconciler(InMemoryStore(_widening_records()))
    report = wide.run()

    strict_pairs = {(a.record.id, a.candidate.target_ids) for a in strict.accepted}
    wide_pairs = {(a.record.id, a.candidate.target_ids) for a in wide.accepted}
    assert strict_pairs == {("s-1", ("inv-1",))}
    assert strict_pairs < wide_pairs

    labels = {a.record.id: a.pass_label for a in wide.accepted}
    assert labels == {"s-1": "standard", "s-2": "widened"}
    second = next(a for a in wide.accepted if a.record.id == "s-2")
    assert second.candidate.confidence == pytest.approx(0.7614)
    assert report.phases[0].matched_by_pass == {"standard": 1, "widened": 1, "fallback": 0}


def test_fixture_apply_is_idempotent() -> None:
    store = InMemoryStore(build_fixture())
    first = _reconciler(store, default_plans(Settings())).run(RunMode.APPLY)

    assert first.ok
    assert first.state == RunState.WRITTEN_BACK.value
    assert first.sources["stripe"].in_scope == 30
    assert first.sources["stripe"].matched_high == 30
    # 35 inflows plus 5 card debits with no payable behind them.
    assert first.sources["bank"].in_scope == 40
    assert first.sources["bank"].unmatched == 5
    assert first.coverage == pytest.approx(65 / 70)
    assert [p.name for p in first.phases] == ["gateway-orders", "bank-deposits", "bank-debits"]
    assert first.writes.planned == first.writes.succeeded == 65
    assert first.writes.failed == 0

    after_first = _snapshot(store)
    second = _reconciler(store, default_plans(Settings())).run(RunMode.APPLY)

    assert second.writes.planned == 0
    assert second.sources["stripe"].previously_matched == 30
    assert second.sources["bank"].previously_matched == 35
    assert second.sources["bank"].unmatched == 5
    assert _snapshot(store) == after_first


def test_fixture_fallbacks_are_flagged_for_review() -> None:
    store = InMemoryStore(build_fixture())
    _reconciler(store, default_plans(Settings())).run(RunMode.APPLY)

    deposits = [store.get(f"bank-dep-{i:03d}") for i in range(10)]
    for rec in deposits:
        assert rec is not None and rec.match is not None
        assert rec.match.method == "source_dominant"
        # 20 of the 30 invoices the stripe payments matched are "sales".
        assert rec.classification == "sales"
        assert rec.attributes.needs_review is True

    transfer = store.get("bank-int-000")
    assert transfer is not None and transfer.match is not None
    assert transfer.match.method == "internal_transfer"
    assert transfer.match.target_id is None

    misc = store.get("bank-misc-000")
    assert misc is not None and misc.match is not None
    assert misc.match.method == "catch_all"
    assert misc.classification == "other-income"

    outflow = store.get("bank-out-000")
    assert outflow is not None and outflow.match is None


def test_bank_debits_settle_payable_invoices() -> None:
    store = InMemoryStore(
        [
            mk_record("pay-1", "payables", "250.00", "2024-03-01", external_id="PINV-031"),
            mk_record("pay-2", "payables", "80.00", "2024-03-02", customer_name="Limpiezas Norte"),
            mk_record("pay-3", "payables", "45.10", "2024-03-03"),
            mk_record("b-1", "bank", "-250.00", "2024-03-04", description="PAGO FRA PINV-031"),
            mk_record("b-2", "bank", "-80.00", "2024-03-04", description="TRANSF/LIMPIEZAS NORTE"),
            mk_record("b-3", "bank", "-45.10", "2024-03-04", description="RECIBO"),
            mk_record("b-4", "bank", "-999.00", "2024-03-04", description="CARD PURCHASE"),
        ]
    )
    rec = _reconciler(store, default_plans(Settings()))
    report = rec.run(RunMode.APPLY)

    found = {a.record.id: (a.candidate.method, a.candidate.target_ids) for a in rec.accepted}
    assert found == {
        "b-1": ("description_identifier", ("pay-1",)),
        "b-2": ("extracted_name", ("pay-2",)),
        "b-3": ("amount_date", ("pay-3",)),
    }
    assert report.sources["bank"].in_scope == 4
    assert report.sources["bank"].unmatched == 1
    stored = store.get("b-1")
    assert stored is not None and stored.match is not None
    assert stored.match.target_id == "pay-1"
    assert stored.match.confidence == pytest.approx(0.90)


def test_write_back_merges_into_existing_attributes() -> None:
    store = InMemoryStore(
        [
            mk_record(
                "inv-1",
                "invoices",
                "100.00",
                "2024-03-10",
                external_id="INV-1",
                attributes={"classification": "sales"},
            ),
            mk_record(
                "s-1",
                "stripe",
                "100.00",
                "2024-03-10",
                external_id="INV-1",
                attributes={"payment_method": "card", "custom_flag": "keep-me"},
            ),
        ]
    )
    report = _reconciler(store).run(RunMode.APPLY)

    assert report.writes.succeeded == 1
    rec = store.get("s-1")
    assert rec is not None and rec.match is not None
    assert rec.match == MatchState(
        target_id="inv-1", method="exact_identifier", confidence=1.0, matched_at=_NOW
    )
    bag = rec.attributes.as_bag()
    assert bag["payment_method"] == "card"
    assert bag["custom_flag"] == "keep-me"
    assert bag["classification"] == "sales"
    assert bag["matched_external_id"] == "INV-1"
    assert bag["needs_review"] is False


def test_dry_run_writes_nothing() -> None:
    store = InMemoryStore(build_fixture())
    before = _snapshot(store)
    rec = _reconciler(store, default_plans(Settings()))
    report = rec.run(RunMode.DRY_RUN)

    assert report.state == RunState.DRY_RUN.value
    assert report.writes.planned == len(rec.planned_updates) > 0
    assert report.writes.attempted == 0
    assert store.updates_applied == 0
    assert _snapshot(store) == before


# ---------------------------------------------------------------------------
# Guards and scope
# ---------------------------------------------------------------------------


def test_manual_classification_counts_as_matched() -> None:
    store = InMemoryStore(
        [
            mk_record("inv-1", "invoices", "100.00", "2024-03-10", customer_email="a@x.com"),
            mk_record(
                "s-1",
                "stripe",
                "100.00",
                "2024-03-10",
                customer_email="a@x.com",
                attributes={"classification": "refund"},
            ),
        ]
    )
    rec = _reconciler(store)
    report = rec.run()
    assert rec.accepted == []
    assert report.sources["stripe"].previously_matched == 1


def _reconsider_records(confidence: float):
    weak = MatchState(target_id=None, method="catch_all", confidence=confidence, matched_at=_NOW)
    return [
        mk_record("inv-1", "invoices", "100.00", "2024-03-10", customer_email="a@x.com"),
        mk_record("s-1", "stripe", "100.00", "2024-03-10", customer_email="a@x.com", match=weak),
    ]


def test_reconsider_below_replaces_weaker_matches_only() -> None:
    default = _reconciler(InMemoryStore(_reconsider_records(0.05)))
    default.run()
    assert default.accepted == []

    opted_in = _reconciler(InMemoryStore(_reconsider_records(0.05)), reconsider_below=0.5)
    opted_in.run()
    assert [a.candidate.method for a in opted_in.accepted] == ["email_amount"]

    strong = _reconciler(InMemoryStore(_reconsider_records(0.8)), reconsider_below=0.5)
    strong.run()
    assert strong.accepted == []


def test_reconsider_below_must_be_a_probability() -> None:
    with pytest.raises(ValueError):
        _reconciler(InMemoryStore(), reconsider_below=0.0)


def test_scope_limits_sources_but_not_targets() -> None:
    store = InMemoryStore(
        [
            mk_record("inv-1", "invoices", "100.00", "2024-03-04", customer_email="a@x.com"),
            mk_record("s-in", "stripe", "100.00", "2024-03-10", customer_email="a@x.com"),
            mk_record("s-out", "stripe", "100.00", "2024-04-30", customer_email="a@x.com"),
        ]
    )
    scope = RunScope(date_range=DateRange(date(2024, 3, 5), date(2024, 3, 15)))
    rec = _reconciler(store)
    report = rec.run(RunMode.DRY_RUN, scope)

    assert [(a.record.id, a.candidate.target_ids) for a in rec.accepted] == [("s-in", ("inv-1",))]
    assert report.sources["stripe"].in_scope == 1


def test_source_filter_drops_phases() -> None:
    store = InMemoryStore(
        [
            mk_record("inv-1", "invoices", "100.00", "2024-03-10", customer_email="a@x.com"),
            mk_record("s-1", "stripe", "100.00", "2024-03-10", customer_email="a@x.com"),
        ]
    )
    rec = _reconciler(store)
    report = rec.run(RunMode.DRY_RUN, RunScope(sources=frozenset({"paypal"})))
    assert rec.accepted == []
    assert report.phases == []


# ---------------------------------------------------------------------------
# Failures and state
# ---------------------------------------------------------------------------


def test_fetch_failure_skips_dependent_phases_only() -> None:
    records = [
        mk_record("inv-1", "invoices", "100.00", "2024-03-10", customer_email="a@x.com"),
        mk_record("inv-2", "invoices", "80.00", "2024-03-10", customer_email="b@x.com"),
        mk_record("s-1", "stripe", "100.00", "2024-03-10", customer_email="a@x.com"),
        mk_record("p-1", "paypal", "80.00", "2024-03-10", customer_email="b@x.com"),
    ]
    store = _FailingStore(records, failing={"stripe"})
    plans = [_gateway_plan("stripe-orders", ("stripe",)), _gateway_plan("paypal-orders", ("paypal",))]
    rec = _reconciler(store, plans)
    report = rec.run(RunMode.APPLY)

    assert not report.ok
    assert set(report.fetch_failures) == {"stripe"}
    assert set(report.skipped_phases) == {"stripe-orders"}
    assert [a.record.id for a in rec.accepted] == ["p-1"]
    assert report.writes.succeeded == 1
    assert "FETCH FAILED stripe" in report.render_text()


def test_reconciler_runs_once() -> None:
    rec = _reconciler(InMemoryStore())
    rec.run()
    with pytest.raises(RuntimeError):
        rec.run()


def test_invalid_state_transition_raises() -> None:
    rec = _reconciler(InMemoryStore())
    with pytest.raises(RuntimeError):
        rec._advance(RunState.WRITTEN_BACK)


def test_build_update_for_multi_target_match() -> None:
    rec = _reconciler(InMemoryStore())
    deposit = mk_record("b-1", "bank", "300.00", "2024-03-12")
    cand = MatchCandidate(
        source_id="b-1",
        target_ids=("p1", "p2"),
        method="aggregate_window",
        confidence=0.78,
        rationale="2 transactions settled -1d from deposit",
        classification="sales",
    )
    update = rec.build_update(
        AcceptedMatch(record=deposit, candidate=cand, pass_label="standard", fallback=False), _NOW
    )
    assert update.record_id == "b-1"
    assert update.attributes["matched_target_ids"] == ["p1", "p2"]
    assert update.attributes["classification"] == "sales"
    assert update.attributes["needs_review"] is False
    assert update.match == MatchState(
        target_id="p1", method="aggregate_window", confidence=0.78, matched_at=_NOW
    )
