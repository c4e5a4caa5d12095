"""Structured run report.

The report is the only user-visible output of a run. It keeps three triage
buckets apart: high-confidence automatic matches, low-confidence fallback
matches that need review, and writes that failed.
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, computed_field


class SourceTotals(BaseModel):
    model_config = ConfigDict(extra="forbid")

    in_scope: int = 0
    previously_matched: int = 0
    matched_high: int = 0
    matched_fallback: int = 0
    unmatched: int = 0

    @computed_field  # type: ignore[prop-decorator]
    @property
    def coverage(self) -> float:
        return _ratio(self.previously_matched + self.matched_high + self.matched_fallback, self.in_scope)


class PhaseSummary(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str
    sources: list[str]
    considered: int = 0
    matched_by_pass: dict[str, int] = Field(default_factory=dict)


class WriteTotals(BaseModel):
    model_config = ConfigDict(extra="forbid")

    planned: int = 0
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    failed_ids: list[str] = Field(default_factory=list)


def _ratio(num: int, den: int) -> float:
    return round(num / den, 4) if den else 0.0


class RunReport(BaseModel):
    model_config = ConfigDict(extra="forbid")

    mode: str
    state: str = "pending"
    started_at: datetime
    finished_at: datetime | None = None
    phases: list[PhaseSummary] = Field(default_factory=list)
    sources: dict[str, SourceTotals] = Field(default_factory=dict)
    strategies: dict[str, int] = Field(default_factory=dict)
    writes: WriteTotals = Field(default_factory=WriteTotals)
    fetch_failures: dict[str, str] = Field(default_factory=dict)
    skipped_phases: dict[str, str] = Field(default_factory=dict)

    def totals(self) -> SourceTotals:
        out = SourceTotals()
        for t in self.sources.values():
            out.in_scope += t.in_scope
            out.previously_matched += t.previously_matched
            out.matched_high += t.matched_high
            out.matched_fallback += t.matched_fallback
            out.unmatched += t.unmatched
        return out

    @computed_field  # type: ignore[prop-decorator]
    @property
    def coverage(self) -> float:
        return self.totals().coverage

    @computed_field  # type: ignore[prop-decorator]
    @property
    def ok(self) -> bool:
        """False when a run-level (non per-item) error occurred."""

        return not self.fetch_failures

    def render_text(self) -> str:
        total = self.totals()
        lines = [
            f"Reconciliation report ({self.mode}, state={self.state})",
            f"  coverage: {self.coverage:.1%} of {total.in_scope} records in scope",
            f"  matched automatically (high confidence): {total.matched_high}",
            f"  matched via fallback/catch-all (needs review): {total.matched_fallback}",
            f"  previously matched (skipped): {total.previously_matched}",
            f"  unmatched: {total.unmatched}",
            (
                f"  writes: planned={self.writes.planned} attempted={self.writes.attempted} "
                f"succeeded={self.writes.succeeded} failed={self.writes.failed}"
            ),
        ]
        if self.writes.failed_ids:
            lines.append("  failed to write: " + ", ".join(self.writes.failed_ids))
        if self.sources:
            lines.append("  per source:")
            for tag in sorted(self.sources):
                t = self.sources[tag]
                lines.append(
                    f"    {tag}: in_scope={t.in_scope} high={t.matched_high} "
                    f"fallback={t.matched_fallback} previous={t.previously_matched} "
                    f"unmatched={t.unmatched} coverage={t.coverage:.1%}"
                )
        if self.strategies:
            lines.append("  per strategy:")
            for method, n in sorted(self.strategies.items(), key=lambda kv: (-kv[1], kv[0])):
                lines.append(f"    {method}: {n}")
        for tag, err in sorted(self.fetch_failures.items()):
            lines.append(f"  FETCH FAILED {tag}: {err}")
        for phase, why in sorted(self.skipped_phases.items()):
            lines.append(f"  skipped phase {phase}: {why}")
        return "\n".join(lines)


__all__ = ["PhaseSummary", "RunReport", "SourceTotals", "WriteTotals"]
