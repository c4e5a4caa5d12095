"""Run configuration: matching tolerances and environment-driven settings.

``MatchPolicy`` holds the tolerances strategies read; ``MatchPolicy.widened()``
derives the looser second-pass policy. ``load_settings()`` reads the
``LEDGER_RECON_*`` environment variables (the CLI loads ``./.env`` first).
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, replace
from decimal import Decimal

from .logging_setup import get_logger

_logger = get_logger("ledger_recon.config")


@dataclass(frozen=True, slots=True)
class MatchPolicy:
    amount_floor: Decimal = Decimal("1.00")
    amount_pct: Decimal = Decimal("0.02")
    identity_window_days: int = 10
    nearest_date_max_days: int = 365
    name_window_days: int = 10
    name_similarity: float = 0.85
    amount_date_tolerance: Decimal = Decimal("0.50")
    amount_date_window_days: int = 3
    reference_amount_tolerance: Decimal = Decimal("0.01")
    aggregate_window_days: int = 7
    aggregate_floor: Decimal = Decimal("10.00")
    aggregate_pct: Decimal = Decimal("0.05")
    extraction_confidence_cap: float = 0.55
    confidence_scale: float = 1.0
    label: str = "standard"

    def amount_tolerance(self, amount: Decimal) -> Decimal:
        return max(self.amount_floor, abs(amount) * self.amount_pct)

    def aggregate_tolerance(self, amount: Decimal) -> Decimal:
        return max(self.aggregate_floor, abs(amount) * self.aggregate_pct)

    def scaled(self, confidence: float) -> float:
        return round(max(0.0, min(1.0, confidence * self.confidence_scale)), 4)

    def widened(self) -> MatchPolicy:
        """Second-pass policy: wider amount and date tolerances, lower confidence."""

        return replace(
            self,
            amount_floor=self.amount_floor * 2,
            amount_pct=self.amount_pct * Decimal("2.5"),
            identity_window_days=self.identity_window_days * 3,
            name_window_days=self.name_window_days * 3,
            name_similarity=max(0.0, self.name_similarity - 0.05),
            amount_date_tolerance=self.amount_date_tolerance * 2,
            amount_date_window_days=self.amount_date_window_days * 2 + 1,
            aggregate_window_days=self.aggregate_window_days + 3,
            confidence_scale=self.confidence_scale * 0.9,
            label="widened",
        )


def _env_int(env: Mapping[str, str], name: str, default: int, *, minimum: int = 1) -> int:
    raw = env.get(name)
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        _logger.warning("config:invalid_int name=%s value=%r default=%d", name, raw, default)
        return default
    return value if value >= minimum else default


def _env_tags(env: Mapping[str, str], name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = env.get(name)
    if raw is None:
        return default
    tags = tuple(t.strip() for t in raw.split(",") if t.strip())
    return tags or default


@dataclass(frozen=True, slots=True)
class Settings:
    database_url: str | None = None
    page_size: int = 1000
    write_batch_size: int = 50
    write_concurrency: int = 8
    write_retries: int = 3
    fetch_concurrency: int = 4
    tables_path: str | None = None
    gateway_sources: tuple[str, ...] = ("stripe", "gocardless", "braintree", "paypal")
    ledger_sources: tuple[str, ...] = ("invoices",)
    bank_sources: tuple[str, ...] = ("bank",)
    payable_sources: tuple[str, ...] = ("payables",)
    default_classification: str = "other-income"
    target_margin_days: int = 45


def load_settings(env: Mapping[str, str] | None = None) -> Settings:
    """Build ``Settings`` from ``env`` (defaults to ``os.environ``)."""

    env = os.environ if env is None else env
    base = Settings()
    return Settings(
        database_url=env.get("DATABASE_URL") or None,
        page_size=_env_int(env, "LEDGER_RECON_PAGE_SIZE", base.page_size),
        write_batch_size=_env_int(env, "LEDGER_RECON_WRITE_BATCH_SIZE", base.write_batch_size),
        write_concurrency=_env_int(env, "LEDGER_RECON_WRITE_CONCURRENCY", base.write_concurrency),
        write_retries=_env_int(env, "LEDGER_RECON_WRITE_RETRIES", base.write_retries),
        fetch_concurrency=_env_int(env, "LEDGER_RECON_FETCH_CONCURRENCY", base.fetch_concurrency),
        tables_path=env.get("LEDGER_RECON_TABLES_PATH") or None,
        gateway_sources=_env_tags(env, "LEDGER_RECON_GATEWAY_SOURCES", base.gateway_sources),
        ledger_sources=_env_tags(env, "LEDGER_RECON_LEDGER_SOURCES", base.ledger_sources),
        bank_sources=_env_tags(env, "LEDGER_RECON_BANK_SOURCES", base.bank_sources),
        payable_sources=_env_tags(env, "LEDGER_RECON_PAYABLE_SOURCES", base.payable_sources),
        default_classification=(
            env.get("LEDGER_RECON_DEFAULT_CLASSIFICATION") or base.default_classification
        ),
        target_margin_days=_env_int(
            env, "LEDGER_RECON_TARGET_MARGIN_DAYS", base.target_margin_days, minimum=0
        ),
    )


__all__ = ["MatchPolicy", "Settings", "load_settings"]
