"""Write-back of accepted matches: merge, never replace.

``WriteBackMerger.apply`` reads the record's current attribute bag, lays the
update on top (shallow merge), writes the merged bag back and sets the match
state only when the update carries one. Applying the same update twice leaves
the record exactly as applying it once.

Failures are isolated per record: transient errors are retried on a short
backoff schedule, then the item is reported as failed. Batches run with
bounded concurrency and never abort because one item failed.
"""

from __future__ import annotations

import random
import time
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from .logging_setup import get_logger
from .models import MatchState, RecordUpdate
from .pmap import p_map_settled
from .store import RecordNotFoundError, TransactionStore

_MAX_ATTEMPTS: int = 3
_BACKOFF_SCHEDULE_SEC: tuple[float, ...] = (0.25, 1.0)
_JITTER_PCT: float = 0.20

_logger = get_logger("ledger_recon.merger")


@dataclass(frozen=True, slots=True)
class WriteOutcome:
    record_id: str
    ok: bool
    attempts: int
    error: str | None = None


def _backoff_delay(attempt_no: int) -> float:
    if attempt_no - 1 < len(_BACKOFF_SCHEDULE_SEC):
        base = _BACKOFF_SCHEDULE_SEC[attempt_no - 1]
    else:
        base = _BACKOFF_SCHEDULE_SEC[-1]
    jitter = base * _JITTER_PCT
    return max(0.0, base + random.uniform(-jitter, jitter))


def _chunks(items: Sequence[RecordUpdate], size: int) -> Iterable[Sequence[RecordUpdate]]:
    for start in range(0, len(items), size):
        yield items[start : start + size]


class WriteBackMerger:
    def __init__(
        self,
        store: TransactionStore,
        *,
        max_attempts: int = _MAX_ATTEMPTS,
        batch_size: int = 50,
        concurrency: int = 8,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if max_attempts < 1 or batch_size < 1 or concurrency < 1:
            raise ValueError("max_attempts, batch_size and concurrency must be >= 1")
        self.store = store
        self.max_attempts = max_attempts
        self.batch_size = batch_size
        self.concurrency = concurrency
        self._sleep = sleep

    def _merge_once(
        self, record_id: str, attributes: Mapping[str, Any], match: MatchState | None
    ) -> None:
        current = self.store.get(record_id)
        if current is None:
            raise RecordNotFoundError(record_id)
        merged = current.attributes.merged(attributes).as_bag()
        self.store.update(record_id, attributes=merged, match=match)

    def apply(
        self,
        record_id: str,
        attributes: Mapping[str, Any],
        match: MatchState | None = None,
    ) -> WriteOutcome:
        """Merge ``attributes`` (and optionally ``match``) into one record.

        Returns a ``WriteOutcome``; never raises for store errors.
        """

        attempt = 0
        while True:
            attempt += 1
            try:
                self._merge_once(record_id, attributes, match)
                return WriteOutcome(record_id=record_id, ok=True, attempts=attempt)
            except RecordNotFoundError:
                _logger.error("merger:record_missing record_id=%s", record_id)
                return WriteOutcome(
                    record_id=record_id, ok=False, attempts=attempt, error="record not found"
                )
            except Exception as e:  # noqa: BLE001
                if attempt >= self.max_attempts:
                    _logger.error(
                        "merger:write_failed_terminal record_id=%s attempts=%d error=%s",
                        record_id,
                        attempt,
                        e.__class__.__name__,
                    )
                    return WriteOutcome(
                        record_id=record_id,
                        ok=False,
                        attempts=attempt,
                        error=f"{e.__class__.__name__}: {e}",
                    )
                _logger.warning(
                    "merger:write_retry record_id=%s attempt=%d error=%s",
                    record_id,
                    attempt,
                    e.__class__.__name__,
                )
                self._sleep(_backoff_delay(attempt))

    def apply_update(self, update: RecordUpdate) -> WriteOutcome:
        return self.apply(update.record_id, update.attributes, update.match)

    def apply_many(self, updates: Sequence[RecordUpdate]) -> list[WriteOutcome]:
        """Apply updates in fixed-size batches with bounded concurrency, in input order."""

        outcomes: list[WriteOutcome] = []
        for batch_no, batch in enumerate(_chunks(updates, self.batch_size), start=1):
            t0 = time.perf_counter()
            settled = p_map_settled(
                batch, self.apply_update, concurrency=min(self.concurrency, len(batch))
            )
            batch_outcomes: list[WriteOutcome] = []
            for s in settled:
                if s.ok and s.value is not None:
                    batch_outcomes.append(s.value)
                else:
                    batch_outcomes.append(
                        WriteOutcome(
                            record_id=s.item.record_id,
                            ok=False,
                            attempts=1,
                            error=repr(s.error),
                        )
                    )
            failed = sum(1 for o in batch_outcomes if not o.ok)
            _logger.info(
                "merger:batch_done batch=%d size=%d failed=%d latency_ms=%.2f",
                batch_no,
                len(batch),
                failed,
                (time.perf_counter() - t0) * 1000.0,
            )
            outcomes.extend(batch_outcomes)
        return outcomes


__all__ = ["WriteBackMerger", "WriteOutcome"]
