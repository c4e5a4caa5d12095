"""Multi-valued lookup indices over one target collection.

A ``TransactionIndex`` is built once per collection in O(n) and answers the
cheap pre-filter queries strategies need: identifier, email, normalized name
(exact and token-bounded fuzzy), rounded amount with a +/-1 neighborhood, and
effective date with a +/-k day neighborhood. ``IndexGroup`` presents several
indices as one for strategies bound to more than one collection.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable, Iterator, Sequence
from datetime import date, timedelta
from decimal import ROUND_HALF_UP, Decimal

from .models import TransactionRecord
from .normalizers import NameNormalizer, default_normalizer, normalize_email, normalize_identifier
from .similarity import key_similarity

_MIN_TOKEN_LEN = 3


def amount_key(amount: Decimal) -> int:
    return int(abs(amount).quantize(Decimal(1), rounding=ROUND_HALF_UP))


class TransactionIndex:
    def __init__(
        self,
        records: Iterable[TransactionRecord],
        *,
        normalizer: NameNormalizer | None = None,
        with_dates: bool = False,
    ) -> None:
        self.normalizer = normalizer or default_normalizer()
        self.with_dates = with_dates
        self.records: list[TransactionRecord] = []
        self.by_id: dict[str, TransactionRecord] = {}
        self._by_identifier: defaultdict[str, list[TransactionRecord]] = defaultdict(list)
        self._by_email: defaultdict[str, list[TransactionRecord]] = defaultdict(list)
        self._by_name: defaultdict[str, list[TransactionRecord]] = defaultdict(list)
        self._by_token: defaultdict[str, list[str]] = defaultdict(list)
        self._by_amount: defaultdict[int, list[TransactionRecord]] = defaultdict(list)
        self._by_date: defaultdict[date, list[TransactionRecord]] = defaultdict(list)
        for rec in records:
            self._add(rec)

    def _add(self, rec: TransactionRecord) -> None:
        self.records.append(rec)
        self.by_id[rec.id] = rec

        ids = {normalize_identifier(rec.id), normalize_identifier(rec.external_id)}
        for key in ids:
            if key:
                self._by_identifier[key].append(rec)

        email = normalize_email(rec.customer_email)
        if email:
            self._by_email[email].append(rec)

        name_key = self.name_key(rec.customer_name)
        if name_key:
            if name_key not in self._by_name:
                for token in set(name_key.split()):
                    if len(token) >= _MIN_TOKEN_LEN:
                        self._by_token[token].append(name_key)
            self._by_name[name_key].append(rec)

        if rec.amount is not None:
            self._by_amount[amount_key(rec.amount)].append(rec)

        if self.with_dates and rec.effective_date is not None:
            self._by_date[rec.effective_date].append(rec)

    def __len__(self) -> int:
        return len(self.records)

    def name_key(self, name: str | None) -> str:
        return self.normalizer.normalize_for_compare(name) if name else ""

    # ---- lookups ----------------------------------------------------------

    def by_identifier(self, raw: str | None) -> list[TransactionRecord]:
        key = normalize_identifier(raw)
        return list(self._by_identifier.get(key, ())) if key else []

    def by_email(self, raw: str | None) -> list[TransactionRecord]:
        key = normalize_email(raw)
        return list(self._by_email.get(key, ())) if key else []

    def by_name(self, raw: str | None) -> list[TransactionRecord]:
        key = self.name_key(raw)
        return list(self._by_name.get(key, ())) if key else []

    def similar_names(self, raw: str | None, threshold: float) -> list[TransactionRecord]:
        """Records whose name shares a token with ``raw`` and scores >= ``threshold``."""

        key = self.name_key(raw)
        if not key:
            return []
        seen: set[str] = set()
        out: list[TransactionRecord] = []
        for token in key.split():
            for other in self._by_token.get(token, ()):
                if other in seen:
                    continue
                seen.add(other)
                if key_similarity(key, other) >= threshold:
                    out.extend(self._by_name[other])
        return out

    def by_amount(self, amount: Decimal | None, spread: int = 1) -> list[TransactionRecord]:
        if amount is None:
            return []
        center = amount_key(amount)
        out: list[TransactionRecord] = []
        for k in range(center - spread, center + spread + 1):
            out.extend(self._by_amount.get(k, ()))
        return out

    def on_date(self, day: date) -> list[TransactionRecord]:
        if not self.with_dates:
            raise RuntimeError("index was built without a date index")
        return list(self._by_date.get(day, ()))

    def days_around(self, day: date, window: int) -> Iterator[tuple[int, date]]:
        """Yield ``(offset, day)`` ordered by distance, earlier day first on ties."""

        yield 0, day
        for off in range(1, window + 1):
            yield -off, day - timedelta(days=off)
            yield off, day + timedelta(days=off)


class IndexGroup:
    """Read-only union of several collection indices."""

    def __init__(self, indices: Sequence[TransactionIndex]) -> None:
        if not indices:
            raise ValueError("IndexGroup requires at least one index")
        self.indices = tuple(indices)
        self.with_dates = all(ix.with_dates for ix in self.indices)

    def __len__(self) -> int:
        return sum(len(ix) for ix in self.indices)

    @property
    def records(self) -> list[TransactionRecord]:
        return [rec for ix in self.indices for rec in ix.records]

    def get(self, record_id: str) -> TransactionRecord | None:
        for ix in self.indices:
            rec = ix.by_id.get(record_id)
            if rec is not None:
                return rec
        return None

    def name_key(self, name: str | None) -> str:
        return self.indices[0].name_key(name)

    def by_identifier(self, raw: str | None) -> list[TransactionRecord]:
        return [r for ix in self.indices for r in ix.by_identifier(raw)]

    def by_email(self, raw: str | None) -> list[TransactionRecord]:
        return [r for ix in self.indices for r in ix.by_email(raw)]

    def by_name(self, raw: str | None) -> list[TransactionRecord]:
        return [r for ix in self.indices for r in ix.by_name(raw)]

    def similar_names(self, raw: str | None, threshold: float) -> list[TransactionRecord]:
        return [r for ix in self.indices for r in ix.similar_names(raw, threshold)]

    def by_amount(self, amount: Decimal | None, spread: int = 1) -> list[TransactionRecord]:
        return [r for ix in self.indices for r in ix.by_amount(amount, spread)]

    def on_date(self, day: date) -> list[TransactionRecord]:
        return [r for ix in self.indices for r in ix.on_date(day)]

    def days_around(self, day: date, window: int) -> Iterator[tuple[int, date]]:
        return self.indices[0].days_around(day, window)


__all__ = ["IndexGroup", "TransactionIndex", "amount_key"]
