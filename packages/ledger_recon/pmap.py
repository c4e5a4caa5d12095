"""Bounded-concurrency mapping over ``ThreadPoolExecutor``, in the spirit of ``p-map``.

Two entry points:

- ``p_map(iterable, mapper, *, concurrency, stop_on_error=True)`` returns the
  mapped values in input order. The first failure propagates (and cancels work
  not yet started) unless ``stop_on_error`` is False, in which case all items
  run and failures are raised together as an ``ExceptionGroup``.
- ``p_map_settled(iterable, mapper, *, concurrency)`` never raises for mapper
  failures; every item yields a ``Settled`` outcome. Collection loading and
  write-back use this so one item's failure cannot block its siblings.

Only a window of ``concurrency`` items is materialized at a time.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Generic, TypeVar

InT = TypeVar("InT")
OutT = TypeVar("OutT")


@dataclass(frozen=True, slots=True)
class Settled(Generic[InT, OutT]):
    """Outcome of one mapper call: either ``value`` or ``error`` is set."""

    item: InT
    value: OutT | None = None
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


def p_map(
    iterable: Iterable[InT],
    mapper: Callable[[InT], OutT],
    *,
    concurrency: int,
    stop_on_error: bool = True,
) -> list[OutT]:
    """Map ``iterable`` through ``mapper`` with at most ``concurrency`` calls in flight."""

    if not isinstance(concurrency, int) or concurrency < 1:
        raise ValueError("concurrency must be a positive integer")

    it = enumerate(iterable)
    results: dict[int, OutT] = {}
    errors: list[Exception] = []
    submitted = 0
    future_to_idx: dict[Future, int] = {}

    def _submit(pool: ThreadPoolExecutor) -> Future | None:
        nonlocal submitted
        try:
            idx, item = next(it)
        except StopIteration:
            return None
        fut = pool.submit(mapper, item)
        future_to_idx[fut] = idx
        submitted += 1
        return fut

    with ThreadPoolExecutor(max_workers=concurrency) as pool:
        active: set[Future] = set()
        for _ in range(concurrency):
            fut = _submit(pool)
            if fut is None:
                break
            active.add(fut)

        while active:
            done, active = wait(active, return_when=FIRST_COMPLETED)
            for fut in done:
                idx = future_to_idx.pop(fut)
                try:
                    results[idx] = fut.result()
                except Exception as e:  # noqa: BLE001
                    if stop_on_error:
                        try:
                            pool.shutdown(wait=False, cancel_futures=True)
                        finally:
                            raise
                    errors.append(e)

            for _ in range(len(done)):
                fut = _submit(pool)
                if fut is None:
                    break
                active.add(fut)

    if errors:
        raise ExceptionGroup("p_map: one or more mapper calls failed", errors)

    return [results[i] for i in range(submitted)]


def p_map_settled(
    iterable: Iterable[InT],
    mapper: Callable[[InT], OutT],
    *,
    concurrency: int,
) -> list[Settled[InT, OutT]]:
    """Like ``p_map`` but capture each item's success or failure in input order."""

    def _settle(item: InT) -> Settled[InT, OutT]:
        try:
            return Settled(item=item, value=mapper(item))
        except Exception as e:  # noqa: BLE001
            return Settled(item=item, error=e)

    return p_map(iterable, _settle, concurrency=concurrency)


__all__ = ["Settled", "p_map", "p_map_settled"]
