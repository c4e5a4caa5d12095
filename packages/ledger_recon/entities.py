"""Entity resolution: cluster near-duplicate names under one canonical label.

Raw names are first canonicalized by the ``NameNormalizer`` (so that
``"AMAZON"`` and ``"Amazon Marketplace"`` both become ``"Amazon"``), then the
distinct cleaned names are clustered. Default clustering is a single greedy
pass against the longest unassigned name (the seed); ``transitive=True`` joins
every above-threshold pair with a disjoint set instead.
"""

from __future__ import annotations

import re
import unicodedata
from collections.abc import Iterable
from dataclasses import dataclass

from .logging_setup import get_logger
from .normalizers import NameNormalizer, default_normalizer
from .similarity import key_similarity

MIN_NAME_LENGTH: int = 4
DEFAULT_THRESHOLD: float = 0.85

_CODE_INVALID_RE = re.compile(r"[^A-Z0-9]+")
_CODE_MAX_LEN = 40

_logger = get_logger("ledger_recon.entities")


def entity_code(canonical: str) -> str:
    """Durable ASCII slug for a canonical name, e.g. ``"Café Noir"`` -> ``"CAFE_NOIR"``."""

    decomposed = unicodedata.normalize("NFD", canonical)
    ascii_text = "".join(ch for ch in decomposed if not unicodedata.combining(ch)).upper()
    code = _CODE_INVALID_RE.sub("_", ascii_text).strip("_")
    return code[:_CODE_MAX_LEN].rstrip("_") or "UNKNOWN"


@dataclass(frozen=True, slots=True)
class EntityCluster:
    canonical: str
    code: str
    members: tuple[str, ...]

    @property
    def variants(self) -> tuple[str, ...]:
        return tuple(m for m in self.members if m != self.canonical)


@dataclass(frozen=True, slots=True)
class Resolution:
    mapping: dict[str, str]
    groups: tuple[EntityCluster, ...]

    def canonical(self, name: str) -> str:
        return self.mapping.get(name, name)


class _DisjointSet:
    def __init__(self, size: int) -> None:
        self.parent = list(range(size))

    def find(self, a: int) -> int:
        parent = self.parent
        while parent[a] != a:
            parent[a] = parent[parent[a]]
            a = parent[a]
        return a

    def union(self, a: int, b: int) -> None:
        ra, rb = self.find(a), self.find(b)
        if ra == rb:
            return
        # Lower index is the longer name in sorted order; keep it as root.
        if rb < ra:
            ra, rb = rb, ra
        self.parent[rb] = ra


class EntityResolver:
    def __init__(
        self,
        normalizer: NameNormalizer | None = None,
        *,
        min_length: int = MIN_NAME_LENGTH,
    ) -> None:
        self.normalizer = normalizer or default_normalizer()
        self.min_length = min_length

    def _seed_clusters(self, keys: list[str], threshold: float) -> list[int]:
        """Return, for each position, the position of its cluster seed."""

        seed_of = [-1] * len(keys)
        for i, key in enumerate(keys):
            if seed_of[i] != -1:
                continue
            seed_of[i] = i
            for j in range(i + 1, len(keys)):
                if seed_of[j] == -1 and key_similarity(key, keys[j]) >= threshold:
                    seed_of[j] = i
        return seed_of

    def _transitive_clusters(self, keys: list[str], threshold: float) -> list[int]:
        ds = _DisjointSet(len(keys))
        for i in range(len(keys)):
            for j in range(i + 1, len(keys)):
                if key_similarity(keys[i], keys[j]) >= threshold:
                    ds.union(i, j)
        return [ds.find(i) for i in range(len(keys))]

    def deduplicate(
        self,
        names: Iterable[str],
        threshold: float = DEFAULT_THRESHOLD,
        *,
        clean: bool = True,
        transitive: bool = False,
    ) -> Resolution:
        """Map every input name to a canonical label.

        Parameters
        ----------
        names:
            Raw names. Input order never affects the result; names shorter than
            ``min_length`` (raw or cleaned) map to themselves.
        threshold:
            Minimum similarity (inclusive) to join a cluster.
        clean:
            Run each name through the normalizer before clustering. When False
            names are only trimmed.
        transitive:
            Use union-find over all above-threshold pairs instead of the
            single greedy pass.
        """

        if not 0.0 <= threshold <= 1.0:
            raise ValueError("threshold must be within [0, 1]")

        raw_names: list[str] = []
        seen_raw: set[str] = set()
        for name in names:
            if name is None or not str(name).strip() or name in seen_raw:
                continue
            seen_raw.add(name)
            raw_names.append(name)

        cleaned_of = {
            raw: (self.normalizer.normalize(raw) if clean else raw.strip()) for raw in raw_names
        }
        # Too short to cluster safely: the raw name stands for itself.
        short = {
            raw
            for raw in raw_names
            if len(raw.strip()) < self.min_length or len(cleaned_of[raw]) < self.min_length
        }
        distinct = {cleaned_of[raw] for raw in raw_names if raw not in short}
        # Longest first; equal lengths in lexical order so set inputs resolve the same way.
        ordered = sorted(distinct, key=lambda c: (-len(c), c))
        keys = [self.normalizer.normalize_for_compare(c) for c in ordered]

        roots = (
            self._transitive_clusters(keys, threshold)
            if transitive
            else self._seed_clusters(keys, threshold)
        )
        canonical_of_cleaned = {cleaned: ordered[roots[pos]] for pos, cleaned in enumerate(ordered)}

        mapping = {
            raw: raw if raw in short else canonical_of_cleaned[cleaned_of[raw]] for raw in raw_names
        }

        members: dict[str, list[str]] = {}
        for raw in raw_names:
            members.setdefault(mapping[raw], []).append(raw)
        groups = tuple(
            EntityCluster(canonical=canon, code=entity_code(canon), members=tuple(sorted(ms)))
            for canon, ms in sorted(members.items())
        )
        _logger.info(
            "entities:deduplicate names=%d cleaned=%d clusters=%d threshold=%.2f transitive=%s",
            len(raw_names),
            len(distinct),
            len(groups),
            threshold,
            transitive,
        )
        return Resolution(mapping=mapping, groups=groups)


def deduplicate(
    names: Iterable[str],
    threshold: float = DEFAULT_THRESHOLD,
    *,
    clean: bool = True,
    transitive: bool = False,
) -> Resolution:
    return EntityResolver().deduplicate(names, threshold, clean=clean, transitive=transitive)


__all__ = [
    "DEFAULT_THRESHOLD",
    "MIN_NAME_LENGTH",
    "EntityCluster",
    "EntityResolver",
    "Resolution",
    "deduplicate",
    "entity_code",
]
