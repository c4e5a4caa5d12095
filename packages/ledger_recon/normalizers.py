"""Canonicalization of free-text identity fields.

``NameNormalizer`` turns raw merchant, provider and counterparty labels into a
display form (``normalize``) and a stricter key used only for similarity
scoring (``normalize_for_compare``). Its lookup tables are injected; the
module-level ``normalize``/``normalize_for_compare`` helpers use the built-in
tables.

Examples
--------
>>> normalize("SQ *ROCKY ICE CREAM")
'Rocky Ice Cream'
>>> normalize("UBER   *TRIP")
'Uber'
>>> normalize_email(" Jane.Doe+shop@Example.com ")
'jane.doe@example.com'
"""

from __future__ import annotations

import re
import unicodedata
from functools import lru_cache

from .tables import LookupTables, default_tables

_EDGE_QUOTES_RE = re.compile(r"^[\s\"'`‘’“”]+|[\s\"'`‘’“”]+$")
_SEPARATORS_RE = re.compile(r"[*|]+")
_WS_RE = re.compile(r"\s+")
# Token of 8+ alphanumerics with at least one digit, so surnames survive.
_TRAILING_TXN_ID_RE = re.compile(r"\s+(?=[A-Z0-9]*\d)[A-Z0-9]{8,}$", re.IGNORECASE)
_TRAILING_REF_RE = re.compile(r"[:./]\s*\d{6,}\s*$")
_TRAILING_CODE_RE = re.compile(r"[/:]+\s*\d{3,}\s*\w*$")
_TRAILING_QMARK_RE = re.compile(r"\?+$")
_NON_ALNUM_SPACE_RE = re.compile(r"[^a-z0-9\s]")
_EMAIL_DOTS_RE = re.compile(r"\.{2,}")


def _suffix_alternation(tokens: tuple[str, ...]) -> str:
    """``SLU`` -> ``S\\.?L\\.?U\\.?`` so dotted and bare forms both match."""

    ordered = sorted({t.upper() for t in tokens if t}, key=len, reverse=True)
    return "|".join(r"\.?".join(re.escape(ch) for ch in tok) + r"\.?" for tok in ordered)


def _starts_with_key(upper: str, key: str) -> bool:
    # Prefix hits must end on a token boundary: "META" maps "META ADS" but not
    # "METALURGICA".
    if not upper.startswith(key):
        return False
    if len(upper) == len(key) or not key[-1].isalnum():
        return True
    return not upper[len(key)].isalnum()


class NameNormalizer:
    def __init__(self, tables: LookupTables | None = None) -> None:
        self.tables = tables or default_tables()
        self._prefixes = tuple(
            (re.compile(rf"^(?:{pattern})", re.IGNORECASE), owner)
            for pattern, owner in self.tables.processor_prefixes
        )
        alternation = _suffix_alternation(self.tables.legal_suffixes)
        self._legal_suffix_re = (
            re.compile(rf"\s*,?\s*\b(?:{alternation})\s*$", re.IGNORECASE) if alternation else None
        )
        words = sorted({t.lower() for t in self.tables.legal_suffixes if t}, key=len, reverse=True)
        self._compare_suffix_re = (
            re.compile(r"\b(?:" + "|".join(map(re.escape, words)) + r")\b") if words else None
        )

    def known_name(self, text: str) -> str | None:
        """Return the curated canonical label for ``text`` (exact or prefix hit)."""

        upper = text.upper()
        for key, canonical in self.tables.known_names:
            if _starts_with_key(upper, key):
                return canonical
        return None

    def _title_case(self, text: str) -> str:
        out: list[str] = []
        for i, word in enumerate(text.lower().split(" ")):
            if i > 0 and word in self.tables.lowercase_words:
                out.append(word)
            else:
                out.append(word[:1].upper() + word[1:])
        return " ".join(out)

    def normalize(self, raw: str | None) -> str:
        """Return the display-canonical form of ``raw``; never empty for non-empty input."""

        if raw is None:
            return ""
        original = str(raw).strip()
        name = _EDGE_QUOTES_RE.sub("", original)

        for rx, owner in self._prefixes:
            m = rx.match(name)
            if m is None:
                continue
            if owner:
                return owner
            name = name[m.end() :]
            break

        name = _SEPARATORS_RE.sub(" ", name)
        name = _WS_RE.sub(" ", name).strip()
        name = _TRAILING_TXN_ID_RE.sub("", name)
        name = _TRAILING_REF_RE.sub("", name)
        name = _TRAILING_CODE_RE.sub("", name)
        name = _TRAILING_QMARK_RE.sub("", name).strip()

        mapped = self.known_name(name) if name else None
        if mapped is not None:
            return mapped

        if len(name) > 3 and name == name.upper() and any(c.isalpha() for c in name):
            name = self._title_case(name)

        if self._legal_suffix_re is not None:
            name = self._legal_suffix_re.sub("", name)
        name = _WS_RE.sub(" ", name).strip(" ,")
        return name or original

    def normalize_for_compare(self, raw: str | None) -> str:
        """Return the comparison key: lower-case ASCII words without legal suffixes."""

        if not raw:
            return ""
        decomposed = unicodedata.normalize("NFD", str(raw).lower())
        text = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
        text = _NON_ALNUM_SPACE_RE.sub("", text)
        if self._compare_suffix_re is not None:
            text = self._compare_suffix_re.sub("", text)
        return _WS_RE.sub(" ", text).strip()


def normalize_email(raw: str | None) -> str | None:
    """Lower-case, strip whitespace and ``+tag`` aliases, collapse repeated dots."""

    if raw is None:
        return None
    text = _WS_RE.sub("", str(raw)).lower()
    if not text:
        return None
    local, at, domain = text.rpartition("@")
    if at:
        local = local.split("+", 1)[0]
        text = f"{local}@{domain}"
    return _EMAIL_DOTS_RE.sub(".", text)


def normalize_identifier(raw: str | None) -> str | None:
    if raw is None:
        return None
    text = str(raw).strip().lower()
    return text or None


@lru_cache(maxsize=1)
def default_normalizer() -> NameNormalizer:
    return NameNormalizer()


def normalize(raw: str | None) -> str:
    return default_normalizer().normalize(raw)


def normalize_for_compare(raw: str | None) -> str:
    return default_normalizer().normalize_for_compare(raw)


__all__ = [
    "NameNormalizer",
    "default_normalizer",
    "normalize",
    "normalize_email",
    "normalize_for_compare",
    "normalize_identifier",
]
