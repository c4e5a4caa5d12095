"""Immutable lookup tables consumed by the normalizer, resolver and strategies.

Tables are plain data: compiled forms live with their consumers. The built-in
set is returned by ``default_tables()``; deployments can replace any table with
a JSON file passed to ``load_tables(path)`` (keys mirror the dataclass fields,
omitted keys keep the built-in value).
"""

from __future__ import annotations

import json
from dataclasses import dataclass, replace
from functools import lru_cache
from pathlib import Path

from pydantic import BaseModel, ConfigDict

# (pattern, owner). Patterns are anchored at the start and matched
# case-insensitively. When ``owner`` is set the prefix itself identifies the
# merchant and the remainder is a product or trip code.
_PROCESSOR_PREFIXES: tuple[tuple[str, str | None], ...] = (
    (r"SQ\s*\*", None),
    (r"TST\s*\*\*?TST\s*\*", None),
    (r"TST\s*\*", None),
    (r"SMP\s*\*", None),
    (r"SUM\s*\*", None),
    (r"SUMUP\s*\*", None),
    (r"MS\s*\*", None),
    (r"LSP\s*\*", None),
    (r"NYX\s*\*", None),
    (r"TAP\s*\*", None),
    (r"ZLR\s*\*", None),
    (r"PAYPAL\s*\*", None),
    (r"BOI BOM ATAC\s*\*", None),
    (r"BKG\s*\*", "Booking.com"),
    (r"WWW\.AMAZON\.\s*\*", "Amazon"),
    (r"AMAZON MKTPL\s*\*", "Amazon"),
    (r"AMAZON MAKT\s+ES\s*\*", "Amazon"),
    (r"AMAZON PRIME\s*\*", "Amazon"),
    (r"UBER\s*\*", "Uber"),
    (r"TMOBILE\s*\*", "T-Mobile"),
)

# Upper-case dirty key -> canonical label; first hit wins, so longer keys that
# share a stem come first.
_KNOWN_NAMES: tuple[tuple[str, str], ...] = (
    ("AMAZON MKTPL", "Amazon"),
    ("AMAZON MAKT ES", "Amazon"),
    ("AMAZON PRIME", "Amazon"),
    ("WWW.AMAZON.", "Amazon"),
    ("AMAZON.ES", "Amazon"),
    ("AMAZON", "Amazon"),
    ("UBER", "Uber"),
    ("META", "Meta"),
    ("FACEBK", "Meta"),
    ("CHARGE PLEO", "Pleo"),
    ("RECIB/PLEO FINANCIAL SERVICES", "Pleo"),
    ("PLEO", "Pleo"),
    ("BOOKING.COM", "Booking.com"),
    ("DIGITAL SMILE DESIGN", "DSD Digital Smile Design"),
    ("DSD", "DSD Digital Smile Design"),
    ("T-MOBILE", "T-Mobile"),
    ("TMOBILE", "T-Mobile"),
    ("DIVVY", "Divvy"),
    ("TRAVEL PERK", "TravelPerk"),
    ("TRAVELPERK", "TravelPerk"),
    ("DEV GC DEVOL", "GoCardless Devolución"),
    ("GTO GC DEVOL", "GoCardless"),
    ("TRANS. NOM INM", "Transferencia Nómina"),
    ("RECIB/TGSS", "TGSS Seguridad Social"),
    ("TGSS", "TGSS Seguridad Social"),
    ("WEWORK", "WeWork"),
    ("WE WORK", "WeWork"),
    ("TIKTOK", "TikTok"),
    ("TIK TOK", "TikTok"),
    ("WHSMITH", "WHSmith"),
    ("GODADDY", "GoDaddy"),
    ("MOVISTAR", "Movistar"),
    ("GRENKE", "Grenke"),
    ("PROCLINIC", "Proclinic"),
    ("GUSTO", "Gusto"),
    ("INTUIT", "Intuit"),
    ("STRAUMANN", "Straumann"),
)

_LOWERCASE_WORDS: frozenset[str] = frozenset(
    {"de", "del", "la", "el", "los", "las", "y", "e", "en", "a", "the", "of", "and", "for", "by"}
)

_LEGAL_SUFFIXES: tuple[str, ...] = ("SLU", "SL", "SA", "LTD", "INC", "CORP", "GMBH", "SRL", "LLC")

# (lower-case keyword, gateway family); first hit wins.
_GATEWAY_KEYWORDS: tuple[tuple[str, str], ...] = (
    ("american express", "amex"),
    ("amex", "amex"),
    ("braintree", "braintree"),
    ("gocardless", "gocardless"),
    ("go cardless", "gocardless"),
    ("stripe", "stripe"),
    ("paypal", "paypal"),
)

# (method tag, pattern). Group 1 captures the counterparty name.
_EXTRACTION_PATTERNS: tuple[tuple[str, str], ...] = (
    ("transfer_prefix", r"\btrans(?:f|\.?\s*inm)?/\s*(.+)"),
    ("mxiso", r"^mxiso\s+(.+)"),
    ("orig_co_name", r"orig co name:\s*(.+?)(?:\s+orig id|\s+sec|\s*$)"),
    ("remittance", r"\bremesa\s+(?:de\s+)?(.+)"),
    ("wire_credit", r"\b(?:ach|wire|chips)\s+(?:credit|deposit|transfer)?\s*(?:from\s+)?(.+)"),
    ("credit_advice", r"\babono\s+(?:de\s+)?(.+)"),
)

_INTERNAL_TRANSFER_PATTERNS: tuple[str, ...] = (
    r"propia cuenta",
    r"cuenta propia",
    r"movimiento entre",
    r"traspasos? (?:propios?|entre)",
    r"dotacion",
    r"transferencia\s+a\s+favor.*propia",
    r"transf.*propia",
    r"mov(?:imiento)?\s+interno",
    r"own account transfer",
    r"internal transfer",
)


@dataclass(frozen=True, slots=True)
class LookupTables:
    processor_prefixes: tuple[tuple[str, str | None], ...] = _PROCESSOR_PREFIXES
    known_names: tuple[tuple[str, str], ...] = _KNOWN_NAMES
    lowercase_words: frozenset[str] = _LOWERCASE_WORDS
    legal_suffixes: tuple[str, ...] = _LEGAL_SUFFIXES
    gateway_keywords: tuple[tuple[str, str], ...] = _GATEWAY_KEYWORDS
    extraction_patterns: tuple[tuple[str, str], ...] = _EXTRACTION_PATTERNS
    internal_transfer_patterns: tuple[str, ...] = _INTERNAL_TRANSFER_PATTERNS

    def gateway_family(self, text: str | None) -> str | None:
        """Return the gateway family named anywhere in ``text``, if any."""

        if not text:
            return None
        low = text.lower()
        for keyword, family in self.gateway_keywords:
            if keyword in low:
                return family
        return None


class _TablesFile(BaseModel):
    """On-disk override format; every key is optional."""

    model_config = ConfigDict(extra="forbid")

    processor_prefixes: list[tuple[str, str | None]] | None = None
    known_names: list[tuple[str, str]] | None = None
    lowercase_words: list[str] | None = None
    legal_suffixes: list[str] | None = None
    gateway_keywords: list[tuple[str, str]] | None = None
    extraction_patterns: list[tuple[str, str]] | None = None
    internal_transfer_patterns: list[str] | None = None


@lru_cache(maxsize=1)
def default_tables() -> LookupTables:
    return LookupTables()


def load_tables(path: Path | str | None = None) -> LookupTables:
    """Load tables from a JSON override file, or the built-ins when ``path`` is None.

    Raises ``ValueError`` when the file does not match the expected shape.
    """

    if path is None:
        return default_tables()
    raw = json.loads(Path(path).read_text(encoding="utf-8"))
    try:
        parsed = _TablesFile.model_validate(raw)
    except Exception as e:
        raise ValueError(f"invalid lookup tables file {path}: {e}") from e

    overrides: dict[str, object] = {}
    if parsed.processor_prefixes is not None:
        overrides["processor_prefixes"] = tuple(parsed.processor_prefixes)
    if parsed.known_names is not None:
        overrides["known_names"] = tuple((k.upper(), v) for k, v in parsed.known_names)
    if parsed.lowercase_words is not None:
        overrides["lowercase_words"] = frozenset(w.lower() for w in parsed.lowercase_words)
    if parsed.legal_suffixes is not None:
        overrides["legal_suffixes"] = tuple(s.upper() for s in parsed.legal_suffixes)
    if parsed.gateway_keywords is not None:
        overrides["gateway_keywords"] = tuple((k.lower(), v) for k, v in parsed.gateway_keywords)
    if parsed.extraction_patterns is not None:
        overrides["extraction_patterns"] = tuple(parsed.extraction_patterns)
    if parsed.internal_transfer_patterns is not None:
        overrides["internal_transfer_patterns"] = tuple(parsed.internal_transfer_patterns)
    return replace(default_tables(), **overrides)


__all__ = ["LookupTables", "default_tables", "load_tables"]
