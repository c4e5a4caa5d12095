"""Pull structured hints out of free-text bank descriptions.

Bank feeds rarely carry a counterparty field; the name usually sits inside the
description behind a transfer prefix, a wire "originator" field or a
remittance keyword. ``DescriptionParser`` applies the configured patterns in
order and also recognizes own-account transfers.
"""

from __future__ import annotations

import re
from typing import NamedTuple

from .tables import LookupTables, default_tables

_MIN_NAME_LEN = 3
_TRAILING_REF_RE = re.compile(r"[\s/:-]+(?:ref\w*\s*)?\d[\d\s/.-]*$", re.IGNORECASE)
_WS_RE = re.compile(r"\s+")


class ExtractedName(NamedTuple):
    method: str
    name: str


class DescriptionParser:
    def __init__(self, tables: LookupTables | None = None) -> None:
        self.tables = tables or default_tables()
        self._patterns = tuple(
            (method, re.compile(pattern, re.IGNORECASE))
            for method, pattern in self.tables.extraction_patterns
        )
        internal = "|".join(f"(?:{p})" for p in self.tables.internal_transfer_patterns)
        self._internal_re = re.compile(internal, re.IGNORECASE) if internal else None

    def extract_name(self, description: str | None) -> ExtractedName | None:
        """Return the first plausible counterparty name found in ``description``."""

        if not description:
            return None
        text = _WS_RE.sub(" ", description).strip()
        for method, rx in self._patterns:
            m = rx.search(text)
            if m is None:
                continue
            name = _TRAILING_REF_RE.sub("", m.group(1)).strip(" ,.;:-/")
            if len(name) < _MIN_NAME_LEN:
                continue
            # A gateway is the channel, not the payer.
            if self.tables.gateway_family(name) is not None:
                continue
            return ExtractedName(method=method, name=name)
        return None

    def is_internal_transfer(self, description: str | None) -> bool:
        if not description or self._internal_re is None:
            return False
        return self._internal_re.search(description) is not None

    def gateway_family(self, text: str | None) -> str | None:
        return self.tables.gateway_family(text)


__all__ = ["DescriptionParser", "ExtractedName"]
