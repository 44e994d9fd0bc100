"""Canonical identity keys used to line up the same medication across sources."""

from __future__ import annotations

import re

from medsync.errors import KeyDerivationError
from medsync.reconciliation.records import SourceRecord

NAME_KEY_LENGTH = 20

_NON_ALNUM = re.compile(r"[^a-z0-9]")


def normalize_name(name: str) -> str:
    return _NON_ALNUM.sub("", name.casefold())[:NAME_KEY_LENGTH]


def derive_key(record: SourceRecord) -> str:
    """
    Canonical key for a record: NDC, then RXCUI, then the normalized name.
    Pure and deterministic; equal identifiers always give equal keys.
    """
    if record.ndc:
        return f"ndc_{record.ndc}"
    if record.rxcui:
        return f"rxcui_{record.rxcui}"
    if record.name:
        return f"name_{normalize_name(record.name)}"
    raise KeyDerivationError(
        f"Record from {record.source_type.value}/{record.source_id} has no ndc, rxcui or name"
    )
