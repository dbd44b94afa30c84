"""
Error taxonomy for the capital-gains engine.

Only two things ever escape a run as exceptions:
- UnknownTaxYear: no law parameters for the requested year (fatal, nothing statutory can be computed).
- CalculationCancelled: the caller abandoned the run.

Per-transaction problems (MalformedRecord, insufficient basis, missing prices) are isolated and
turned into Diagnostic entries so the report still renders.
"""

from __future__ import annotations


class CryptoGainsError(Exception):
    """Base class for engine errors."""


class MalformedRecord(CryptoGainsError, ValueError):
    def __init__(self, transaction_id: str | None, reason: str):
        self.transaction_id = transaction_id
        self.reason = reason
        super().__init__(f"Malformed record {transaction_id!r}: {reason}")


class UnknownTaxYear(CryptoGainsError, LookupError):
    def __init__(self, year: int, jurisdiction: str | None = None):
        self.year = year
        self.jurisdiction = jurisdiction
        where = f" for jurisdiction {jurisdiction}" if jurisdiction else ""
        super().__init__(f"No tax law parameters configured for {year}{where}")


class CalculationCancelled(CryptoGainsError):
    """Raised inside a run once its cancel event has been set."""
