from __future__ import annotations
from pathlib import Path
from .base import TaxLawTable, TaxRule, load_overrides
from .kr import KrRule

_RULES = {"KR": KrRule}


def rule_for(jurisdiction: str) -> TaxRule:
    try:
        return _RULES[jurisdiction.upper()]()
    except KeyError:
        raise ValueError(f"Unsupported jurisdiction: {jurisdiction!r}") from None


def load_law_table(jurisdiction: str = "KR", override_file: str | Path | None = None) -> TaxLawTable:
    table = rule_for(jurisdiction).law_table()
    if override_file:
        table = table.merged(load_overrides(override_file))
    return table


__all__ = ["TaxLawTable", "TaxRule", "KrRule", "rule_for", "load_law_table", "load_overrides"]
