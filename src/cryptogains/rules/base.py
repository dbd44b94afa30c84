from __future__ import annotations
import json
from decimal import Decimal
from pathlib import Path
from typing import Dict, Iterator, Mapping, Protocol

from cryptogains.errors import UnknownTaxYear
from cryptogains.schemas import TaxLawParameters


class TaxLawTable(Mapping[int, TaxLawParameters]):
    """
    Versioned year -> parameters lookup. Missing years raise UnknownTaxYear; there is no
    fallback to a neighbouring year.
    """

    def __init__(self, params: Mapping[int, TaxLawParameters] | None = None,
                 jurisdiction: str | None = None, version: str = ""):
        self._params: Dict[int, TaxLawParameters] = dict(params or {})
        self.jurisdiction = jurisdiction
        self.version = version

    def __getitem__(self, year: int) -> TaxLawParameters:
        try:
            return self._params[year]
        except KeyError:
            raise UnknownTaxYear(year, self.jurisdiction) from None

    def __contains__(self, year: object) -> bool:
        return year in self._params

    def get(self, year: int, default=None):
        return self._params.get(year, default)

    def __iter__(self) -> Iterator[int]:
        return iter(sorted(self._params))

    def __len__(self) -> int:
        return len(self._params)

    def parameters(self, year: int) -> TaxLawParameters:
        return self[year]

    def merged(self, overrides: Mapping[int, TaxLawParameters]) -> "TaxLawTable":
        return TaxLawTable({**self._params, **overrides}, self.jurisdiction, self.version)


def load_overrides(path: str | Path) -> Dict[int, TaxLawParameters]:
    """
    JSON file: {"2028": {"deduction_amount": "50000000", "flat_rate_percent": "22", "currency": "KRW"}}
    Amounts should be strings so they stay exact.
    """
    raw = json.loads(Path(path).read_text(encoding="utf-8"))
    out: Dict[int, TaxLawParameters] = {}
    for year_s, values in raw.items():
        year = int(year_s)
        out[year] = TaxLawParameters(
            year=year,
            deduction_amount=Decimal(str(values["deduction_amount"])),
            flat_rate_percent=Decimal(str(values["flat_rate_percent"])),
            currency=values.get("currency", "KRW"),
        )
    return out


class TaxRule(Protocol):
    jurisdiction: str
    rule_version: str
    def law_table(self) -> TaxLawTable: ...
