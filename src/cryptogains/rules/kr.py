from __future__ import annotations
from decimal import Decimal
from .base import TaxLawTable, TaxRule
from cryptogains.schemas import TaxLawParameters

# Virtual-asset income: flat 22 % (20 % income tax + 2 % local income tax).
FLAT_RATE_PERCENT = Decimal("22")
# Basic deduction: 2.5M KRW through 2024, 50M KRW from 2025.
DEDUCTION_UNTIL_2024 = Decimal("2500000")
DEDUCTION_FROM_2025 = Decimal("50000000")

# Explicit years only; anything else is UnknownTaxYear until the table is extended.
KR_YEARS = range(2022, 2028)


def _params(year: int) -> TaxLawParameters:
    deduction = DEDUCTION_FROM_2025 if year >= 2025 else DEDUCTION_UNTIL_2024
    return TaxLawParameters(year=year, deduction_amount=deduction,
                            flat_rate_percent=FLAT_RATE_PERCENT, currency="KRW")


class KrRule(TaxRule):
    jurisdiction = "KR"
    rule_version = "2025.1"

    def law_table(self) -> TaxLawTable:
        return TaxLawTable({y: _params(y) for y in KR_YEARS},
                           jurisdiction=self.jurisdiction, version=self.rule_version)
