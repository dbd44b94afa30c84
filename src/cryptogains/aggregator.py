# aggregator.py
"""
Disposal results -> one tax year's summary.

- Only disposals whose timestamp falls in the requested calendar year count; the calendar is
  evaluated in the configured timezone (UTC by default).
- Gains and losses are summed separately, in the law's currency. net = gains - losses.
- Every disposal of the year is counted. A disposal without a KRW figure is converted from its
  USD gain at the fallback rate and annotated with PRICE_UNAVAILABLE.
- taxable = max(net - deduction, 0); estimated tax = taxable * rate / 100.

No rounding happens here. Missing law parameters are fatal (UnknownTaxYear) and are checked
before any disposal is looked at.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Iterable, List, Optional, Sequence
from zoneinfo import ZoneInfo

from .fx_utils import usd_to_krw
from .lots import ZERO
from .rules.base import TaxLawTable
from .schemas import Diagnostic, DiagnosticCode, DisposalResult, LotMethod, TaxYearSummary

logger = logging.getLogger(__name__)

HUNDRED = Decimal("100")


def disposal_year(result: DisposalResult, tz: str = "UTC") -> int:
    return result.timestamp.astimezone(ZoneInfo(tz)).year


def gain_in(result: DisposalResult, currency: str) -> Optional[Decimal]:
    return result.gain_loss_krw if currency == "KRW" else result.gain_loss


def aggregate(
    disposals: Iterable[DisposalResult],
    year: int,
    law_table: TaxLawTable,
    method: LotMethod | str,
    diagnostics: Sequence[Diagnostic] = (),
    tz: str = "UTC",
    rule_version: str = "",
    fallback_krw_per_usd: Optional[Decimal] = None,
) -> TaxYearSummary:
    law = law_table.parameters(year)
    currency = law.currency

    in_year: List[DisposalResult] = []
    notes: List[Diagnostic] = list(diagnostics)
    gains = ZERO
    losses = ZERO

    for result in disposals:
        if disposal_year(result, tz) != year:
            continue
        in_year.append(result)
        amount = gain_in(result, currency)
        if amount is None:
            if fallback_krw_per_usd is None:
                raise ValueError(
                    f"Disposal {result.transaction_id} has no {currency} gain and no fallback rate was given"
                )
            amount = usd_to_krw(result.gain_loss, fallback_krw_per_usd)
            notes.append(
                Diagnostic(
                    code=DiagnosticCode.PRICE_UNAVAILABLE,
                    transaction_id=result.transaction_id,
                    message=f"No {currency} figure for disposal on {result.timestamp.date()}; "
                    f"USD gain converted at fallback rate {fallback_krw_per_usd}.",
                )
            )
        if amount > 0:
            gains += amount
        elif amount < 0:
            losses += -amount

    net = gains - losses
    taxable = max(net - law.deduction_amount, ZERO)
    tax = taxable * law.flat_rate_percent / HUNDRED

    logger.info(
        "Tax year %s (%s): %d disposals, net %s %s, taxable %s",
        year, LotMethod(method).value, len(in_year), net, currency, taxable,
    )

    return TaxYearSummary(
        year=year,
        method=LotMethod(method),
        jurisdiction=law_table.jurisdiction or "",
        rule_version=rule_version or law_table.version,
        currency=currency,
        total_gains=gains,
        total_losses=losses,
        net_gains=net,
        deduction=law.deduction_amount,
        taxable_gains=taxable,
        estimated_tax=tax,
        flat_rate_percent=law.flat_rate_percent,
        disposals=in_year,
        diagnostics=notes,
    )
