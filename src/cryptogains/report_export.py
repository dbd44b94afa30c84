# report_export.py
"""
Renderings of TaxYearSummary for export collaborators.

This is the only place figures get rounded: KRW to whole won, USD to cents, ROUND_HALF_UP.
The summary itself always stays exact.
"""

from __future__ import annotations

import csv
import io
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, List, Optional

from .schemas import DisposalResult, TaxYearSummary, TxKind, dec_to_str

DISPLAY_PLACES = {"KRW": Decimal("1"), "USD": Decimal("0.01")}

# HomeTax line-item layout
HOMETAX_HEADERS = [
    "거래일시",
    "거래유형",
    "자산명",
    "거래수량",
    "단가(원)",
    "거래금액(원)",
    "수수료(USD)",
    "양도차익(원)",
]

KIND_LABELS = {
    TxKind.SELL: "매도",
    TxKind.BUY: "매수",
    TxKind.SWAP: "교환",
    TxKind.TRANSFER_OUT: "출금",
}


def round_money(value: Decimal, currency: str) -> Decimal:
    return value.quantize(DISPLAY_PLACES[currency], rounding=ROUND_HALF_UP)


def fmt_money(value: Optional[Decimal], currency: str) -> str:
    if value is None:
        return ""
    return format(round_money(value, currency), "f")


def disposal_to_dict(d: DisposalResult) -> Dict[str, Any]:
    return {
        "transaction_id": d.transaction_id,
        "asset": d.asset,
        "kind": d.kind.value,
        "timestamp": d.timestamp.isoformat(),
        "quantity": dec_to_str(d.quantity),
        "proceeds_usd": dec_to_str(d.proceeds_usd),
        "proceeds_krw": None if d.proceeds_krw is None else dec_to_str(d.proceeds_krw),
        "cost_basis_consumed": dec_to_str(d.cost_basis_consumed),
        "cost_basis_krw": None if d.cost_basis_krw is None else dec_to_str(d.cost_basis_krw),
        "fee_usd": dec_to_str(d.fee_usd),
        "gain_loss": dec_to_str(d.gain_loss),
        "gain_loss_krw": None if d.gain_loss_krw is None else dec_to_str(d.gain_loss_krw),
        "unmatched_quantity": dec_to_str(d.unmatched_quantity),
        "lots_consumed": [
            {
                "lot_id": t.lot_id,
                "quantity_taken": dec_to_str(t.quantity_taken),
                "unit_cost": dec_to_str(t.unit_cost),
                "unit_cost_krw": None if t.unit_cost_krw is None else dec_to_str(t.unit_cost_krw),
                "acquired_at": t.acquired_at.isoformat(),
            }
            for t in d.lots_consumed
        ],
        "warnings": [w.code.value for w in d.warnings],
    }


def summary_to_dict(summary: TaxYearSummary) -> Dict[str, Any]:
    """JSON-ready dict; amounts as exact decimal strings, display values rounded alongside."""
    cur = summary.currency
    return {
        "year": summary.year,
        "method": summary.method.value,
        "jurisdiction": summary.jurisdiction,
        "rule_version": summary.rule_version,
        "currency": cur,
        "totals": {
            "total_gains": dec_to_str(summary.total_gains),
            "total_losses": dec_to_str(summary.total_losses),
            "net_gains": dec_to_str(summary.net_gains),
            "deduction": dec_to_str(summary.deduction),
            "taxable_gains": dec_to_str(summary.taxable_gains),
            "estimated_tax": dec_to_str(summary.estimated_tax),
            "flat_rate_percent": dec_to_str(summary.flat_rate_percent),
        },
        "display": {
            "total_gains": fmt_money(summary.total_gains, cur),
            "total_losses": fmt_money(summary.total_losses, cur),
            "net_gains": fmt_money(summary.net_gains, cur),
            "deduction": fmt_money(summary.deduction, cur),
            "taxable_gains": fmt_money(summary.taxable_gains, cur),
            "estimated_tax": fmt_money(summary.estimated_tax, cur),
        },
        "disposals": [disposal_to_dict(d) for d in summary.disposals],
        "diagnostics": [
            {"code": d.code.value, "transaction_id": d.transaction_id, "message": d.message}
            for d in summary.diagnostics
        ],
    }


def annual_summary_rows(summary: TaxYearSummary) -> List[Dict[str, str]]:
    cur = summary.currency
    return [
        {"label": "총 양도차익", "value": fmt_money(summary.total_gains, cur)},
        {"label": "총 양도차손", "value": fmt_money(summary.total_losses, cur)},
        {"label": "순 양도차익", "value": fmt_money(summary.net_gains, cur)},
        {"label": "기본공제", "value": fmt_money(summary.deduction, cur)},
        {"label": "과세표준", "value": fmt_money(summary.taxable_gains, cur)},
        {"label": f"예상 세액 ({dec_to_str(summary.flat_rate_percent)}%)", "value": fmt_money(summary.estimated_tax, cur)},
    ]


def disposals_csv(summary: TaxYearSummary) -> str:
    """One line per disposal in the HomeTax layout. KRW columns are blank when no rate was known."""
    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator="\n")
    writer.writerow(HOMETAX_HEADERS)
    for d in summary.disposals:
        unit_krw = d.proceeds_krw / d.quantity if d.proceeds_krw is not None else None
        writer.writerow(
            [
                d.timestamp.date().isoformat(),
                KIND_LABELS.get(d.kind, d.kind.value),
                d.asset,
                dec_to_str(d.quantity),
                fmt_money(unit_krw, "KRW"),
                fmt_money(d.proceeds_krw, "KRW"),
                fmt_money(d.fee_usd, "USD"),
                fmt_money(d.gain_loss_krw, "KRW"),
            ]
        )
    return buf.getvalue()
