# fx_utils.py
"""
Price and currency collaborators.

The engine only needs two questions answered:
- PriceLookup.lookup(asset, timestamp) -> USD unit price or None
- FxConverter.krw_per_usd(day) -> KRW per 1 USD or None

Table* implementations are in-memory snapshots. The load_* helpers read them once from the
ledger database so a run never touches a session after it has started.
"""

from __future__ import annotations

import bisect
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Dict, Iterable, List, Mapping, Optional, Protocol, Tuple

from sqlalchemy.orm import Session

from .models import FxRate, PriceQuote

FIAT_USD_LIKE = frozenset({"USD", "USDT", "USDC"})


class PriceLookup(Protocol):
    def lookup(self, asset: str, timestamp: datetime) -> Optional[Decimal]: ...


class FxConverter(Protocol):
    def krw_per_usd(self, day: date) -> Optional[Decimal]: ...


def usd_to_krw(amount_usd: Decimal, krw_per_usd: Decimal) -> Decimal:
    """If USDKRW = 1350, then 10 USD -> 13,500 KRW."""
    return amount_usd * krw_per_usd


def krw_to_usd(amount_krw: Decimal, krw_per_usd: Decimal) -> Optional[Decimal]:
    if krw_per_usd <= 0:
        return None
    return amount_krw / krw_per_usd


class TableFxConverter:
    """
    Daily USDKRW rates. If the exact date is missing, use the latest available date <= day
    (previous business day), as the published reference rates work.
    """

    def __init__(self, rates: Mapping[date, Decimal] | None = None):
        items = sorted((d, Decimal(r)) for d, r in (rates or {}).items())
        self._days: List[date] = [d for d, _ in items]
        self._rates: List[Decimal] = [r for _, r in items]

    def __len__(self) -> int:
        return len(self._days)

    def krw_per_usd(self, day: date) -> Optional[Decimal]:
        if isinstance(day, datetime):
            day = day.astimezone(timezone.utc).date()
        i = bisect.bisect_right(self._days, day)
        if i == 0:
            return None
        return self._rates[i - 1]


class TablePriceLookup:
    """Historical USD quotes per asset; returns the latest quote at or before the timestamp."""

    def __init__(self, quotes: Iterable[Tuple[str, datetime, Decimal]] = ()):
        by_asset: Dict[str, List[Tuple[datetime, Decimal]]] = {}
        for asset, ts, price in quotes:
            if ts.tzinfo is None:
                ts = ts.replace(tzinfo=timezone.utc)
            by_asset.setdefault(asset.upper(), []).append((ts, Decimal(price)))
        self._times: Dict[str, List[datetime]] = {}
        self._prices: Dict[str, List[Decimal]] = {}
        for asset, rows in by_asset.items():
            rows.sort(key=lambda r: r[0])
            self._times[asset] = [ts for ts, _ in rows]
            self._prices[asset] = [p for _, p in rows]

    def lookup(self, asset: str, timestamp: datetime) -> Optional[Decimal]:
        asset = asset.upper()
        if asset in FIAT_USD_LIKE:
            return Decimal("1")
        times = self._times.get(asset)
        if not times:
            return None
        i = bisect.bisect_right(times, timestamp)
        if i == 0:
            return None
        return self._prices[asset][i - 1]


def load_fx_table(session: Session) -> TableFxConverter:
    rows = session.query(FxRate).order_by(FxRate.date.asc()).all()
    return TableFxConverter({r.date: Decimal(r.krw_per_usd) for r in rows})


def load_price_table(session: Session) -> TablePriceLookup:
    rows = session.query(PriceQuote).order_by(PriceQuote.asset.asc(), PriceQuote.timestamp.asc()).all()
    return TablePriceLookup((r.asset, r.timestamp, Decimal(r.price_usd)) for r in rows)
