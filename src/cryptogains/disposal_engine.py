# disposal_engine.py
"""
Deterministic lot-matching engine (FIFO / LIFO / HIFO).

Goal:
- Walk the normalized leg stream once, oldest first, over the *entire* history so the
  inventory entering the reporting year is right.
- Acquisitions create lots; disposals consume lots under the chosen policy and emit one
  DisposalResult each; standalone fees consume lots without a realization.

Rules (kept small and auditable):
- Unit cost = recorded USD price, else KRW price converted with the day's USDKRW rate,
  else the historical price collaborator, else zero (PRICE_UNAVAILABLE, conservative).
- Fees on an acquisition are added to the lot's cost; fees on a disposal reduce its gain.
  Fees in another asset are valued in USD first (stablecoins at face value, KRW via FX,
  anything else via the price collaborator).
- Proceeds use the disposal's own recorded price, never a re-derived one.
- Every lot also records its KRW unit cost at acquisition (recorded KRW price, else USD at that
  day's rate). KRW gain = KRW proceeds - KRW cost of the consumed lots - fee in KRW.
- Days the FX table cannot answer fall back to a configured USDKRW rate (annotated).
- Selling more than the open lots hold: everything available is consumed, the residual
  gets zero basis and the result carries an INSUFFICIENT_BASIS warning.

Design:
- Pure logic (no DB calls). Each call builds its own LotInventory, so runs never share
  mutable state and a run can be abandoned at any point through `cancel`.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Iterable, List, Optional

from .errors import CalculationCancelled
from .fx_utils import FIAT_USD_LIKE, FxConverter, PriceLookup, krw_to_usd, usd_to_krw
from .lots import ZERO, Lot, LotInventory, LotOrder
from .matching import policy_for
from .normalizer import Leg, LegRole
from .schemas import Diagnostic, DiagnosticCode, DisposalResult, LotMethod, LotTake

logger = logging.getLogger(__name__)


@dataclass
class ProcessOutcome:
    disposals: List[DisposalResult] = field(default_factory=list)
    diagnostics: List[Diagnostic] = field(default_factory=list)
    inventory: LotInventory = field(default_factory=LotInventory)


class _Pricing:
    """USD/KRW valuation of a leg, backed by the optional collaborators."""

    def __init__(
        self,
        prices: Optional[PriceLookup],
        fx: Optional[FxConverter],
        fallback_krw_per_usd: Optional[Decimal] = None,
    ):
        self.prices = prices
        self.fx = fx
        self.fallback = fallback_krw_per_usd

    def table_rate(self, leg: Leg) -> Optional[Decimal]:
        if self.fx is None:
            return None
        return self.fx.krw_per_usd(leg.timestamp.date())

    def fx_rate(self, leg: Leg) -> Optional[Decimal]:
        """The day's USDKRW rate (latest prior date), else the configured fallback."""
        rate = self.table_rate(leg)
        return rate if rate is not None else self.fallback

    def krw_rate(self, leg: Leg) -> Optional[Decimal]:
        """KRW per USD for this leg: the rate implied by its own prices, else fx_rate()."""
        if leg.price_usd is not None and leg.price_krw is not None and leg.price_usd > 0:
            return leg.price_krw / leg.price_usd
        return self.fx_rate(leg)

    def uses_fallback(self, leg: Leg, unit_usd: Decimal) -> bool:
        if self.fallback is None or unit_usd == 0:
            return False
        if leg.price_usd is not None and leg.price_krw is not None:
            return False
        return self.table_rate(leg) is None

    def fallback_note(self, leg: Leg) -> Diagnostic:
        return Diagnostic(
            code=DiagnosticCode.PRICE_UNAVAILABLE,
            transaction_id=leg.record_id,
            message=(
                f"No USDKRW rate on or before {leg.timestamp.date()}; "
                f"converted at fallback rate {self.fallback}."
            ),
        )

    def recorded_unit_usd(self, leg: Leg) -> Optional[Decimal]:
        if leg.price_usd is not None:
            return leg.price_usd
        if leg.price_krw is not None:
            rate = self.fx_rate(leg)
            if rate is not None:
                return krw_to_usd(leg.price_krw, rate)
        return None

    def looked_up_unit_usd(self, leg: Leg) -> Optional[Decimal]:
        if self.prices is None:
            return None
        return self.prices.lookup(leg.asset, leg.timestamp)

    def unit_krw(self, leg: Leg, unit_usd: Decimal) -> Optional[Decimal]:
        """KRW unit price: the recorded one, else the USD unit price at this leg's rate."""
        if leg.price_krw is not None:
            return leg.price_krw
        if unit_usd == 0:
            return ZERO
        rate = self.krw_rate(leg)
        return usd_to_krw(unit_usd, rate) if rate is not None else None

    def fee_usd(self, leg: Leg, unit_usd: Decimal, warnings: List[Diagnostic]) -> Decimal:
        if not leg.fee:
            return ZERO
        fee_asset = leg.fee_asset or leg.asset
        if fee_asset == leg.asset:
            return leg.fee * unit_usd
        if fee_asset in FIAT_USD_LIKE:
            return leg.fee
        if fee_asset == "KRW":
            rate = self.krw_rate(leg)
            converted = krw_to_usd(leg.fee, rate) if rate is not None else None
            if converted is not None:
                return converted
        elif self.prices is not None:
            price = self.prices.lookup(fee_asset, leg.timestamp)
            if price is not None:
                return leg.fee * price
        warnings.append(
            Diagnostic(
                code=DiagnosticCode.PRICE_UNAVAILABLE,
                transaction_id=leg.record_id,
                message=f"No USD value for fee of {leg.fee} {fee_asset}; fee ignored.",
            )
        )
        return ZERO

    def fee_krw(self, leg: Leg, fee_usd: Decimal, unit_krw: Optional[Decimal]) -> Optional[Decimal]:
        if fee_usd == 0:
            return ZERO
        fee_asset = leg.fee_asset or leg.asset
        if fee_asset == leg.asset and unit_krw is not None:
            return leg.fee * unit_krw
        if fee_asset == "KRW":
            return leg.fee
        rate = self.krw_rate(leg)
        return usd_to_krw(fee_usd, rate) if rate is not None else None


def _acquire(leg: Leg, inventory: LotInventory, pricing: _Pricing, diagnostics: List[Diagnostic]) -> Lot:
    unit = pricing.recorded_unit_usd(leg)
    if unit is None:
        unit = pricing.looked_up_unit_usd(leg)
    if unit is None:
        # Zero basis is the conservative default, not an error.
        diagnostics.append(
            Diagnostic(
                code=DiagnosticCode.PRICE_UNAVAILABLE,
                transaction_id=leg.record_id,
                message=f"No price for {leg.kind.value} of {leg.amount} {leg.asset}; cost basis set to zero.",
            )
        )
        unit = ZERO
    elif pricing.uses_fallback(leg, unit):
        diagnostics.append(pricing.fallback_note(leg))

    fee = pricing.fee_usd(leg, unit, diagnostics)
    unit_cost = unit if fee == 0 else (leg.amount * unit + fee) / leg.amount

    unit_krw = pricing.unit_krw(leg, unit)
    fee_krw = pricing.fee_krw(leg, fee, unit_krw)
    if unit_krw is None or fee_krw is None:
        unit_cost_krw: Optional[Decimal] = None
    else:
        unit_cost_krw = unit_krw if fee_krw == 0 else (leg.amount * unit_krw + fee_krw) / leg.amount

    lot = Lot(
        lot_id=leg.leg_id,
        asset=leg.asset,
        origin_transaction_id=leg.leg_id,
        acquired_at=leg.timestamp,
        original_quantity=leg.amount,
        remaining_quantity=leg.amount,
        unit_cost_usd=unit_cost,
        unit_cost_krw=unit_cost_krw,
    )
    inventory.acquire(lot)
    return lot


def _dispose(leg: Leg, inventory: LotInventory, policy: LotOrder, pricing: _Pricing) -> DisposalResult:
    warnings: List[Diagnostic] = []

    unit = pricing.recorded_unit_usd(leg)
    if unit is None:
        warnings.append(
            Diagnostic(
                code=DiagnosticCode.PRICE_UNAVAILABLE,
                transaction_id=leg.record_id,
                message=f"No USD price for {leg.kind.value} of {leg.amount} {leg.asset}; proceeds set to zero.",
            )
        )
        unit = ZERO
    elif pricing.uses_fallback(leg, unit):
        warnings.append(pricing.fallback_note(leg))
    proceeds_usd = leg.amount * unit

    unit_krw = pricing.unit_krw(leg, unit)
    proceeds_krw = leg.amount * unit_krw if unit_krw is not None else None

    fee = pricing.fee_usd(leg, unit, warnings)
    fee_krw = pricing.fee_krw(leg, fee, unit_krw)

    consumed = inventory.consume(leg.asset, leg.amount, policy)
    if consumed.unmatched > 0:
        warnings.append(
            Diagnostic(
                code=DiagnosticCode.INSUFFICIENT_BASIS,
                transaction_id=leg.record_id,
                message=(
                    f"Disposing {leg.amount} {leg.asset} but only {consumed.matched} available in lots. "
                    f"Assuming zero basis for {consumed.unmatched} {leg.asset}."
                ),
            )
        )

    cost = consumed.cost_usd
    gain = proceeds_usd - cost - fee

    # Lots carry their KRW cost from acquisition.
    cost_krw = consumed.cost_krw
    if proceeds_krw is None or cost_krw is None or fee_krw is None:
        gain_krw: Optional[Decimal] = None
    else:
        gain_krw = proceeds_krw - cost_krw - fee_krw

    return DisposalResult(
        transaction_id=leg.leg_id,
        asset=leg.asset,
        kind=leg.kind,
        timestamp=leg.timestamp,
        quantity=leg.amount,
        proceeds_usd=proceeds_usd,
        proceeds_krw=proceeds_krw,
        cost_basis_consumed=cost,
        cost_basis_krw=cost_krw,
        fee_usd=fee,
        gain_loss=gain,
        gain_loss_krw=gain_krw,
        lots_consumed=[
            LotTake(
                lot_id=c.lot.lot_id,
                quantity_taken=c.quantity_taken,
                unit_cost=c.unit_cost_usd,
                acquired_at=c.lot.acquired_at,
                unit_cost_krw=c.unit_cost_krw,
            )
            for c in consumed.consumptions
        ],
        unmatched_quantity=consumed.unmatched,
        warnings=warnings,
    )


def _consume_fee(leg: Leg, inventory: LotInventory, policy: LotOrder, diagnostics: List[Diagnostic]) -> None:
    consumed = inventory.consume(leg.asset, leg.amount, policy)
    if consumed.unmatched > 0:
        diagnostics.append(
            Diagnostic(
                code=DiagnosticCode.INSUFFICIENT_BASIS,
                transaction_id=leg.record_id,
                message=f"Fee of {leg.amount} {leg.asset} exceeds open lots by {consumed.unmatched}.",
            )
        )


def process(
    legs: Iterable[Leg],
    method: LotMethod | str,
    prices: Optional[PriceLookup] = None,
    fx: Optional[FxConverter] = None,
    cancel: Optional[threading.Event] = None,
    fallback_krw_per_usd: Optional[Decimal] = None,
) -> ProcessOutcome:
    """
    Core engine: route each leg (already in global order) to inventory mutation or
    disposal resolution. Returns every disposal of the history, not only one year's.

    fallback_krw_per_usd is used for USD<->KRW conversion on days the FX table cannot
    answer; each leg converted that way is annotated with PRICE_UNAVAILABLE.
    """
    policy = policy_for(method)
    pricing = _Pricing(prices, fx, fallback_krw_per_usd)
    out = ProcessOutcome()

    for leg in legs:
        if cancel is not None and cancel.is_set():
            raise CalculationCancelled(f"Run cancelled before {leg.leg_id}")

        if leg.role is LegRole.ACQUIRE:
            _acquire(leg, out.inventory, pricing, out.diagnostics)
        elif leg.role is LegRole.DISPOSE:
            result = _dispose(leg, out.inventory, policy, pricing)
            out.disposals.append(result)
            out.diagnostics.extend(result.warnings)
            for w in result.warnings:
                logger.warning("%s: %s", w.code.value, w.message)
        elif leg.role is LegRole.CONSUME:
            _consume_fee(leg, out.inventory, policy, out.diagnostics)
        elif leg.role is LegRole.SKIP:
            logger.debug("Skipping %s %s (no inventory effect)", leg.kind.value, leg.leg_id)
        else:  # pragma: no cover
            raise AssertionError(f"Unhandled leg role {leg.role!r}")

    logger.debug(
        "Processed legs for %s: %d disposals, %d diagnostics",
        ",".join(out.inventory.assets()) or "-",
        len(out.disposals),
        len(out.diagnostics),
    )
    return out
