# lots.py
"""
Per-asset inventory of acquisition lots.

- acquire() appends; lots are never reordered or re-increased.
- consume() asks a matching policy for an order over the *open* lots and takes greedily
  from the front until the quantity is covered or the lots run out.
- Fully consumed lots stay in the history (audit) but are skipped by matching.

If the open quantity cannot cover a disposal, everything available is consumed and the
residual is returned as `unmatched`; the caller decides how to report it (zero basis +
INSUFFICIENT_BASIS warning). consume() never drives a lot below zero.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Callable, Dict, Iterator, List, Optional, Sequence

logger = logging.getLogger(__name__)

ZERO = Decimal("0")

LotOrder = Callable[[Sequence["Lot"]], List["Lot"]]


@dataclass
class Lot:
    """
    An acquisition lot.
    - remaining_quantity: how much is still available to be disposed of
    - unit_cost_usd: basis per unit, fees included
    - unit_cost_krw: the same basis in KRW at acquisition (None if no KRW figure was known)
    """

    lot_id: str
    asset: str
    origin_transaction_id: str
    acquired_at: datetime
    original_quantity: Decimal
    remaining_quantity: Decimal
    unit_cost_usd: Decimal
    unit_cost_krw: Optional[Decimal] = None

    def __post_init__(self) -> None:
        if self.original_quantity <= 0:
            raise ValueError(f"Lot {self.lot_id}: original quantity must be positive")
        if not (ZERO <= self.remaining_quantity <= self.original_quantity):
            raise ValueError(f"Lot {self.lot_id}: remaining quantity out of range")

    @property
    def is_open(self) -> bool:
        return self.remaining_quantity > 0

    def take(self, quantity: Decimal) -> None:
        if quantity <= 0 or quantity > self.remaining_quantity:
            raise ValueError(
                f"Cannot take {quantity} from lot {self.lot_id} (remaining {self.remaining_quantity})"
            )
        self.remaining_quantity -= quantity


@dataclass(frozen=True)
class Consumption:
    lot: Lot
    quantity_taken: Decimal
    unit_cost_usd: Decimal  # frozen copy; the lot itself is mutable
    unit_cost_krw: Optional[Decimal] = None

    @property
    def cost_usd(self) -> Decimal:
        return self.quantity_taken * self.unit_cost_usd

    @property
    def cost_krw(self) -> Optional[Decimal]:
        if self.unit_cost_krw is None:
            return None
        return self.quantity_taken * self.unit_cost_krw


@dataclass
class ConsumeResult:
    consumptions: List[Consumption] = field(default_factory=list)
    unmatched: Decimal = ZERO

    @property
    def cost_usd(self) -> Decimal:
        return sum((c.cost_usd for c in self.consumptions), ZERO)

    @property
    def cost_krw(self) -> Optional[Decimal]:
        """KRW basis of the matched part; the unmatched residual has zero basis."""
        costs = [c.cost_krw for c in self.consumptions]
        if any(c is None for c in costs):
            return None
        return sum(costs, ZERO)

    @property
    def matched(self) -> Decimal:
        return sum((c.quantity_taken for c in self.consumptions), ZERO)


class AssetInventory:
    """Ordered lots for one asset plus running totals used by the conservation check."""

    def __init__(self, asset: str):
        self.asset = asset
        self._lots: List[Lot] = []
        self._taken_total = ZERO

    def __len__(self) -> int:
        return len(self._lots)

    def __iter__(self) -> Iterator[Lot]:
        return iter(self._lots)

    @property
    def lots(self) -> tuple:
        return tuple(self._lots)

    def open_lots(self) -> List[Lot]:
        return [lot for lot in self._lots if lot.is_open]

    def open_quantity(self) -> Decimal:
        return sum((lot.remaining_quantity for lot in self._lots), ZERO)

    @property
    def taken_total(self) -> Decimal:
        return self._taken_total

    def acquire(self, lot: Lot) -> None:
        if lot.asset != self.asset:
            raise ValueError(f"Lot {lot.lot_id} is {lot.asset}, inventory holds {self.asset}")
        self._lots.append(lot)

    def consume(self, quantity: Decimal, policy: LotOrder) -> ConsumeResult:
        if quantity <= 0:
            raise ValueError(f"Consumption quantity must be positive, got {quantity}")

        result = ConsumeResult()
        remaining = quantity
        for lot in policy(self.open_lots()):
            if remaining <= 0:
                break
            take = min(lot.remaining_quantity, remaining)
            lot.take(take)
            remaining -= take
            self._taken_total += take
            result.consumptions.append(
                Consumption(
                    lot=lot,
                    quantity_taken=take,
                    unit_cost_usd=lot.unit_cost_usd,
                    unit_cost_krw=lot.unit_cost_krw,
                )
            )
            logger.debug("%s: took %s from lot %s @ %s", self.asset, take, lot.lot_id, lot.unit_cost_usd)

        result.unmatched = remaining
        return result

    def is_conserved(self) -> bool:
        """sum(remaining) + sum(taken) == sum(original)"""
        original = sum((lot.original_quantity for lot in self._lots), ZERO)
        return self.open_quantity() + self._taken_total == original


class LotInventory:
    """All per-asset inventories of one run. Never shared between runs."""

    def __init__(self) -> None:
        self._assets: Dict[str, AssetInventory] = {}

    def for_asset(self, asset: str) -> AssetInventory:
        inv = self._assets.get(asset)
        if inv is None:
            inv = self._assets[asset] = AssetInventory(asset)
        return inv

    def acquire(self, lot: Lot) -> None:
        self.for_asset(lot.asset).acquire(lot)

    def consume(self, asset: str, quantity: Decimal, policy: LotOrder) -> ConsumeResult:
        return self.for_asset(asset).consume(quantity, policy)

    def assets(self) -> List[str]:
        return sorted(self._assets)

    def merge(self, other: "LotInventory") -> None:
        """Adopt the inventories of a disjoint shard."""
        for asset, inv in other._assets.items():
            if asset in self._assets:
                raise ValueError(f"Shard inventories overlap on {asset}")
            self._assets[asset] = inv

    def is_conserved(self) -> bool:
        return all(inv.is_conserved() for inv in self._assets.values())
