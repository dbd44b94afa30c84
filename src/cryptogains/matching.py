from __future__ import annotations

from typing import Dict, List, Sequence

from .lots import Lot, LotOrder
from .schemas import LotMethod


def order_fifo(lots: Sequence[Lot]) -> List[Lot]:
    """FIFO: oldest acquisition first; ties by origin transaction id."""
    return sorted(lots, key=lambda lot: (lot.acquired_at, lot.origin_transaction_id))


def order_lifo(lots: Sequence[Lot]) -> List[Lot]:
    """LIFO: newest acquisition first; ties by origin transaction id, descending."""
    return sorted(lots, key=lambda lot: (lot.acquired_at, lot.origin_transaction_id), reverse=True)


def order_hifo(lots: Sequence[Lot]) -> List[Lot]:
    """HIFO: highest unit cost first; among equal costs the oldest lot goes first."""
    return sorted(lots, key=lambda lot: (-lot.unit_cost_usd, lot.acquired_at, lot.origin_transaction_id))


POLICIES: Dict[LotMethod, LotOrder] = {
    LotMethod.FIFO: order_fifo,
    LotMethod.LIFO: order_lifo,
    LotMethod.HIFO: order_hifo,
}


def policy_for(method: LotMethod | str) -> LotOrder:
    """Master lookup; the returned function only orders a snapshot, it never mutates lots."""
    try:
        return POLICIES[LotMethod(method)]
    except (KeyError, ValueError):
        raise ValueError(f"Unknown lot method: {method!r}") from None
