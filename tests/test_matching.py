from datetime import datetime, timezone
from decimal import Decimal

import pytest

from cryptogains.lots import AssetInventory, Lot
from cryptogains.matching import order_fifo, order_hifo, order_lifo, policy_for
from cryptogains.schemas import LotMethod


def _lot(lot_id, day, cost, qty="1"):
    return Lot(
        lot_id=lot_id,
        asset="BTC",
        origin_transaction_id=lot_id,
        acquired_at=datetime(2023, 1, day, tzinfo=timezone.utc),
        original_quantity=Decimal(qty),
        remaining_quantity=Decimal(qty),
        unit_cost_usd=Decimal(cost),
    )


LOTS = [_lot("b", 2, "300"), _lot("a", 1, "100"), _lot("c", 3, "200"), _lot("d", 2, "300")]


def test_fifo_oldest_first_ties_by_origin_id():
    assert [l.lot_id for l in order_fifo(LOTS)] == ["a", "b", "d", "c"]


def test_lifo_newest_first_ties_descending():
    assert [l.lot_id for l in order_lifo(LOTS)] == ["c", "d", "b", "a"]


def test_hifo_highest_cost_then_oldest():
    assert [l.lot_id for l in order_hifo(LOTS)] == ["b", "d", "c", "a"]


def test_hifo_equal_cost_prefers_older_lot():
    older = _lot("z", 1, "500")
    newer = _lot("a", 5, "500")
    assert [l.lot_id for l in order_hifo([newer, older])] == ["z", "a"]


def test_policies_do_not_mutate_or_reorder_input():
    snapshot = list(LOTS)
    for policy in (order_fifo, order_lifo, order_hifo):
        policy(LOTS)
    assert LOTS == snapshot
    assert all(l.remaining_quantity == Decimal("1") for l in LOTS)


def test_policy_for_accepts_strings_and_rejects_unknown():
    assert policy_for("HIFO") is order_hifo
    assert policy_for(LotMethod.LIFO) is order_lifo
    with pytest.raises(ValueError):
        policy_for("AVERAGE")


@pytest.mark.parametrize("method,expected_cost", [("FIFO", "100"), ("LIFO", "200"), ("HIFO", "300")])
def test_consume_follows_policy(method, expected_cost):
    inv = AssetInventory("BTC")
    for lot in (_lot("a", 1, "100"), _lot("b", 2, "300"), _lot("c", 3, "200")):
        inv.acquire(lot)
    res = inv.consume(Decimal("1"), policy_for(method))
    assert res.cost_usd == Decimal(expected_cost)
    assert res.unmatched == 0
