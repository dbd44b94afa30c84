from datetime import datetime, timezone
from decimal import Decimal

import pytest

from cryptogains.lots import AssetInventory, Lot, LotInventory
from cryptogains.matching import order_fifo


def _lot(lot_id, qty, cost="10", asset="BTC", day=1):
    return Lot(
        lot_id=lot_id,
        asset=asset,
        origin_transaction_id=lot_id,
        acquired_at=datetime(2023, 1, day, tzinfo=timezone.utc),
        original_quantity=Decimal(qty),
        remaining_quantity=Decimal(qty),
        unit_cost_usd=Decimal(cost),
    )


def test_lot_invariants():
    with pytest.raises(ValueError):
        _lot("x", "0")
    with pytest.raises(ValueError):
        Lot("x", "BTC", "x", datetime(2023, 1, 1), Decimal("1"), Decimal("2"), Decimal("1"))
    lot = _lot("x", "1")
    with pytest.raises(ValueError):
        lot.take(Decimal("1.5"))
    assert lot.remaining_quantity == Decimal("1")


def test_partial_consumption_spans_lots():
    inv = AssetInventory("BTC")
    inv.acquire(_lot("a", "0.5", "100", day=1))
    inv.acquire(_lot("b", "1", "200", day=2))
    res = inv.consume(Decimal("0.8"), order_fifo)
    assert [(c.lot.lot_id, c.quantity_taken) for c in res.consumptions] == [
        ("a", Decimal("0.5")),
        ("b", Decimal("0.3")),
    ]
    assert res.cost_usd == Decimal("110")
    assert inv.open_quantity() == Decimal("0.7")
    assert inv.is_conserved()


def test_fully_consumed_lots_stay_in_history_but_are_skipped():
    inv = AssetInventory("BTC")
    inv.acquire(_lot("a", "1", day=1))
    inv.acquire(_lot("b", "1", day=2))
    inv.consume(Decimal("1"), order_fifo)
    assert len(inv) == 2
    assert [l.lot_id for l in inv.open_lots()] == ["b"]
    res = inv.consume(Decimal("1"), order_fifo)
    assert [c.lot.lot_id for c in res.consumptions] == ["b"]


def test_insufficient_quantity_returns_unmatched_without_going_negative():
    inv = AssetInventory("BTC")
    inv.acquire(_lot("a", "0.4"))
    res = inv.consume(Decimal("1"), order_fifo)
    assert res.matched == Decimal("0.4")
    assert res.unmatched == Decimal("0.6")
    assert all(l.remaining_quantity >= 0 for l in inv)
    assert inv.is_conserved()


def test_consume_from_empty_inventory():
    inv = AssetInventory("BTC")
    res = inv.consume(Decimal("2"), order_fifo)
    assert res.consumptions == []
    assert res.unmatched == Decimal("2")


def test_consume_rejects_non_positive_quantity():
    with pytest.raises(ValueError):
        AssetInventory("BTC").consume(Decimal("0"), order_fifo)


def test_acquire_rejects_other_asset():
    with pytest.raises(ValueError):
        AssetInventory("BTC").acquire(_lot("e", "1", asset="ETH"))


def test_lot_inventory_routes_by_asset_and_merges_disjoint_shards():
    left, right = LotInventory(), LotInventory()
    left.acquire(_lot("a", "1", asset="BTC"))
    right.acquire(_lot("b", "1", asset="ETH"))
    left.merge(right)
    assert left.assets() == ["BTC", "ETH"]

    clash = LotInventory()
    clash.acquire(_lot("c", "1", asset="ETH"))
    with pytest.raises(ValueError):
        left.merge(clash)


def test_conservation_over_many_consumptions():
    inv = AssetInventory("BTC")
    for i in range(1, 6):
        inv.acquire(_lot(f"l{i}", "0.3", day=i))
    for qty in ("0.1", "0.25", "0.4", "0.7", "0.9"):
        inv.consume(Decimal(qty), order_fifo)
        assert inv.is_conserved()
    assert inv.open_quantity() == 0
