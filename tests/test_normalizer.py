from datetime import datetime, timezone
from decimal import Decimal

import pytest

from cryptogains.errors import MalformedRecord
from cryptogains.normalizer import LegRole, normalize, role_for, validate_record
from cryptogains.schemas import DiagnosticCode, TransactionRecord, TxKind


def _tx(id, kind, asset="BTC", amount="1", ts=(2024, 1, 1), **kw):
    return TransactionRecord(
        id=id,
        kind=kind,
        asset=asset,
        amount=Decimal(amount),
        timestamp=datetime(*ts, tzinfo=timezone.utc),
        **kw,
    )


def test_sorts_by_timestamp_then_source_then_id():
    recs = [
        _tx("c", "BUY", price_usd=Decimal("1"), ts=(2024, 1, 2)),
        _tx("b", "BUY", price_usd=Decimal("1"), source_id="upbit"),
        _tx("a", "BUY", price_usd=Decimal("1"), source_id="upbit"),
        _tx("z", "BUY", price_usd=Decimal("1"), source_id="binance"),
    ]
    legs, diags = normalize(recs)
    assert [l.leg_id for l in legs] == ["z", "a", "b", "c"]
    assert [l.sequence for l in legs] == [0, 1, 2, 3]
    assert diags == []


def test_order_does_not_depend_on_input_order():
    recs = [_tx(str(i), "BUY", price_usd=Decimal("1")) for i in range(5)]
    a, _ = normalize(recs)
    b, _ = normalize(list(reversed(recs)))
    assert a == b


def test_kind_spellings_from_ledger():
    assert _tx("1", "TransferIn").kind is TxKind.TRANSFER_IN
    assert _tx("2", "transfer_out", price_usd=Decimal("1")).kind is TxKind.TRANSFER_OUT
    assert _tx("3", "Sell", price_usd=Decimal("1")).kind is TxKind.SELL


def test_non_positive_amount_is_excluded_with_diagnostic():
    recs = [
        _tx("ok", "BUY", price_usd=Decimal("100")),
        _tx("zero", "BUY", amount="0", price_usd=Decimal("100")),
        _tx("neg", "SELL", amount="-1", price_usd=Decimal("100")),
    ]
    legs, diags = normalize(recs)
    assert [l.leg_id for l in legs] == ["ok"]
    assert {d.transaction_id for d in diags} == {"zero", "neg"}
    assert all(d.code is DiagnosticCode.MALFORMED_RECORD for d in diags)


def test_disposal_without_any_price_is_malformed():
    with pytest.raises(MalformedRecord) as exc:
        validate_record(_tx("s1", "SELL"))
    assert exc.value.transaction_id == "s1"


def test_disposal_with_only_krw_price_is_accepted():
    validate_record(_tx("s1", "SELL", price_krw=Decimal("50000000")))


def test_acquisition_without_price_is_accepted():
    legs, diags = normalize([_tx("r1", "REWARD", asset="ETH", amount="0.1")])
    assert legs[0].role is LegRole.ACQUIRE
    assert diags == []


def test_exact_duplicate_dropped_conflicting_duplicate_rejected():
    a = _tx("dup", "BUY", price_usd=Decimal("100"))
    legs, diags = normalize([a, a])
    assert len(legs) == 1 and diags == []

    b = _tx("dup", "BUY", amount="2", price_usd=Decimal("100"))
    legs, diags = normalize([a, b])
    assert len(legs) == 1
    assert diags[0].code is DiagnosticCode.MALFORMED_RECORD
    assert "duplicate" in diags[0].message


def test_swap_splits_into_linked_legs():
    swap = _tx(
        "sw", "SWAP", asset="ETH", amount="2",
        price_usd=Decimal("1500"), counter_asset="sol", counter_amount=Decimal("100"),
        fee=Decimal("0.01"),
    )
    legs, diags = normalize([swap])
    out, inn = legs
    assert (out.leg_id, out.role, out.asset, out.amount) == ("sw:out", LegRole.DISPOSE, "ETH", Decimal("2"))
    assert (inn.leg_id, inn.role, inn.asset, inn.amount) == ("sw:in", LegRole.ACQUIRE, "SOL", Decimal("100"))
    # 100 SOL cost what 2 ETH fetched: 3000 USD
    assert inn.amount * inn.price_usd == Decimal("3000")
    assert out.fee == Decimal("0.01") and inn.fee is None
    assert out.record_id == inn.record_id == "sw"
    assert diags == []


def test_swap_without_counter_asset_keeps_disposal_leg():
    legs, diags = normalize([_tx("sw", "SWAP", price_usd=Decimal("1"))])
    assert [l.leg_id for l in legs] == ["sw:out"]
    assert diags[0].code is DiagnosticCode.UNMATCHED_SWAP_LEG


def test_internal_transfers_have_no_inventory_effect():
    out = _tx("t1", "TRANSFER_OUT", internal=True)
    inn = _tx("t2", "TRANSFER_IN", internal=True)
    assert role_for(out) is LegRole.SKIP
    assert role_for(inn) is LegRole.SKIP
    # no price needed for a custody move
    legs, diags = normalize([out, inn])
    assert diags == []


def test_external_transfer_out_is_a_disposal():
    assert role_for(_tx("t1", "TRANSFER_OUT", price_usd=Decimal("1"))) is LegRole.DISPOSE


def test_stake_and_fee_roles():
    assert role_for(_tx("s", "STAKE")) is LegRole.SKIP
    assert role_for(_tx("u", "UNSTAKE")) is LegRole.SKIP
    assert role_for(_tx("f", "FEE")) is LegRole.CONSUME


def test_naive_timestamp_is_utc():
    rec = TransactionRecord(id="1", kind="BUY", asset="btc", amount=Decimal("1"), timestamp=datetime(2024, 5, 1, 12))
    assert rec.timestamp.tzinfo is not None
    assert rec.asset == "BTC"
