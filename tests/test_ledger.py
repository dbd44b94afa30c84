from datetime import date, datetime
from decimal import Decimal

import pytest
from sqlalchemy.orm import Session

from cryptogains.calc_runner import run_calculation
from cryptogains.db import init_db, make_engine
from cryptogains.fx_utils import load_fx_table, load_price_table
from cryptogains.ledger import load_ledger, store_records
from cryptogains.models import FxRate, LedgerTransaction, PriceQuote
from cryptogains.schemas import CalcConfig, DiagnosticCode, TransactionRecord


@pytest.fixture()
def session(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'ledger.db'}")
    init_db(engine)
    with Session(engine) as s:
        yield s
    engine.dispose()


def _row(id, kind, amount, ts, **kw):
    return LedgerTransaction(id=id, kind=kind, asset="ETH", amount=Decimal(amount), timestamp=ts, **kw)


def test_decimal_values_survive_storage(session):
    session.add(_row("r1", "REWARD", "0.000000000000000001", datetime(2024, 1, 1)))
    session.commit()
    records, errors = load_ledger(session)
    assert errors == []
    assert records[0].amount == Decimal("1E-18")
    assert records[0].timestamp.tzinfo is not None


def test_unreadable_rows_become_diagnostics(session):
    session.add(_row("ok", "BUY", "1", datetime(2024, 1, 1), price_usd=Decimal("10")))
    session.add(_row("weird", "LEND", "1", datetime(2024, 1, 2)))
    session.commit()
    records, errors = load_ledger(session)
    assert [r.id for r in records] == ["ok"]
    assert errors[0].code is DiagnosticCode.MALFORMED_RECORD
    assert errors[0].transaction_id == "weird"


def test_store_records_skips_known_ids(session):
    rec = TransactionRecord(id="a", kind="BUY", asset="ETH", amount=Decimal("1"), timestamp=datetime(2024, 1, 1))
    assert store_records(session, [rec]) == (1, 0)
    assert store_records(session, [rec]) == (0, 1)


def test_fx_and_price_tables_load_from_db(session):
    session.add(FxRate(date=date(2024, 1, 1), krw_per_usd=Decimal("1300.5")))
    session.add(PriceQuote(asset="ETH", timestamp=datetime(2024, 1, 1), price_usd=Decimal("2000")))
    session.commit()
    fx = load_fx_table(session)
    assert fx.krw_per_usd(date(2024, 3, 1)) == Decimal("1300.5")
    assert fx.krw_per_usd(date(2023, 12, 31)) is None
    prices = load_price_table(session)
    assert prices.lookup("eth", datetime.fromisoformat("2024-02-01T00:00:00+00:00")) == Decimal("2000")


def test_run_calculation_on_snapshot(session):
    session.add(FxRate(date=date(2023, 1, 1), krw_per_usd=Decimal("1000")))
    session.add(PriceQuote(asset="ETH", timestamp=datetime(2023, 12, 1), price_usd=Decimal("1500")))
    session.add(_row("r1", "REWARD", "2", datetime(2024, 1, 1)))
    session.add(_row("s1", "SELL", "1", datetime(2024, 5, 1), price_usd=Decimal("4500")))
    session.add(_row("weird", "LEND", "1", datetime(2024, 1, 2)))
    session.commit()

    summary = run_calculation(session, CalcConfig(year=2024))
    (d,) = summary.disposals
    assert d.cost_basis_consumed == Decimal("1500")
    assert d.gain_loss_krw == Decimal("3000000")
    assert summary.net_gains == Decimal("3000000")
    assert summary.taxable_gains == Decimal("500000")
    assert summary.estimated_tax == Decimal("110000")
    assert [x.transaction_id for x in summary.diagnostics] == ["weird"]


def test_every_ledger_column_maps_to_a_record_field(session):
    columns = set(LedgerTransaction.__table__.columns.keys()) - {"created_at"}
    assert columns == set(TransactionRecord.model_fields)

    rec = TransactionRecord(
        id="sw", kind="SWAP", asset="ETH", amount=Decimal("2"), price_usd=Decimal("1500"),
        fee=Decimal("0.01"), fee_asset="ETH", counter_asset="SOL", counter_amount=Decimal("100"),
        source_id="upbit", timestamp=datetime(2024, 2, 1),
    )
    store_records(session, [rec])
    session.commit()
    records, _ = load_ledger(session)
    assert records == [rec]
