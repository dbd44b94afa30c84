# tests/smoke_test.py
# Run with:
#   pytest -q -m smoke --maxfail=1 --disable-warnings -rA

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from cryptogains.app import app, get_law_table
from cryptogains.config import Settings
from cryptogains.db import get_session, init_db, make_engine
from cryptogains.rules import load_law_table

pytestmark = pytest.mark.smoke

LEDGER_CSV = (
    "id,timestamp,kind,asset,amount,price_usd,price_krw,fee,fee_asset,source_id\n"
    "b1,2024-01-10T09:00:00Z,BUY,BTC,1,30000,39000000,,,upbit\n"
    "s1,2024-06-10T09:00:00Z,SELL,BTC,0.5,60000,78000000,,,upbit\n"
    "x1,2024-06-11T09:00:00Z,BUY,BTC,oops,1,1,,,upbit\n"
).encode("utf-8")


@pytest.fixture()
def client(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'ledger.db'}")
    init_db(engine)
    Session = sessionmaker(bind=engine, autoflush=False)

    def _session():
        db = Session()
        try:
            yield db
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    app.dependency_overrides[get_session] = _session
    app.dependency_overrides[get_law_table] = lambda: load_law_table("KR")
    yield TestClient(app)
    app.dependency_overrides.clear()
    engine.dispose()


def _import(client):
    r = client.post("/import/csv", files={"file": ("ledger.csv", LEDGER_CSV, "text/csv")})
    assert r.status_code == 200, r.text
    return r.json()


def test_health_and_version(client):
    assert client.get("/health").json() == {"status": "ok"}
    body = client.get("/version").json()
    assert body["name"] == "cryptogains"
    assert body["version"]


def test_upload_preview_does_not_write(client):
    r = client.post("/upload/csv", files={"file": ("ledger.csv", LEDGER_CSV, "text/csv")})
    assert r.status_code == 200
    body = r.json()
    assert body["total_valid"] == 2
    assert body["total_errors"] == 1
    assert body["preview_first_5"][0]["amount"] == "1"
    report = client.get("/report/2024").json()
    assert report["disposals"] == []


def test_upload_rejects_non_csv(client):
    r = client.post("/upload/csv", files={"file": ("ledger.txt", b"x", "text/plain")})
    assert r.status_code == 400


def test_import_then_report(client):
    first = _import(client)
    assert (first["inserted"], first["skipped_duplicates"], first["skipped_errors"]) == (2, 0, 1)
    again = _import(client)
    assert (again["inserted"], again["skipped_duplicates"]) == (0, 2)

    r = client.get("/report/2024", params={"method": "FIFO"})
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["method"] == "FIFO"
    assert body["totals"]["net_gains"] == "19500000"
    assert body["totals"]["deduction"] == "2500000"
    assert body["totals"]["taxable_gains"] == "17000000"
    assert body["totals"]["estimated_tax"] == "3740000"
    assert body["disposals"][0]["transaction_id"] == "s1"
    assert len(body["digest"]) == 64
    assert client.get("/report/2024").json()["digest"] == body["digest"]


def test_unknown_year_is_404(client):
    r = client.get("/report/2031")
    assert r.status_code == 404
    assert r.json()["year"] == 2031


def test_bad_method_is_422(client):
    assert client.get("/report/2024", params={"method": "AVG"}).status_code == 422


def test_exports(client):
    _import(client)
    r = client.get("/export/2024.csv")
    assert r.status_code == 200
    assert r.headers["content-type"].startswith("text/csv")
    lines = r.content.decode("utf-8-sig").splitlines()
    assert lines[0].startswith("거래일시,")
    assert lines[1].startswith("2024-06-10,매도,BTC,0.5,")

    r = client.get("/export/2024.pdf", params={"method": "HIFO"})
    assert r.status_code == 200
    assert r.content.startswith(b"%PDF")


def test_report_year_follows_configured_timezone(client, monkeypatch):
    monkeypatch.setattr("cryptogains.app.settings", Settings(timezone="Asia/Seoul"))
    data = (
        "id,timestamp,kind,asset,amount,price_usd,price_krw\n"
        "b1,2024-06-01T00:00:00Z,BUY,ETH,1,3000,3900000\n"
        "s1,2024-12-31T16:00:00Z,SELL,ETH,1,3500,4550000\n"
    ).encode("utf-8")
    assert client.post("/import/csv", files={"file": ("ledger.csv", data, "text/csv")}).status_code == 200
    # 16:00 UTC on New Year's Eve is already 2025 in Seoul
    assert client.get("/report/2024").json()["disposals"] == []
    late = client.get("/report/2025").json()
    assert [d["transaction_id"] for d in late["disposals"]] == ["s1"]
    assert late["totals"]["net_gains"] == "650000"
