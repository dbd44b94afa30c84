# app.py
"""
FastAPI application.

This file wires together:
- the CSV parsing service and the ledger table
- the calculation runner (ledger snapshot -> tax-year summary)
- the export renderings (JSON, HomeTax CSV, PDF)

Endpoints:
  GET  /health                 → liveness check
  GET  /version                → app version metadata
  POST /upload/csv             → parse CSV and PREVIEW (no DB writes)
  POST /import/csv             → parse CSV and SAVE new rows to the ledger
  GET  /report/{year}          → run the engine for one tax year (?method=FIFO|LIFO|HIFO)
  GET  /export/{year}.csv      → disposals of the year as HomeTax-style CSV
  GET  /export/{year}.pdf      → PDF summary

  Command to start the server: uvicorn cryptogains.app:app --reload
"""

import logging
from functools import lru_cache
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, File, HTTPException, Query, Request, Response, UploadFile
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from .__about__ import __title__, __version__
from .audit_digest import summary_digest
from .calc_runner import run_calculation
from .config import configure_logging, load_settings
from .csv_normalizer import parse_csv
from .db import get_session, init_db
from .errors import UnknownTaxYear
from .ledger import store_records
from .report_export import annual_summary_rows, disposals_csv, summary_to_dict
from .report_pdf import build_summary_pdf
from .rules import TaxLawTable, load_law_table
from .schemas import CalcConfig, CSVPreviewResponse, ImportCSVResponse, LotMethod, TaxYearSummary

logger = logging.getLogger(__name__)

settings = load_settings()
configure_logging(settings.log_level)

app = FastAPI(title=__title__, version=__version__)


@lru_cache(maxsize=1)
def get_law_table() -> TaxLawTable:
    return load_law_table(settings.jurisdiction, settings.tax_law_file)


@app.on_event("startup")
def on_startup() -> None:
    """Ensure the ledger tables exist (idempotent)."""
    init_db()


@app.exception_handler(UnknownTaxYear)
async def unknown_tax_year_handler(request: Request, exc: UnknownTaxYear) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": str(exc), "year": exc.year})


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------

async def _read_csv_upload(file: UploadFile) -> bytes:
    filename = file.filename or ""
    if not filename.lower().endswith(".csv"):
        raise HTTPException(status_code=400, detail="Please upload a .csv file")
    data = await file.read()
    if len(data) == 0:
        raise HTTPException(status_code=400, detail="Empty file")
    return data


def _parse(data: bytes):
    try:
        return parse_csv(data)
    except UnicodeDecodeError as e:
        raise HTTPException(status_code=400, detail=f"CSV is not valid UTF-8: {e.reason}")


def _summary_for(year: int, method: Optional[LotMethod], session: Session, law_table: TaxLawTable) -> TaxYearSummary:
    cfg = CalcConfig(
        year=year,
        method=method or settings.lot_method,
        jurisdiction=settings.jurisdiction,
        rule_version=law_table.version,
        workers=settings.workers,
        timezone=settings.timezone,
        fallback_krw_per_usd=settings.fallback_krw_per_usd,
    )
    return run_calculation(session, cfg, law_table)


# -----------------------------------------------------------------------------
# Health + version endpoints (simple sanity checks)
# -----------------------------------------------------------------------------
@app.get("/health")
def health() -> Dict[str, str]:
    """Quick liveness check for monitoring or manual testing."""
    return {"status": "ok"}


@app.get("/version")
def version() -> Dict[str, str]:
    """Show the backend name and version (useful to confirm deployments)."""
    return {"name": __title__, "version": __version__}


# -----------------------------------------------------------------------------
# CSV endpoints
# -----------------------------------------------------------------------------
@app.post("/upload/csv", response_model=CSVPreviewResponse)
async def upload_csv(file: UploadFile = File(...)) -> Dict[str, Any]:
    """
    Accept a CSV upload, parse & validate it, and return a PREVIEW (no DB writes).
    """
    data = await _read_csv_upload(file)
    valid_rows, errors = _parse(data)
    return {
        "filename": file.filename,
        "total_valid": len(valid_rows),
        "total_errors": len(errors),
        "preview_first_5": valid_rows[:5],
        "errors": errors[:5],
    }


@app.post("/import/csv", response_model=ImportCSVResponse)
async def import_csv(file: UploadFile = File(...), session: Session = Depends(get_session)) -> Dict[str, Any]:
    """
    Accept a CSV upload and append its valid rows to the ledger. Ids already present are skipped.
    """
    data = await _read_csv_upload(file)
    valid_rows, errors = _parse(data)
    inserted, skipped = store_records(session, valid_rows)
    return {
        "filename": file.filename,
        "inserted": inserted,
        "skipped_duplicates": skipped,
        "skipped_errors": len(errors),
        "note": "Use GET /report/{year} to calculate.",
    }


# -----------------------------------------------------------------------------
# Report + exports
# -----------------------------------------------------------------------------
@app.get("/report/{year}")
def report(
    year: int,
    method: Optional[LotMethod] = Query(None, description="FIFO, LIFO or HIFO"),
    session: Session = Depends(get_session),
    law_table: TaxLawTable = Depends(get_law_table),
) -> Dict[str, Any]:
    summary = _summary_for(year, method, session, law_table)
    body = summary_to_dict(summary)
    body["annual_summary"] = annual_summary_rows(summary)
    body["digest"] = summary_digest(summary)
    return body


@app.get("/export/{year}.csv", summary="Download the year's disposals as HomeTax-style CSV")
def export_csv(
    year: int,
    method: Optional[LotMethod] = None,
    session: Session = Depends(get_session),
    law_table: TaxLawTable = Depends(get_law_table),
) -> Response:
    summary = _summary_for(year, method, session, law_table)
    # BOM so spreadsheet tools detect UTF-8 (Korean headers)
    csv_bytes = ("\ufeff" + disposals_csv(summary)).encode("utf-8")
    headers = {"Content-Disposition": f'attachment; filename="disposals_{year}_{summary.method.value}.csv"'}
    return Response(content=csv_bytes, media_type="text/csv; charset=utf-8", headers=headers)


@app.get("/export/{year}.pdf", summary="Download the tax-year summary as PDF")
def export_pdf(
    year: int,
    method: Optional[LotMethod] = None,
    session: Session = Depends(get_session),
    law_table: TaxLawTable = Depends(get_law_table),
) -> Response:
    summary = _summary_for(year, method, session, law_table)
    pdf = build_summary_pdf(summary)
    headers = {"Content-Disposition": f'attachment; filename="summary_{year}_{summary.method.value}.pdf"'}
    return Response(content=pdf, media_type="application/pdf", headers=headers)
