from __future__ import annotations

"""
Ledger table <-> TransactionRecord.

load_ledger() is the snapshot read done once at the start of a run; store_records() is what
the CSV import endpoint uses to append rows.
"""

import logging
from typing import Iterable, List, Tuple

from pydantic import ValidationError
from sqlalchemy.orm import Session

from .models import LedgerTransaction
from .schemas import Diagnostic, DiagnosticCode, TransactionRecord

logger = logging.getLogger(__name__)


def load_ledger(session: Session) -> Tuple[List[TransactionRecord], List[Diagnostic]]:
    rows = (
        session.query(LedgerTransaction)
        .order_by(LedgerTransaction.timestamp.asc(), LedgerTransaction.source_id.asc(), LedgerTransaction.id.asc())
        .all()
    )
    records: List[TransactionRecord] = []
    errors: List[Diagnostic] = []
    for row in rows:
        try:
            records.append(TransactionRecord.model_validate(row))
        except ValidationError as e:
            fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in e.errors())
            logger.warning("Ledger row %s failed validation (%s)", row.id, fields)
            errors.append(
                Diagnostic(
                    code=DiagnosticCode.MALFORMED_RECORD,
                    transaction_id=row.id,
                    message=f"invalid field(s): {fields}",
                )
            )
    logger.info("Loaded ledger snapshot: %d records, %d unreadable", len(records), len(errors))
    return records, errors


def to_row(record: TransactionRecord) -> LedgerTransaction:
    return LedgerTransaction(
        id=record.id,
        source_id=record.source_id,
        timestamp=record.timestamp.replace(tzinfo=None),
        kind=record.kind.value,
        asset=record.asset,
        amount=record.amount,
        price_usd=record.price_usd,
        price_krw=record.price_krw,
        fee=record.fee,
        fee_asset=record.fee_asset,
        counter_asset=record.counter_asset,
        counter_amount=record.counter_amount,
        internal=record.internal,
    )


def store_records(session: Session, records: Iterable[TransactionRecord]) -> Tuple[int, int]:
    """
    Insert records whose id is not in the ledger yet. Returns (inserted, skipped).
    Existing ids are left untouched; the ledger is append-only from this side.
    """
    inserted = skipped = 0
    for record in records:
        if session.get(LedgerTransaction, record.id) is not None:
            skipped += 1
            continue
        session.add(to_row(record))
        inserted += 1
    session.flush()
    logger.info("Stored %d ledger rows (%d already present)", inserted, skipped)
    return inserted, skipped
