# normalizer.py
"""
Ledger records -> immutable, strictly ordered stream of accounting legs.

Responsibilities:
- Validate structural invariants (positive amount, disposals carry a price, ...).
- Drop exact duplicates (same id, same content); reject conflicting duplicates.
- Sort by (timestamp, source_id, id) so identical timestamps from batch imports still
  produce one deterministic total order.
- Split swaps into two linked legs and tag every leg with its accounting role.

A bad record never aborts the run: it is excluded and reported as a Diagnostic.
This module is pure (no DB calls, no prices).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Dict, Iterable, List, Optional, Tuple

from .errors import MalformedRecord
from .schemas import DISPOSAL_KINDS, Diagnostic, DiagnosticCode, TransactionRecord, TxKind

logger = logging.getLogger(__name__)


class LegRole(str, Enum):
    ACQUIRE = "ACQUIRE"  # creates a lot
    DISPOSE = "DISPOSE"  # consumes lots and realizes a gain/loss
    CONSUME = "CONSUME"  # consumes lots without a realization (standalone fee)
    SKIP = "SKIP"  # custody move, inventory unchanged


# Every TxKind must be listed; checked below at import time.
_ROLE_BY_KIND: Dict[TxKind, LegRole] = {
    TxKind.BUY: LegRole.ACQUIRE,
    TxKind.TRANSFER_IN: LegRole.ACQUIRE,
    TxKind.REWARD: LegRole.ACQUIRE,
    TxKind.AIRDROP: LegRole.ACQUIRE,
    TxKind.SELL: LegRole.DISPOSE,
    TxKind.TRANSFER_OUT: LegRole.DISPOSE,
    TxKind.SWAP: LegRole.DISPOSE,
    TxKind.FEE: LegRole.CONSUME,
    TxKind.STAKE: LegRole.SKIP,
    TxKind.UNSTAKE: LegRole.SKIP,
}

if set(_ROLE_BY_KIND) != set(TxKind):  # pragma: no cover
    raise RuntimeError(f"Unmapped transaction kinds: {set(TxKind) - set(_ROLE_BY_KIND)}")


@dataclass(frozen=True)
class Leg:
    """
    One inventory movement of a single asset.

    For plain records leg_id == record_id. A swap yields "<id>:out" (disposal of the input
    asset) and "<id>:in" (acquisition of the output asset, priced at the swap's proceeds).
    `sequence` is the position in the global order and is used to merge per-asset shards.
    """

    leg_id: str
    record_id: str
    sequence: int
    role: LegRole
    kind: TxKind
    asset: str
    amount: Decimal
    timestamp: datetime
    source_id: str
    price_usd: Optional[Decimal] = None
    price_krw: Optional[Decimal] = None
    fee: Optional[Decimal] = None
    fee_asset: Optional[str] = None


def role_for(record: TransactionRecord) -> LegRole:
    if record.internal and record.kind in (TxKind.TRANSFER_IN, TxKind.TRANSFER_OUT):
        # Inventory is pooled across sources, so an own-account transfer moves nothing.
        return LegRole.SKIP
    return _ROLE_BY_KIND[record.kind]


def sort_key(record: TransactionRecord) -> Tuple[datetime, str, str]:
    return (record.timestamp, record.source_id, record.id)


def validate_record(record: TransactionRecord) -> None:
    """Raise MalformedRecord if the record breaks a structural invariant."""
    for name in ("amount", "price_usd", "price_krw", "fee", "counter_amount"):
        value = getattr(record, name)
        if value is not None and not value.is_finite():
            raise MalformedRecord(record.id, f"{name} must be finite")
    if record.amount <= 0:
        raise MalformedRecord(record.id, f"amount must be positive, got {record.amount}")
    for name in ("price_usd", "price_krw", "fee"):
        value = getattr(record, name)
        if value is not None and value < 0:
            raise MalformedRecord(record.id, f"{name} must not be negative, got {value}")
    if record.kind in DISPOSAL_KINDS and role_for(record) is LegRole.DISPOSE:
        if record.price_usd is None and record.price_krw is None:
            raise MalformedRecord(record.id, f"{record.kind.value} has neither price_usd nor price_krw")
    if record.counter_asset is not None:
        if record.counter_amount is None or record.counter_amount <= 0:
            raise MalformedRecord(record.id, "counter_amount must be positive when counter_asset is set")


def _legs_for(record: TransactionRecord, diagnostics: List[Diagnostic]) -> List[Leg]:
    role = role_for(record)
    base = dict(
        record_id=record.id,
        sequence=0,
        kind=record.kind,
        timestamp=record.timestamp,
        source_id=record.source_id,
    )
    if record.kind is not TxKind.SWAP:
        return [
            Leg(
                leg_id=record.id,
                role=role,
                asset=record.asset,
                amount=record.amount,
                price_usd=record.price_usd,
                price_krw=record.price_krw,
                fee=record.fee,
                fee_asset=record.effective_fee_asset if record.fee else None,
                **base,
            )
        ]

    out_leg = Leg(
        leg_id=f"{record.id}:out",
        role=LegRole.DISPOSE,
        asset=record.asset,
        amount=record.amount,
        price_usd=record.price_usd,
        price_krw=record.price_krw,
        fee=record.fee,
        fee_asset=record.effective_fee_asset if record.fee else None,
        **base,
    )
    if record.counter_asset is None:
        diagnostics.append(
            Diagnostic(
                code=DiagnosticCode.UNMATCHED_SWAP_LEG,
                transaction_id=record.id,
                message=f"Swap of {record.amount} {record.asset} has no output asset; only the disposal leg is recorded.",
            )
        )
        return [out_leg]

    # The acquired asset's total cost equals the value given up: amount_in * price_in.
    ratio = record.amount / record.counter_amount
    in_leg = Leg(
        leg_id=f"{record.id}:in",
        role=LegRole.ACQUIRE,
        asset=record.counter_asset,
        amount=record.counter_amount,
        price_usd=None if record.price_usd is None else record.price_usd * ratio,
        price_krw=None if record.price_krw is None else record.price_krw * ratio,
        **base,
    )
    return [out_leg, in_leg]


def normalize(records: Iterable[TransactionRecord]) -> Tuple[List[Leg], List[Diagnostic]]:
    """
    Validate, deduplicate and order ledger records.

    Returns:
      legs: accounting legs in global order, `sequence` assigned 0..n-1
      diagnostics: one MALFORMED_RECORD entry per excluded record (plus swap notes)
    """
    diagnostics: List[Diagnostic] = []
    seen: Dict[str, TransactionRecord] = {}
    accepted: List[TransactionRecord] = []

    for record in sorted(records, key=sort_key):
        try:
            validate_record(record)
            previous = seen.get(record.id)
            if previous is not None:
                if previous == record:
                    logger.debug("Dropping exact duplicate of %s", record.id)
                    continue
                raise MalformedRecord(record.id, "duplicate id with conflicting content")
        except MalformedRecord as exc:
            logger.warning("Excluding record: %s", exc)
            diagnostics.append(
                Diagnostic(
                    code=DiagnosticCode.MALFORMED_RECORD,
                    transaction_id=exc.transaction_id,
                    message=exc.reason,
                )
            )
            continue
        seen[record.id] = record
        accepted.append(record)

    legs: List[Leg] = []
    for record in accepted:
        for leg in _legs_for(record, diagnostics):
            legs.append(replace(leg, sequence=len(legs)))

    logger.info(
        "Normalized %d records into %d legs (%d excluded)",
        len(accepted),
        len(legs),
        sum(1 for d in diagnostics if d.code is DiagnosticCode.MALFORMED_RECORD),
    )
    return legs, diagnostics