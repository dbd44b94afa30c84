# audit_digest.py
from __future__ import annotations
import json, hashlib
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Iterable

from .schemas import TaxYearSummary, TransactionRecord, dec_to_str


def _json_c14n(obj: Any) -> str:
    """
    Canonical JSON dump:
      - sort keys
      - no spaces (compact separators)
      - decimals rendered as plain strings, datetimes as ISO-8601
    """
    def normalize(o: Any):
        if isinstance(o, dict):
            return {k: normalize(o[k]) for k in sorted(o.keys())}
        elif isinstance(o, (list, tuple)):
            return [normalize(v) for v in o]
        elif isinstance(o, Decimal):
            return dec_to_str(o)
        elif isinstance(o, datetime):
            return o.isoformat()
        elif isinstance(o, Enum):
            return o.value
        else:
            return o
    norm = normalize(obj)
    return json.dumps(norm, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _sha256_hex(s: str) -> str:
    return hashlib.sha256(s.encode("utf-8")).hexdigest()


def summary_digest(summary: TaxYearSummary) -> str:
    """Two runs over the same inputs and method must produce the same digest."""
    return _sha256_hex(_json_c14n(summary.model_dump()))


def input_digest(records: Iterable[TransactionRecord]) -> str:
    """Order-independent hash of a ledger snapshot."""
    rows = sorted((r.model_dump(mode="json") for r in records), key=lambda r: r["id"])
    return _sha256_hex(_json_c14n(rows))


def compute_digests(records: Iterable[TransactionRecord], summary: TaxYearSummary) -> Dict[str, str]:
    """
    Compute:
      - input_hash: hash over the ledger snapshot
      - output_hash: hash over the summary (totals, disposals, diagnostics)
      - manifest_hash: hash over both plus the run parameters
    """
    input_hash = input_digest(records)
    output_hash = summary_digest(summary)
    manifest = {
        "year": summary.year,
        "method": summary.method,
        "jurisdiction": summary.jurisdiction,
        "rule_version": summary.rule_version,
        "input_hash": input_hash,
        "output_hash": output_hash,
    }
    return {
        "input_hash": input_hash,
        "output_hash": output_hash,
        "manifest_hash": _sha256_hex(_json_c14n(manifest)),
    }
