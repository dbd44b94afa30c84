# csv_normalizer.py
"""
CSV parsing and normalization to the TransactionRecord schema.

Responsibilities:
- Read uploaded CSV bytes safely (a UTF-8 BOM from spreadsheet exports is tolerated).
- Normalize header names (case-insensitive).
- Validate required columns are present.
- Convert empty strings to None for optional fields.
- Validate each row using Pydantic (TransactionRecord), returning:
  (valid_rows, errors) so the API can preview and/or persist.

Design choices:
- This module is "pure" (no DB calls). It converts raw bytes -> typed objects.
- Structural checks beyond types (amount > 0, disposals need a price) are the normalizer's
  job; a row that parses here can still be excluded from a run with a diagnostic.
"""

import csv
from io import BytesIO, TextIOWrapper
from typing import Any, Dict, List, Tuple

from pydantic import ValidationError

from .schemas import TransactionRecord

# Expected CSV columns (case-insensitive):
# id,timestamp,kind,asset,amount,price_usd,price_krw,fee,fee_asset,source_id,counter_asset,counter_amount,internal
REQUIRED_COLUMNS = {"id", "timestamp", "kind", "asset", "amount"}
OPTIONAL_COLUMNS = {
    "price_usd", "price_krw", "fee", "fee_asset", "source_id",
    "counter_asset", "counter_amount", "internal",
}
# Accepted spellings from exchange exports
HEADER_ALIASES = {"type": "kind", "source": "source_id", "exchange": "source_id", "quantity": "amount"}

_TRUE = {"1", "true", "yes", "y"}


def _normalize_headers(headers: List[str]) -> List[str]:
    """Lowercase and strip whitespace so headers are matched flexibly."""
    out = []
    for h in headers:
        key = h.strip().lower().replace(" ", "_")
        out.append(HEADER_ALIASES.get(key, key))
    return out


def parse_csv(file_bytes: bytes, encoding: str = "utf-8-sig") -> Tuple[List[TransactionRecord], List[Dict[str, Any]]]:
    """
    Parse CSV bytes into a list of TransactionRecord objects.
    Returns:
      valid_rows: list[TransactionRecord]
      errors: list of {row_number, error, raw_row}
    """
    valid: List[TransactionRecord] = []
    errors: List[Dict[str, Any]] = []

    text_stream = TextIOWrapper(BytesIO(file_bytes), encoding=encoding, newline="")
    reader = csv.DictReader(text_stream)

    if reader.fieldnames is None:
        errors.append({"row_number": 0, "error": "CSV has no header", "raw_row": None})
        return valid, errors

    headers = _normalize_headers(reader.fieldnames)
    header_map = {orig: norm for orig, norm in zip(reader.fieldnames, headers)}

    missing = REQUIRED_COLUMNS - set(headers)
    if missing:
        errors.append({"row_number": 0, "error": f"Missing required columns: {sorted(missing)}", "raw_row": None})
        return valid, errors

    for i, row in enumerate(reader, start=2):  # row 1 is the header
        normalized: Dict[str, Any] = {}
        for orig_key, value in row.items():
            if orig_key is None:
                continue  # surplus cells without a header
            key = header_map.get(orig_key, orig_key)
            if key not in REQUIRED_COLUMNS and key not in OPTIONAL_COLUMNS:
                continue
            value = value.strip() if isinstance(value, str) else value
            normalized[key] = value

        for k in OPTIONAL_COLUMNS:
            if normalized.get(k) == "":
                normalized[k] = None

        if normalized.get("internal") is not None:
            normalized["internal"] = str(normalized["internal"]).lower() in _TRUE
        else:
            normalized.pop("internal", None)
        if normalized.get("source_id") is None:
            normalized.pop("source_id", None)

        try:
            valid.append(TransactionRecord(**normalized))
        except ValidationError as ve:
            errors.append(
                {
                    "row_number": i,
                    "error": [{"loc": list(e["loc"]), "msg": e["msg"]} for e in ve.errors()],
                    "raw_row": normalized,
                }
            )

    return valid, errors
