from __future__ import annotations

"""
Runtime settings.

Values come from environment variables; an optional .env in the working directory is loaded
first (python-dotenv) so local setups don't need exported variables.
"""

import logging
import os
import sys
from decimal import Decimal
from pathlib import Path
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

from .schemas import LotMethod

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s]: %(message)s"


class Settings(BaseModel):
    db_url: str = "sqlite:///./cryptogains.db"
    lot_method: LotMethod = LotMethod.FIFO
    jurisdiction: str = "KR"
    tax_law_file: Optional[Path] = None
    workers: int = Field(1, ge=1, le=32)
    log_level: str = "INFO"
    # Calendar used to assign disposals to a tax year
    timezone: str = "UTC"
    fallback_krw_per_usd: Decimal = Field(Decimal("1350"), gt=0)

    @field_validator("timezone")
    @classmethod
    def _known_timezone(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"Unknown timezone: {v!r}") from None
        return v


def load_settings(env_file: str | os.PathLike | None = None) -> Settings:
    load_dotenv(env_file or Path.cwd() / ".env", override=False)
    env = os.environ
    return Settings(
        db_url=env.get("CRYPTOGAINS_DB_URL", Settings.model_fields["db_url"].default),
        lot_method=env.get("CRYPTOGAINS_LOT_METHOD", "FIFO").strip().upper(),
        jurisdiction=env.get("CRYPTOGAINS_JURISDICTION", "KR").strip().upper(),
        tax_law_file=env.get("CRYPTOGAINS_TAX_LAW_FILE") or None,
        workers=int(env.get("CRYPTOGAINS_WORKERS", "1")),
        log_level=env.get("CRYPTOGAINS_LOG_LEVEL", "INFO").strip().upper(),
        timezone=env.get("CRYPTOGAINS_TIMEZONE", "UTC").strip(),
        fallback_krw_per_usd=env.get("CRYPTOGAINS_FALLBACK_KRW_PER_USD", "1350").strip(),
    )


def configure_logging(level: str = "INFO") -> None:
    """Install one stdout handler on the package logger (idempotent). Library code never calls this."""
    pkg_logger = logging.getLogger("cryptogains")
    pkg_logger.setLevel(level)
    if not any(getattr(h, "_cryptogains", False) for h in pkg_logger.handlers):
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._cryptogains = True  # type: ignore[attr-defined]
        pkg_logger.addHandler(handler)
