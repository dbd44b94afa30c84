from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from .config import load_settings

# ---------- Engine / Session ----------

def make_engine(url: str) -> Engine:
    connect_args = {}
    if url.startswith("sqlite"):
        # FastAPI runs sync endpoints and their dependencies on a thread pool
        connect_args["check_same_thread"] = False
    # echo=False to keep tests quiet
    return create_engine(url, future=True, echo=False, connect_args=connect_args)


engine: Engine = make_engine(load_settings().db_url)

SessionLocal = sessionmaker(bind=engine, autoflush=False, future=True)


# ---------- Init helpers ----------

def init_db(bind: Engine | None = None) -> None:
    """Create ORM tables (no-ops on existing)."""
    # Import models here to avoid circular imports
    from .models import Base

    Base.metadata.create_all(bind=bind or engine)


@contextmanager
def db_session() -> Iterator[Session]:
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def get_session() -> Iterator[Session]:
    """FastAPI dependency; tests override it to point at a scratch database."""
    with db_session() as db:
        yield db
