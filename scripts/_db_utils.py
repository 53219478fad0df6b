from __future__ import annotations

from contextlib import contextmanager

from sqlalchemy.orm import Session

from app.docportal.db import build_engine, make_sessionmaker


@contextmanager
def script_session(db_url: str):
    """Short-lived session for release/seed scripts; the engine is disposed on exit."""
    engine = build_engine(db_url, pooled=False)
    s: Session = make_sessionmaker(engine)()
    try:
        yield s
        s.commit()
    except Exception:
        s.rollback()
        raise
    finally:
        s.close()
        engine.dispose()
