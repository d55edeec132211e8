# models/settings_db.py (Postgres / SQLAlchemy)
from __future__ import annotations

from sqlalchemy import select
from models.base import session_scope
from models.schema import Setting, utcnow


def load_all() -> list[dict]:
    with session_scope() as s:
        rows = s.execute(select(Setting)).scalars().all()
        return [{"key": r.key, "value": r.value, "encrypted": bool(r.encrypted)}
                for r in rows]


def get_row(key: str) -> dict | None:
    with session_scope() as s:
        r = s.get(Setting, key)
        if not r:
            return None
        return {"key": r.key, "value": r.value, "encrypted": bool(r.encrypted)}


def upsert(key: str, value: str, encrypted: bool) -> None:
    with session_scope() as s:
        r = s.get(Setting, key)
        if r is None:
            s.add(Setting(key=key, value=value, encrypted=encrypted,
                          updated_at=utcnow()))
            return
        r.value = value
        r.encrypted = encrypted
        r.updated_at = utcnow()
        s.add(r)
