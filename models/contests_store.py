# models/contests_store.py (Postgres / SQLAlchemy)
from __future__ import annotations
from decimal import Decimal
from typing import Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from models.base import session_scope
from models.schema import Contest, User, utcnow


def _to_dict(c: Contest) -> dict:
    return {"id": c.id, "title": c.title, "budget": c.budget, "status": c.status,
            "client_id": c.client_id, "created_at": c.created_at,
            "updated_at": c.updated_at}


def get_contest(contest_id: str) -> Optional[dict]:
    if not contest_id:
        return None
    with session_scope() as s:
        c = s.get(Contest, contest_id)
        return _to_dict(c) if c else None


def get_client_email(contest_id: str) -> Optional[str]:
    with session_scope() as s:
        c = s.get(Contest, contest_id)
        if not c:
            return None
        u = s.get(User, c.client_id)
        return u.email if u else None


def create_contest(title: str, budget, client_id: str,
                   status: str = "PENDING_APPROVAL") -> dict:
    with session_scope() as s:
        c = Contest(title=title, budget=Decimal(str(budget)), client_id=client_id,
                    status=status, created_at=utcnow(), updated_at=utcnow())
        s.add(c)
        s.flush()
        return _to_dict(c)


def delete_contest(contest_id: str) -> bool:
    with session_scope() as s:
        c = s.get(Contest, contest_id)
        if not c:
            return False
        s.delete(c)
        return True


def set_status_if(s: Session, contest_id: str, expected: str, new: str) -> bool:
    """
    Conditional status write inside the caller's transaction.
    Never overwrites a contest another path already moved.
    """
    res = s.execute(
        update(Contest)
        .where(Contest.id == contest_id, Contest.status == expected)
        .values({Contest.status: new, Contest.updated_at: utcnow()})
        .execution_options(synchronize_session=False)
    )
    return res.rowcount == 1
