# models/notifications_store.py (Postgres / SQLAlchemy)
from __future__ import annotations
from typing import Optional

from sqlalchemy import select, func
from sqlalchemy.orm import Session

from models.base import session_scope
from models.schema import Notification, utcnow


def add_notification(s: Session, user_id: str, type_: str, title: str,
                     message: str, link: Optional[str] = None) -> Notification:
    """Insert inside the caller's transaction so it commits with the state change."""
    n = Notification(user_id=user_id, type=type_, title=title, message=message,
                     link=link, read=False, created_at=utcnow())
    s.add(n)
    return n


def list_for_user(user_id: str, limit: int = 50, unread_only: bool = False) -> list[dict]:
    with session_scope() as s:
        q = select(Notification).where(Notification.user_id == user_id)
        if unread_only:
            q = q.where(Notification.read.is_(False))
        rows = s.execute(q.order_by(Notification.id.desc()).limit(limit)).scalars().all()
        return [{"id": n.id, "type": n.type, "title": n.title, "message": n.message,
                 "link": n.link, "read": n.read, "created_at": n.created_at}
                for n in rows]


def count_for_user(user_id: str, type_: Optional[str] = None) -> int:
    with session_scope() as s:
        q = select(func.count(Notification.id)).where(Notification.user_id == user_id)
        if type_:
            q = q.where(Notification.type == type_)
        return int(s.execute(q).scalar_one())


def mark_read(user_id: str, notification_id: int) -> bool:
    with session_scope() as s:
        n = s.get(Notification, notification_id)
        if not n or n.user_id != user_id:
            return False
        n.read = True
        s.add(n)
        return True
