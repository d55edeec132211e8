# models/users_db.py (Postgres / SQLAlchemy)
from __future__ import annotations
import re
from typing import Optional

from werkzeug.security import generate_password_hash, check_password_hash
from models.base import session_scope
from models.schema import User, utcnow

ROLES = {"admin", "client", "professional"}
USERNAME_RX = re.compile(r"^[a-z0-9._-]{3,40}$")


def get_user(username: str) -> Optional[dict]:
    if not username:
        return None
    with session_scope() as s:
        u = s.get(User, username)
        if not u:
            return None
        return {
            "username": u.username,
            "email": u.email,
            "password_hash": u.password_hash,
            "role": u.role,
            "created_at": u.created_at,
        }


def create_user(username: str, password: str, role: str = "client",
                email: Optional[str] = None) -> bool:
    if not username or not password or role not in ROLES:
        return False
    if not USERNAME_RX.match(username.strip().lower()):
        return False
    with session_scope() as s:
        if s.get(User, username):
            return False
        s.add(User(
            username=username.strip(),
            email=email,
            password_hash=generate_password_hash(password),
            role=role,
            created_at=utcnow(),
        ))
    return True


def verify_password(username: str, password: str) -> bool:
    if not username:
        return False
    with session_scope() as s:
        u = s.get(User, username)
        return bool(u and check_password_hash(u.password_hash, password))
