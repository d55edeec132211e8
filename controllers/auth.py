from functools import wraps
from flask import Blueprint, request, jsonify
from flask_login import LoginManager, UserMixin, login_user, logout_user, login_required, current_user
from models.users_db import get_user, verify_password
from services.metrics import LOGIN_SUCCESSES, LOGIN_FAILURES, FORBIDDEN

auth_bp = Blueprint("auth", __name__)
login_manager = LoginManager()


class User(UserMixin):
    def __init__(self, username, role):
        self.id = username
        self.username = username
        self.role = role

    @property
    def is_admin(self):
        return self.role == "admin"


@login_manager.user_loader
def load_user(user_id):
    row = get_user(user_id)
    if not row:
        return None
    return User(row["username"], row["role"])


@login_manager.unauthorized_handler
def unauthorized():
    return jsonify(error="Authentication required", reason="unauthenticated"), 401


def admin_required(f):
    @wraps(f)
    def wrapper(*args, **kwargs):
        if not current_user.is_authenticated:
            return login_manager.unauthorized()
        if not getattr(current_user, "is_admin", False):
            FORBIDDEN.inc()
            return jsonify(error="Admin access required", reason="forbidden"), 403
        return f(*args, **kwargs)
    return wrapper


@auth_bp.post("/login")
def login_post():
    data = request.get_json(silent=True) or request.form
    u = (data.get("username") or "").strip()
    p = data.get("password") or ""

    if not verify_password(u, p):
        LOGIN_FAILURES.labels(reason="bad_credentials").inc()
        return jsonify(error="Invalid username or password", reason="bad_credentials"), 401

    row = get_user(u)
    login_user(User(row["username"], row["role"]))
    LOGIN_SUCCESSES.inc()
    return jsonify(username=row["username"], role=row["role"]), 200


@auth_bp.post("/logout")
@login_required
def logout():
    logout_user()
    return jsonify(ok=True), 200


@auth_bp.get("/me")
@login_required
def whoami():
    return jsonify(username=current_user.username, role=current_user.role), 200
