from __future__ import annotations
from functools import wraps
from flask import request, g, abort
from api.deps import get_token_issuer
from models import storage
from models.user import User


def _bearer_token() -> str:
    auth = request.headers.get("Authorization", "")
    if not auth.startswith("Bearer "):
        abort(401, description="Missing or invalid Authorization header")
    return auth.split(" ", 1)[1].strip()


def jwt_required():
    def decorator(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs):
            token = _bearer_token()
            decoded = get_token_issuer().validate_access_token(token)
            if not decoded.ok:
                abort(401, description=decoded.message)

            claims = decoded.value
            user_id = claims.get("nameid") or claims.get("sub")
            user = storage.get(User, user_id)
            if not user or user.is_disabled:
                abort(401, description="User not found")
            g.current_user = user
            g.current_user_roles = claims.get("role", []) or []
            g.current_token_jti = claims.get("jti")
            return fn(*args, **kwargs)

        return wrapper

    return decorator


def roles_required(required_roles: list[str]):
    """
    Allow access if the user has ANY of the required roles.
    Deny (403) only if there is NO overlap between user_roles and required_roles.
    """
    req = set(required_roles or [])
    def decorator(fn):
        @wraps(fn)
        @jwt_required()
        def wrapper(*args, **kwargs):
            user_roles = g.current_user_roles
            if isinstance(user_roles, str):
                user_roles = [user_roles]
            if not (set(user_roles) & req):
                abort(403, description="Insufficient role")
            return fn(*args, **kwargs)

        return wrapper

    return decorator
