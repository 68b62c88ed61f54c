from __future__ import annotations

import logging
from typing import Tuple

from flask import Blueprint, request, jsonify, abort, current_app
from sqlalchemy.orm.attributes import flag_modified

from models import storage
from models.user import User
from models.schemas.user import RolesSchema, UserOutSchema
from utils.decorators import roles_required

MAX_LIMIT = 100

logger = logging.getLogger(__name__)

bp = Blueprint("users", __name__)

roles_schema = RolesSchema()
user_out_schema = UserOutSchema()
user_list_out_schema = UserOutSchema(many=True)


def parse_pagination() -> Tuple[int, int]:
    try:
        page = int(request.args.get("page", "1"))
        limit = int(request.args.get("limit", "20"))
        page = max(page, 1)
        limit = max(1, min(limit, MAX_LIMIT))
        return page, limit
    except ValueError:
        abort(400, description="page and limit must be integers")


def parse_sort(default="user_name"):
    sort = request.args.get("sort", default)
    desc = sort.startswith("-")
    key = sort[1:] if desc else sort
    if key != "user_name":
        abort(400, description="Unsupported sort field. Allowed: user_name")
    return (User.user_name.desc() if desc else User.user_name.asc(),)


@bp.get("/users")
@roles_required(["admin"])
def list_users():
    """
    List all users - admin
    ---
    tags:
      - Users
    security:
      - Bearer: []
    responses:
      200: { description: OK }
      403: { description: Forbidden }
    """
    session = storage.get_session()
    page, limit = parse_pagination()
    order_by = parse_sort()

    query = session.query(User)

    total = query.count()
    rows = query.order_by(*order_by).offset((page - 1) * limit).limit(limit).all()
    return jsonify(
        {
            "data": user_list_out_schema.dump(rows),
            "meta": {"page": page, "limit": limit, "total": total}
        }
    )


@bp.post("/users/<user_id>/roles")
@roles_required(["admin"])
def set_roles(user_id: str):
    """
    Admin-only: add roles to a user. Roles show up as `role` claims in the
    next access token the user is issued.
    Body: { "roles": ["admin", "manager", "user"] }
    ---
    tags:
      - Users
    security:
      - Bearer: []
    consumes:
      - application/json
    parameters:
      -  in: path
         name: user_id
         type: string
         required: true
      -  in: body
         name: body
         schema:
           type: object
           properties:
             roles: { type: array, items: { type: string } }
    responses:
      200: { description: OK }
      404: { description: Unknown user }
      422: { description: Validation error }
    """
    payload = request.get_json(silent=True) or {}
    roles = roles_schema.load(payload)["roles"]

    user = storage.get(User, user_id)
    if not user:
        abort(404)

    allowed = set(current_app.config.get("ALLOWED_ROLES", ["admin", "manager", "user"]))
    if any(r not in allowed for r in roles):
        abort(422, description=f"Roles must be a subset of {sorted(allowed)}")
    merged = list(user.roles or [])
    merged.extend(r for r in roles if r not in merged)
    user.roles = merged
    flag_modified(user, "roles")
    storage.new(user)
    storage.save()
    logger.info("Roles of user %s set to %s", user.id, merged)
    return jsonify(
      {
        "data": user_out_schema.dump(user)
      }
    ), 200
