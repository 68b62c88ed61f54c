"""
Authentication blueprint:
- POST /auth/register
- POST /auth/login
- POST /auth/refresh-token
- POST /auth/logout
- GET  /auth/me
- POST /auth/send-password-reset-code
- POST /auth/reset-password
- POST /auth/send-email-verification-code
- POST /auth/verify-email

The implementation:
- Uses argon2 for password hashing (via utils.security)
- Issues HS256 access tokens and opaque rotating refresh tokens through the
  app's TokenIssuer (api.deps.get_token_issuer)
- Refresh rotates on every use; logout revokes the whole token family
- Account codes go through the app's AccountRecoveryService; a password
  reset revokes every refresh token the user holds
"""
from __future__ import annotations

import logging

from flask import Blueprint, request, jsonify, g, abort
from marshmallow import ValidationError
from sqlalchemy import or_

from api.deps import get_account_recovery, get_token_issuer
from api.errors import result_error_response
from models import storage
from models.user import User
from models.schemas.user import (
    EmailSchema,
    LoginSchema,
    LogoutSchema,
    RegistrationSchema,
    ResetPasswordSchema,
    TokenRefreshSchema,
    UserOutSchema,
    VerifyEmailSchema,
)
from utils.decorators import jwt_required
from utils.security import hash_password, needs_rehash, verify_password

logger = logging.getLogger(__name__)

bp = Blueprint("auth", __name__)

registration_schema = RegistrationSchema()
login_schema = LoginSchema()
token_refresh_schema = TokenRefreshSchema()
logout_schema = LogoutSchema()
user_out_schema = UserOutSchema()
email_schema = EmailSchema()
verify_email_schema = VerifyEmailSchema()
reset_password_schema = ResetPasswordSchema()


@bp.post("/register")
def register():
    """
    register a new user.
    ---
    tags:
      - Auth
    consumes:
      - application/json
    parameters:
      - in: body
        name: body
        schema:
          type: object
          properties:
            email: { type: string }
            user_name: { type: string }
            password: { type: string }
            confirm_password: { type: string }
    responses:
      201:
        description: Created
      422:
        description: Validation error
    """
    payload = request.get_json(silent=True) or {}
    data = registration_schema.load(payload)
    user_name = data.get("user_name") or data["email"]

    session = storage.get_session()
    errors = {}
    if session.query(User).filter(User.email == data["email"]).first():
        errors["email"] = ["A user already exists with the provided email."]
    if session.query(User).filter(User.user_name == user_name).first():
        errors["user_name"] = ["A user already exists with the provided username."]
    if errors:
        raise ValidationError(errors)

    user = User(
        email=data["email"],
        user_name=user_name,
        password_hash=hash_password(data["password"]),
    )

    storage.new(user)
    storage.save()
    logger.info("Registered user %s", user.id)

    return jsonify(
        {
            "data": user_out_schema.dump(user)
        }
    ), 201


@bp.post("/login")
def login():
    """
    Login: return access_token and refresh_token
    ---
    tags:
      - Auth
    consumes:
      - application/json
    parameters:
      -  in: body
         name: body
         schema:
           type: object
           properties:
             email_or_user_name: { type: string }
             password: { type: string }
    responses:
      200:
        description: OK (returns tokens)
      422:
        description: Validation error (unknown user, wrong password, disabled account)
    """
    payload = request.get_json(silent=True) or {}
    data = login_schema.load(payload)
    identifier = data["email_or_user_name"]

    session = storage.get_session()
    user: User = (
        session.query(User)
        .filter(or_(User.email == identifier.lower(), User.user_name == identifier))
        .first()
    )
    if not user:
        raise ValidationError({"email_or_user_name": ["The email or username does not exist."]})
    if not verify_password(data["password"], user.password_hash):
        logger.info("Failed login for user %s", user.id)
        raise ValidationError({"password": ["Password is incorrect."]})
    if user.is_disabled:
        raise ValidationError({"email_or_user_name": ["The account is disabled."]})

    if needs_rehash(user.password_hash):
        user.password_hash = hash_password(data["password"])
    user.record_login()
    storage.new(user)
    storage.save()

    result = get_token_issuer().issue_for_user(user.id)
    if not result.ok:
        logger.warning("Login token issuance failed for user %s (%s): %s", user.id, user.email, result.error.value)
        return result_error_response(result)

    return jsonify(result.value.to_dict()), 200


@bp.post("/refresh-token")
def refresh_token():
    """
    Exchange an expired access token and its refresh token for a new pair.
    The presented refresh token is consumed (rotation).
    ---
    tags:
      - Auth
    consumes:
      - application/json
    parameters:
      -  in: body
         name: body
         schema:
           type: object
           properties:
             access_token: { type: string }
             refresh_token: { type: string }
    responses:
      200:
        description: OK (returns tokens)
      401:
        description: Invalid access or refresh token
      503:
        description: Token storage unavailable
    """
    payload = request.get_json(silent=True) or {}
    data = token_refresh_schema.load(payload)

    result = get_token_issuer().issue_from_refresh(data["access_token"], data["refresh_token"])
    if not result.ok:
        return result_error_response(result)

    return jsonify(result.value.to_dict()), 200


@bp.post("/logout")
@jwt_required()
def logout():
    """
    logout: revokes the refresh token family of this device/session
    ---
    tags:
      - Auth
    security:
      - Bearer: []
    consumes:
      - application/json
    parameters:
      -  in: body
         name: body
         schema:
           type: object
           properties:
             refresh_token: { type: string }
    responses:
      200:
        description: Logged out
      401:
        description: Unauthorized or unknown refresh token
    """
    payload = request.get_json(silent=True) or {}
    data = logout_schema.load(payload)

    result = get_token_issuer().revoke_by_refresh_token(g.current_user.id, data["refresh_token"])
    if not result.ok:
        return result_error_response(result)

    logger.info("User %s logged out (%d token(s) revoked)", g.current_user.id, result.value)
    return jsonify(
        {
            "message": "Logged out successfully. This device's session has been revoked."
        }
    ), 200


@bp.get("/me")
@jwt_required()
def me():
    """
    Get current user info.
    ---
    tags:
      - Auth
    security:
      - Bearer: []
    responses:
      200:
        description: OK
      401:
        description: Unauthorized
    """
    user = g.current_user
    if user is None:
        abort(401)
    return jsonify(
        {
            "data": user_out_schema.dump(user)
        }
    ), 200


@bp.post("/send-password-reset-code")
def send_password_reset_code():
    """
    Email a 6-digit password reset code.
    ---
    tags:
      - Auth
    consumes:
      - application/json
    parameters:
      -  in: body
         name: body
         schema:
           type: object
           properties:
             email: { type: string }
    responses:
      200:
        description: Code sent
      422:
        description: Validation error (unknown email)
      503:
        description: Storage unavailable
    """
    payload = request.get_json(silent=True) or {}
    data = email_schema.load(payload)

    result = get_account_recovery().send_password_reset_code(data["email"])
    if not result.ok:
        return result_error_response(result)
    return jsonify({"message": "A password reset code has been sent to your email."}), 200


@bp.post("/reset-password")
def reset_password():
    """
    Set a new password with an emailed reset code.
    Every refresh token of the account is revoked.
    ---
    tags:
      - Auth
    consumes:
      - application/json
    parameters:
      -  in: body
         name: body
         schema:
           type: object
           properties:
             email: { type: string }
             code: { type: string }
             password: { type: string }
             confirm_password: { type: string }
    responses:
      200:
        description: Password changed
      422:
        description: Validation error (bad or expired code, reused password)
      503:
        description: Storage unavailable
    """
    payload = request.get_json(silent=True) or {}
    data = reset_password_schema.load(payload)

    result = get_account_recovery().reset_password(data["email"], data["code"], data["password"])
    if not result.ok:
        return result_error_response(result)
    return jsonify(
        {
            "message": "Password has been reset. Please log in again.",
            "revoked_tokens": result.value,
        }
    ), 200


@bp.post("/send-email-verification-code")
def send_email_verification_code():
    """
    Email a 6-digit code that confirms the account's address.
    ---
    tags:
      - Auth
    consumes:
      - application/json
    parameters:
      -  in: body
         name: body
         schema:
           type: object
           properties:
             email: { type: string }
    responses:
      200:
        description: Code sent
      422:
        description: Validation error (unknown or already confirmed email)
    """
    payload = request.get_json(silent=True) or {}
    data = email_schema.load(payload)

    result = get_account_recovery().send_email_verification_code(data["email"])
    if not result.ok:
        return result_error_response(result)
    return jsonify({"message": "A verification code has been sent to your email."}), 200


@bp.post("/verify-email")
def verify_email():
    """
    Confirm the account's email with an emailed code.
    ---
    tags:
      - Auth
    consumes:
      - application/json
    parameters:
      -  in: body
         name: body
         schema:
           type: object
           properties:
             email: { type: string }
             code: { type: string }
    responses:
      200:
        description: Email confirmed
      422:
        description: Validation error (bad, expired or used code)
    """
    payload = request.get_json(silent=True) or {}
    data = verify_email_schema.load(payload)

    result = get_account_recovery().verify_email(data["email"], data["code"])
    if not result.ok:
        return result_error_response(result)
    return jsonify({"message": "Email confirmed."}), 200
