"""
AccountRecoveryService: emailed one-time codes for password reset and email
verification.

- send_password_reset_code(email)
- reset_password(email, code, new_password)   revokes every refresh token
- send_email_verification_code(email)
- verify_email(email, code)

Codes are consumed with a conditional UPDATE (only while used_at is null), so
a code can succeed once even when submitted twice at the same moment. A reset
changes the password and revokes the user's refresh tokens in one commit.
"""
from __future__ import annotations

import logging
from typing import Callable, Optional, Type

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError

from models.account_code import (
    DEFAULT_CODE_LIFETIME_MINUTES,
    EmailVerificationCode,
    OneTimeCode,
    PasswordResetCode,
    generate_code,
)
from models.old_password import UserOldPassword
from models.token_store import RefreshTokenStore
from models.user import User
from services.email_sender import LoggingEmailSender
from services.results import ErrorKind, Result
from utils.clock import utcnow
from utils.security import hash_password, verify_password

logger = logging.getLogger(__name__)

DEFAULT_PASSWORD_HISTORY_SIZE = 5

UNKNOWN_EMAIL_MESSAGE = "The provided email is not related to any account."
EMAIL_CONFIRMED_MESSAGE = "The email is already confirmed."
REUSED_PASSWORD_MESSAGE = "The new password must not match a recently used password."


class AccountRecoveryService:
    def __init__(
        self,
        storage,
        store: RefreshTokenStore,
        email_sender=None,
        clock: Callable = utcnow,
        reset_code_lifetime_minutes: int = DEFAULT_CODE_LIFETIME_MINUTES,
        verification_code_lifetime_minutes: int = DEFAULT_CODE_LIFETIME_MINUTES,
        password_history_size: int = DEFAULT_PASSWORD_HISTORY_SIZE,
        code_factory: Callable[[], str] = generate_code,
    ):
        if storage is None or store is None:
            raise ValueError("storage and store are required")
        self._storage = storage
        self.store = store
        self.email_sender = email_sender or LoggingEmailSender()
        self._clock = clock
        self.reset_code_lifetime_minutes = int(reset_code_lifetime_minutes)
        self.verification_code_lifetime_minutes = int(verification_code_lifetime_minutes)
        self.password_history_size = int(password_history_size)
        self._new_code = code_factory

    @property
    def session(self):
        return self._storage.get_session()

    # ---- password reset ----

    def send_password_reset_code(self, email: str) -> Result[None]:
        _require(email=email)
        try:
            user = self._find_user(email)
            if user is None:
                return _invalid("email", UNKNOWN_EMAIL_MESSAGE)
            user_id = user.id
            code = self._save_code(PasswordResetCode, user_id, email)
        except SQLAlchemyError as exc:
            return self._storage_failure("send_password_reset_code", exc)

        self.email_sender.send_password_reset_code(email, code)
        logger.info("Password reset code sent to user %s", user_id)
        return Result.success(None)

    def reset_password(self, email: str, code: str, new_password: str) -> Result[int]:
        """Set a new password; returns the number of refresh tokens revoked."""
        _require(email=email, code=code, new_password=new_password)
        try:
            user = self._find_user(email)
            if user is None:
                return _invalid("email", UNKNOWN_EMAIL_MESSAGE)
            user_id = user.id

            checked = self._check_code(
                PasswordResetCode, user_id, email, code, self.reset_code_lifetime_minutes, "password reset code"
            )
            if not checked.ok:
                return checked
            if self._was_used_before(user, new_password):
                return _invalid("password", REUSED_PASSWORD_MESSAGE)

            now = self._clock()
            if not self._consume(PasswordResetCode, checked.value, now):
                return _invalid("code", "The password reset code has already been used.")
            self.session.add(UserOldPassword(user_id=user_id, password_hash=user.password_hash, set_at=now))
            user.password_hash = hash_password(new_password)
            self.session.flush()
        except SQLAlchemyError as exc:
            return self._storage_failure("reset_password", exc)

        # commits the password change together with the revocation
        revoked = self.store.revoke_all_for_user(user_id)
        if not revoked.ok:
            logger.error("Password reset for user %s rolled back: %s", user_id, revoked.error.value)
            return Result.failure(revoked.error, _storage_message(revoked.error))

        logger.info("Password reset for user %s; %d refresh token(s) revoked", user_id, revoked.value)
        return revoked

    # ---- email verification ----

    def send_email_verification_code(self, email: str) -> Result[None]:
        _require(email=email)
        try:
            user = self._find_user(email)
            if user is None:
                return _invalid("email", UNKNOWN_EMAIL_MESSAGE)
            if user.email_confirmed:
                return _invalid("email", EMAIL_CONFIRMED_MESSAGE)
            user_id = user.id
            code = self._save_code(EmailVerificationCode, user_id, email)
        except SQLAlchemyError as exc:
            return self._storage_failure("send_email_verification_code", exc)

        self.email_sender.send_email_verification_code(email, code)
        logger.info("Email verification code sent to user %s", user_id)
        return Result.success(None)

    def verify_email(self, email: str, code: str) -> Result[None]:
        _require(email=email, code=code)
        try:
            user = self._find_user(email)
            if user is None:
                return _invalid("email", UNKNOWN_EMAIL_MESSAGE)
            if user.email_confirmed:
                return _invalid("email", EMAIL_CONFIRMED_MESSAGE)
            user_id = user.id

            checked = self._check_code(
                EmailVerificationCode, user_id, email, code, self.verification_code_lifetime_minutes, "verification code"
            )
            if not checked.ok:
                return checked
            if not self._consume(EmailVerificationCode, checked.value, self._clock()):
                return _invalid("code", "The verification code has already been used.")
            user.email_confirmed = True
            self.session.commit()
        except SQLAlchemyError as exc:
            return self._storage_failure("verify_email", exc)

        logger.info("Email confirmed for user %s", user_id)
        return Result.success(None)

    # ---- helpers ----

    def _find_user(self, email: str) -> Optional[User]:
        return self.session.query(User).filter(User.email == email.strip().lower()).first()

    def _save_code(self, model: Type[OneTimeCode], user_id: str, email: str) -> str:
        record = model.create(user_id, email.strip().lower(), self._new_code(), now=self._clock())
        self.session.add(record)
        self.session.commit()
        return record.code

    def _check_code(self, model, user_id, email, code, lifetime_minutes, label) -> Result[str]:
        """The id of the newest unused matching code, if it is still fresh."""
        record = (
            self.session.query(model)
            .filter(
                model.user_id == user_id,
                model.email == email.strip().lower(),
                model.code == code,
                model.used_at.is_(None),
            )
            .order_by(model.sent_at.desc())
            .first()
        )
        if record is None:
            return _invalid("code", f"The {label} is invalid.")
        if record.is_expired(self._clock(), lifetime_minutes):
            return _invalid("code", f"The {label} has expired.")
        return Result.success(record.id)

    def _consume(self, model, code_id: str, now) -> bool:
        claimed = self.session.execute(
            update(model)
            .where(model.id == code_id, model.used_at.is_(None))
            .values(used_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount != 1:
            self.session.rollback()
            logger.warning("%s %s was consumed concurrently", model.__name__, code_id)
            return False
        return True

    def _was_used_before(self, user: User, password: str) -> bool:
        history = (
            self.session.query(UserOldPassword.password_hash)
            .filter(UserOldPassword.user_id == user.id)
            .order_by(UserOldPassword.set_at.desc())
            .limit(self.password_history_size)
            .all()
        )
        hashes = [user.password_hash] + [row.password_hash for row in history]
        return any(verify_password(password, h) for h in hashes)

    def _storage_failure(self, operation: str, exc: SQLAlchemyError, **fields) -> Result:
        failed = self.store.recover(operation, exc, **fields)
        return Result.failure(failed.error, _storage_message(failed.error))


def _storage_message(kind: ErrorKind) -> str:
    if kind is ErrorKind.UNAVAILABLE:
        return "Account service temporarily unavailable."
    return "Could not save the account change."


def _invalid(field_name: str, message: str) -> Result:
    return Result.failure(ErrorKind.VALIDATION_FAILURE, message, details={field_name: [message]})


def _require(**values) -> None:
    for name, value in values.items():
        if not value or not value.strip():
            raise ValueError(f"{name} is required")
