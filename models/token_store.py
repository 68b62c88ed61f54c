"""
RefreshTokenStore: the only reader and writer of RefreshToken rows.

Lookups return the row or None (a miss is not an error) and let database
errors propagate; callers turn those into a Result with recover(). Writes
return a services.results.Result:
- CONCURRENCY_CONFLICT when a rotation loses the race for the old token
- UNAVAILABLE when the database cannot be reached (retryable)
- TOKEN_PERSISTENCE_FAILED for any other database error

Rotation is a single transaction that starts with a conditional UPDATE
(revoke only if still unrevoked and unused), so two callers presenting the
same token can never both rotate it.
"""
from __future__ import annotations

import logging
from typing import Callable, List, Optional

from sqlalchemy import update
from sqlalchemy.exc import DBAPIError, OperationalError, SQLAlchemyError

from models.refresh_token import DEFAULT_LIFETIME_DAYS, RefreshToken
from services.results import ErrorKind, Result
from utils.clock import utcnow

logger = logging.getLogger(__name__)


class RefreshTokenStore:
    def __init__(self, storage, lifetime_days: int = DEFAULT_LIFETIME_DAYS, clock: Callable = utcnow):
        if storage is None:
            raise ValueError("storage is required")
        self._storage = storage
        self.lifetime_days = int(lifetime_days)
        self._clock = clock

    @property
    def session(self):
        return self._storage.get_session()

    # ---- reads ----

    def find_active(self, user_id: str) -> Optional[RefreshToken]:
        """Most recent non-revoked token for the user (may be expired)."""
        _require(user_id=user_id)
        return (
            self.session.query(RefreshToken)
            .populate_existing()
            .filter(RefreshToken.user_id == user_id, RefreshToken.is_revoked.is_(False))
            .order_by(RefreshToken.created_at.desc())
            .first()
        )

    def find_by_value(self, user_id: str, token: str) -> Optional[RefreshToken]:
        _require(user_id=user_id, token=token)
        return (
            self.session.query(RefreshToken)
            .populate_existing()
            .filter(RefreshToken.user_id == user_id, RefreshToken.token == token)
            .first()
        )

    def find_family(self, family_id: str) -> List[RefreshToken]:
        _require(family_id=family_id)
        return (
            self.session.query(RefreshToken)
            .populate_existing()
            .filter(RefreshToken.token_family_id == family_id)
            .order_by(RefreshToken.created_at.asc())
            .all()
        )

    def is_valid(self, token: RefreshToken) -> bool:
        if token is None:
            raise ValueError("token is required")
        return token.is_valid(self._clock())

    # ---- writes ----

    def insert(self, user_id: str, token: str, family_id: Optional[str] = None) -> Result[RefreshToken]:
        """Persist a new token; without family_id this starts a new login chain."""
        _require(user_id=user_id, token=token)
        record = RefreshToken.create(
            user_id, token, token_family_id=family_id, lifetime_days=self.lifetime_days, now=self._clock()
        )
        session = self.session
        try:
            session.add(record)
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            return self._failure("insert", exc, user_id=user_id, family_id=family_id)

        logger.info("Refresh token %s created for user %s (family %s)", record.id, user_id, record.token_family_id)
        return Result.success(record)

    def rotate(self, old: RefreshToken, new_token: str) -> Result[RefreshToken]:
        """
        Consume `old` and insert its successor in the same family.

        Both writes commit together or not at all. If another caller already
        revoked or used `old`, nothing is written and CONCURRENCY_CONFLICT is
        returned.
        """
        if old is None:
            raise ValueError("old token is required")
        _require(new_token=new_token)

        old_id = old.id
        user_id = old.user_id
        family_id = old.token_family_id
        now = self._clock()
        session = self.session
        try:
            claimed = session.execute(
                update(RefreshToken)
                .where(
                    RefreshToken.id == old_id,
                    RefreshToken.is_revoked.is_(False),
                    RefreshToken.used_at.is_(None),
                )
                .values(is_revoked=True, revoked_at=now, used_at=now, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if claimed.rowcount != 1:
                session.rollback()
                logger.warning(
                    "Rotation conflict on refresh token %s for user %s (family %s)", old_id, user_id, family_id
                )
                return Result.failure(ErrorKind.CONCURRENCY_CONFLICT, "refresh token already rotated or revoked")

            successor = RefreshToken.create(
                user_id, new_token, token_family_id=family_id, lifetime_days=self.lifetime_days, now=now
            )
            session.add(successor)
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            return self._failure("rotate", exc, user_id=user_id, family_id=family_id)

        if old in session:
            session.expire(old)
        logger.info("Refresh token %s rotated to %s for user %s (family %s)", old_id, successor.id, user_id, family_id)
        return Result.success(successor)

    def revoke_family(self, family_id: str) -> Result[int]:
        """Revoke every still-active token of a family. Returns the number revoked."""
        _require(family_id=family_id)
        now = self._clock()
        session = self.session
        try:
            revoked = session.execute(
                update(RefreshToken)
                .where(RefreshToken.token_family_id == family_id, RefreshToken.is_revoked.is_(False))
                .values(is_revoked=True, revoked_at=now, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            count = revoked.rowcount
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            return self._failure("revoke_family", exc, family_id=family_id)

        session.expire_all()
        logger.info("Revoked %d refresh token(s) in family %s", count, family_id)
        return Result.success(count)

    def revoke_all_for_user(self, user_id: str) -> Result[int]:
        """Revoke every still-active token of every family the user holds."""
        _require(user_id=user_id)
        now = self._clock()
        session = self.session
        try:
            revoked = session.execute(
                update(RefreshToken)
                .where(RefreshToken.user_id == user_id, RefreshToken.is_revoked.is_(False))
                .values(is_revoked=True, revoked_at=now, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            count = revoked.rowcount
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            return self._failure("revoke_all_for_user", exc, user_id=user_id)

        session.expire_all()
        logger.info("Revoked %d refresh token(s) across all families of user %s", count, user_id)
        return Result.success(count)

    def recover(self, operation: str, exc: SQLAlchemyError, **fields) -> Result:
        """Roll back after a failed read and classify the database error."""
        try:
            self.session.rollback()
        except SQLAlchemyError as rollback_exc:
            logger.warning("Rollback after failed %s also failed: %s", operation, rollback_exc.__class__.__name__)
        return self._failure(operation, exc, **fields)

    def _failure(self, operation: str, exc: SQLAlchemyError, **fields) -> Result:
        context = " ".join(f"{k}={v}" for k, v in fields.items() if v)
        if isinstance(exc, OperationalError) or (isinstance(exc, DBAPIError) and exc.connection_invalidated):
            logger.error("Refresh token store unavailable during %s (%s): %s", operation, context, exc.__class__.__name__)
            return Result.failure(ErrorKind.UNAVAILABLE, "token storage is unavailable")
        logger.error("Refresh token %s failed (%s): %s", operation, context, exc.__class__.__name__)
        return Result.failure(ErrorKind.TOKEN_PERSISTENCE_FAILED, "could not persist refresh token")


def _require(**values) -> None:
    for name, value in values.items():
        if value is None or (isinstance(value, str) and not value.strip()):
            raise ValueError(f"{name} is required")
