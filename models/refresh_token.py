"""
RefreshToken model: one link in a device/session's rotating refresh-token chain.

Fields:
- id (primary key, from BaseModel)
- user_id (String(36)) - FK to users.id
- token_family_id - shared by every token descended from one login; never
  changes across rotations and is what logout revokes
- token - the opaque bearer value handed to the client
- created_at, expire_at - validity window
- is_revoked, revoked_at - explicit revocation, independent of expiry
- used_at - set when the token is consumed by a rotation (one-time use)

Rows are never deleted; revoked and used tokens are kept for replay detection.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import Column, String, Boolean, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship

from models.base_model import BaseModel, Base
from utils.clock import utcnow

DEFAULT_LIFETIME_DAYS = 30


class RefreshToken(BaseModel, Base):
    __tablename__ = "refresh_tokens"
    __table_args__ = (
        UniqueConstraint("user_id", "token", name="uq_refresh_tokens_user_token"),
    )

    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    token_family_id = Column(String(36), nullable=False, index=True)
    token = Column(String(500), nullable=False)
    expire_at = Column(DateTime, nullable=False)
    is_revoked = Column(Boolean, default=False, nullable=False)
    revoked_at = Column(DateTime, nullable=True)
    used_at = Column(DateTime, nullable=True)

    user = relationship("User", back_populates="refresh_tokens")

    @classmethod
    def create(
        cls,
        user_id: str,
        token: str,
        token_family_id: Optional[str] = None,
        lifetime_days: int = DEFAULT_LIFETIME_DAYS,
        now: Optional[datetime] = None,
    ) -> "RefreshToken":
        """Build an unsaved token; a missing family id starts a new chain."""
        if not user_id:
            raise ValueError("user_id is required")
        if not token or not token.strip():
            raise ValueError("token is required")
        now = now or utcnow()
        return cls(
            user_id=user_id,
            token=token,
            token_family_id=token_family_id or _new_family_id(),
            created_at=now,
            updated_at=now,
            expire_at=now + timedelta(days=lifetime_days),
            is_revoked=False,
        )

    def revoke(self, now: Optional[datetime] = None) -> None:
        # monotonic: the first revocation time is kept
        if self.is_revoked:
            return
        self.is_revoked = True
        self.revoked_at = now or utcnow()

    def mark_as_used(self, now: Optional[datetime] = None) -> None:
        if self.used_at is None:
            self.used_at = now or utcnow()

    def has_been_used(self) -> bool:
        return self.used_at is not None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) > self.expire_at

    def is_valid(self, now: Optional[datetime] = None) -> bool:
        """Not revoked, not expired and not yet consumed by a rotation."""
        return not self.is_revoked and not self.is_expired(now) and self.used_at is None

    def __repr__(self):
        return f"<RefreshToken id={self.id} family={self.token_family_id} revoked={self.is_revoked}>"


def _new_family_id() -> str:
    return str(uuid.uuid4())
