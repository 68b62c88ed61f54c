"""
One-time account codes sent to a user's email address.

- PasswordResetCode: proves control of the mailbox before a password reset
- EmailVerificationCode: confirms the address given at registration

A code is 6 digits, valid for a few minutes after it was sent, and can be
used once (used_at is set on use and never cleared).
"""
from __future__ import annotations

import re
import secrets
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import Column, String, DateTime, ForeignKey
from sqlalchemy.orm import declared_attr

from models.base_model import BaseModel, Base
from utils.clock import utcnow

CODE_LENGTH = 6
CODE_PATTERN = re.compile(r"^[0-9]{6}$")
DEFAULT_CODE_LIFETIME_MINUTES = 5


def generate_code() -> str:
    """Six random decimal digits, zero padded."""
    return f"{secrets.randbelow(10 ** CODE_LENGTH):0{CODE_LENGTH}d}"


class OneTimeCode(BaseModel):
    email = Column(String(50), nullable=False, index=True)
    code = Column(String(CODE_LENGTH), nullable=False)
    sent_at = Column(DateTime, nullable=False)
    used_at = Column(DateTime, nullable=True)

    @declared_attr
    def user_id(cls):
        return Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)

    @classmethod
    def create(cls, user_id: str, email: str, code: Optional[str] = None, now: Optional[datetime] = None):
        if not user_id:
            raise ValueError("user_id is required")
        if not email:
            raise ValueError("email is required")
        code = code if code is not None else generate_code()
        if not CODE_PATTERN.match(code):
            raise ValueError("code must be exactly 6 digits")
        now = now or utcnow()
        return cls(user_id=user_id, email=email, code=code, sent_at=now, created_at=now, updated_at=now)

    def mark_as_used(self, now: Optional[datetime] = None) -> bool:
        """False if the code was already used."""
        if self.used_at is not None:
            return False
        self.used_at = now or utcnow()
        return True

    def is_expired(self, now: Optional[datetime] = None, lifetime_minutes: int = DEFAULT_CODE_LIFETIME_MINUTES) -> bool:
        return (now or utcnow()) > self.sent_at + timedelta(minutes=lifetime_minutes)


class PasswordResetCode(OneTimeCode, Base):
    __tablename__ = "password_reset_codes"


class EmailVerificationCode(OneTimeCode, Base):
    __tablename__ = "email_verification_codes"
