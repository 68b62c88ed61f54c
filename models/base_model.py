#!/usr/bin/env python3
"""
Shared SQLAlchemy base and mixin for the CleanHR Auth API.

- UUID primary key (String(36)) with defaults
- created_at / updated_at timestamps (naive UTC)
- to_dict() that formats timestamps and removes SA internals

Notes:
- Timestamps are written from Python (utils.clock.utcnow) rather than by the
  database, so tokens created in the same request get ordered reliably.
- Rows that carry audit meaning (refresh tokens) are never hard deleted, so
  there is no delete() helper here.
"""

from __future__ import annotations

from datetime import datetime
import uuid

from sqlalchemy import Column, String, DateTime
from sqlalchemy.orm import declarative_base

from utils.clock import utcnow

TIME_FMT = "%Y-%m-%dT%H:%M:%S.%f"

# Declarative base for all models
Base = declarative_base()


def _uuid_str() -> str:
    """Return a canonical UUIDv4 string (36 chars, with hyphens)."""
    return str(uuid.uuid4())


class BaseModel:
    """
    Base mixin for all persistent models: id, created_at, updated_at.
    """

    id = Column(String(36), primary_key=True, default=_uuid_str, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    def __init__(self, *args, **kwargs):
        """
        Allow attribute initialization via kwargs without requiring a session here.
        If you pass created_at/updated_at explicitly (e.g., in tests), they will be set.
        """
        for key, value in kwargs.items():
            if key != "__class__":
                setattr(self, key, value)
        # Ensure an id exists if user passed none
        if getattr(self, "id", None) is None:
            self.id = _uuid_str()

    def __str__(self) -> str:
        return f"[{self.__class__.__name__}] ({self.id})"

    def to_dict(self) -> dict:
        """
        Return a dictionary of fields suitable for API responses:
        - Adds __class__
        - Formats datetimes to TIME_FMT
        - Removes SQLAlchemy internal state and secrets
        """
        d = {k: v for k, v in self.__dict__.items() if k != "_sa_instance_state"}
        for key, value in list(d.items()):
            if isinstance(value, datetime):
                d[key] = value.strftime(TIME_FMT)
        d["__class__"] = self.__class__.__name__

        for secret in ("password_hash", "token"):
            d.pop(secret, None)

        return d
