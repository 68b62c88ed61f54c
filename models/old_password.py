from sqlalchemy import Column, String, DateTime, ForeignKey

from models.base_model import BaseModel, Base
from utils.clock import utcnow


class UserOldPassword(BaseModel, Base):
    """A password hash the user held before a reset; kept to refuse reuse."""
    __tablename__ = "user_old_passwords"

    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    password_hash = Column(String(100), nullable=False)
    set_at = Column(DateTime, nullable=False, default=utcnow)
