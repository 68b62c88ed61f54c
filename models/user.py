from models.base_model import Base, BaseModel
from sqlalchemy import Column, String, JSON, Boolean, DateTime
from sqlalchemy.orm import relationship

from utils.clock import utcnow


class User(BaseModel, Base):
    __tablename__ = "users"
    email = Column(String(50), nullable=False, unique=True, index=True)
    user_name = Column(String(50), nullable=False, unique=True, index=True)
    password_hash = Column(String(100), nullable=False)
    roles = Column(JSON, nullable=True, default=lambda: ['user'])
    is_disabled = Column(Boolean, default=False, nullable=False)
    email_confirmed = Column(Boolean, default=False, nullable=False)
    last_logged_in_at = Column(DateTime, nullable=True)

    refresh_tokens = relationship(
        "RefreshToken",
        back_populates="user",
        passive_deletes=True,
    )

    @property
    def display_name(self) -> str:
        return self.user_name

    def record_login(self):
        self.last_logged_in_at = utcnow()

    def __repr__(self):
        return f"<User {self.user_name}>"
