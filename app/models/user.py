from uuid import uuid4

from sqlalchemy import Column, Integer, String, Boolean, DateTime
from sqlalchemy.sql import func
from app.db.base import Base


def _new_user_id() -> str:
    return uuid4().hex


class User(Base):
    __tablename__ = "users"

    id = Column(String(64), primary_key=True, default=_new_user_id)
    external_id = Column(String(128), unique=True, index=True, nullable=False)  # subject do token de identidade
    email = Column(String, unique=True, index=True, nullable=False)
    name = Column(String, nullable=True)
    role = Column(String(16), nullable=False, default="user")  # user, admin
    is_active = Column(Boolean, default=True)

    # Entitlements
    plan = Column(String(16), nullable=False, default="free", index=True)  # free, pro
    project_ideas_left = Column(Integer, nullable=False, default=3)
    collaboration_requests_left = Column(Integer, nullable=False, default=3)
    plan_expiry_date = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
