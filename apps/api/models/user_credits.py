"""UserCredits model for the per-user song credit balance."""

from sqlalchemy import CheckConstraint, Column, DateTime, Integer, String
from sqlalchemy.sql import func

from database import Base


class UserCredits(Base):
    """Free-tier usage and purchased credit balance for one user."""

    __tablename__ = "user_credits"
    __table_args__ = (
        CheckConstraint("paid_credits >= 0", name="ck_user_credits_paid_credits_non_negative"),
        CheckConstraint("free_songs_used >= 0", name="ck_user_credits_free_songs_used_non_negative"),
    )

    user_id = Column(String, primary_key=True)
    email = Column(String, nullable=True)
    free_songs_used = Column(Integer, nullable=False, default=0, server_default="0")
    paid_credits = Column(Integer, nullable=False, default=0, server_default="0")
    total_songs_created = Column(Integer, nullable=False, default=0, server_default="0")
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
