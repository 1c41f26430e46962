"""AnonymousUsage model: marks visitors who created a song signed-out."""

from sqlalchemy import Column, DateTime, String
from sqlalchemy.sql import func

from database import Base


class AnonymousUsage(Base):
    __tablename__ = "anonymous_usages"

    visitor_id = Column(String, primary_key=True)
    first_song_id = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
