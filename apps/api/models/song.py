"""Song model for generation requests and their results."""

from datetime import datetime, timezone
import uuid

from sqlalchemy import JSON, Column, DateTime, String, Text

from database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Song(Base):
    """A celebration song request correlated with the generator by task_id."""

    __tablename__ = "songs"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, nullable=False, index=True)
    email = Column(String, nullable=True)
    name = Column(String, nullable=False)
    celebration_type = Column(String, nullable=True)
    style = Column(String, nullable=False)
    status = Column(String, nullable=False, default="pending", index=True)
    message = Column(Text, nullable=True)
    variations = Column(JSON, nullable=False, default=list)
    task_id = Column(String, nullable=True, unique=True, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)
