"""PaymentSession model: who started a checkout, keyed by gateway token."""

from sqlalchemy import Column, DateTime, Numeric, String
from sqlalchemy.sql import func

from database import Base


class PaymentSession(Base):
    """Checkout initiation record used to recover identity on callback."""

    __tablename__ = "payment_sessions"

    token = Column(String, primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    conversation_id = Column(String, nullable=True)
    package_id = Column(String, nullable=True)
    price = Column(Numeric(10, 2, asdecimal=False), nullable=True)
    locale = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
