"""PaymentTransaction model: idempotency journal for settled payments."""

from sqlalchemy import JSON, Column, DateTime, Integer, String
from sqlalchemy.sql import func

from database import Base


class PaymentTransaction(Base):
    """One settled payment, keyed by the gateway token or webhook event key."""

    __tablename__ = "payment_transactions"

    token = Column(String, primary_key=True)
    provider = Column(String, nullable=False, default="iyzico")
    status = Column(String, nullable=False, default="SUCCESS")
    item_id = Column(String, nullable=True)
    user_id = Column(String, nullable=False, index=True)
    credits = Column(Integer, nullable=False)
    provider_response = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
