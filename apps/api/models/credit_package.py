"""CreditPackage model: purchasable bundles of song credits."""

from sqlalchemy import Boolean, Column, DateTime, Integer, Numeric, String, Text
from sqlalchemy.sql import func

from database import Base


class CreditPackage(Base):
    """Reference data managed outside the API."""

    __tablename__ = "credit_packages"

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    credits = Column(Integer, nullable=False)
    price = Column(Numeric(10, 2, asdecimal=False), nullable=False)
    description = Column(Text, nullable=True)
    popular = Column(Boolean, nullable=False, default=False)
    active = Column(Boolean, nullable=True, default=True)
    polar_product_id = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
