from .base import Base, Column, String, Float, DateTime


class Transaction(Base):
    __tablename__ = "transactions"

    id = Column(String(255), primary_key=True, index=True)
    account_id = Column(String(255), index=True, nullable=False)
    package_type = Column(String(32), nullable=False)
    amount = Column(Float, nullable=False, default=0)
    currency = Column(String(8), nullable=False, default="USD")
    status = Column(String(16), nullable=False, default="pending")  # pending / completed / failed
    external_order_id = Column(String(128), unique=True, index=True, nullable=True)
    payment_url = Column(String(1000), nullable=True)
    created_at = Column(DateTime)
    updated_at = Column(DateTime)
