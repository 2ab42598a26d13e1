"""
Payment Transaction Model — One fee payment attempt through a gateway.
"""
from datetime import datetime
from sqlalchemy import Column, String, Integer, DateTime, JSON, Boolean, Numeric

from campus_pay.database import Base


class PaymentTransaction(Base):
    __tablename__ = "payment_transactions"

    id = Column(String(36), primary_key=True, index=True)
    campus_id = Column(String(64), nullable=False, index=True)
    fee_id = Column(String(64))
    student_id = Column(String(64))

    gateway = Column(String(16), nullable=False, index=True)   # razorpay | payu | cashfree
    amount = Column(Numeric(12, 2), nullable=False)             # INR, two decimal places
    currency = Column(String(3), default="INR")

    # Status tracking: pending → success | failed (exactly once)
    status = Column(String(16), default="pending", index=True)
    gateway_order_id = Column(String(64))
    gateway_payment_id = Column(String(64))
    gateway_response = Column(JSON, default=dict)
    webhook_verified = Column(Boolean, default=False)
    verification_attempts = Column(Integer, default=0)

    # Set when a settlement claims this transaction; NULL means not yet settled
    settlement_id = Column(String(36), nullable=True, index=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    completed_at = Column(DateTime, nullable=True, index=True)
