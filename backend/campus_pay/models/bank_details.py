"""
School Bank Details Model — One active payout account per campus.
Also carries the campus's payment gateway credentials (encrypted envelope,
legacy plaintext, and the non-sensitive status mirror).
"""
from datetime import datetime
from sqlalchemy import Column, String, Integer, DateTime, JSON, Boolean

from campus_pay.database import Base


class SchoolBankDetails(Base):
    __tablename__ = "school_bank_details"

    id = Column(Integer, primary_key=True, autoincrement=True, index=True)
    campus_id = Column(String(64), nullable=False, index=True)

    # Payout account
    bank_name = Column(String(128))
    account_number = Column(String(34))
    account_holder_name = Column(String(128))
    ifsc_code = Column(String(11))
    branch_name = Column(String(128))
    account_type = Column(String(16), default="current")   # current | savings

    # Gateway credentials
    encrypted_payment_credentials = Column(JSON, nullable=True)   # {encrypted_data, iv, tag, algorithm}
    payment_gateway_credentials = Column(JSON, nullable=True)     # Legacy plaintext, migrated away
    gateway_status = Column(JSON, default=dict)                   # {gateway: {enabled, configured, last_tested, test_status}}
    encryption_version = Column(String(8))
    credential_updated_at = Column(DateTime, nullable=True)

    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
