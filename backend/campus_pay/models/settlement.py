"""
Settlement Models — Gateway settlement configuration and payout batches.
"""
from datetime import datetime
from sqlalchemy import Column, String, Integer, DateTime, JSON, Boolean, Numeric, Index, UniqueConstraint, text

from campus_pay.database import Base


class PaymentGatewayConfiguration(Base):
    """Per-campus settlement settings and fee structure for one gateway."""
    __tablename__ = "payment_gateway_configurations"
    __table_args__ = (
        UniqueConstraint("campus_id", "gateway_provider", name="uq_gateway_config_campus_provider"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True, index=True)
    campus_id = Column(String(64), nullable=False, index=True)
    gateway_provider = Column(String(16), nullable=False)   # razorpay | payu | cashfree

    status = Column(String(16), default="inactive")   # active | inactive | suspended | under_review
    is_primary = Column(Boolean, default=False)

    # {auto_settlement_enabled, settlement_schedule, custom_settlement_days,
    #  minimum_settlement_amount, maximum_settlement_amount, settlement_currency}
    gateway_settings = Column(JSON, default=dict)

    # {gateway_fee_percentage, gateway_fee_fixed, transaction_fee_percentage,
    #  transaction_fee_fixed, tax_rate_percentage, currency, fee_bearer}
    fee_structure = Column(JSON, default=dict)

    configuration_details = Column(JSON, default=dict)
    testing_details = Column(JSON, default=dict)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class PaymentSettlement(Base):
    """A batched payout of settled transactions to a campus bank account."""
    __tablename__ = "payment_settlements"
    # Failed runs release their period so it can be retried
    __table_args__ = (
        Index(
            "uq_settlement_campus_gateway_period",
            "campus_id", "gateway_provider", "settlement_period_start", "settlement_period_end",
            unique=True,
            sqlite_where=text("settlement_status != 'failed'"),
            postgresql_where=text("settlement_status != 'failed'"),
        ),
    )

    id = Column(String(36), primary_key=True, index=True)
    campus_id = Column(String(64), nullable=False, index=True)
    gateway_provider = Column(String(16), nullable=False)
    settlement_batch_id = Column(String(64), unique=True, nullable=False)
    settlement_date = Column(DateTime)
    settlement_period_start = Column(DateTime, nullable=False)
    settlement_period_end = Column(DateTime, nullable=False)

    # pending → processing → completed | failed
    settlement_status = Column(String(16), default="pending", index=True)

    total_transaction_amount = Column(Numeric(14, 2), default=0)
    total_gateway_fees = Column(Numeric(14, 2), default=0)
    total_platform_fees = Column(Numeric(14, 2), default=0)
    total_taxes = Column(Numeric(14, 2), default=0)
    net_settlement_amount = Column(Numeric(14, 2), default=0)
    currency = Column(String(3), default="INR")

    gateway_settlement_id = Column(String(64), index=True)
    gateway_settlement_reference = Column(String(64))

    school_bank_details = Column(JSON, default=dict)     # Masked account snapshot
    transaction_summary = Column(JSON, default=dict)     # {total_transactions, transaction_ids, ...}
    processing_details = Column(JSON, default=dict)      # {initiated_at, processed_at, retryable, failure_reason}
    security_metadata = Column(JSON, default=dict)       # {settlement_hash, encryption_version, security_flags}
    notification_status = Column(JSON, default=dict)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    completed_at = Column(DateTime, nullable=True)
