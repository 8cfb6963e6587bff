from decimal import Decimal

from sqlalchemy import BigInteger, Column, DateTime, Integer, Numeric, String, Text, func
from sqlalchemy.orm import validates

from database import Base


class Project(Base):
    __tablename__ = "projects"

    id = Column(String(64), primary_key=True, index=True)
    title = Column(String(256), nullable=False)
    description = Column(Text, nullable=True)
    creator_address = Column(String(64), nullable=False, index=True)
    goal_amount = Column(Numeric(20, 2), nullable=False)
    current_funding = Column(Numeric(20, 2), nullable=False, default=Decimal("0.00"))
    interest_rate = Column(Numeric(5, 2), nullable=False)
    status = Column(String(32), nullable=False, default="active", index=True)
    # Escrow wallet: address plus the derivation path it was derived from; the secret is never stored
    custodial_address = Column(String(64), nullable=False, unique=True)
    derivation_path = Column(String(128), nullable=False)
    custodial_secret_encrypted = Column(Text, nullable=True)
    platform_fee_paid = Column(Numeric(20, 2), nullable=False, default=Decimal("0.00"))
    last_repayment_check_at = Column(DateTime(timezone=True), nullable=True)
    # Withdrawal: intent is committed before the transfer is submitted, tx ref after it is final
    withdrawal_intent_at = Column(DateTime(timezone=True), nullable=True)
    withdrawal_intent_units = Column(BigInteger, nullable=True)
    withdrawal_tx_ref = Column(String(128), nullable=True, unique=True)
    withdrawal_amount = Column(Numeric(20, 2), nullable=True)
    withdrawn_at = Column(DateTime(timezone=True), nullable=True)
    repaid_at = Column(DateTime(timezone=True), nullable=True)
    repayment_amount = Column(Numeric(20, 2), nullable=True)
    version = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    __mapper_args__ = {"version_id_col": version, "eager_defaults": True}

    @validates("custodial_address")
    def _custodial_address_is_immutable(self, key, value):
        if self.custodial_address is not None and value != self.custodial_address:
            raise ValueError("custodial_address is immutable once set")
        return value
