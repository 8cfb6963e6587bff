from sqlalchemy import Column, DateTime, ForeignKey, Numeric, String, func

from database import Base


class Commitment(Base):
    __tablename__ = "commitments"

    id = Column(String(64), primary_key=True, index=True)
    project_id = Column(String(64), ForeignKey("projects.id"), nullable=False, index=True)
    investor_address = Column(String(64), nullable=False, index=True)
    amount = Column(Numeric(20, 2), nullable=False)
    platform_fee = Column(Numeric(20, 2), nullable=False)
    net_amount = Column(Numeric(20, 2), nullable=False)
    lockup_period = Column(String(16), nullable=False)
    lockup_expiry = Column(DateTime(timezone=True), nullable=False)
    status = Column(String(32), nullable=False, default="active")
    tx_ref = Column(String(128), nullable=True, unique=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
