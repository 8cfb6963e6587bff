from sqlalchemy import Column, DateTime, ForeignKey, Numeric, String, func
from sqlalchemy.orm import validates

from database import Base


class Loan(Base):
    __tablename__ = "loans"

    id = Column(String(64), primary_key=True, index=True)
    # One loan per project
    project_id = Column(String(64), ForeignKey("projects.id"), nullable=False, unique=True, index=True)
    borrower_address = Column(String(64), nullable=False)
    principal = Column(Numeric(20, 2), nullable=False)
    interest_rate = Column(Numeric(5, 2), nullable=False)
    interest_amount = Column(Numeric(20, 2), nullable=False)
    total_repayment = Column(Numeric(20, 2), nullable=False)
    status = Column(String(32), nullable=False, default="active", index=True)
    due_date = Column(DateTime(timezone=True), nullable=True)
    borrowed_at = Column(DateTime(timezone=True), nullable=False)
    withdrawal_tx_ref = Column(String(128), nullable=True)
    actual_repayment_amount = Column(Numeric(20, 2), nullable=True)
    actual_repayment_date = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __mapper_args__ = {"eager_defaults": True}

    @validates("principal", "interest_amount", "total_repayment")
    def _terms_are_fixed(self, key, value):
        current = getattr(self, key)
        if current is not None and value != current:
            raise ValueError(f"{key} is fixed at loan creation")
        return value
