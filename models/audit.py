from sqlalchemy import JSON, Boolean, Column, DateTime, ForeignKey, Numeric, String, Text, event, func

from database import Base


class RepaymentCheck(Base):
    __tablename__ = "repayment_checks"

    id = Column(String(64), primary_key=True, index=True)
    project_id = Column(String(64), ForeignKey("projects.id"), nullable=False, index=True)
    # NULL when the ledger query itself failed
    observed_balance = Column(Numeric(20, 6), nullable=True)
    expected_amount = Column(Numeric(20, 2), nullable=False)
    is_fully_repaid = Column(Boolean, nullable=False, default=False)
    checker_source = Column(String(16), nullable=False)
    notes = Column(Text, nullable=True)
    checked_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class SettlementEvent(Base):
    __tablename__ = "settlement_events"

    id = Column(String(64), primary_key=True, index=True)
    project_id = Column(String(64), ForeignKey("projects.id"), nullable=False, index=True)
    action = Column(String(32), nullable=False, index=True)
    actor = Column(String(64), nullable=False)
    amount = Column(Numeric(20, 2), nullable=True)
    tx_ref = Column(String(128), nullable=True)
    details = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


def _reject_mutation(mapper, connection, target):
    raise ValueError(f"{type(target).__name__} records are append-only")


for _audit_model in (RepaymentCheck, SettlementEvent):
    event.listen(_audit_model, "before_update", _reject_mutation)
    event.listen(_audit_model, "before_delete", _reject_mutation)
