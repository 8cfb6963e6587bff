from models.audit import RepaymentCheck, SettlementEvent
from models.commitment import Commitment
from models.loan import Loan
from models.project import Project

__all__ = [
    "Commitment",
    "Loan",
    "Project",
    "RepaymentCheck",
    "SettlementEvent",
]
